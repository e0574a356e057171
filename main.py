from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
from datetime import datetime
import asyncio
import logging
import os
import pytz
from dotenv import load_dotenv

from routes import raffles, tickets, payments
from database import init_db
from services.settlement_service import SettlementService

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

# Initialize services
settlement_service = SettlementService()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()

    # Start background tasks
    sweeper = asyncio.create_task(settlement_service.start_checkout_sweeper())

    yield

    # Shutdown
    sweeper.cancel()


app = FastAPI(
    title="Rifas API",
    description="Raffle ticket sales and settlement API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(raffles.router, prefix="/api/v1/raffles", tags=["Raffles"])
app.include_router(tickets.router, prefix="/api/v1/tickets", tags=["Tickets"])
app.include_router(payments.router, prefix="/api/v1/payments", tags=["Payments"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(pytz.UTC)}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True
    )
