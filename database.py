from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, IndexModel
import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# MongoDB connection
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "rifas")

client = AsyncIOMotorClient(MONGODB_URL)
database = client[DATABASE_NAME]

# Collections
users_collection = database.users
raffles_collection = database.raffles
pending_checkouts_collection = database.pending_checkouts
settlement_anomalies_collection = database.settlement_anomalies
webhook_events_collection = database.webhook_events
staged_uploads_collection = database.staged_uploads


async def init_db(db=None):
    """Initialize database indexes"""
    db = db if db is not None else database

    await db.raffles.create_indexes([
        IndexModel("status"),
        IndexModel([("creator", ASCENDING), ("status", ASCENDING)]),
        # Only paid creations carry a session id; one raffle per session
        IndexModel("checkout_session_id", unique=True, sparse=True),
    ])

    await db.pending_checkouts.create_indexes([
        IndexModel([("status", ASCENDING), ("expires_at", ASCENDING)]),
        IndexModel("raffle_id"),
    ])

    await db.settlement_anomalies.create_indexes([
        IndexModel("status"),
        IndexModel("session_id"),
    ])

    await db.staged_uploads.create_indexes([
        IndexModel([("owner_id", ASCENDING), ("public_id", ASCENDING)]),
    ])

    logger.info("Database initialized successfully")


async def get_database():
    return database
