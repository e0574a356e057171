from datetime import datetime, timedelta
from typing import List, Optional
import logging
import pytz

from database import database
from models.raffle import RaffleCreate, RaffleResponse, RaffleStatus, SoldTicketResponse
from services.exceptions import (
    NotRaffleCreator,
    RaffleAlreadyCompleted,
    RaffleHasSoldTickets,
    RaffleNotActive,
    RaffleNotFound,
)
from services.ids import parse_object_id

logger = logging.getLogger(__name__)

PROMOTION_DAYS_PER_MONTH = 30


def build_raffle_document(creator_id: str, payload: RaffleCreate, now: datetime,
                          checkout_session_id: Optional[str] = None) -> dict:
    raffle_doc = {
        "title": payload.title,
        "description": payload.description,
        "ticket_price": payload.ticket_price,
        "total_tickets": payload.total_tickets,
        "creator": creator_id,
        "created_at": now,
        "start_date": payload.start_date or now,
        "end_date": payload.end_date,
        "images": [image.model_dump() for image in payload.images],
        "social_links": payload.social_links.model_dump(),
        "is_promoted": payload.is_promoted,
        "promotion_months": payload.promotion_months if payload.is_promoted else 0,
        "promotion_end_date": (
            now + timedelta(days=PROMOTION_DAYS_PER_MONTH * payload.promotion_months)
            if payload.is_promoted else None
        ),
        "winner_selection_method": payload.winner_selection_method.value,
        "lottery_details": payload.lottery_details.model_dump() if payload.lottery_details else None,
        "status": RaffleStatus.ACTIVE.value,
        "sold_tickets": [],
        "winner": None,
        "winning_ticket_number": None,
        "needs_reconciliation": False,
    }
    if checkout_session_id:
        raffle_doc["checkout_session_id"] = checkout_session_id
    return raffle_doc


def raffle_to_response(raffle: dict) -> RaffleResponse:
    sold_tickets = raffle.get("sold_tickets", [])
    return RaffleResponse(
        id=str(raffle["_id"]),
        title=raffle["title"],
        description=raffle["description"],
        ticket_price=raffle["ticket_price"],
        total_tickets=raffle["total_tickets"],
        sold_count=len(sold_tickets),
        available_count=raffle["total_tickets"] - len(sold_tickets),
        status=raffle["status"],
        creator=raffle["creator"],
        created_at=raffle["created_at"],
        start_date=raffle.get("start_date"),
        end_date=raffle.get("end_date"),
        is_promoted=raffle.get("is_promoted", False),
        promotion_end_date=raffle.get("promotion_end_date"),
        winner_selection_method=raffle["winner_selection_method"],
        lottery_details=raffle.get("lottery_details"),
        images=raffle.get("images", []),
        social_links=raffle.get("social_links") or {},
        sold_tickets=[
            SoldTicketResponse(
                number=ticket["number"],
                buyer=ticket["buyer"],
                purchase_date=ticket["purchase_date"]
            )
            for ticket in sold_tickets
        ],
        winner=raffle.get("winner"),
        winning_ticket_number=raffle.get("winning_ticket_number"),
        needs_reconciliation=raffle.get("needs_reconciliation", False),
    )


class RaffleService:
    """Raffle records and the active -> completed | deleted lifecycle."""

    def __init__(self, db=None):
        self.db = db if db is not None else database

    async def create_raffle(self, creator_id: str, payload: RaffleCreate,
                            checkout_session_id: Optional[str] = None,
                            reconciliation_reason: Optional[str] = None) -> str:
        """Insert an active raffle. Duplicate session ids surface as DuplicateKeyError."""
        raffle_doc = build_raffle_document(creator_id, payload, datetime.now(pytz.UTC), checkout_session_id)
        if reconciliation_reason:
            raffle_doc["needs_reconciliation"] = True
            raffle_doc["reconciliation_reason"] = reconciliation_reason

        result = await self.db.raffles.insert_one(raffle_doc)
        logger.info(f"Created raffle {result.inserted_id} for creator {creator_id}")
        return str(result.inserted_id)

    async def find_by_checkout_session(self, session_id: str) -> Optional[dict]:
        return await self.db.raffles.find_one({"checkout_session_id": session_id})

    async def count_active_raffles(self, creator_id: str) -> int:
        return await self.db.raffles.count_documents({
            "creator": creator_id,
            "status": RaffleStatus.ACTIVE.value
        })

    async def get_raffle(self, raffle_id) -> dict:
        raffle = await self.db.raffles.find_one({"_id": parse_object_id(raffle_id)})
        if not raffle:
            raise RaffleNotFound()
        return raffle

    async def get_raffle_status(self, raffle_id) -> RaffleResponse:
        return raffle_to_response(await self.get_raffle(raffle_id))

    async def list_active_raffles(self, limit: int = 100) -> List[RaffleResponse]:
        raffles = await self.db.raffles.find(
            {"status": RaffleStatus.ACTIVE.value}
        ).sort([("is_promoted", -1), ("created_at", -1)]).to_list(limit)
        return [raffle_to_response(raffle) for raffle in raffles]

    async def list_creator_raffles(self, creator_id: str, limit: int = 100) -> List[RaffleResponse]:
        raffles = await self.db.raffles.find(
            {"creator": creator_id, "status": {"$ne": RaffleStatus.DELETED.value}}
        ).sort("created_at", -1).to_list(limit)
        return [raffle_to_response(raffle) for raffle in raffles]

    async def delete_raffle(self, raffle_id, requester_id: str) -> None:
        raffle = await self.get_raffle(raffle_id)
        if raffle["creator"] != requester_id:
            raise NotRaffleCreator()

        result = await self.db.raffles.update_one(
            {
                "_id": raffle["_id"],
                "status": RaffleStatus.ACTIVE.value,
                "sold_tickets": {"$size": 0},
            },
            {"$set": {"status": RaffleStatus.DELETED.value, "deleted_at": datetime.now(pytz.UTC)}}
        )
        if result.modified_count == 1:
            logger.info(f"Raffle {raffle['_id']} deleted by {requester_id}")
            return

        current = await self.get_raffle(raffle["_id"])
        if current["status"] == RaffleStatus.COMPLETED.value:
            raise RaffleAlreadyCompleted()
        if current["status"] != RaffleStatus.ACTIVE.value:
            raise RaffleNotActive()
        raise RaffleHasSoldTickets()
