from datetime import datetime
from typing import List, Optional
import logging
import random
import pytz

from database import database
from models.raffle import DRAW_NUMBER_PATTERN, RaffleStatus, WinnerResponse, WinnerSelectionMethod
from services.exceptions import (
    NotRaffleCreator,
    RaffleAlreadyCompleted,
    RaffleNotActive,
    TicketNotFound,
    ValidationFailed,
)
from services.raffle_service import RaffleService

logger = logging.getLogger(__name__)


def lottery_index(draw_number: str, ticket_count: int) -> int:
    """Index into the sold tickets derived from a public lottery draw number."""
    if draw_number is None or not DRAW_NUMBER_PATTERN.match(str(draw_number).strip()):
        raise ValidationFailed("Lottery draw number must be numeric")
    return int(str(draw_number).strip()) % ticket_count


def pick_ticket(sold_tickets: List[dict], method: WinnerSelectionMethod, lottery_details: Optional[dict] = None,
                manual_ticket_number: Optional[int] = None, rng: random.Random = None) -> dict:
    if not sold_tickets:
        raise ValidationFailed("No tickets have been sold")

    if method == WinnerSelectionMethod.RANDOM:
        rng = rng or random.SystemRandom()
        return sold_tickets[rng.randrange(len(sold_tickets))]

    if method == WinnerSelectionMethod.LOTTERY:
        if not lottery_details or not lottery_details.get("draw_number"):
            raise ValidationFailed("Lottery draw number is not configured")
        return sold_tickets[lottery_index(lottery_details["draw_number"], len(sold_tickets))]

    if manual_ticket_number is None:
        raise ValidationFailed("A ticket number is required for manual selection")
    for ticket in sold_tickets:
        if ticket["number"] == manual_ticket_number:
            return ticket
    raise TicketNotFound(f"Ticket {manual_ticket_number} was not sold")


class WinnerService:
    def __init__(self, db=None, rng: random.Random = None):
        self.db = db if db is not None else database
        self.raffle_service = RaffleService(self.db)
        self.rng = rng or random.SystemRandom()

    async def select_winner(self, raffle_id, requester_id: str, method: WinnerSelectionMethod,
                            manual_ticket_number: Optional[int] = None) -> WinnerResponse:
        """Draw the winning ticket and complete the raffle.

        Completion is a conditional update on ``status == active``, so a raffle
        can only ever be drawn once even when two requests race.
        """
        raffle = await self.raffle_service.get_raffle(raffle_id)
        if raffle["creator"] != requester_id:
            raise NotRaffleCreator()
        if raffle["status"] == RaffleStatus.COMPLETED.value:
            raise RaffleAlreadyCompleted()
        if raffle["status"] != RaffleStatus.ACTIVE.value:
            raise RaffleNotActive()

        method = WinnerSelectionMethod(method)
        configured = raffle.get("winner_selection_method", WinnerSelectionMethod.RANDOM.value)
        if method.value != configured:
            raise ValidationFailed(f"This raffle draws its winner by the '{configured}' method")

        ticket = pick_ticket(
            raffle.get("sold_tickets", []),
            method,
            lottery_details=raffle.get("lottery_details"),
            manual_ticket_number=manual_ticket_number,
            rng=self.rng,
        )

        result = await self.db.raffles.update_one(
            {"_id": raffle["_id"], "status": RaffleStatus.ACTIVE.value},
            {
                "$set": {
                    "status": RaffleStatus.COMPLETED.value,
                    "winner": ticket["buyer"],
                    "winning_ticket_number": ticket["number"],
                    "completed_at": datetime.now(pytz.UTC),
                }
            }
        )
        if result.modified_count == 0:
            current = await self.raffle_service.get_raffle(raffle["_id"])
            if current["status"] == RaffleStatus.COMPLETED.value:
                raise RaffleAlreadyCompleted()
            raise RaffleNotActive()

        logger.info(
            f"Raffle {raffle['_id']} completed by {method.value} draw: "
            f"ticket {ticket['number']} won by {ticket['buyer']}"
        )
        return WinnerResponse(
            raffle_id=str(raffle["_id"]),
            winning_ticket_number=ticket["number"],
            winner=ticket["buyer"],
            method=method,
        )
