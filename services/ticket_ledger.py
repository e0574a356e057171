from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging
import pytz

from database import database
from models.raffle import RaffleStatus
from services.exceptions import (
    RaffleAlreadyCompleted,
    RaffleNotActive,
    RaffleNotFound,
    TicketUnavailable,
    ValidationFailed,
)
from services.ids import parse_object_id

logger = logging.getLogger(__name__)


def tickets_for_transaction(raffle: dict, transaction_id: str) -> List[dict]:
    return [
        ticket for ticket in raffle.get("sold_tickets", [])
        if ticket.get("external_transaction_id") == transaction_id
    ]


class TicketLedger:
    """Owns the sold-ticket set of every raffle.

    All writes to ``sold_tickets`` go through :meth:`commit`, which is a single
    conditional update: it only matches while the raffle is active and none of
    the requested numbers are present, so two concurrent buyers of the same
    number can never both succeed.
    """

    def __init__(self, db=None):
        self.db = db if db is not None else database

    async def get_raffle(self, raffle_id) -> dict:
        raffle = await self.db.raffles.find_one({"_id": parse_object_id(raffle_id)})
        if not raffle:
            raise RaffleNotFound()
        return raffle

    async def sold_numbers(self, raffle_id) -> List[int]:
        raffle = await self.get_raffle(raffle_id)
        return [ticket["number"] for ticket in raffle.get("sold_tickets", [])]

    async def reserve_and_attempt(self, raffle_id, requested_numbers: Iterable[int]) -> Dict[str, List[int]]:
        """Split ``requested_numbers`` into what could be bought right now and what could not.

        Nothing is held; the answer is only advisory until :meth:`commit`.
        """
        raffle = await self.get_raffle(raffle_id)
        if raffle.get("status") != RaffleStatus.ACTIVE.value:
            raise RaffleNotActive()

        sold = {ticket["number"] for ticket in raffle.get("sold_tickets", [])}
        total = raffle["total_tickets"]
        accepted, rejected, seen = [], [], set()
        for number in requested_numbers:
            if number in seen or number in sold or not 1 <= number <= total:
                rejected.append(number)
            else:
                accepted.append(number)
            seen.add(number)

        return {"accepted": accepted, "rejected": rejected}

    async def commit(self, raffle_id, numbers: Iterable[int], buyer: str,
                     transaction_id: Optional[str] = None) -> List[dict]:
        """Atomically attribute ``numbers`` to ``buyer``.

        Re-committing the same numbers under the same ``transaction_id`` returns
        the tickets already stored instead of failing.
        """
        numbers = list(numbers)
        if not numbers:
            raise ValidationFailed("No ticket numbers to commit")
        if len(numbers) != len(set(numbers)):
            raise ValidationFailed("Ticket numbers must be unique")

        raffle_oid = parse_object_id(raffle_id)
        raffle = await self.get_raffle(raffle_oid)

        out_of_range = [n for n in numbers if not 1 <= n <= raffle["total_tickets"]]
        if out_of_range:
            raise TicketUnavailable(out_of_range)

        if transaction_id:
            existing = self._already_committed(raffle, numbers, transaction_id)
            if existing is not None:
                return existing

        purchase_date = datetime.now(pytz.UTC)
        tickets = []
        for number in numbers:
            ticket = {"number": number, "buyer": buyer, "purchase_date": purchase_date}
            if transaction_id:
                ticket["external_transaction_id"] = transaction_id
            tickets.append(ticket)

        result = await self.db.raffles.update_one(
            {
                "_id": raffle_oid,
                "status": RaffleStatus.ACTIVE.value,
                "sold_tickets.number": {"$nin": numbers},
            },
            {"$push": {"sold_tickets": {"$each": tickets}}},
        )
        if result.modified_count == 1:
            logger.info(f"Committed tickets {numbers} on raffle {raffle_oid} for buyer {buyer}")
            return tickets

        # The conditional write missed; work out why against current state
        current = await self.db.raffles.find_one({"_id": raffle_oid})
        if not current:
            raise RaffleNotFound()
        if transaction_id:
            existing = self._already_committed(current, numbers, transaction_id)
            if existing is not None:
                return existing
        if current.get("status") == RaffleStatus.COMPLETED.value:
            raise RaffleAlreadyCompleted()
        if current.get("status") != RaffleStatus.ACTIVE.value:
            raise RaffleNotActive()

        sold = {ticket["number"] for ticket in current.get("sold_tickets", [])}
        taken = [n for n in numbers if n in sold]
        logger.warning(f"Ticket commit conflict on raffle {raffle_oid}: {taken or numbers} already sold")
        raise TicketUnavailable(taken or numbers)

    @staticmethod
    def _already_committed(raffle: dict, numbers: List[int], transaction_id: str) -> Optional[List[dict]]:
        existing = tickets_for_transaction(raffle, transaction_id)
        if existing and {ticket["number"] for ticket in existing} == set(numbers):
            return existing
        return None
