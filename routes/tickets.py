from fastapi import APIRouter, Depends

from models.ticket import TicketAvailabilityResponse, TicketCheckoutResponse, TicketPurchaseRequest
from routes.auth import get_current_user
from routes.errors import to_http_exception
from services.exceptions import RaffleError
from services.settlement_service import SettlementService
from services.ticket_ledger import TicketLedger

router = APIRouter()
ticket_ledger = TicketLedger()
settlement_service = SettlementService()


@router.post("/availability", response_model=TicketAvailabilityResponse)
async def check_availability(purchase: TicketPurchaseRequest):
    """Check which of the requested numbers can still be bought"""
    try:
        availability = await ticket_ledger.reserve_and_attempt(purchase.raffle_id, purchase.ticket_numbers)
        return TicketAvailabilityResponse(**availability)
    except RaffleError as e:
        raise to_http_exception(e)


@router.post("/buy", response_model=TicketCheckoutResponse)
async def buy_tickets(
        purchase: TicketPurchaseRequest,
        current_user: dict = Depends(get_current_user)
):
    """Open a checkout for specific ticket numbers"""
    try:
        return await settlement_service.request_ticket_purchase(
            purchase.raffle_id,
            str(current_user["_id"]),
            purchase.ticket_numbers
        )
    except RaffleError as e:
        raise to_http_exception(e)
