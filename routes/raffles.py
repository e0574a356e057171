from fastapi import APIRouter, Depends
from typing import List
import logging

from models.raffle import (
    PriceQuote,
    QuoteRequest,
    RaffleCreate,
    RaffleCreationResponse,
    RaffleResponse,
    WinnerResponse,
    WinnerSelectionRequest,
)
from routes.auth import get_current_user
from routes.errors import to_http_exception
from services.exceptions import RaffleError
from services.pricing_service import quote
from services.raffle_service import RaffleService
from services.settlement_service import SettlementService
from services.winner_service import WinnerService

router = APIRouter()
raffle_service = RaffleService()
settlement_service = SettlementService()
winner_service = WinnerService()

logger = logging.getLogger(__name__)


@router.post("/quote", response_model=PriceQuote)
async def quote_price(
        quote_request: QuoteRequest,
        current_user: dict = Depends(get_current_user)
):
    """Estimate the creation fee for the current organizer"""
    try:
        prior_active = await raffle_service.count_active_raffles(str(current_user["_id"]))
        return quote(
            quote_request.ticket_count,
            quote_request.is_promoted,
            quote_request.promotion_months,
            prior_active
        )
    except RaffleError as e:
        raise to_http_exception(e)


@router.post("/create", response_model=RaffleCreationResponse)
async def create_raffle(
        raffle_data: RaffleCreate,
        current_user: dict = Depends(get_current_user)
):
    """Create a raffle directly when free, otherwise open a checkout for the fee"""
    try:
        return await settlement_service.request_raffle_creation(str(current_user["_id"]), raffle_data)
    except RaffleError as e:
        raise to_http_exception(e)


@router.get("/active", response_model=List[RaffleResponse])
async def get_active_raffles():
    """Get all active raffles, promoted first"""
    return await raffle_service.list_active_raffles()


@router.get("/mine", response_model=List[RaffleResponse])
async def get_my_raffles(current_user: dict = Depends(get_current_user)):
    """Get raffles created by the current user"""
    return await raffle_service.list_creator_raffles(str(current_user["_id"]))


@router.get("/mine/active-count", response_model=dict)
async def get_my_active_count(current_user: dict = Depends(get_current_user)):
    count = await raffle_service.count_active_raffles(str(current_user["_id"]))
    return {"count": count}


@router.get("/{raffle_id}", response_model=RaffleResponse)
async def get_raffle(raffle_id: str):
    """Get a raffle snapshot"""
    try:
        return await raffle_service.get_raffle_status(raffle_id)
    except RaffleError as e:
        raise to_http_exception(e)


@router.post("/{raffle_id}/delete", response_model=dict)
async def delete_raffle(
        raffle_id: str,
        current_user: dict = Depends(get_current_user)
):
    """Delete a raffle that has not sold any ticket (creator only)"""
    try:
        await raffle_service.delete_raffle(raffle_id, str(current_user["_id"]))
        return {"message": "Raffle deleted successfully"}
    except RaffleError as e:
        raise to_http_exception(e)


@router.post("/{raffle_id}/select-winner", response_model=WinnerResponse)
async def select_winner(
        raffle_id: str,
        selection: WinnerSelectionRequest,
        current_user: dict = Depends(get_current_user)
):
    """Draw the winner and complete the raffle (creator only)"""
    try:
        return await winner_service.select_winner(
            raffle_id,
            str(current_user["_id"]),
            selection.method,
            selection.manual_ticket_number
        )
    except RaffleError as e:
        logger.info(f"Winner selection refused for raffle {raffle_id}: {e}")
        raise to_http_exception(e)
