from fastapi import APIRouter, Depends, Header, Request
from typing import List, Optional
import logging

from models.checkout import AnomalyStatus, ReconcileResponse, ResolveAnomalyRequest, SettlementAnomalyResponse
from routes.auth import get_current_admin_user
from routes.errors import to_http_exception
from services.exceptions import RaffleError, SettlementPersistenceError, WebhookRejected
from services.settlement_service import SettlementService

router = APIRouter()
settlement_service = SettlementService()

logger = logging.getLogger(__name__)


@router.post("/webhook")
async def payment_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhook events"""
    payload = await request.body()
    try:
        result = await settlement_service.handle_payment_webhook(payload, stripe_signature)
    except WebhookRejected as e:
        raise to_http_exception(e)
    except SettlementPersistenceError as e:
        # Let the gateway redeliver; this payment has no product yet
        logger.critical(f"Confirmed payment could not be persisted: {e}")
        raise to_http_exception(e)
    return {"received": True, "duplicate": result.get("duplicate", False)}


@router.get("/verify", response_model=ReconcileResponse)
async def verify_payment(session_id: str):
    """Verify a checkout from the success page and settle it if paid"""
    try:
        return await settlement_service.reconcile_checkout(session_id)
    except RaffleError as e:
        raise to_http_exception(e)


@router.get("/anomalies", response_model=List[SettlementAnomalyResponse])
async def get_anomalies(
        status: Optional[AnomalyStatus] = AnomalyStatus.OPEN,
        current_user: dict = Depends(get_current_admin_user)
):
    """Paid checkouts needing manual reconciliation (Admin only)"""
    return await settlement_service.list_anomalies(status)


@router.post("/anomalies/{anomaly_id}/resolve", response_model=SettlementAnomalyResponse)
async def resolve_anomaly(
        anomaly_id: str,
        resolution: ResolveAnomalyRequest,
        current_user: dict = Depends(get_current_admin_user)
):
    """Mark a settlement anomaly as handled (Admin only)"""
    try:
        return await settlement_service.resolve_anomaly(anomaly_id, str(current_user["_id"]), resolution.note)
    except RaffleError as e:
        raise to_http_exception(e)
