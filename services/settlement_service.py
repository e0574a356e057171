import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytz
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models.checkout import (
    AnomalyStatus,
    CheckoutKind,
    CheckoutMetadata,
    InvalidCheckoutMetadata,
    PendingCheckoutStatus,
    ReconcileResponse,
    SettlementAnomalyResponse,
)
from models.raffle import RaffleCreate, RaffleCreationResponse
from models.ticket import MAX_TICKETS_PER_PURCHASE, TicketCheckoutResponse
from services.exceptions import (
    AnomalyNotFound,
    RaffleNotActive,
    RaffleNotFound,
    SettlementPersistenceError,
    TicketUnavailable,
    ValidationFailed,
)
from services.payment_gateway import PaymentGateway
from services.pricing_service import quote, ticket_purchase_amount, to_minor_units
from services.raffle_service import RaffleService
from services.ticket_ledger import TicketLedger

load_dotenv()
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
# Stripe refuses checkout expirations shorter than 30 minutes
CHECKOUT_EXPIRY_MINUTES = max(30, int(os.getenv("CHECKOUT_EXPIRY_MINUTES", "60")))
SETTLEMENT_MAX_RETRIES = int(os.getenv("SETTLEMENT_MAX_RETRIES", "3"))
SETTLEMENT_RETRY_DELAY = float(os.getenv("SETTLEMENT_RETRY_DELAY", "0.5"))
CHECKOUT_SWEEP_INTERVAL = int(os.getenv("CHECKOUT_SWEEP_INTERVAL", "300"))

SESSION_COMPLETED = "checkout.session.completed"
SESSION_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
SESSION_EXPIRED = "checkout.session.expired"

logger = logging.getLogger(__name__)


class SettlementService:
    """Turns gateway checkouts into sold tickets and raffle records.

    Settlement is keyed by the gateway session id and every step checks whether
    its effect already exists, so confirmations may arrive twice, late, or
    before the checkout was recorded locally.
    """

    def __init__(self, db=None, gateway: PaymentGateway = None):
        self.db = db if db is not None else database
        self.gateway = gateway or PaymentGateway()
        self.ledger = TicketLedger(self.db)
        self.raffle_service = RaffleService(self.db)

    # Opening checkouts

    async def request_ticket_purchase(self, raffle_id: str, buyer_id: str,
                                      ticket_numbers: List[int]) -> TicketCheckoutResponse:
        if len(ticket_numbers) > MAX_TICKETS_PER_PURCHASE:
            raise ValidationFailed(f"At most {MAX_TICKETS_PER_PURCHASE} tickets can be bought at once")
        availability = await self.ledger.reserve_and_attempt(raffle_id, ticket_numbers)
        if availability["rejected"]:
            raise TicketUnavailable(availability["rejected"])

        raffle = await self.ledger.get_raffle(raffle_id)
        numbers = sorted(ticket_numbers)
        amount = ticket_purchase_amount(raffle["ticket_price"], len(numbers))
        metadata = CheckoutMetadata.for_ticket_purchase(str(raffle["_id"]), buyer_id, numbers)

        now = datetime.now(pytz.UTC)
        expires_at = now + timedelta(minutes=CHECKOUT_EXPIRY_MINUTES)
        session = await self.gateway.open_checkout(
            line_items=[{
                "name": f"Tickets for: {raffle['title']}",
                "description": f"{len(numbers)} ticket(s): {', '.join(map(str, numbers))}",
                "unit_amount": to_minor_units(raffle["ticket_price"]),
                "quantity": len(numbers),
            }],
            metadata=metadata.to_gateway(),
            success_url=f"{APP_BASE_URL}/raffles/{raffle['_id']}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{APP_BASE_URL}/raffles/{raffle['_id']}",
            expires_at=expires_at,
        )

        # The confirmation may already have been processed; never downgrade it
        await self.db.pending_checkouts.update_one(
            {"_id": session.session_id},
            {
                "$setOnInsert": {
                    **self._pending_fields(metadata, now),
                    "amount": float(amount),
                    "status": PendingCheckoutStatus.PENDING.value,
                    "expires_at": expires_at,
                }
            },
            upsert=True
        )
        logger.info(
            f"Opened checkout {session.session_id} for tickets {numbers} "
            f"on raffle {raffle['_id']} (buyer {buyer_id}, amount {amount})"
        )
        return TicketCheckoutResponse(checkout_url=session.url, session_id=session.session_id, amount=float(amount))

    async def request_raffle_creation(self, creator_id: str, payload: RaffleCreate) -> RaffleCreationResponse:
        prior_active = await self.raffle_service.count_active_raffles(creator_id)
        price = quote(payload.total_tickets, payload.is_promoted, payload.promotion_months, prior_active)

        if price.is_free_raffle:
            # Free raffles never carry a paid promotion
            free_payload = payload.model_copy(update={"is_promoted": False})
            raffle_id = await self.raffle_service.create_raffle(creator_id, free_payload)
            await self.clear_staged_uploads(creator_id, payload)
            return RaffleCreationResponse(raffle_id=raffle_id, quote=price)

        metadata = CheckoutMetadata.for_raffle_creation(creator_id, payload).to_gateway()

        description = f"{payload.total_tickets} tickets"
        if payload.is_promoted:
            description += f" + {payload.promotion_months} month(s) of promotion"
        session = await self.gateway.open_checkout(
            line_items=[{
                "name": f"Raffle: {payload.title}",
                "description": description,
                "unit_amount": to_minor_units(price.total),
                "quantity": 1,
            }],
            metadata=metadata,
            success_url=f"{APP_BASE_URL}/raffles/create/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{APP_BASE_URL}/raffles/create",
            expires_at=datetime.now(pytz.UTC) + timedelta(minutes=CHECKOUT_EXPIRY_MINUTES),
        )
        logger.info(f"Opened creation checkout {session.session_id} for creator {creator_id} (total {price.total})")
        return RaffleCreationResponse(checkout_url=session.url, session_id=session.session_id, quote=price)

    # Confirmations

    async def handle_payment_webhook(self, raw_payload, signature_header: Optional[str]) -> Dict:
        """Verify and apply one gateway event. Raises WebhookRejected before touching state."""
        event = self.gateway.verify_webhook_signature(raw_payload, signature_header)
        event_id = event.get("id")
        event_type = event["type"]

        if event_id and await self.db.webhook_events.find_one({"_id": event_id}):
            logger.info(f"Webhook event {event_id} already processed")
            return {"received": True, "duplicate": True}

        session = (event.get("data") or {}).get("object") or {}
        session_id = session.get("id")
        outcome = None

        if event_type == SESSION_ASYNC_SUCCEEDED or (
                event_type == SESSION_COMPLETED and session.get("payment_status") == "paid"):
            outcome = await self.settle_session(session_id, session.get("metadata"))
        elif event_type == SESSION_COMPLETED:
            logger.info(f"Checkout {session_id} completed without payment yet; waiting for async confirmation")
        elif event_type == SESSION_EXPIRED:
            await self.expire_checkout(session_id)
        else:
            logger.debug(f"Ignoring webhook event type {event_type}")

        if event_id:
            await self._record_event(event_id, event_type, session_id)
        return {"received": True, "outcome": outcome}

    async def reconcile_checkout(self, session_id: str) -> ReconcileResponse:
        """Settle from the success page without waiting for the webhook."""
        session = await self.gateway.retrieve_session(session_id)
        if session.payment_status != "paid":
            return ReconcileResponse(session_id=session_id, paid=False, settled=False,
                                     message="Payment not completed")

        outcome = await self.settle_session(session_id, session.metadata)
        return ReconcileResponse(session_id=session_id, paid=True, **outcome)

    async def settle_session(self, session_id: str, raw_metadata: Optional[Dict[str, str]]) -> Dict:
        if not session_id:
            logger.error("Paid checkout event without a session id")
            return {"settled": False, "message": "Missing session id"}

        try:
            metadata = CheckoutMetadata.from_gateway(raw_metadata)
        except InvalidCheckoutMetadata as e:
            logger.error(f"Paid checkout {session_id} has invalid metadata: {e}")
            await self.record_anomaly(session_id, None, "invalid_metadata", details=str(e))
            return {"settled": False, "message": "Invalid checkout metadata"}

        if metadata.kind == CheckoutKind.TICKET_PURCHASE:
            return await self._settle_ticket_purchase(session_id, metadata)
        return await self._settle_raffle_creation(session_id, metadata)

    async def _settle_ticket_purchase(self, session_id: str, metadata: CheckoutMetadata) -> Dict:
        outcome = {"kind": CheckoutKind.TICKET_PURCHASE, "raffle_id": metadata.raffle_id}

        pending = await self.db.pending_checkouts.find_one({"_id": session_id})
        if pending and pending.get("status") == PendingCheckoutStatus.SETTLED.value:
            logger.info(f"Checkout {session_id} already settled")
            return {**outcome, "settled": True, "message": "Already settled"}
        if pending and pending.get("status") == PendingCheckoutStatus.FAILED.value:
            return {**outcome, "settled": False, "message": pending.get("failure_reason")}

        try:
            await self._with_retries(
                lambda: self.ledger.commit(metadata.raffle_id, metadata.ticket_numbers, metadata.buyer_id, session_id)
            )
        except (TicketUnavailable, RaffleNotActive, RaffleNotFound) as e:
            reason = {
                TicketUnavailable: "tickets_unavailable",
                RaffleNotFound: "raffle_not_found",
            }.get(type(e), "raffle_not_active")
            logger.error(f"Paid checkout {session_id} could not be settled ({reason}): {e}")
            await self._with_retries(lambda: self._mark_pending(
                session_id, metadata, PendingCheckoutStatus.FAILED, failure_reason=reason
            ))
            await self.record_anomaly(session_id, metadata, reason, details=str(e))
            return {**outcome, "settled": False, "message": str(e)}

        if not await self._user_exists(metadata.buyer_id):
            logger.warning(f"Checkout {session_id} settled for unknown buyer {metadata.buyer_id}")
            await self.record_anomaly(session_id, metadata, "buyer_not_found")

        await self._with_retries(lambda: self._mark_pending(session_id, metadata, PendingCheckoutStatus.SETTLED))
        logger.info(f"Settled checkout {session_id}: tickets {metadata.ticket_numbers} on raffle {metadata.raffle_id}")
        return {**outcome, "settled": True}

    async def _settle_raffle_creation(self, session_id: str, metadata: CheckoutMetadata) -> Dict:
        existing = await self.raffle_service.find_by_checkout_session(session_id)
        if existing:
            logger.info(f"Raffle for checkout {session_id} already exists ({existing['_id']})")
            return {"kind": CheckoutKind.RAFFLE_CREATION, "raffle_id": str(existing["_id"]),
                    "settled": True, "message": "Already settled"}

        reason = None
        if not await self._user_exists(metadata.creator_id):
            reason = "creator_not_found"
            logger.warning(f"Creator {metadata.creator_id} of paid checkout {session_id} not found; flagging raffle")

        try:
            raffle_id = await self._with_retries(lambda: self.raffle_service.create_raffle(
                metadata.creator_id, metadata.raffle, checkout_session_id=session_id, reconciliation_reason=reason
            ))
        except DuplicateKeyError:
            existing = await self.raffle_service.find_by_checkout_session(session_id)
            logger.info(f"Concurrent settlement already created raffle for checkout {session_id}")
            return {"kind": CheckoutKind.RAFFLE_CREATION, "raffle_id": str(existing["_id"]) if existing else None,
                    "settled": True, "message": "Already settled"}

        if reason:
            await self.record_anomaly(session_id, metadata, reason, raffle_id=raffle_id)
        await self.clear_staged_uploads(metadata.creator_id, metadata.raffle)
        return {"kind": CheckoutKind.RAFFLE_CREATION, "raffle_id": raffle_id, "settled": True}

    # Pending checkouts

    async def expire_checkout(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        result = await self.db.pending_checkouts.update_one(
            {"_id": session_id, "status": PendingCheckoutStatus.PENDING.value},
            {"$set": {"status": PendingCheckoutStatus.EXPIRED.value, "expired_at": datetime.now(pytz.UTC)}}
        )
        return result.modified_count == 1

    async def expire_stale_checkouts(self) -> int:
        now = datetime.now(pytz.UTC)
        result = await self.db.pending_checkouts.update_many(
            {"status": PendingCheckoutStatus.PENDING.value, "expires_at": {"$lte": now}},
            {"$set": {"status": PendingCheckoutStatus.EXPIRED.value, "expired_at": now}}
        )
        return result.modified_count

    async def start_checkout_sweeper(self):
        """Background task marking abandoned checkouts as expired"""
        while True:
            try:
                expired = await self.expire_stale_checkouts()
                if expired:
                    logger.info(f"Expired {expired} abandoned checkout(s)")
                await asyncio.sleep(CHECKOUT_SWEEP_INTERVAL)
            except Exception as e:
                logger.error(f"Error in checkout sweeper: {e}")
                await asyncio.sleep(CHECKOUT_SWEEP_INTERVAL)

    # Anomalies

    async def record_anomaly(self, session_id: Optional[str], metadata: Optional[CheckoutMetadata], reason: str,
                             details: str = None, raffle_id: str = None) -> None:
        """Flag a paid checkout for manual follow-up; one record per session and reason."""
        fields = {
            "session_id": session_id,
            "reason": reason,
            "details": details,
            "status": AnomalyStatus.OPEN.value,
            "created_at": datetime.now(pytz.UTC),
        }
        if metadata is not None:
            fields.update({
                "kind": metadata.kind.value,
                "raffle_id": raffle_id or metadata.raffle_id,
                "user_id": metadata.buyer_id or metadata.creator_id,
                "ticket_numbers": metadata.ticket_numbers,
            })
        await self._with_retries(lambda: self.db.settlement_anomalies.update_one(
            {"session_id": session_id, "reason": reason},
            {"$setOnInsert": fields},
            upsert=True
        ))
        logger.warning(f"Settlement anomaly recorded for checkout {session_id}: {reason}")

    async def list_anomalies(self, status: Optional[AnomalyStatus] = None,
                             limit: int = 100) -> List[SettlementAnomalyResponse]:
        query = {"status": status.value} if status else {}
        anomalies = await self.db.settlement_anomalies.find(query).sort("created_at", -1).to_list(limit)
        return [self._anomaly_to_response(anomaly) for anomaly in anomalies]

    async def resolve_anomaly(self, anomaly_id: str, admin_id: str, note: str) -> SettlementAnomalyResponse:
        try:
            anomaly_oid = ObjectId(anomaly_id)
        except (InvalidId, TypeError):
            raise AnomalyNotFound()

        result = await self.db.settlement_anomalies.update_one(
            {"_id": anomaly_oid, "status": AnomalyStatus.OPEN.value},
            {
                "$set": {
                    "status": AnomalyStatus.RESOLVED.value,
                    "resolved_at": datetime.now(pytz.UTC),
                    "resolved_by": admin_id,
                    "resolution_note": note,
                }
            }
        )
        if result.modified_count == 0:
            raise AnomalyNotFound()

        anomaly = await self.db.settlement_anomalies.find_one({"_id": anomaly_oid})
        logger.info(f"Settlement anomaly {anomaly_id} resolved by {admin_id}")
        return self._anomaly_to_response(anomaly)

    # Helpers

    async def clear_staged_uploads(self, creator_id: str, payload: RaffleCreate) -> None:
        public_ids = [image.public_id for image in payload.images]
        if not public_ids:
            return
        try:
            await self.db.staged_uploads.delete_many({"owner_id": creator_id, "public_id": {"$in": public_ids}})
        except PyMongoError as e:
            logger.warning(f"Could not clear staged uploads for {creator_id}: {e}")

    async def _user_exists(self, user_id: Optional[str]) -> bool:
        try:
            user_oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return False
        return await self.db.users.find_one({"_id": user_oid}, {"_id": 1}) is not None

    async def _mark_pending(self, session_id: str, metadata: CheckoutMetadata, status: PendingCheckoutStatus,
                            failure_reason: str = None):
        now = datetime.now(pytz.UTC)
        update = {"status": status.value, "settled_at": now}
        if failure_reason:
            update["failure_reason"] = failure_reason
        return await self.db.pending_checkouts.update_one(
            {"_id": session_id},
            {"$set": update, "$setOnInsert": self._pending_fields(metadata, now)},
            upsert=True
        )

    @staticmethod
    def _pending_fields(metadata: CheckoutMetadata, now: datetime) -> dict:
        return {
            "kind": metadata.kind.value,
            "raffle_id": metadata.raffle_id,
            "buyer_id": metadata.buyer_id,
            "ticket_numbers": metadata.ticket_numbers,
            "created_at": now,
        }

    async def _record_event(self, event_id: str, event_type: str, session_id: Optional[str]):
        try:
            await self._with_retries(lambda: self.db.webhook_events.insert_one({
                "_id": event_id,
                "type": event_type,
                "session_id": session_id,
                "processed_at": datetime.now(pytz.UTC),
            }))
        except DuplicateKeyError:
            pass

    async def _with_retries(self, operation):
        """Run a persistence step, retrying transient database failures."""
        for attempt in range(1, SETTLEMENT_MAX_RETRIES + 1):
            try:
                return await operation()
            except DuplicateKeyError:
                raise
            except PyMongoError as e:
                if attempt == SETTLEMENT_MAX_RETRIES:
                    logger.critical(f"Giving up persisting confirmed payment after {attempt} attempts: {e}")
                    raise SettlementPersistenceError() from e
                logger.warning(f"Persistence attempt {attempt} failed, retrying: {e}")
                await asyncio.sleep(SETTLEMENT_RETRY_DELAY * 2 ** (attempt - 1))

    @staticmethod
    def _anomaly_to_response(anomaly: dict) -> SettlementAnomalyResponse:
        return SettlementAnomalyResponse(
            id=str(anomaly["_id"]),
            session_id=anomaly.get("session_id"),
            kind=anomaly.get("kind"),
            reason=anomaly["reason"],
            raffle_id=anomaly.get("raffle_id"),
            user_id=anomaly.get("user_id"),
            ticket_numbers=anomaly.get("ticket_numbers", []),
            details=anomaly.get("details"),
            status=anomaly["status"],
            created_at=anomaly["created_at"],
            resolved_at=anomaly.get("resolved_at"),
            resolved_by=anomaly.get("resolved_by"),
            resolution_note=anomaly.get("resolution_note"),
        )
