import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

import stripe
from dotenv import load_dotenv

from models.checkout import CheckoutSession
from services.exceptions import GatewayError, WebhookRejected

load_dotenv()
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
WEBHOOK_TOLERANCE_SECONDS = 300
CURRENCY = "mxn"

logger = logging.getLogger(__name__)


def checkout_params(line_items: List[Dict], metadata: Dict[str, str], success_url: str,
                    cancel_url: str, expires_at: Optional[datetime] = None) -> Dict:
    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": CURRENCY,
                    "product_data": {
                        "name": item["name"],
                        **({"description": item["description"]} if item.get("description") else {}),
                    },
                    "unit_amount": item["unit_amount"],
                },
                "quantity": item.get("quantity", 1),
            }
            for item in line_items
        ],
        "metadata": metadata,
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    if expires_at is not None:
        params["expires_at"] = int(expires_at.timestamp())
    return params


def session_from_stripe(data: dict) -> CheckoutSession:
    return CheckoutSession(
        session_id=data["id"],
        url=data.get("url"),
        payment_status=data.get("payment_status"),
        metadata=data.get("metadata") or {},
    )


class PaymentGateway:
    """Stripe Checkout through the async StripeClient, on aiohttp."""

    def __init__(self, secret_key: str = None, webhook_secret: str = None, api_base: str = None):
        self.secret_key = secret_key or STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or STRIPE_WEBHOOK_SECRET
        self.api_base = api_base or STRIPE_API_BASE
        self._stripe = None

    def _client(self) -> stripe.StripeClient:
        if not self.secret_key:
            logger.error("STRIPE_SECRET_KEY is not configured")
            raise GatewayError("Payment gateway not configured")
        if self._stripe is None:
            self._stripe = stripe.StripeClient(
                self.secret_key,
                base_addresses={"api": self.api_base},
                http_client=stripe.AIOHTTPClient(),
            )
        return self._stripe

    async def open_checkout(self, line_items: List[Dict], metadata: Dict[str, str], success_url: str,
                            cancel_url: str, expires_at: Optional[datetime] = None) -> CheckoutSession:
        params = checkout_params(line_items, metadata, success_url, cancel_url, expires_at)
        try:
            session = await self._client().v1.checkout.sessions.create_async(params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed ({e.http_status}): {e}")
            raise GatewayError(e.user_message or "Failed to create checkout session")

        return session_from_stripe(session.to_dict())

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        try:
            session = await self._client().v1.checkout.sessions.retrieve_async(session_id)
        except stripe.StripeError as e:
            logger.error(f"Could not retrieve checkout session {session_id}: {e}")
            raise GatewayError(e.user_message or "Failed to retrieve checkout session")

        return session_from_stripe(session.to_dict())

    def verify_webhook_signature(self, payload, signature: Optional[str]) -> dict:
        """Check the Stripe-Signature header and return the event as a plain dict."""
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured; refusing webhook")
            raise WebhookRejected("Webhook secret not configured")
        if not signature:
            raise WebhookRejected("Missing signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS, api_key=self.secret_key
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookRejected("Invalid signature")
        except (ValueError, AttributeError):
            raise WebhookRejected("Invalid payload")

        event = event.to_dict()
        if "type" not in event:
            raise WebhookRejected("Invalid event")
        return event
