import json
from datetime import datetime
from types import SimpleNamespace

import pytest
import pytz
import stripe

from conftest import WEBHOOK_SECRET, sign
from services.exceptions import GatewayError, WebhookRejected
from services.payment_gateway import PaymentGateway, checkout_params


class StubSession:
    def __init__(self, data):
        self._data = data

    def to_dict(self):
        return self._data


class RecordingSessions:
    def __init__(self, error=None):
        self.created = []
        self.error = error

    async def create_async(self, params):
        if self.error:
            raise self.error
        self.created.append(params)
        return StubSession({"id": "cs_live_1", "url": "https://checkout.stripe.com/c/cs_live_1",
                            "payment_status": "unpaid", "metadata": params["metadata"]})

    async def retrieve_async(self, session_id):
        if self.error:
            raise self.error
        return StubSession({"id": session_id, "payment_status": "paid", "metadata": {"kind": "ticket_purchase"}})


@pytest.fixture
def stripe_gateway():
    return PaymentGateway(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET, api_base="http://stripe.invalid")


def use_sessions(gateway, monkeypatch, sessions):
    client = SimpleNamespace(v1=SimpleNamespace(checkout=SimpleNamespace(sessions=sessions)))
    monkeypatch.setattr(gateway, "_client", lambda: client)


def test_checkout_params_shape():
    expires_at = datetime(2024, 6, 1, 12, 0, tzinfo=pytz.UTC)
    params = checkout_params(
        line_items=[{"name": "Tickets", "description": "2 ticket(s): 3, 4", "unit_amount": 5000, "quantity": 2}],
        metadata={"kind": "ticket_purchase"},
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        expires_at=expires_at,
    )

    assert params["mode"] == "payment"
    assert params["line_items"] == [{
        "price_data": {
            "currency": "mxn",
            "product_data": {"name": "Tickets", "description": "2 ticket(s): 3, 4"},
            "unit_amount": 5000,
        },
        "quantity": 2,
    }]
    assert params["metadata"] == {"kind": "ticket_purchase"}
    assert params["expires_at"] == int(expires_at.timestamp())


def test_checkout_params_without_description_or_expiry():
    params = checkout_params([{"name": "Raffle", "unit_amount": 100}], {}, "https://a", "https://b")

    assert params["line_items"][0]["price_data"]["product_data"] == {"name": "Raffle"}
    assert params["line_items"][0]["quantity"] == 1
    assert "expires_at" not in params


async def test_open_checkout_uses_stripe_client(stripe_gateway, monkeypatch):
    sessions = RecordingSessions()
    use_sessions(stripe_gateway, monkeypatch, sessions)

    session = await stripe_gateway.open_checkout(
        line_items=[{"name": "Tickets", "unit_amount": 5000, "quantity": 1}],
        metadata={"kind": "ticket_purchase", "chunks": "1"},
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
    )

    assert session.session_id == "cs_live_1"
    assert session.url == "https://checkout.stripe.com/c/cs_live_1"
    assert session.metadata == {"kind": "ticket_purchase", "chunks": "1"}
    assert sessions.created[0]["success_url"] == "https://app.test/ok"


async def test_retrieve_session(stripe_gateway, monkeypatch):
    use_sessions(stripe_gateway, monkeypatch, RecordingSessions())

    session = await stripe_gateway.retrieve_session("cs_live_9")

    assert session.session_id == "cs_live_9"
    assert session.payment_status == "paid"


async def test_stripe_failure_becomes_gateway_error(stripe_gateway, monkeypatch):
    use_sessions(stripe_gateway, monkeypatch, RecordingSessions(error=stripe.APIConnectionError("connection reset")))

    with pytest.raises(GatewayError) as exc:
        await stripe_gateway.open_checkout([{"name": "x", "unit_amount": 1}], {}, "https://a", "https://b")
    assert exc.value.status_code == 502

    with pytest.raises(GatewayError):
        await stripe_gateway.retrieve_session("cs_live_9")


async def test_unconfigured_gateway(stripe_gateway):
    stripe_gateway.secret_key = None

    with pytest.raises(GatewayError):
        await stripe_gateway.open_checkout([{"name": "x", "unit_amount": 1}], {}, "https://a", "https://b")


def test_verified_event_is_plain_dict(stripe_gateway):
    payload = json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "payment_status": "paid", "metadata": {"kind": "ticket_purchase"}}},
    })

    event = stripe_gateway.verify_webhook_signature(payload.encode(), sign(payload))

    assert isinstance(event, dict)
    assert event["type"] == "checkout.session.completed"
    assert event["data"]["object"]["metadata"] == {"kind": "ticket_purchase"}


@pytest.mark.parametrize("payload", ["not json", "[1, 2]", '{"id": "evt_2"}'])
def test_signed_but_malformed_payload(stripe_gateway, payload):
    with pytest.raises(WebhookRejected):
        stripe_gateway.verify_webhook_signature(payload.encode(), sign(payload))


def test_signature_checks(stripe_gateway):
    payload = json.dumps({"id": "evt_3", "type": "checkout.session.expired"})

    with pytest.raises(WebhookRejected, match="Missing signature"):
        stripe_gateway.verify_webhook_signature(payload.encode(), None)
    with pytest.raises(WebhookRejected, match="Invalid signature"):
        stripe_gateway.verify_webhook_signature(payload.encode(), sign(payload, secret="whsec_other"))

    stripe_gateway.webhook_secret = None
    with pytest.raises(WebhookRejected, match="not configured"):
        stripe_gateway.verify_webhook_signature(payload.encode(), sign(payload))
