"""
Shared fixtures: an in-memory database behind motor's async call style, a
fake Stripe gateway that keeps real webhook signature checking, and helpers
to build raffles and signed webhook deliveries.
"""
import asyncio
import json
import uuid

import mongomock
import pytest
import stripe
from bson import ObjectId

from database import init_db
from models.checkout import CheckoutSession
from models.raffle import RaffleCreate
from services.payment_gateway import PaymentGateway
from services.raffle_service import RaffleService
from services.settlement_service import SettlementService

WEBHOOK_SECRET = "whsec_test_secret"


class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        documents = list(self._cursor)
        return documents if length is None else documents[:length]


class AsyncCollection:
    """Awaitable facade over a mongomock collection.

    Every call yields to the event loop first so concurrent tasks interleave
    between reads and writes the way they do against a real server.
    """

    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return method(*args, **kwargs)
        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database

    def __getattr__(self, name):
        return AsyncCollection(self._database[name])

    def __getitem__(self, name):
        return AsyncCollection(self._database[name])


class FakeGateway(PaymentGateway):
    """Records checkouts instead of calling Stripe."""

    def __init__(self):
        super().__init__(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET, api_base="http://stripe.invalid")
        self.opened = []
        self.sessions = {}

    async def open_checkout(self, line_items, metadata, success_url, cancel_url, expires_at=None):
        session_id = f"cs_test_{len(self.opened) + 1}"
        session = CheckoutSession(
            session_id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            payment_status="unpaid",
            metadata=metadata,
        )
        self.opened.append({"line_items": line_items, "metadata": metadata, "session_id": session_id})
        self.sessions[session_id] = session
        return session

    async def retrieve_session(self, session_id):
        return self.sessions[session_id]

    def mark_paid(self, session_id):
        self.sessions[session_id].payment_status = "paid"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    return stripe.WebhookSignature.generate_signature_header(payload, secret, timestamp)


def webhook_delivery(session: CheckoutSession, event_type="checkout.session.completed",
                     payment_status="paid", event_id=None):
    payload = json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "type": event_type,
        "data": {
            "object": {
                "id": session.session_id,
                "payment_status": payment_status,
                "metadata": session.metadata,
            }
        },
    })
    return payload.encode(), sign(payload)


@pytest.fixture
async def db():
    database = AsyncDatabase(mongomock.MongoClient()[f"rifas_test_{uuid.uuid4().hex}"])
    await init_db(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settlement(db, gateway):
    return SettlementService(db, gateway)


async def insert_user(db, name, email, role="user") -> str:
    user = {"_id": ObjectId(), "name": name, "email": email, "role": role}
    await db.users.insert_one(user)
    return str(user["_id"])


@pytest.fixture
async def organizer(db):
    return await insert_user(db, "Organizer", "org@example.com")


@pytest.fixture
async def buyer(db):
    return await insert_user(db, "Buyer A", "a@example.com")


@pytest.fixture
async def second_buyer(db):
    return await insert_user(db, "Buyer B", "b@example.com")


def raffle_payload(**overrides) -> RaffleCreate:
    data = {
        "title": "Bicicleta de montaña",
        "description": "Rodada 29, nueva",
        "ticket_price": 50,
        "total_tickets": 10,
    }
    data.update(overrides)
    return RaffleCreate(**data)


@pytest.fixture
def make_raffle(db, organizer):
    async def factory(**overrides):
        return await RaffleService(db).create_raffle(organizer, raffle_payload(**overrides))
    return factory
