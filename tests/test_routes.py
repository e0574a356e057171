import httpx
import pytest
from bson import ObjectId
from jose import jwt

from conftest import raffle_payload, sign, webhook_delivery
from main import app
from routes import auth, payments, raffles, tickets
from routes.auth import get_current_user
from services.raffle_service import RaffleService
from services.settlement_service import SettlementService
from services.ticket_ledger import TicketLedger
from services.winner_service import WinnerService


@pytest.fixture
def wired(db, gateway, monkeypatch):
    """Point every router at the in-memory database and fake gateway."""
    settlement = SettlementService(db, gateway)
    monkeypatch.setattr(raffles, "raffle_service", RaffleService(db))
    monkeypatch.setattr(raffles, "settlement_service", settlement)
    monkeypatch.setattr(raffles, "winner_service", WinnerService(db))
    monkeypatch.setattr(tickets, "ticket_ledger", TicketLedger(db))
    monkeypatch.setattr(tickets, "settlement_service", settlement)
    monkeypatch.setattr(payments, "settlement_service", settlement)
    monkeypatch.setattr(auth, "users_collection", db.users)
    yield settlement
    app.dependency_overrides.clear()


@pytest.fixture
async def client(wired):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def act_as(user_id, role="user"):
    app.dependency_overrides[get_current_user] = lambda: {"_id": ObjectId(user_id), "role": role}


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_quote_for_returning_organizer(client, make_raffle, organizer):
    await make_raffle()
    act_as(organizer)

    response = await client.post("/api/v1/raffles/quote", json={"ticket_count": 5000})

    assert response.status_code == 200
    body = response.json()
    assert float(body["total"]) == 370
    assert body["is_free_raffle"] is False


async def test_bearer_token_identifies_user(client, organizer):
    token = jwt.encode({"sub": organizer}, auth.SECRET_KEY, algorithm=auth.ALGORITHM)

    ok = await client.get("/api/v1/raffles/mine/active-count", headers={"Authorization": f"Bearer {token}"})
    bad = await client.get("/api/v1/raffles/mine/active-count", headers={"Authorization": "Bearer nope"})
    no_subject = jwt.encode({"role": "admin"}, auth.SECRET_KEY, algorithm=auth.ALGORITHM)
    anonymous = await client.get("/api/v1/raffles/mine/active-count",
                                 headers={"Authorization": f"Bearer {no_subject}"})

    assert ok.status_code == 200 and ok.json() == {"count": 0}
    assert bad.status_code == 401
    assert bad.headers["www-authenticate"] == "Bearer"
    assert bad.json()["detail"] == "Could not validate credentials"
    assert anonymous.status_code == 401


async def test_buy_and_webhook(client, wired, gateway, make_raffle, buyer, second_buyer):
    raffle_id = await make_raffle()
    act_as(buyer)

    bought = await client.post("/api/v1/tickets/buy", json={"raffle_id": raffle_id, "ticket_numbers": [4, 3]})
    assert bought.status_code == 200
    assert bought.json()["amount"] == 100

    payload, header = webhook_delivery(gateway.sessions[bought.json()["session_id"]])
    delivered = await client.post("/api/v1/payments/webhook", content=payload,
                                  headers={"Stripe-Signature": header})
    assert delivered.status_code == 200
    assert delivered.json() == {"received": True, "duplicate": False}

    act_as(second_buyer)
    taken = await client.post("/api/v1/tickets/buy", json={"raffle_id": raffle_id, "ticket_numbers": [4]})
    assert taken.status_code == 409
    assert taken.json()["detail"]["rejected"] == [4]

    snapshot = (await client.get(f"/api/v1/raffles/{raffle_id}")).json()
    assert snapshot["sold_count"] == 2
    assert [t["number"] for t in snapshot["sold_tickets"]] == [3, 4]


async def test_webhook_bad_signature(client, gateway, make_raffle, buyer, wired):
    raffle_id = await make_raffle()
    checkout = await wired.request_ticket_purchase(raffle_id, buyer, [1])
    payload, _ = webhook_delivery(gateway.sessions[checkout.session_id])

    response = await client.post("/api/v1/payments/webhook", content=payload,
                                 headers={"Stripe-Signature": sign(payload.decode(), secret="whsec_wrong")})

    assert response.status_code == 400
    assert await wired.ledger.sold_numbers(raffle_id) == []


async def test_availability(client, wired, make_raffle, buyer):
    raffle_id = await make_raffle()
    await wired.ledger.commit(raffle_id, [2], buyer)

    response = await client.post("/api/v1/tickets/availability", json={"raffle_id": raffle_id, "ticket_numbers": [1, 2]})

    assert response.json() == {"accepted": [1], "rejected": [2]}


async def test_invalid_ticket_request(client, make_raffle, buyer):
    raffle_id = await make_raffle()
    act_as(buyer)

    response = await client.post("/api/v1/tickets/buy", json={"raffle_id": raffle_id, "ticket_numbers": [2, 2]})

    assert response.status_code == 422


async def test_oversized_ticket_request(client, gateway, make_raffle, buyer):
    raffle_id = await make_raffle(total_tickets=5000)
    act_as(buyer)

    response = await client.post("/api/v1/tickets/buy",
                                 json={"raffle_id": raffle_id, "ticket_numbers": list(range(1, 1002))})

    assert response.status_code == 422
    assert gateway.opened == []


async def test_free_creation_and_delete(client, gateway, organizer, buyer):
    act_as(organizer)

    created = await client.post("/api/v1/raffles/create", json=raffle_payload(total_tickets=50).model_dump(mode="json"))
    assert created.status_code == 200
    raffle_id = created.json()["raffle_id"]
    assert gateway.opened == []

    act_as(buyer)
    forbidden = await client.post(f"/api/v1/raffles/{raffle_id}/delete")
    assert forbidden.status_code == 403

    act_as(organizer)
    deleted = await client.post(f"/api/v1/raffles/{raffle_id}/delete")
    assert deleted.status_code == 200
    active = await client.get("/api/v1/raffles/active")
    assert active.json() == []


async def test_select_winner_route(client, wired, make_raffle, organizer, buyer):
    raffle_id = await make_raffle()
    await wired.ledger.commit(raffle_id, [5], buyer)
    act_as(organizer)

    response = await client.post(f"/api/v1/raffles/{raffle_id}/select-winner", json={"method": "random"})
    again = await client.post(f"/api/v1/raffles/{raffle_id}/select-winner", json={"method": "random"})

    assert response.status_code == 200
    assert response.json()["winning_ticket_number"] == 5
    assert again.status_code == 409


async def test_anomalies_are_admin_only(client, wired, buyer, organizer):
    await wired.record_anomaly("cs_z", None, "invalid_metadata")

    act_as(buyer)
    refused = await client.get("/api/v1/payments/anomalies")
    assert refused.status_code == 403
    assert refused.json()["detail"] == "Admin access required"

    act_as(organizer, role="admin")
    listed = await client.get("/api/v1/payments/anomalies")
    assert [a["reason"] for a in listed.json()] == ["invalid_metadata"]

    resolved = await client.post(f"/api/v1/payments/anomalies/{listed.json()[0]['id']}/resolve",
                                 json={"note": "Refunded"})
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"
