import hashlib
import hmac
import json
import time

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, func

from app.core.auth import create_access_token
from app.core.config import settings
from app.core.database import get_db
from app.main import app
from app.models.payment import Payment
from app.services.credit_ledger_service import CreditLedgerService

from conftest import checkout_session, fund_student

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
async def client(session_factory, monkeypatch):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def signed(payload: bytes, secret: str = WEBHOOK_SECRET):
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload.decode()}".encode(), hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


def checkout_event(student_id):
    return json.dumps({
        "id": "evt_test_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": checkout_session(student_id)},
    }).encode()


async def test_quote(client):
    response = await client.get("/api/v1/pricing/quote", params={"package_type": "10-pack", "duration": 60})

    assert response.status_code == 200
    body = response.json()
    assert body["sessions"] == 10
    assert body["total_cents"] == 29365


async def test_quote_rejects_unknown_duration(client):
    response = await client.get("/api/v1/pricing/quote", params={"package_type": "10-pack", "duration": 45})

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


async def test_webhook_rejects_bad_signature(client, session_factory, student):
    payload = checkout_event(student.id)

    response = await client.post("/api/v1/stripe/webhook", content=payload, headers=signed(payload, "whsec_wrong"))

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"

    async with session_factory() as db:
        payments = await db.execute(select(func.count()).select_from(Payment))
        assert payments.scalar_one() == 0
        assert await CreditLedgerService(db).get_entry(student.id) is None


async def test_webhook_rejects_missing_signature(client, student):
    response = await client.post("/api/v1/stripe/webhook", content=checkout_event(student.id))

    assert response.status_code == 400


async def test_webhook_credits_once(client, student):
    payload = checkout_event(student.id)

    first = await client.post("/api/v1/stripe/webhook", content=payload, headers=signed(payload))
    second = await client.post("/api/v1/stripe/webhook", content=payload, headers=signed(payload))

    assert first.json() == {"status": "processed"}
    assert second.json() == {"status": "already_processed"}

    credits = await client.get("/api/v1/credits/me", headers=auth(student))
    assert credits.json()["total_hours"] == 10


async def test_credits_require_authentication(client):
    response = await client.get("/api/v1/credits/me")
    assert response.status_code == 401


async def test_empty_ledger_reads_as_zero(client, student):
    response = await client.get("/api/v1/credits/me", headers=auth(student))

    assert response.status_code == 200
    assert response.json()["uncommitted_hours"] == 0


async def test_packages_list_shows_pause_allowance(client, session_factory, student):
    await fund_student(session_factory, student)

    response = await client.get("/api/v1/packages", headers=auth(student))

    assert response.status_code == 200
    [package] = response.json()
    assert package["total_hours"] == 10
    assert package["pauses_remaining"] == 2


async def test_students_cannot_resolve_approvals(client, student):
    response = await client.post(
        "/api/v1/approvals/00000000-0000-0000-0000-000000000000/resolve",
        json={"decision": "approved"},
        headers=auth(student),
    )
    assert response.status_code == 403


async def test_tutor_opens_slot_and_student_sees_it(client, tutor, student):
    response = await client.post(
        "/api/v1/calendar/slots/toggle",
        json={"date": "2099-01-05", "hour": 14},
        headers=auth(tutor),
    )
    assert response.status_code == 200
    assert response.json()["is_available"] is True

    slots = await client.get("/api/v1/calendar/slots", headers=auth(student))
    assert [slot["time"] for slot in slots.json()] == ["14:00"]
