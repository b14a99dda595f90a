"""
E2E test fixtures for the escrowbook API.

Provides:
- An in-process FastAPI test app with all routes registered
- httpx AsyncClient wired via ASGI transport (no network needed)
- Request sessions opened on the same SQLite file as the ``db`` fixture
- In-memory payment and transfer gateways in place of Daraja and Paystack
- Seed data: a category, a catalog service and two approved providers

Seed rows are committed before any request is made; the ``db`` session must
not hold an open transaction while the app is writing.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrowbook.api.deps import get_db, get_payment_gateway_dep, get_transfer_gateway_dep
from escrowbook.models.base import utcnow

from tests.conftest import (
    CLIENT_ID,
    create_category,
    create_provider,
    create_service,
    receipt_for,
)


# ---------------------------------------------------------------------------
# Test app
# ---------------------------------------------------------------------------

def _create_test_app(
    session_factory: async_sessionmaker[AsyncSession],
    payment_gateway: Any,
    transfer_gateway: Any,
) -> FastAPI:
    """Build a FastAPI app with every router and the test dependencies."""
    from escrowbook.api.routes import (
        assignments,
        bookings,
        discounts,
        escrow,
        payouts,
        webhooks,
    )

    test_app = FastAPI(title="Escrowbook Test")

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = _override_get_db
    test_app.dependency_overrides[get_payment_gateway_dep] = lambda: payment_gateway
    test_app.dependency_overrides[get_transfer_gateway_dep] = lambda: transfer_gateway

    prefix = "/api/v1"
    test_app.include_router(bookings.router, prefix=prefix)
    test_app.include_router(assignments.router, prefix=prefix)
    test_app.include_router(escrow.router, prefix=prefix)
    test_app.include_router(payouts.router, prefix=prefix)
    test_app.include_router(discounts.router, prefix=prefix)
    test_app.include_router(webhooks.router, prefix=prefix)

    return test_app


@pytest_asyncio.fixture
async def client(session_factory, payment_gateway, transfer_gateway) -> AsyncGenerator[AsyncClient, None]:
    app = _create_test_app(session_factory, payment_gateway, transfer_gateway)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def seed(db) -> dict[str, Any]:
    """One category, one catalog service and two providers serving it."""
    category = await create_category(db)
    service = await create_service(db, category, price=5000)
    wanjiku = await create_provider(db, "Wanjiku Plumbing", rating="4.80", completed_jobs=60, categories=(category,))
    otieno = await create_provider(db, "Otieno Fixers", rating="4.20", completed_jobs=15, categories=(category,))
    await db.commit()
    return {
        "category_id": category.id,
        "service_id": service.id,
        "provider_id": wanjiku.id,
        "provider_user_id": wanjiku.user_id,
        "second_provider_id": otieno.id,
        "second_provider_user_id": otieno.user_id,
    }


def booking_payload(
    seed: dict[str, Any], *, start: datetime | None = None, **overrides: Any
) -> dict[str, Any]:
    start = start or utcnow() + timedelta(days=3)
    payload = {
        "client_id": str(CLIENT_ID),
        "service_type": "Service",
        "service_id": str(seed["service_id"]),
        "scheduled_start": start.isoformat(),
        "scheduled_end": (start + timedelta(hours=2)).isoformat(),
        "address": "Moi Avenue 12, Nairobi",
        "city": "Nairobi",
        "latitude": "-1.2833",
        "longitude": "36.8167",
    }
    payload.update(overrides)
    return payload


def stk_callback_payload(
    checkout_request_id: str,
    amount: int | None,
    result_code: int = 0,
    receipt: str | None = None,
) -> dict[str, Any]:
    """Daraja ``Body.stkCallback`` body as posted to the callback URL."""
    callback: dict[str, Any] = {
        "MerchantRequestID": "MR-000001",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt or receipt_for(checkout_request_id)},
                {"Name": "TransactionDate", "Value": 20260302081500},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


async def create_booking(
    client: AsyncClient, seed: dict[str, Any], *, start: datetime | None = None, **overrides: Any
) -> dict[str, Any]:
    resp = await client.post("/api/v1/bookings", json=booking_payload(seed, start=start, **overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def assign(client: AsyncClient, booking_id: str, provider_id: uuid.UUID) -> None:
    resp = await client.post(
        f"/api/v1/bookings/{booking_id}/providers", json={"provider_id": str(provider_id)}
    )
    assert resp.status_code == 201, resp.text


async def pay(client: AsyncClient, booking_id: str) -> dict[str, Any]:
    """Open an escrow for the booking and post a successful STK callback."""
    resp = await client.post(
        "/api/v1/escrow", json={"booking_id": booking_id, "phone_number": "0712345678"}
    )
    assert resp.status_code == 201, resp.text
    escrow = resp.json()
    resp = await client.post(
        "/api/v1/webhooks/mpesa",
        json=stk_callback_payload(escrow["checkout_request_id"], escrow["amount"]),
    )
    assert resp.status_code == 200
    return escrow


@pytest.fixture
def provider_actor(seed) -> dict[str, str]:
    return {"actor_id": str(seed["provider_user_id"]), "actor_type": "provider"}


async def complete(client: AsyncClient, seed: dict[str, Any]) -> dict[str, Any]:
    """Create, assign, pay, start and complete a booking; return its payout."""
    actor = {"actor_id": str(seed["provider_user_id"]), "actor_type": "provider"}
    booking = await create_booking(client, seed)
    await assign(client, booking["id"], seed["provider_id"])
    await pay(client, booking["id"])
    resp = await client.post(f"/api/v1/bookings/{booking['id']}/transition", json={"status": "in-progress", **actor})
    assert resp.status_code == 200, resp.text
    resp = await client.post(f"/api/v1/bookings/{booking['id']}/complete", json=actor)
    assert resp.status_code == 200, resp.text
    return (await client.get(f"/api/v1/payouts/booking/{booking['id']}")).json()


async def make_ready(session_factory: async_sessionmaker[AsyncSession], payout_id: str) -> None:
    """Promote a pending payout as the sweep does once its delay has passed."""
    from escrowbook.services import payoutScheduler

    async with session_factory() as session:
        payout = await payoutScheduler.get_payout(session, uuid.UUID(payout_id))
        await payoutScheduler.mark_payout_ready(session, payout, now=payout.payout_scheduled_at)
        await session.commit()
