"""
Shared pytest fixtures for escrowbook tests.

Provides a real database (file-backed SQLite through aiosqlite, so that
several sessions can run against it at once), factories for catalog,
provider and booking rows, and in-memory fakes for the payment and
transfer gateways.

Every SQLite transaction starts with ``BEGIN IMMEDIATE``: writers are
serialised the way row locks serialise them on PostgreSQL, which is what
the concurrency tests rely on.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrowbook.events import bookingEvents
from escrowbook.integrations.gateways import (
    ChargeResult,
    PaymentCallback,
    RecipientDetails,
    TransferResult,
    TransferStatus,
)
from escrowbook.models import (
    Base,
    Booking,
    PayoutMethod,
    ProviderProfile,
    Service,
    ServiceCategory,
)


# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CLIENT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_CLIENT_ID = uuid.UUID("abababab-abab-abab-abab-abababababab")
ADMIN_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Engine on a fresh SQLite file per test."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrowbook.db'}", echo=False)

    @event.listens_for(test_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        # Let SQLAlchemy emit BEGIN itself (see _on_begin)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(test_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession`` for code paths that fail before any query."""
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


@pytest.fixture(autouse=True)
def _reset_event_subscribers():
    bookingEvents.clear_subscribers()
    yield
    bookingEvents.clear_subscribers()


@pytest.fixture
def captured_events() -> list[bookingEvents.DomainEvent]:
    """Every domain event emitted during the test, in order."""
    events: list[bookingEvents.DomainEvent] = []
    bookingEvents.subscribe("*", events.append)
    return events


# ---------------------------------------------------------------------------
# Gateway fakes
# ---------------------------------------------------------------------------

class FakePaymentGateway:
    """Records STK push requests and hands out sequential checkout ids.

    ``query_result`` answers ``query_charge``; ``query_error`` is raised
    instead when set.
    """

    name = "fake-mpesa"

    def __init__(self) -> None:
        self.charges: list[dict[str, Any]] = []
        self.delay: float = 0.0
        self.queries: list[str] = []
        self.query_result: Optional[PaymentCallback] = None
        self.query_error: Optional[Exception] = None

    async def initiate_charge(self, phone: str, amount: int, reference: str, description: str) -> ChargeResult:
        self.charges.append(
            {"phone": phone, "amount": amount, "reference": reference, "description": description}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        n = len(self.charges)
        return ChargeResult(
            checkout_request_id=f"ws_CO_{n:06d}",
            merchant_request_id=f"MR-{n:06d}",
            response_description="Success. Request accepted for processing",
        )

    async def query_charge(self, checkout_request_id: str) -> PaymentCallback:
        self.queries.append(checkout_request_id)
        if self.query_error is not None:
            raise self.query_error
        if self.query_result is not None:
            return self.query_result
        return PaymentCallback(
            checkout_request_id=checkout_request_id,
            merchant_request_id="MR-000001",
            result_code=0,
            result_description="The service request is processed successfully.",
        )


class FakeTransferGateway:
    """Transfer gateway answering with a configurable outcome.

    ``errors`` are raised one per call before any result is returned;
    ``delay`` makes ``initiate_transfer`` slow enough to hit the timeout.
    """

    name = "fake-transfer"

    def __init__(self, status: TransferStatus = TransferStatus.SUCCESS) -> None:
        self.status = status
        self.verify_status = TransferStatus.SUCCESS
        self.errors: list[Exception] = []
        self.delay: float = 0.0
        self.calls: list[dict[str, Any]] = []
        self.verifications: list[str] = []
        self.recipients: list[RecipientDetails] = []
        self.recipient_error: Optional[Exception] = None

    async def initiate_transfer(
        self,
        recipient: str,
        amount: int,
        reference: str,
        *,
        currency: str = "KES",
        reason: str | None = None,
    ) -> TransferResult:
        self.calls.append(
            {"recipient": recipient, "amount": amount, "reference": reference, "currency": currency}
        )
        await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        n = len(self.calls)
        return TransferResult(
            reference=reference,
            status=self.status,
            transfer_code=f"TRF_{n:04d}",
            transfer_id=str(1000 + n),
            failure_reason="Insufficient balance" if self.status is TransferStatus.FAILED else None,
        )

    async def verify_transfer(self, reference: str) -> TransferResult:
        self.verifications.append(reference)
        return TransferResult(
            reference=reference,
            status=self.verify_status,
            transfer_code="TRF_VERIFIED" if self.verify_status is not TransferStatus.NOT_FOUND else None,
        )

    async def create_recipient(self, details: RecipientDetails) -> str:
        self.recipients.append(details)
        if self.recipient_error is not None:
            raise self.recipient_error
        return "RCP_created"


@pytest.fixture
def payment_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def transfer_gateway() -> FakeTransferGateway:
    return FakeTransferGateway()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

async def create_category(db: AsyncSession, slug: str = "plumbing", name: str = "Plumbing") -> ServiceCategory:
    category = ServiceCategory(name=name, slug=slug)
    db.add(category)
    await db.flush()
    return category


async def create_service(
    db: AsyncSession,
    category: ServiceCategory,
    *,
    price: int = 5000,
    title: str = "Leak repair",
    is_active: bool = True,
) -> Service:
    service = Service(category_id=category.id, title=title, base_price=price, is_active=is_active)
    db.add(service)
    await db.flush()
    return service


async def create_provider(
    db: AsyncSession,
    name: str = "Wanjiku Plumbing",
    *,
    rating: str = "4.50",
    completed_jobs: int = 10,
    categories: tuple[ServiceCategory, ...] = (),
    recipient: Optional[str] = "RCP_test123",
    payout_method: PayoutMethod = PayoutMethod.MPESA,
    account_number: Optional[str] = None,
    account_name: Optional[str] = None,
    bank_code: Optional[str] = None,
    is_active: bool = True,
    is_approved: bool = True,
) -> ProviderProfile:
    provider = ProviderProfile(
        user_id=uuid.uuid4(),
        display_name=name,
        rating=Decimal(rating),
        completed_jobs=completed_jobs,
        is_active=is_active,
        is_approved=is_approved,
        payout_method=payout_method,
        payout_recipient=recipient,
        payout_account_number=account_number,
        payout_account_name=account_name,
        payout_bank_code=bank_code,
        categories=list(categories),
    )
    db.add(provider)
    await db.flush()
    return provider


async def book(
    db: AsyncSession,
    service: Service,
    *,
    client_id: uuid.UUID = CLIENT_ID,
    start: datetime | None = None,
    hours: int = 2,
    providers_needed: int = 1,
    discount_code: str | None = None,
    additional_charges: list[dict[str, Any]] | None = None,
) -> Booking:
    """Create a pending booking for ``service`` through the booking service."""
    from escrowbook.services.bookingService import create_booking
    from escrowbook.services.serviceCatalog import CatalogServiceRef

    start = start or NOW + timedelta(days=3)
    return await create_booking(
        db,
        client_id=client_id,
        service=CatalogServiceRef(service.id),
        scheduled_start=start,
        scheduled_end=start + timedelta(hours=hours),
        address="Moi Avenue 12, Nairobi",
        latitude=Decimal("-1.2833"),
        longitude=Decimal("36.8167"),
        city="Nairobi",
        providers_needed=providers_needed,
        discount_code=discount_code,
        additional_charges=additional_charges,
    )


def receipt_for(checkout_request_id: str) -> str:
    """M-Pesa style receipt number unique to one checkout request."""
    return "QK" + checkout_request_id.rsplit("_", 1)[-1]


def stk_success(checkout_request_id: str, amount: int, receipt: str | None = None) -> PaymentCallback:
    return PaymentCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id="MR-000001",
        result_code=0,
        result_description="The service request is processed successfully.",
        receipt_number=receipt or receipt_for(checkout_request_id),
        amount=amount,
        transaction_date="20260302081500",
        phone_number="254712345678",
    )


def stk_failure(checkout_request_id: str, code: int = 1032) -> PaymentCallback:
    return PaymentCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id="MR-000001",
        result_code=code,
        result_description="Request cancelled by user",
    )


async def pay(db: AsyncSession, booking: Booking, gateway: FakePaymentGateway, receipt: str | None = None):
    """Open an escrow for ``booking`` and confirm the payment."""
    from escrowbook.services.escrowService import initiate_escrow, record_inbound

    escrow = await initiate_escrow(db, gateway, booking, "254712345678")
    return await record_inbound(db, stk_success(escrow.checkout_request_id, escrow.amount, receipt))


async def complete_paid_booking(
    db: AsyncSession,
    service: Service,
    provider: ProviderProfile,
    gateway: FakePaymentGateway,
    **book_kwargs: Any,
) -> Booking:
    """Booking assigned to ``provider``, paid into escrow and completed."""
    from escrowbook.models import BookingStatus
    from escrowbook.services.assignmentEngine import assign_provider
    from escrowbook.services.bookingService import complete_booking, transition_booking
    from escrowbook.services.bookingStateManager import ActorType

    booking = await book(db, service, **book_kwargs)
    await assign_provider(db, booking, provider.id)
    await pay(db, booking, gateway)
    await transition_booking(
        db, booking, BookingStatus.IN_PROGRESS, actor_id=provider.user_id, actor_type=ActorType.PROVIDER
    )
    await complete_booking(db, booking, actor_id=provider.user_id, work_description="Replaced the trap")
    return booking
