"""
Unit tests for the escrow payment tracker.

Runs against SQLite with a fake STK push gateway: charge initiation, the
idempotent payment callback, late and duplicate payments, status-query
reconciliation, commission recompute, disputes, release, refunds and the
reporting aggregates.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from escrowbook.core.config import settings
from escrowbook.core.errors import (
    DuplicateReceiptError,
    GatewayUnavailableError,
    InvalidStateError,
    NotFoundError,
)
from escrowbook.events.bookingEvents import DISPUTE_OPENED, PAYMENT_RELEASED
from escrowbook.models import EscrowEventType, EscrowStatus, PaymentStatus, ReleaseMethod, Service
from escrowbook.services import escrowService
from escrowbook.services.assignmentEngine import assign_provider

from tests.conftest import (
    ADMIN_ID,
    CLIENT_ID,
    book,
    create_category,
    create_provider,
    create_service,
    stk_failure,
    stk_success,
)


pytestmark = pytest.mark.asyncio


@pytest.fixture
async def provider(db):
    return await create_provider(db)


@pytest.fixture
async def booking(db, provider):
    category = await create_category(db)
    service = await create_service(db, category, price=1000)
    booking = await book(db, service)
    await assign_provider(db, booking, provider.id)
    return booking


@pytest.fixture
async def escrow(db, booking, payment_gateway):
    return await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")


@pytest.fixture
async def paid_escrow(db, escrow):
    return await escrowService.record_inbound(
        db, stk_success(escrow.checkout_request_id, 1000, receipt="QKJ4XYZ123")
    )


async def _event_types(db, escrow) -> list[EscrowEventType]:
    return [e.event_type for e in await escrowService.get_escrow_events(db, escrow.id)]


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


class TestInitiateEscrow:

    async def test_opens_pending_escrow_with_split(self, db, booking, provider, escrow, payment_gateway):
        assert escrow.status == EscrowStatus.PENDING
        assert escrow.amount == 1000
        assert escrow.commission_amount == 100
        assert escrow.provider_amount == 900
        assert escrow.client_id == CLIENT_ID
        assert escrow.provider_id == provider.id
        assert escrow.account_reference == booking.booking_number

        assert payment_gateway.charges[0]["reference"] == booking.booking_number
        assert booking.payment_status == PaymentStatus.PROCESSING
        assert booking.payment_transaction_id == escrow.checkout_request_id
        assert await _event_types(db, escrow) == [EscrowEventType.CREATED]

    async def test_explicit_amount(self, db, booking, payment_gateway):
        escrow = await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678", amount=555)
        assert escrow.amount == 555
        assert escrow.commission_amount + escrow.provider_amount == 555

    async def test_paid_booking_rejected(self, db, booking, paid_escrow, payment_gateway):
        with pytest.raises(InvalidStateError, match="already paid"):
            await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")

    async def test_gateway_timeout_opens_unconfirmed_escrow(self, db, booking, payment_gateway, monkeypatch):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        payment_gateway.delay = 1.0

        escrow = await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")

        assert escrow.status == EscrowStatus.PENDING
        assert escrow.outcome_unknown is True
        assert escrow.checkout_request_id == f"{escrowService.UNCONFIRMED_PREFIX}{escrow.id}"
        assert booking.payment_status == PaymentStatus.PROCESSING
        created = (await escrowService.get_escrow_events(db, escrow.id))[0]
        assert created.data["outcome_unknown"] is True

        payment_gateway.delay = 0.0
        with pytest.raises(InvalidStateError, match="awaiting confirmation"):
            await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")


# ---------------------------------------------------------------------------
# Payment callback
# ---------------------------------------------------------------------------


class TestRecordInbound:

    async def test_success_completes_escrow_and_booking_payment(self, db, booking, paid_escrow):
        assert paid_escrow.status == EscrowStatus.COMPLETED
        assert paid_escrow.mpesa_receipt_number == "QKJ4XYZ123"
        assert paid_escrow.metadata_["payer_phone"] == "254712345678"
        assert booking.payment_status == PaymentStatus.COMPLETED
        assert booking.payment_transaction_id == "QKJ4XYZ123"
        assert booking.paid_at is not None
        assert await _event_types(db, paid_escrow) == [
            EscrowEventType.CREATED,
            EscrowEventType.PAYMENT_RECEIVED,
        ]

    async def test_replayed_callback_is_a_no_op(self, db, paid_escrow):
        again = await escrowService.record_inbound(
            db, stk_success(paid_escrow.checkout_request_id, 1000, receipt="QKJ4XYZ123")
        )
        assert again.id == paid_escrow.id
        assert again.mpesa_receipt_number == "QKJ4XYZ123"
        assert len(await _event_types(db, paid_escrow)) == 2

    async def test_amount_mismatch_recomputes_split(self, db, escrow):
        escrow = await escrowService.record_inbound(db, stk_success(escrow.checkout_request_id, 1200))
        assert escrow.amount == 1200
        assert escrow.commission_amount == 120
        assert escrow.provider_amount == 1080
        events = await escrowService.get_escrow_events(db, escrow.id)
        adjusted = [e for e in events if e.event_type == EscrowEventType.AMOUNT_ADJUSTED]
        assert adjusted[0].data == {"previous_amount": 1000, "amount": 1200}

    async def test_failure_marks_escrow_and_booking_failed(self, db, booking, escrow):
        escrow = await escrowService.record_inbound(db, stk_failure(escrow.checkout_request_id))
        assert escrow.status == EscrowStatus.FAILED
        assert escrow.result_code == 1032
        assert booking.payment_status == PaymentStatus.FAILED

        # A late success for the same checkout does not resurrect it
        escrow = await escrowService.record_inbound(db, stk_success(escrow.checkout_request_id, 1000))
        assert escrow.status == EscrowStatus.FAILED
        assert escrow.metadata_["refund_due"] == 1000
        assert (await _event_types(db, escrow))[-1] == EscrowEventType.LATE_PAYMENT

    async def test_unknown_checkout(self, db):
        with pytest.raises(NotFoundError):
            await escrowService.record_inbound(db, stk_success("ws_CO_unknown", 1000))

    async def test_callback_matches_unconfirmed_request_by_payer_and_amount(
        self, db, booking, payment_gateway, monkeypatch
    ):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        payment_gateway.delay = 1.0
        escrow = await escrowService.initiate_escrow(db, payment_gateway, booking, "0712 345 678")

        paid = await escrowService.record_inbound(db, stk_success("ws_CO_lost", 1000, receipt="QKLOST0001"))

        assert paid.id == escrow.id
        assert paid.status == EscrowStatus.COMPLETED
        assert paid.outcome_unknown is False
        assert paid.checkout_request_id == "ws_CO_lost"
        assert paid.mpesa_receipt_number == "QKLOST0001"
        assert booking.payment_status == PaymentStatus.COMPLETED

    async def test_unconfirmed_request_needs_matching_amount(self, db, booking, payment_gateway, monkeypatch):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        payment_gateway.delay = 1.0
        await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")

        with pytest.raises(NotFoundError):
            await escrowService.record_inbound(db, stk_success("ws_CO_lost", 999))


class TestLatePayments:

    async def test_new_receipt_on_completed_escrow_is_recorded(self, db, paid_escrow):
        escrow = await escrowService.record_inbound(
            db, stk_success(paid_escrow.checkout_request_id, 1000, receipt="QKSECOND01")
        )

        assert escrow.status == EscrowStatus.COMPLETED
        assert escrow.mpesa_receipt_number == "QKJ4XYZ123"
        assert escrow.metadata_["late_receipts"] == ["QKSECOND01"]
        assert escrow.metadata_["refund_due"] == 1000
        assert (await _event_types(db, escrow))[-1] == EscrowEventType.LATE_PAYMENT

    async def test_payment_after_cancel_is_kept_for_refund(self, db, booking, escrow):
        await escrowService.cancel_escrow(db, escrow, "Client changed mind")

        escrow = await escrowService.record_inbound(
            db, stk_success(escrow.checkout_request_id, 1000, receipt="QKLATE0001")
        )

        assert escrow.status == EscrowStatus.CANCELLED
        assert escrow.mpesa_receipt_number == "QKLATE0001"
        assert escrow.metadata_["refund_due"] == 1000
        late = (await escrowService.get_escrow_events(db, escrow.id))[-1]
        assert late.event_type == EscrowEventType.LATE_PAYMENT
        assert late.data["receipt_number"] == "QKLATE0001"
        assert late.data["escrow_status"] == "cancelled"

        # Redelivery of the same late callback is not counted twice
        await escrowService.record_inbound(
            db, stk_success(escrow.checkout_request_id, 1000, receipt="QKLATE0001")
        )
        assert escrow.metadata_["refund_due"] == 1000
        assert (await _event_types(db, escrow)).count(EscrowEventType.LATE_PAYMENT) == 1


class TestDuplicateReceipts:

    @pytest.fixture
    async def second_escrow(self, db, booking, payment_gateway):
        service = await db.get(Service, booking.service_id)
        other = await book(db, service)
        return await escrowService.initiate_escrow(db, payment_gateway, other, "254712345678")

    async def test_receipt_of_another_escrow_is_rejected(self, db, paid_escrow, second_escrow):
        with pytest.raises(DuplicateReceiptError) as exc_info:
            await escrowService.record_inbound(
                db, stk_success(second_escrow.checkout_request_id, 1000, receipt="QKJ4XYZ123")
            )

        assert exc_info.value.context["other_escrow_id"] == str(paid_escrow.id)
        assert second_escrow.status == EscrowStatus.PENDING
        assert second_escrow.mpesa_receipt_number is None
        assert (await _event_types(db, second_escrow))[-1] == EscrowEventType.RECEIPT_CONFLICT

    async def test_unique_violation_on_write_is_rejected(self, db, paid_escrow, second_escrow, monkeypatch):
        async def _no_owner(*args):
            return None

        # Another worker records the receipt between the check and the write
        monkeypatch.setattr(escrowService, "_receipt_owner", _no_owner)

        with pytest.raises(DuplicateReceiptError):
            await escrowService.record_inbound(
                db, stk_success(second_escrow.checkout_request_id, 1000, receipt="QKJ4XYZ123")
            )

        assert second_escrow.status == EscrowStatus.PENDING
        assert (await _event_types(db, second_escrow))[-1] == EscrowEventType.RECEIPT_CONFLICT
        assert paid_escrow.mpesa_receipt_number == "QKJ4XYZ123"


# ---------------------------------------------------------------------------
# Status-query reconciliation
# ---------------------------------------------------------------------------


class TestReconcileEscrow:

    async def test_paid_query_completes_escrow(self, db, booking, escrow, payment_gateway):
        await escrowService.reconcile_escrow(db, payment_gateway, escrow)

        assert payment_gateway.queries == [escrow.checkout_request_id]
        assert escrow.status == EscrowStatus.COMPLETED
        assert escrow.mpesa_receipt_number is None
        assert booking.payment_status == PaymentStatus.COMPLETED

        # The callback that follows supplies the receipt, not a refund
        await escrowService.record_inbound(
            db, stk_success(escrow.checkout_request_id, 1000, receipt="QKQUERY001")
        )
        assert escrow.mpesa_receipt_number == "QKQUERY001"
        assert booking.payment_transaction_id == "QKQUERY001"
        assert "refund_due" not in escrow.metadata_
        assert EscrowEventType.LATE_PAYMENT not in await _event_types(db, escrow)

    async def test_failed_query_fails_escrow(self, db, booking, escrow, payment_gateway):
        payment_gateway.query_result = stk_failure(escrow.checkout_request_id, code=1037)

        await escrowService.reconcile_escrow(db, payment_gateway, escrow)

        assert escrow.status == EscrowStatus.FAILED
        assert escrow.result_code == 1037
        assert booking.payment_status == PaymentStatus.FAILED

    async def test_unanswered_query_leaves_escrow_pending(self, db, escrow, payment_gateway):
        payment_gateway.query_error = GatewayUnavailableError("The transaction is being processed")

        await escrowService.reconcile_escrow(db, payment_gateway, escrow)

        assert escrow.status == EscrowStatus.PENDING
        assert await _event_types(db, escrow) == [EscrowEventType.CREATED]

    async def test_settled_escrow_is_not_queried(self, db, paid_escrow, payment_gateway):
        await escrowService.reconcile_escrow(db, payment_gateway, paid_escrow)
        assert payment_gateway.queries == []

    async def test_unconfirmed_request_expires(self, db, booking, payment_gateway, monkeypatch):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        payment_gateway.delay = 1.0
        escrow = await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")
        timeout = timedelta(seconds=settings.escrow_confirmation_timeout_seconds)

        await escrowService.reconcile_escrow(
            db, payment_gateway, escrow, now=escrow.created_at + timeout - timedelta(seconds=1)
        )
        assert escrow.status == EscrowStatus.PENDING

        await escrowService.reconcile_escrow(db, payment_gateway, escrow, now=escrow.created_at + timeout)
        assert escrow.status == EscrowStatus.FAILED
        assert payment_gateway.queries == []
        assert booking.payment_status == PaymentStatus.FAILED

        # A payment that still arrives is kept for refund
        late = await escrowService.record_inbound(db, stk_success("ws_CO_lost", 1000, receipt="QKLOST0002"))
        assert late.id == escrow.id
        assert late.status == EscrowStatus.FAILED
        assert late.metadata_["refund_due"] == 1000


# ---------------------------------------------------------------------------
# Commission recompute
# ---------------------------------------------------------------------------


class TestAdjustments:

    async def test_rate_change_recomputes_split(self, db, escrow):
        await escrowService.update_escrow_commission_rate(db, escrow, Decimal("0.15"), actor_id=ADMIN_ID)
        assert escrow.commission_rate == Decimal("0.15")
        assert escrow.commission_amount == 150
        assert escrow.provider_amount == 850

        event = (await escrowService.get_escrow_events(db, escrow.id))[-1]
        assert event.event_type == EscrowEventType.AMOUNT_ADJUSTED
        assert event.data["before"]["commission_amount"] == 100
        assert event.data["after"]["commission_amount"] == 150

    async def test_amount_change_keeps_rate(self, db, paid_escrow):
        await escrowService.update_escrow_amount(db, paid_escrow, 2005)
        assert paid_escrow.commission_amount == 201
        assert paid_escrow.provider_amount == 1804

    async def test_released_escrow_cannot_be_adjusted(self, db, paid_escrow):
        await escrowService.release_escrow(db, paid_escrow)
        with pytest.raises(InvalidStateError):
            await escrowService.update_escrow_amount(db, paid_escrow, 900)

    async def test_amount_must_be_positive(self, db, escrow):
        with pytest.raises(ValueError):
            await escrowService.update_escrow_amount(db, escrow, 0)

    async def test_rate_out_of_range(self, db, escrow):
        with pytest.raises(ValueError):
            await escrowService.update_escrow_commission_rate(db, escrow, Decimal("1.5"))


# ---------------------------------------------------------------------------
# Disputes and release
# ---------------------------------------------------------------------------


class TestDisputes:

    async def test_dispute_completed_escrow(self, db, paid_escrow, captured_events):
        await escrowService.dispute_escrow(db, paid_escrow, "Work not finished", actor_id=CLIENT_ID)
        assert paid_escrow.status == EscrowStatus.DISPUTED
        assert paid_escrow.dispute_reason == "Work not finished"
        assert paid_escrow.disputed_at is not None
        assert [e.event_type for e in captured_events] == [DISPUTE_OPENED]
        assert captured_events[0].data["reason"] == "Work not finished"

    async def test_pending_escrow_cannot_be_disputed(self, db, escrow):
        with pytest.raises(InvalidStateError):
            await escrowService.dispute_escrow(db, escrow, "No payment yet")

    async def test_resolve_for_provider(self, db, paid_escrow):
        await escrowService.dispute_escrow(db, paid_escrow, "Late arrival")
        await escrowService.resolve_escrow_dispute(db, paid_escrow, "Work verified", actor_id=ADMIN_ID)
        assert paid_escrow.status == EscrowStatus.COMPLETED
        assert paid_escrow.dispute_resolution == "Work verified"
        assert paid_escrow.dispute_resolved_at is not None

    async def test_resolve_for_client_refunds(self, db, booking, paid_escrow):
        await escrowService.dispute_escrow(db, paid_escrow, "No-show")
        await escrowService.resolve_escrow_dispute(
            db, paid_escrow, "Provider did not attend", actor_id=ADMIN_ID, refund_client=True
        )
        assert paid_escrow.status == EscrowStatus.FAILED
        assert booking.payment_status == PaymentStatus.REFUNDED
        assert booking.refund_amount == 1000

    async def test_resolve_requires_dispute(self, db, paid_escrow):
        with pytest.raises(InvalidStateError):
            await escrowService.resolve_escrow_dispute(db, paid_escrow, "Nothing to resolve")


class TestRelease:

    async def test_release_completed_escrow(self, db, booking, paid_escrow, captured_events):
        await escrowService.release_escrow(
            db,
            paid_escrow,
            released_by=ADMIN_ID,
            method=ReleaseMethod.MANUAL,
            payout_reference="PAYOUT-1",
            rating=5,
            review="Tidy work",
        )
        assert paid_escrow.status == EscrowStatus.RELEASED
        assert paid_escrow.released_by == ADMIN_ID
        assert paid_escrow.release_method == ReleaseMethod.MANUAL
        assert paid_escrow.provider_payout_reference == "PAYOUT-1"
        assert paid_escrow.rating == 5
        assert captured_events[-1].event_type == PAYMENT_RELEASED
        assert captured_events[-1].data["provider_amount"] == 900

    async def test_release_twice_rejected(self, db, paid_escrow):
        await escrowService.release_escrow(db, paid_escrow)
        with pytest.raises(InvalidStateError):
            await escrowService.release_escrow(db, paid_escrow)

    async def test_disputed_escrow_cannot_be_released(self, db, paid_escrow):
        await escrowService.dispute_escrow(db, paid_escrow, "Broken tap")
        with pytest.raises(InvalidStateError):
            await escrowService.release_escrow(db, paid_escrow)

    async def test_rating_out_of_range(self, db, paid_escrow):
        with pytest.raises(ValueError):
            await escrowService.release_escrow(db, paid_escrow, rating=6)
        assert paid_escrow.status == EscrowStatus.COMPLETED


# ---------------------------------------------------------------------------
# Failure, cancellation, refund
# ---------------------------------------------------------------------------


class TestFailCancelRefund:

    async def test_fail_pending(self, db, booking, escrow):
        await escrowService.fail_escrow(db, escrow, "STK push expired")
        assert escrow.status == EscrowStatus.FAILED
        assert booking.payment_status == PaymentStatus.FAILED

    async def test_cancel_pending(self, db, escrow):
        await escrowService.cancel_escrow(db, escrow, "Client changed mind", actor_id=CLIENT_ID)
        assert escrow.status == EscrowStatus.CANCELLED
        assert await _event_types(db, escrow) == [EscrowEventType.CREATED, EscrowEventType.CANCELLED]

    async def test_cancel_completed_rejected(self, db, paid_escrow):
        with pytest.raises(InvalidStateError):
            await escrowService.cancel_escrow(db, paid_escrow, "Too late")

    async def test_partial_refund(self, db, booking, paid_escrow):
        await escrowService.refund_escrow(db, paid_escrow, 500, "Cancelled 5h ahead", actor_id=CLIENT_ID)
        assert paid_escrow.status == EscrowStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.REFUNDED
        assert booking.refund_amount == 500

        event = (await escrowService.get_escrow_events(db, paid_escrow.id))[-1]
        assert event.event_type == EscrowEventType.REFUNDED
        assert event.data["refund_amount"] == 500
        assert event.data["retained_amount"] == 500

    async def test_zero_refund_keeps_booking_paid(self, db, booking, paid_escrow):
        await escrowService.refund_escrow(db, paid_escrow, 0, "Cancelled at the door")
        assert paid_escrow.status == EscrowStatus.CANCELLED
        assert booking.payment_status == PaymentStatus.COMPLETED

    async def test_refund_above_amount_rejected(self, db, paid_escrow):
        with pytest.raises(ValueError):
            await escrowService.refund_escrow(db, paid_escrow, 1001, "Too much")


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class TestReporting:

    async def test_provider_earnings_count_released_only(self, db, provider, paid_escrow):
        provider_id = provider.id
        before = await escrowService.get_provider_earnings(db, provider_id)
        assert before == {"total_earnings": 0, "total_transactions": 0, "average_rating": None}

        await escrowService.release_escrow(db, paid_escrow, rating=4)
        after = await escrowService.get_provider_earnings(db, provider_id)
        assert after == {"total_earnings": 900, "total_transactions": 1, "average_rating": 4.0}

    async def test_company_revenue(self, db, paid_escrow):
        revenue = await escrowService.get_company_revenue(db)
        assert revenue == {
            "total_revenue": 1000,
            "total_commission": 100,
            "total_paid_to_providers": 900,
            "total_transactions": 1,
        }
