"""
E2E tests for the gateway webhook endpoints.

Daraja and Paystack redeliver until they get a 200, so every handled,
replayed or unusable delivery must still be acknowledged.
"""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest

from escrowbook.core.config import settings
from escrowbook.core.errors import GatewayUnavailableError
from escrowbook.integrations.gateways import TransferStatus

from tests.conftest import CLIENT_ID
from tests.e2e.conftest import assign, complete, create_booking, make_ready, stk_callback_payload


pytestmark = pytest.mark.asyncio

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
PAYSTACK_SECRET = "sk_test_webhook"


def _signed(payload: dict, secret: str = PAYSTACK_SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return body, {"x-paystack-signature": signature, "content-type": "application/json"}


@pytest.fixture
def paystack_secret(monkeypatch):
    monkeypatch.setattr(settings, "paystack_secret_key", PAYSTACK_SECRET)
    return PAYSTACK_SECRET


async def _open_escrow(client, seed) -> dict:
    booking = await create_booking(client, seed)
    await assign(client, booking["id"], seed["provider_id"])
    resp = await client.post(
        "/api/v1/escrow", json={"booking_id": booking["id"], "phone_number": "+254 712 345 678"}
    )
    assert resp.status_code == 201
    return resp.json()


class TestMpesaCallback:

    async def test_success_marks_escrow_paid(self, client, seed):
        escrow = await _open_escrow(client, seed)

        resp = await client.post(
            "/api/v1/webhooks/mpesa",
            json=stk_callback_payload(escrow["checkout_request_id"], escrow["amount"], receipt="QKJ4XYZ123"),
        )

        assert resp.status_code == 200
        assert resp.json() == MPESA_ACK
        body = (await client.get(f"/api/v1/escrow/{escrow['id']}")).json()
        assert body["status"] == "completed"
        assert body["mpesa_receipt_number"] == "QKJ4XYZ123"
        booking = (await client.get(f"/api/v1/bookings/{escrow['booking_id']}")).json()
        assert booking["payment_status"] == "completed"

    async def test_replayed_callback_is_acknowledged_once(self, client, seed):
        escrow = await _open_escrow(client, seed)
        payload = stk_callback_payload(escrow["checkout_request_id"], escrow["amount"])

        await client.post("/api/v1/webhooks/mpesa", json=payload)
        resp = await client.post("/api/v1/webhooks/mpesa", json=payload)

        assert resp.json() == MPESA_ACK
        events = (await client.get(f"/api/v1/escrow/{escrow['id']}")).json()["events"]
        assert [e["event_type"] for e in events].count("payment_received") == 1

    async def test_user_cancelled_push_fails_escrow(self, client, seed):
        escrow = await _open_escrow(client, seed)

        resp = await client.post(
            "/api/v1/webhooks/mpesa",
            json=stk_callback_payload(escrow["checkout_request_id"], None, result_code=1032),
        )

        assert resp.json() == MPESA_ACK
        body = (await client.get(f"/api/v1/escrow/{escrow['id']}")).json()
        assert body["status"] == "failed"
        assert body["result_description"] == "Request cancelled by user"

    async def test_unknown_checkout_is_acknowledged(self, client, seed):
        resp = await client.post("/api/v1/webhooks/mpesa", json=stk_callback_payload("ws_CO_missing", 100))
        assert resp.status_code == 200
        assert resp.json() == MPESA_ACK

    async def test_payment_after_cancellation_is_recorded(self, client, seed):
        escrow = await _open_escrow(client, seed)
        resp = await client.post(
            f"/api/v1/bookings/{escrow['booking_id']}/cancel",
            json={"reason": "Found someone else", "actor_id": str(CLIENT_ID)},
        )
        assert resp.status_code == 200

        resp = await client.post(
            "/api/v1/webhooks/mpesa",
            json=stk_callback_payload(escrow["checkout_request_id"], escrow["amount"], receipt="QKLATE0001"),
        )

        assert resp.json() == MPESA_ACK
        body = (await client.get(f"/api/v1/escrow/{escrow['id']}")).json()
        assert body["status"] == "cancelled"
        assert body["mpesa_receipt_number"] == "QKLATE0001"
        late = body["events"][-1]
        assert late["event_type"] == "late_payment"
        assert late["data"]["amount"] == escrow["amount"]

    async def test_timed_out_push_is_matched_by_callback(self, client, seed, payment_gateway, monkeypatch):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        payment_gateway.delay = 1.0
        escrow = await _open_escrow(client, seed)
        assert escrow["outcome_unknown"] is True

        resp = await client.post(
            "/api/v1/webhooks/mpesa", json=stk_callback_payload("ws_CO_lost", escrow["amount"])
        )

        assert resp.json() == MPESA_ACK
        body = (await client.get(f"/api/v1/escrow/{escrow['id']}")).json()
        assert body["status"] == "completed"
        assert body["outcome_unknown"] is False
        assert body["checkout_request_id"] == "ws_CO_lost"

    async def test_duplicate_receipt_is_acknowledged_and_flagged(self, client, seed):
        first = await _open_escrow(client, seed)
        await client.post(
            "/api/v1/webhooks/mpesa",
            json=stk_callback_payload(first["checkout_request_id"], first["amount"], receipt="QKDUP00001"),
        )
        other = await create_booking(client, seed)
        resp = await client.post(
            "/api/v1/escrow", json={"booking_id": other["id"], "phone_number": "0712345678"}
        )
        second = resp.json()

        resp = await client.post(
            "/api/v1/webhooks/mpesa",
            json=stk_callback_payload(second["checkout_request_id"], second["amount"], receipt="QKDUP00001"),
        )

        assert resp.status_code == 200
        assert resp.json() == MPESA_ACK
        body = (await client.get(f"/api/v1/escrow/{second['id']}")).json()
        assert body["status"] == "pending"
        assert body["mpesa_receipt_number"] is None
        assert body["events"][-1]["event_type"] == "receipt_conflict"
        assert body["events"][-1]["data"]["other_escrow_id"] == first["id"]

    async def test_malformed_body_is_acknowledged(self, client, seed):
        resp = await client.post("/api/v1/webhooks/mpesa", json={"Body": {}})
        assert resp.json() == MPESA_ACK

        resp = await client.post(
            "/api/v1/webhooks/mpesa", content=b"not json", headers={"content-type": "application/json"}
        )
        assert resp.status_code == 200
        assert resp.json() == MPESA_ACK


class TestMissingCallback:

    async def test_reconcile_settles_pending_escrow(self, client, seed, payment_gateway):
        escrow = await _open_escrow(client, seed)

        resp = await client.post(f"/api/v1/escrow/{escrow['id']}/reconcile")

        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert payment_gateway.queries == [escrow["checkout_request_id"]]

        # The callback arriving afterwards only fills in the receipt
        await client.post(
            "/api/v1/webhooks/mpesa",
            json=stk_callback_payload(escrow["checkout_request_id"], escrow["amount"], receipt="QKAFTER001"),
        )
        body = (await client.get(f"/api/v1/escrow/{escrow['id']}")).json()
        assert body["mpesa_receipt_number"] == "QKAFTER001"
        assert "late_payment" not in [e["event_type"] for e in body["events"]]

    async def test_reconcile_waits_while_still_processing(self, client, seed, payment_gateway):
        escrow = await _open_escrow(client, seed)
        payment_gateway.query_error = GatewayUnavailableError("The transaction is being processed")

        resp = await client.post(f"/api/v1/escrow/{escrow['id']}/reconcile")

        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"


class TestPaystackWebhook:

    @pytest.fixture
    async def processing_payout(self, client, seed, session_factory, transfer_gateway) -> dict:
        """A payout whose transfer Paystack accepted but has not settled."""
        transfer_gateway.status = TransferStatus.PENDING
        payout = await complete(client, seed)
        await make_ready(session_factory, payout["id"])
        resp = await client.post(f"/api/v1/payouts/{payout['id']}/process")
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "processing"
        return resp.json()

    async def test_invalid_signature_ignored(self, client, seed, paystack_secret):
        body, headers = _signed({"event": "transfer.success", "data": {"reference": "x"}}, secret="wrong")
        resp = await client.post("/api/v1/webhooks/paystack", content=body, headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored", "reason": "invalid signature"}

    async def test_missing_secret_rejects_everything(self, client, seed, monkeypatch):
        monkeypatch.setattr(settings, "paystack_secret_key", "")
        body, headers = _signed({"event": "transfer.success", "data": {"reference": "x"}})
        resp = await client.post("/api/v1/webhooks/paystack", content=body, headers=headers)
        assert resp.json()["reason"] == "invalid signature"

    async def test_unhandled_event_ignored(self, client, seed, paystack_secret):
        body, headers = _signed({"event": "charge.success", "data": {}})
        resp = await client.post("/api/v1/webhooks/paystack", content=body, headers=headers)
        assert resp.json() == {"status": "ignored", "reason": "unhandled event"}

    async def test_unknown_transfer_ignored(self, client, seed, paystack_secret):
        body, headers = _signed({"event": "transfer.success", "data": {"reference": "PAYOUT-missing"}})
        resp = await client.post("/api/v1/webhooks/paystack", content=body, headers=headers)
        assert resp.json() == {"status": "ignored", "reason": "unknown transfer"}

    async def test_transfer_success_completes_payout(self, client, processing_payout, paystack_secret):
        payout = processing_payout

        body, headers = _signed(
            {
                "event": "transfer.success",
                "data": {"reference": payout["reference"], "transfer_code": "TRF_hook", "id": 4242},
            }
        )
        resp = await client.post("/api/v1/webhooks/paystack", content=body, headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "payout_id": payout["id"], "payout_status": "completed"}
        after = (await client.get(f"/api/v1/payouts/{payout['id']}")).json()
        assert after["transfer_code"] == "TRF_hook"
        assert after["payout_completed_at"] is not None

    async def test_transfer_failed_marks_payout_failed(self, client, processing_payout, paystack_secret):
        payout = processing_payout

        body, headers = _signed(
            {"event": "transfer.failed", "data": {"reference": payout["reference"], "reason": "Account closed"}}
        )
        resp = await client.post("/api/v1/webhooks/paystack", content=body, headers=headers)

        assert resp.json()["payout_status"] == "failed"
        after = (await client.get(f"/api/v1/payouts/{payout['id']}")).json()
        assert after["failure_reason"] == "Account closed"
