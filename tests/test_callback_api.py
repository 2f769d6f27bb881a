"""Webhook PhonePe."""
import hashlib
import json

import httpx
import pytest

from app.core.dependencies import get_phonepe_service
from app.main import app
from app.models.booking import BOOKING_CANCELLED, BOOKING_CONFIRMED, BOOKING_PENDING
from app.models.payment import PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_INITIATED
from app.services.booking_service import BookingService
from app.services.payment_service import PaymentService
from app.services.phonepe_service import PhonePeService

CALLBACK_URL = "/api/v1/payments/gateway/callback"
SIGNATURE = hashlib.sha256(b"hook-user:hook-pass").hexdigest()


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"callback must not call PhonePe: {request.url}")


@pytest.fixture
async def gateway():
    service = PhonePeService(
        client_id="merchant-client",
        client_secret="merchant-secret",
        callback_username="hook-user",
        callback_password="hook-pass",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_unreachable)),
    )
    yield service
    await service.aclose()


def _event(merchant_order_id: str, state: str, **payload) -> bytes:
    event = {
        "event": f"checkout.order.{state.lower()}",
        "payload": {"merchantOrderId": merchant_order_id, "orderId": "OMO1", "state": state, **payload},
    }
    return json.dumps(event).encode()


async def _post(client, body: bytes, signature: str | None = SIGNATURE, header: str = "Authorization"):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers[header] = signature
    return await client.post(CALLBACK_URL, content=body, headers=headers)


async def test_completed_callback(client, db, customer, booking, make_payment):
    payment = await make_payment(customer, booking, merchant_order_id="M-cb")

    response = await _post(client, _event("M-cb", "COMPLETED"))

    assert response.status_code == 200
    assert response.json() == {"success": True, "status": PAYMENT_COMPLETED}
    stored = await PaymentService(db).get(payment.id, fresh=True)
    assert stored.status == PAYMENT_COMPLETED
    assert stored.payment_date is not None
    assert (await BookingService(db).get(booking.id, fresh=True)).status == BOOKING_CONFIRMED


async def test_failed_callback_records_reason(client, db, customer, booking, make_payment):
    payment = await make_payment(customer, booking, merchant_order_id="M-fail")

    response = await _post(client, _event("M-fail", "FAILED", errorCode="INSUFFICIENT_FUNDS"))

    assert response.status_code == 200
    stored = await PaymentService(db).get(payment.id, fresh=True)
    assert stored.status == PAYMENT_FAILED
    assert "INSUFFICIENT_FUNDS" in stored.notes
    assert (await BookingService(db).get(booking.id, fresh=True)).status == BOOKING_CANCELLED


async def test_pending_callback_is_not_a_failure(client, db, customer, make_payment):
    payment = await make_payment(customer, merchant_order_id="M-wait")

    response = await _post(client, _event("M-wait", "PENDING"))

    assert response.status_code == 200
    assert response.json()["status"] == PAYMENT_INITIATED
    stored = await PaymentService(db).get(payment.id, fresh=True)
    assert stored.status == PAYMENT_INITIATED
    assert stored.gateway_last_state == "PENDING"


async def test_duplicate_delivery(client, db, customer, booking, make_payment):
    """PhonePe может прислать один callback несколько раз."""
    await make_payment(customer, booking, merchant_order_id="M-dup")

    first = await _post(client, _event("M-dup", "COMPLETED"))
    second = await _post(client, _event("M-dup", "COMPLETED"))

    assert first.status_code == second.status_code == 200
    assert second.json()["status"] == PAYMENT_COMPLETED


async def test_legacy_x_verify_header(client, db, customer, make_payment):
    await make_payment(customer, merchant_order_id="M-legacy")

    response = await _post(client, _event("M-legacy", "COMPLETED"), header="X-VERIFY")

    assert response.status_code == 200
    assert response.json()["status"] == PAYMENT_COMPLETED


@pytest.mark.parametrize("signature", [hashlib.sha256(b"hook-user:guess").hexdigest(), "", None])
async def test_invalid_signature_changes_nothing(client, db, customer, booking, make_payment, signature):
    """Callback с неверной подписью не меняет ни платеж, ни бронирование."""
    payment = await make_payment(customer, booking, merchant_order_id="M-forged")

    response = await _post(client, _event("M-forged", "COMPLETED"), signature=signature)

    assert response.status_code == 401
    stored = await PaymentService(db).get(payment.id, fresh=True)
    assert stored.status == PAYMENT_INITIATED
    assert stored.gateway_last_raw is None
    assert (await BookingService(db).get(booking.id, fresh=True)).status == BOOKING_PENDING


async def test_callback_without_merchant_order_id(client):
    response = await _post(client, json.dumps({"payload": {"state": "COMPLETED"}}).encode())

    assert response.status_code == 400


async def test_callback_for_unknown_payment(client):
    response = await _post(client, _event("M-unknown", "COMPLETED"))

    assert response.status_code == 404


async def test_callback_without_configured_credentials(client):
    unconfigured = PhonePeService(
        client_id="merchant-client",
        client_secret="merchant-secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_unreachable)),
    )
    app.dependency_overrides[get_phonepe_service] = lambda: unconfigured

    response = await _post(client, _event("M-any", "COMPLETED"))

    assert response.status_code == 500
    await unconfigured.aclose()


@pytest.mark.parametrize("body", [b"not-json{", b"[1, 2]", b'"COMPLETED"'])
async def test_signed_callback_with_malformed_body(client, body):
    response = await _post(client, body)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON"
