"""Клиент PhonePe поверх httpx.MockTransport."""
import hashlib
import json
import time

import httpx
import pytest

from app.services.gateway_status import GatewayStatusKind
from app.services.phonepe_service import GatewayConfigurationError, PhonePeService


def _copy(response: httpx.Response) -> httpx.Response:
    return httpx.Response(response.status_code, content=response.content, headers=response.headers)


class PhonePeStub:
    """Имитация API PhonePe: токен, создание заказа, статус."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_status = 200
        self.pay_response: httpx.Response | Exception = httpx.Response(
            200,
            json={"orderId": "OMO123", "state": "PENDING", "redirectUrl": "https://mercury.phonepe.test/pay/OMO123"},
        )
        self.status_response: httpx.Response | Exception = httpx.Response(
            200, json={"orderId": "OMO123", "state": "COMPLETED", "amount": 1500000}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/v1/oauth/token"):
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"message": "invalid client"})
            return httpx.Response(
                200,
                json={"access_token": f"token-{self.token_calls}", "expires_at": int(time.time()) + 3600},
            )
        if path.endswith("/checkout/v2/pay"):
            if isinstance(self.pay_response, Exception):
                raise self.pay_response
            return _copy(self.pay_response)
        if "/checkout/v2/order/" in path:
            if isinstance(self.status_response, Exception):
                raise self.status_response
            return _copy(self.status_response)
        return httpx.Response(404)


@pytest.fixture
def stub():
    return PhonePeStub()


@pytest.fixture
async def phonepe(stub):
    service = PhonePeService(
        client_id="merchant-client",
        client_secret="merchant-secret",
        callback_username="hook-user",
        callback_password="hook-pass",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub)),
    )
    yield service
    await service.aclose()


def test_missing_credentials_is_configuration_error():
    with pytest.raises(GatewayConfigurationError):
        PhonePeService(client_id="", client_secret="secret")


def test_unknown_environment_is_configuration_error():
    with pytest.raises(GatewayConfigurationError):
        PhonePeService(client_id="id", client_secret="secret", environment="staging")


async def test_create_payment(phonepe, stub):
    """Сумма уходит в пайсах, запрос подписан OAuth токеном."""
    result = await phonepe.create_payment(
        amount_paise=1500000,
        merchant_order_id="PAY-abc-1",
        redirect_url="https://coliving.test/dashboard/rent/payments/success?paymentId=1",
    )

    assert result.success
    assert result.redirect_url == "https://mercury.phonepe.test/pay/OMO123"
    assert result.order_id == "OMO123"

    pay_request = stub.requests[-1]
    body = json.loads(pay_request.content)
    assert pay_request.url.host == "api-preprod.phonepe.com"
    assert pay_request.headers["Authorization"] == "O-Bearer token-1"
    assert body["merchantOrderId"] == "PAY-abc-1"
    assert body["amount"] == 1500000
    assert body["paymentFlow"]["type"] == "PG_CHECKOUT"
    assert body["paymentFlow"]["merchantUrls"]["redirectUrl"].endswith("paymentId=1")


async def test_create_payment_rejected(phonepe, stub):
    stub.pay_response = httpx.Response(400, json={"code": "BAD_REQUEST", "message": "Invalid amount"})

    result = await phonepe.create_payment(100, "PAY-abc-2", "https://coliving.test/ok")

    assert not result.success
    assert result.redirect_url is None
    assert result.raw["code"] == "BAD_REQUEST"
    assert result.raw["httpStatus"] == 400


async def test_create_payment_timeout(phonepe, stub):
    stub.pay_response = httpx.ReadTimeout("timed out")

    result = await phonepe.create_payment(100, "PAY-abc-3", "https://coliving.test/ok")

    assert not result.success
    assert result.raw == {"error": "timeout"}


async def test_token_is_cached(phonepe, stub):
    await phonepe.check_status("PAY-abc-1")
    await phonepe.check_status("PAY-abc-1")

    assert stub.token_calls == 1


async def test_token_refreshed_after_unauthorized(phonepe, stub):
    stub.status_response = httpx.Response(401, json={"code": "UNAUTHORIZED"})
    await phonepe.check_status("PAY-abc-1")

    stub.status_response = httpx.Response(200, json={"state": "COMPLETED"})
    await phonepe.check_status("PAY-abc-1")

    assert stub.token_calls == 2


async def test_check_status_completed(phonepe, stub):
    status = await phonepe.check_status("PAY-abc-1")

    assert status.kind == GatewayStatusKind.SUCCESS
    assert status.state == "COMPLETED"
    assert status.success
    request = stub.requests[-1]
    assert request.url.path.endswith("/checkout/v2/order/PAY-abc-1/status")
    assert request.url.params["details"] == "false"


async def test_check_status_timeout_is_pending(phonepe, stub):
    stub.status_response = httpx.ReadTimeout("timed out")

    status = await phonepe.check_status("PAY-abc-1")

    assert status.kind == GatewayStatusKind.PENDING
    assert status.error == "timeout"


async def test_check_status_network_error_is_pending(phonepe, stub):
    stub.status_response = httpx.ConnectError("connection refused")

    status = await phonepe.check_status("PAY-abc-1")

    assert status.kind == GatewayStatusKind.PENDING
    assert status.error == "network_error"


async def test_check_status_non_json_is_pending(phonepe, stub):
    stub.status_response = httpx.Response(502, text="<html>Bad gateway</html>")

    status = await phonepe.check_status("PAY-abc-1")

    assert status.kind == GatewayStatusKind.PENDING
    assert status.code == "EMPTY_RESPONSE"
    assert status.is_transient_error


async def test_check_status_empty_body_is_pending(phonepe, stub):
    stub.status_response = httpx.Response(200, json={})

    status = await phonepe.check_status("PAY-abc-1")

    assert status.is_transient_error
    assert not status.is_failed


async def test_check_status_token_failure_is_pending(phonepe, stub):
    stub.token_status = 500

    status = await phonepe.check_status("PAY-abc-1")

    assert status.kind == GatewayStatusKind.PENDING
    assert status.is_transient_error


async def test_check_status_requires_merchant_order_id(phonepe):
    with pytest.raises(ValueError):
        await phonepe.check_status("")


async def test_check_status_uses_extension_markers(stub):
    stub.status_response = httpx.Response(200, json={"state": "EXPIRED"})
    service = PhonePeService(
        client_id="id",
        client_secret="secret",
        extra_failure_states=["EXPIRED"],
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub)),
    )

    status = await service.check_status("PAY-abc-1")

    assert status.is_failed
    await service.aclose()


def _signature(username: str, password: str) -> str:
    return hashlib.sha256(f"{username}:{password}".encode()).hexdigest()


def test_callback_signature_valid(phonepe):
    body = json.dumps({"payload": {"merchantOrderId": "M1", "state": "COMPLETED"}}).encode()

    assert phonepe.verify_callback_signature(body, _signature("hook-user", "hook-pass"))
    assert phonepe.verify_callback_signature(body, "SHA256 " + _signature("hook-user", "hook-pass").upper())


@pytest.mark.parametrize(
    "body, header",
    [
        (b'{"payload": {}}', _signature("hook-user", "wrong")),
        (b'{"payload": {}}', None),
        (b'{"payload": {}}', ""),
        (b"", _signature("hook-user", "hook-pass")),
    ],
)
def test_callback_signature_invalid(phonepe, body, header):
    assert not phonepe.verify_callback_signature(body, header)


def test_callback_signature_does_not_parse_body(phonepe):
    """Подпись проверяется по заголовку, содержимое тела разбирает обработчик."""
    assert phonepe.verify_callback_signature(b"not json", _signature("hook-user", "hook-pass"))


def test_callback_signature_requires_credentials():
    service = PhonePeService(client_id="id", client_secret="secret")

    with pytest.raises(GatewayConfigurationError):
        service.verify_callback_signature(b"{}", "anything")
