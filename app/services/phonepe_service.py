"""Клиент PhonePe Standard Checkout (v2)."""
import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import Settings
from app.services.gateway_status import (
    GatewayStatus,
    normalize_gateway_response,
    transient_status,
)

logger = logging.getLogger(__name__)


class GatewayConfigurationError(RuntimeError):
    """Шлюз не настроен (нет ключей). Без вмешательства оператора не исправить."""


@dataclass
class CreatePaymentResult:
    """Результат создания checkout-сессии."""

    success: bool
    redirect_url: str | None = None
    order_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PhonePeService:
    """Адаптер к API PhonePe.

    Создается один раз на процесс (см. lifespan в app.main) и переиспользуется:
    держит пул соединений httpx и OAuth-токен. Ошибки сети и SDK наружу не
    пробрасываются, а возвращаются в результате.
    """

    HOSTS = {
        "sandbox": {
            "auth": "https://api-preprod.phonepe.com/apis/pg-sandbox",
            "pg": "https://api-preprod.phonepe.com/apis/pg-sandbox",
        },
        "production": {
            "auth": "https://api.phonepe.com/apis/identity-manager",
            "pg": "https://api.phonepe.com/apis/pg",
        },
    }
    TOKEN_ENDPOINT = "/v1/oauth/token"
    PAY_ENDPOINT = "/checkout/v2/pay"
    STATUS_ENDPOINT = "/checkout/v2/order/{merchant_order_id}/status"

    # Обновляем токен заранее, за минуту до истечения
    TOKEN_REFRESH_MARGIN = 60

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        client_version: int = 1,
        environment: str = "sandbox",
        callback_username: str = "",
        callback_password: str = "",
        status_timeout: float = 12.0,
        request_timeout: float = 30.0,
        extra_success_states: list[str] | None = None,
        extra_failure_states: list[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not client_id or not client_secret:
            raise GatewayConfigurationError(
                "PhonePe not configured (PHONEPE_CLIENT_ID, PHONEPE_CLIENT_SECRET)"
            )
        if environment not in self.HOSTS:
            raise GatewayConfigurationError(f"Unknown PhonePe environment: {environment}")

        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.environment = environment
        self.callback_username = callback_username
        self.callback_password = callback_password
        self.status_timeout = status_timeout
        self.request_timeout = request_timeout
        self.extra_success_states = extra_success_states or []
        self.extra_failure_states = extra_failure_states or []

        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "PhonePeService":
        """Собрать клиент из настроек. Без ключей -> GatewayConfigurationError."""
        service = cls(
            client_id=settings.phonepe_client_id,
            client_secret=settings.phonepe_client_secret,
            client_version=settings.phonepe_client_version,
            environment=settings.phonepe_environment,
            callback_username=settings.phonepe_callback_username,
            callback_password=settings.phonepe_callback_password,
            status_timeout=settings.phonepe_status_timeout,
            request_timeout=settings.phonepe_request_timeout,
            extra_success_states=settings.phonepe_extra_success_states,
            extra_failure_states=settings.phonepe_extra_failure_states,
        )
        if not service.callback_configured:
            logger.warning("PhonePe callback credentials not configured, webhooks will be rejected")
        return service

    @property
    def callback_configured(self) -> bool:
        return bool(self.callback_username and self.callback_password)

    def _url(self, host: str, path: str) -> str:
        return f"{self.HOSTS[self.environment][host]}{path}"

    async def aclose(self):
        """Закрыть пул соединений."""
        await self._http.aclose()

    async def _get_access_token(self) -> str:
        """OAuth токен (client_credentials) с кэшем до истечения.

        Лок сериализует только получение токена, сами запросы идут параллельно.
        """
        if self._access_token and time.time() < self._token_expires_at - self.TOKEN_REFRESH_MARGIN:
            return self._access_token

        async with self._token_lock:
            if self._access_token and time.time() < self._token_expires_at - self.TOKEN_REFRESH_MARGIN:
                return self._access_token

            response = await self._http.post(
                self._url("auth", self.TOKEN_ENDPOINT),
                data={
                    "client_id": self.client_id,
                    "client_version": str(self.client_version),
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.request_timeout,
            )
            if response.status_code != 200:
                raise httpx.HTTPStatusError(
                    f"PhonePe token error: {response.status_code}",
                    request=response.request,
                    response=response,
                )

            data = response.json()
            self._access_token = data["access_token"]
            self._token_expires_at = float(data.get("expires_at") or time.time() + 3600)
            logger.info("PhonePe access token refreshed")
            return self._access_token

    def _invalidate_token(self):
        self._access_token = None
        self._token_expires_at = 0.0

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._get_access_token()
        return {
            "Authorization": f"O-Bearer {token}",
            "Content-Type": "application/json",
        }

    async def create_payment(
        self,
        amount_paise: int,
        merchant_order_id: str,
        redirect_url: str,
    ) -> CreatePaymentResult:
        """
        Создать checkout-сессию.

        Returns:
            CreatePaymentResult(success, redirect_url, order_id, raw).
            При любой ошибке success=False, а причина лежит в raw.
        """
        payload = {
            "merchantOrderId": merchant_order_id,
            "amount": amount_paise,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": f"Payment {merchant_order_id}",
                "merchantUrls": {"redirectUrl": redirect_url},
            },
        }
        logger.info(f"Creating PhonePe order {merchant_order_id}: amount={amount_paise} paise")

        try:
            response = await self._http.post(
                self._url("pg", self.PAY_ENDPOINT),
                json=payload,
                headers=await self._auth_headers(),
                timeout=self.request_timeout,
            )
        except httpx.TimeoutException:
            logger.error(f"PhonePe pay timeout for {merchant_order_id}")
            return CreatePaymentResult(success=False, raw={"error": "timeout"})
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"PhonePe pay request error for {merchant_order_id}: {e}")
            return CreatePaymentResult(success=False, raw={"error": str(e)})

        if response.status_code == 401:
            self._invalidate_token()

        try:
            raw = response.json()
        except ValueError:
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        logger.debug(f"PhonePe pay response: {raw}")

        redirect = raw.get("redirectUrl")
        if response.status_code != 200 or not redirect:
            logger.error(f"PhonePe pay failed for {merchant_order_id}: {response.status_code}")
            raw.setdefault("httpStatus", response.status_code)
            return CreatePaymentResult(success=False, raw=raw)

        return CreatePaymentResult(
            success=True,
            redirect_url=redirect,
            order_id=raw.get("orderId"),
            raw=raw,
        )

    async def check_status(self, merchant_order_id: str) -> GatewayStatus:
        """
        Запросить статус заказа.

        Таймаут, сетевая ошибка, пустой или не-JSON ответ дают PENDING с
        заполненным `error`. Это никогда не считается отказом в оплате.
        """
        if not merchant_order_id:
            raise ValueError("merchant_order_id is required for a status check")

        url = self._url("pg", self.STATUS_ENDPOINT.format(merchant_order_id=merchant_order_id))
        try:
            response = await self._http.get(
                url,
                params={"details": "false"},
                headers=await self._auth_headers(),
                timeout=self.status_timeout,
            )
        except httpx.TimeoutException:
            logger.warning(f"PhonePe status timeout for {merchant_order_id}")
            return transient_status("timeout")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"PhonePe status request error for {merchant_order_id}: {e}")
            return transient_status("network_error", raw={"error": str(e)})

        if response.status_code == 401:
            self._invalidate_token()

        try:
            raw = response.json()
        except ValueError:
            logger.warning(f"PhonePe status returned non-JSON body for {merchant_order_id}")
            return transient_status("EMPTY_RESPONSE")

        if not isinstance(raw, dict) or not raw:
            return transient_status("EMPTY_RESPONSE")

        logger.debug(f"PhonePe status response for {merchant_order_id}: {raw}")
        return normalize_gateway_response(
            raw,
            success=response.status_code == 200,
            extra_success=self.extra_success_states,
            extra_failure=self.extra_failure_states,
        )

    def normalize(self, raw: Any) -> GatewayStatus:
        """Нормализовать тело callback с учетом расширенных маркеров."""
        return normalize_gateway_response(
            raw,
            extra_success=self.extra_success_states,
            extra_failure=self.extra_failure_states,
        )

    def expected_callback_signature(self) -> str:
        """SHA256(username:password), как его присылает PhonePe в Authorization."""
        credentials = f"{self.callback_username}:{self.callback_password}"
        return hashlib.sha256(credentials.encode()).hexdigest()

    def verify_callback_signature(self, raw_body: bytes, signature_header: str | None) -> bool:
        """
        Проверить подпись webhook. Ничего не изменяет.

        Тело должно быть непустым, заголовок должен совпасть
        с SHA256(username:password) (допускается префикс "SHA256 ").
        Разбор тела остается вызывающему.
        """
        if not self.callback_configured:
            raise GatewayConfigurationError("PhonePe callback credentials not configured")

        if not signature_header or not raw_body:
            return False

        received = signature_header.strip()
        if received.lower().startswith("sha256 "):
            received = received[7:].strip()

        return hmac.compare_digest(received.lower(), self.expected_callback_signature())
