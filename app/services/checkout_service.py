"""Сервис для создания checkout-сессий PhonePe."""
import time
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.payment import Payment, GATEWAY_PHONEPE, PAYMENT_PENDING
from app.services.payment_service import PaymentService
from app.services.phonepe_service import PhonePeService

logger = logging.getLogger(__name__)


class CheckoutConflictError(ValueError):
    """Платеж нельзя отправить в шлюз в его текущем состоянии."""


class CheckoutGatewayError(ValueError):
    """Шлюз отказался создавать заказ."""

    def __init__(self, message: str, raw: dict[str, Any]):
        super().__init__(message)
        self.raw = raw


@dataclass
class CheckoutSession:
    """Созданная checkout-сессия."""

    payment: Payment
    merchant_order_id: str
    redirect_url: str


def to_paise(amount: Decimal) -> int:
    """Рупии -> пайсы. Суммы хранятся в рупиях, пайсы нужны только шлюзу."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_merchant_order_id(payment: Payment) -> str:
    """PAY-<hex id платежа>-<unix ms>, не длиннее 63 символов."""
    return f"PAY-{payment.id.hex}-{int(time.time() * 1000)}"


class CheckoutService:
    """Отправка платежа в PhonePe."""

    def __init__(self, db: AsyncSession, gateway: PhonePeService):
        self.db = db
        self.gateway = gateway
        self.payments = PaymentService(db)

    def _redirect_url(self, payment: Payment) -> str:
        if not settings.site_url:
            raise ValueError("SITE_URL not configured")
        return (
            f"{settings.site_url.rstrip('/')}/dashboard/rent/payments/success"
            f"?paymentId={quote(str(payment.id))}"
        )

    async def initiate(self, payment: Payment) -> CheckoutSession:
        """
        Создать заказ в PhonePe и привязать его к платежу.

        merchant order id записывается ровно один раз: повторная инициация
        уже отправленного платежа дает CheckoutConflictError.
        """
        if payment.is_terminal:
            raise CheckoutConflictError(f"payment already {payment.status}")
        if payment.merchant_order_id or payment.status != PAYMENT_PENDING:
            raise CheckoutConflictError("payment already initiated with gateway")

        redirect_url = self._redirect_url(payment)
        merchant_order_id = build_merchant_order_id(payment)
        amount_paise = to_paise(payment.amount)

        result = await self.gateway.create_payment(
            amount_paise=amount_paise,
            merchant_order_id=merchant_order_id,
            redirect_url=redirect_url,
        )
        if not result.success or not result.redirect_url:
            logger.error(f"❌ PhonePe refused order for payment {payment.id}: {result.raw}")
            raise CheckoutGatewayError("Failed to get payment URL from PhonePe", result.raw)

        attached = await self.payments.attach_gateway_order(payment.id, GATEWAY_PHONEPE, merchant_order_id)
        if not attached:
            await self.db.rollback()
            raise CheckoutConflictError("payment already initiated with gateway")

        await self.db.commit()
        payment = await self.payments.get(payment.id, fresh=True)
        logger.info(f"✅ Payment {payment.id} initiated with PhonePe: {merchant_order_id}")

        return CheckoutSession(
            payment=payment,
            merchant_order_id=merchant_order_id,
            redirect_url=result.redirect_url,
        )
