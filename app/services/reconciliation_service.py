"""Сверка платежей со шлюзом.

Один и тот же алгоритм вызывается из четырех мест: опрос клиентом,
webhook от PhonePe, ручная сверка администратором и периодическая задача.
Все они могут выполняться одновременно для одного платежа, поэтому
финальный статус записывается только условным UPDATE (compare-and-swap
по статусу), а бронирование меняется в той же транзакции.
"""
import asyncio
import uuid
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.booking import Booking, BOOKING_CONFIRMED, BOOKING_CANCELLED
from app.models.payment import Payment, PAYMENT_COMPLETED, PAYMENT_FAILED
from app.services.booking_service import BookingService
from app.services.gateway_status import (
    GatewayStatus,
    GatewayStatusKind,
    extract_failure_message,
    transient_status,
)
from app.services.payment_service import PaymentService
from app.services.phonepe_service import GatewayConfigurationError, PhonePeService

logger = logging.getLogger(__name__)


class ReconcileTrigger(str, Enum):
    """Кто запустил сверку."""

    POLL = "poll"
    CALLBACK = "callback"
    MANUAL = "manual"
    SWEEP = "sweep"


class ReconcileOutcome(str, Enum):
    """Результат сверки."""

    UPDATED = "updated"  # Платеж переведен в completed/failed
    UNCHANGED = "unchanged"  # Шлюз говорит "еще в процессе"
    ALREADY_TERMINAL = "already_terminal"  # Платеж уже финальный, шлюз не спрашивали
    LOST_RACE = "lost_race"  # Другой обработчик успел первым
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    NOT_INITIATED = "not_initiated"  # Нет merchant order id
    TRANSIENT_GATEWAY_ERROR = "transient_gateway_error"


@dataclass
class ReconcileResult:
    """Результат сверки одного платежа."""

    outcome: ReconcileOutcome
    payment: Payment | None = None
    gateway: GatewayStatus | None = None
    booking: Booking | None = None
    booking_changed: bool = False
    previous_status: str | None = None

    @property
    def status(self) -> str | None:
        return self.payment.status if self.payment else None


# Исход шлюза -> (статус платежа, статус бронирования)
TRANSITIONS = {
    GatewayStatusKind.SUCCESS: (PAYMENT_COMPLETED, BOOKING_CONFIRMED),
    GatewayStatusKind.FAILED: (PAYMENT_FAILED, BOOKING_CANCELLED),
}


class ReconciliationService:
    """Сервис сверки платежей."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PhonePeService | None,
        status_timeout: float | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.status_timeout = status_timeout or settings.phonepe_status_timeout
        self.payments = PaymentService(db)
        self.bookings = BookingService(db)

    async def reconcile_for_customer(
        self,
        payment_id: uuid.UUID,
        customer_id: uuid.UUID,
    ) -> ReconcileResult:
        """Опрос статуса клиентом: только свой платеж."""
        payment = await self.payments.get(payment_id)
        if not payment:
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)
        if payment.customer_id != customer_id:
            logger.warning(f"Customer {customer_id} tried to reconcile payment {payment_id} of another customer")
            return ReconcileResult(ReconcileOutcome.FORBIDDEN)
        return await self.reconcile(payment, ReconcileTrigger.POLL)

    async def reconcile_by_reference(
        self,
        payment_id: uuid.UUID | None = None,
        merchant_order_id: str | None = None,
        trigger: ReconcileTrigger = ReconcileTrigger.MANUAL,
    ) -> ReconcileResult:
        """Ручная сверка по ID платежа или по merchant order id."""
        if payment_id is None and not merchant_order_id:
            raise ValueError("payment_id or merchant_order_id is required")

        if payment_id is not None:
            payment = await self.payments.get(payment_id)
        else:
            payment = await self.payments.get_by_merchant_order_id(merchant_order_id)

        if not payment:
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)
        return await self.reconcile(payment, trigger)

    async def apply_callback(self, merchant_order_id: str, observed: GatewayStatus) -> ReconcileResult:
        """
        Обработать проверенный webhook.

        Статус берется из тела callback, повторно шлюз не опрашиваем.
        """
        payment = await self.payments.get_by_merchant_order_id(merchant_order_id)
        if not payment:
            logger.warning(f"⚠️ Callback for unknown merchant order id: {merchant_order_id}")
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)
        return await self.reconcile(payment, ReconcileTrigger.CALLBACK, observed=observed)

    async def reconcile(
        self,
        payment: Payment,
        trigger: ReconcileTrigger,
        observed: GatewayStatus | None = None,
    ) -> ReconcileResult:
        """
        Сверить платеж со шлюзом.

        1. Финальный платеж возвращается как есть, без запроса в шлюз.
        2. Без merchant order id сверять нечего.
        3. Статус берется из callback или запрашивается у шлюза.
        4. Успех -> completed + бронирование confirmed,
           ошибка -> failed + бронирование cancelled,
           иначе сохраняем только ответ шлюза.
        5. Переход пишется условно: только если платеж все еще незавершенный.
        """
        previous = payment.status
        logger.info(f"Reconciling payment {payment.id} ({trigger.value}), current status: {previous}")

        if payment.is_terminal:
            logger.info(f"Payment {payment.id} already '{previous}', skipping gateway")
            return ReconcileResult(
                ReconcileOutcome.ALREADY_TERMINAL,
                payment=payment,
                previous_status=previous,
            )

        if not payment.merchant_order_id or not payment.gateway:
            return ReconcileResult(
                ReconcileOutcome.NOT_INITIATED,
                payment=payment,
                previous_status=previous,
            )

        if observed is None:
            observed = await self._query_gateway(payment)

        if observed.is_transient_error:
            logger.warning(
                f"Gateway status unavailable for payment {payment.id} ({observed.error}), keeping '{previous}'"
            )
            return ReconcileResult(
                ReconcileOutcome.TRANSIENT_GATEWAY_ERROR,
                payment=payment,
                gateway=observed,
                previous_status=previous,
            )

        logger.info(
            f"Gateway says {observed.kind.value} for payment {payment.id} "
            f"(code={observed.code}, state={observed.state})"
        )

        if observed.kind not in TRANSITIONS:
            return await self._record_pending(payment, observed, previous)

        target_status, booking_status = TRANSITIONS[observed.kind]
        values = {
            "gateway_last_code": observed.code,
            "gateway_last_state": observed.state,
            "gateway_last_raw": observed.raw,
        }
        if target_status == PAYMENT_COMPLETED:
            values["payment_date"] = datetime.utcnow()
        else:
            message = extract_failure_message(observed.raw)
            if message:
                values["notes"] = f"{payment.notes or ''}\n\nPayment failed: {message}".strip()

        committed = await self.payments.transition_status(payment.id, target_status, values)
        if not committed:
            await self.db.rollback()
            winner = await self.payments.get(payment.id, fresh=True)
            logger.warning(
                f"Payment {payment.id}: lost race committing '{target_status}', "
                f"current status is '{winner.status if winner else None}'"
            )
            return ReconcileResult(
                ReconcileOutcome.LOST_RACE,
                payment=winner,
                gateway=observed,
                previous_status=previous,
            )

        booking, booking_changed = await self.bookings.sync_booking_status(payment, booking_status)
        await self.db.commit()

        payment = await self.payments.get(payment.id, fresh=True)
        logger.info(f"✅ Payment {payment.id}: '{previous}' -> '{payment.status}' ({trigger.value})")
        return ReconcileResult(
            ReconcileOutcome.UPDATED,
            payment=payment,
            gateway=observed,
            booking=booking,
            booking_changed=booking_changed,
            previous_status=previous,
        )

    async def _record_pending(
        self,
        payment: Payment,
        observed: GatewayStatus,
        previous: str,
    ) -> ReconcileResult:
        """Шлюз не дал финального ответа: сохраняем ответ для аудита."""
        recorded = await self.payments.record_gateway_audit(
            payment.id, observed.code, observed.state, observed.raw
        )
        await self.db.commit()
        fresh = await self.payments.get(payment.id, fresh=True)

        if not recorded:
            logger.warning(f"Payment {payment.id} finished concurrently, audit not recorded")
            return ReconcileResult(
                ReconcileOutcome.LOST_RACE,
                payment=fresh,
                gateway=observed,
                previous_status=previous,
            )
        return ReconcileResult(
            ReconcileOutcome.UNCHANGED,
            payment=fresh,
            gateway=observed,
            previous_status=previous,
        )

    async def _query_gateway(self, payment: Payment) -> GatewayStatus:
        """Запросить статус у шлюза с общим таймаутом."""
        if self.gateway is None:
            raise GatewayConfigurationError("Payment gateway not configured")

        try:
            return await asyncio.wait_for(
                self.gateway.check_status(payment.merchant_order_id),
                timeout=self.status_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Gateway status check timed out for payment {payment.id}")
            return transient_status("timeout")
        except GatewayConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Gateway status check failed for payment {payment.id}: {e}", exc_info=True)
            return transient_status("gateway_error", raw={"error": str(e)})

    async def sweep(self, min_age_minutes: int, limit: int) -> dict[str, int]:
        """
        Сверить зависшие незавершенные платежи.

        Ошибка по одному платежу логируется и не останавливает остальные.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=min_age_minutes)
        stale = await self.payments.find_stale_open(cutoff, limit)
        payment_ids = [payment.id for payment in stale]
        logger.info(f"Reconciliation sweep: {len(payment_ids)} stale payments")

        counts: Counter[str] = Counter()
        for payment_id in payment_ids:
            try:
                payment = await self.payments.get(payment_id, fresh=True)
                if not payment:
                    continue
                result = await self.reconcile(payment, ReconcileTrigger.SWEEP)
                counts[result.outcome.value] += 1
            except GatewayConfigurationError:
                raise
            except Exception as e:
                logger.error(f"Sweep failed for payment {payment_id}: {e}", exc_info=True)
                await self.db.rollback()
                counts["error"] += 1
        return dict(counts)
