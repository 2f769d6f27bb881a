"""Сервис для работы с платежами (хранилище)."""
import uuid
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.booking import Booking
from app.models.payment import (
    Payment,
    OPEN_STATUSES,
    PAYMENT_PENDING,
    PAYMENT_INITIATED,
)

logger = logging.getLogger(__name__)


class PaymentService:
    """Типизированный доступ к платежам. Бизнес-логики здесь нет.

    Методы условной записи (`transition_status`, `record_gateway_audit`,
    `attach_gateway_order`) не коммитят: транзакцией управляет вызывающий.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, payment_id: uuid.UUID, fresh: bool = False) -> Payment | None:
        """Получить платеж по ID. fresh=True перечитывает строку из БД."""
        stmt = select(Payment).where(Payment.id == payment_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_merchant_order_id(self, merchant_order_id: str) -> Payment | None:
        """Получить платеж по merchant order id шлюза."""
        stmt = select(Payment).where(Payment.merchant_order_id == merchant_order_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_customer(
        self,
        customer_id: uuid.UUID,
        status: str | None = None,
        limit: int = 20,
    ) -> list[Payment]:
        """Платежи клиента, новые первыми."""
        stmt = select(Payment).where(Payment.customer_id == customer_id)
        if status:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.order_by(Payment.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def find_stale_open(self, updated_before: datetime, limit: int = 50) -> list[Payment]:
        """Незавершенные платежи, отправленные в шлюз и давно не обновлявшиеся."""
        stmt = (
            select(Payment)
            .where(
                Payment.status.in_(OPEN_STATUSES),
                Payment.merchant_order_id.is_not(None),
                Payment.updated_at < updated_before,
            )
            .order_by(Payment.updated_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        customer_id: uuid.UUID,
        amount: Decimal,
        booking: Booking | None = None,
        due_date: date | None = None,
        notes: str | None = None,
    ) -> Payment:
        """Создать платеж в статусе pending."""
        payment = Payment(
            customer_id=customer_id,
            payfor_id=booking.id if booking else None,
            booking_snapshot=booking.snapshot() if booking else None,
            amount=amount,
            status=PAYMENT_PENDING,
            due_date=due_date,
            notes=notes,
        )
        self.db.add(payment)
        await self.db.commit()
        await self.db.refresh(payment)
        logger.info(f"Payment created: {payment.id}, amount={payment.amount}, booking={payment.payfor_id}")
        return payment

    async def attach_gateway_order(
        self,
        payment_id: uuid.UUID,
        gateway: str,
        merchant_order_id: str,
    ) -> bool:
        """
        Привязать заказ шлюза к платежу.

        Срабатывает только пока платеж в pending и merchant order id еще не задан,
        поэтому merchant order id записывается ровно один раз.
        """
        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PAYMENT_PENDING,
                Payment.merchant_order_id.is_(None),
            )
            .values(
                gateway=gateway,
                merchant_order_id=merchant_order_id,
                status=PAYMENT_INITIATED,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def transition_status(
        self,
        payment_id: uuid.UUID,
        new_status: str,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """
        Compare-and-swap по статусу.

        Обновляет платеж, только если его текущий статус все еще незавершенный.
        Возвращает False, если другой обработчик уже перевел платеж в финальный статус.
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(OPEN_STATUSES))
            .values(status=new_status, updated_at=datetime.utcnow(), **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def record_gateway_audit(
        self,
        payment_id: uuid.UUID,
        code: str | None,
        state: str | None,
        raw: dict[str, Any],
    ) -> bool:
        """Сохранить последний ответ шлюза, не трогая статус (только для незавершенных)."""
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(OPEN_STATUSES))
            .values(
                gateway_last_code=code,
                gateway_last_state=state,
                gateway_last_raw=raw,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1
