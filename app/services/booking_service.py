"""Сервис для работы с бронированиями."""
import uuid
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.booking import (
    Booking,
    BOOKING_PENDING,
    BOOKING_CONFIRMED,
    BOOKING_CANCELLED,
)
from app.models.payment import Payment

logger = logging.getLogger(__name__)


class BookingService:
    """Сервис для работы с бронированиями."""

    # Из каких статусов бронирование может перейти при финальном статусе платежа.
    # Успешная повторная оплата подтверждает бронирование, отмененное прошлой попыткой.
    # Упавший платеж за очередной месяц не отменяет уже подтвержденное проживание.
    SYNC_FROM = {
        BOOKING_CONFIRMED: (BOOKING_PENDING, BOOKING_CANCELLED),
        BOOKING_CANCELLED: (BOOKING_PENDING,),
    }

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, booking_id: uuid.UUID, fresh: bool = False) -> Booking | None:
        """Получить бронирование по ID."""
        stmt = select(Booking).where(Booking.id == booking_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def sync_booking_status(self, payment: Payment, outcome: str) -> tuple[Booking | None, bool]:
        """
        Применить финальный статус платежа к связанному бронированию.

        Бронирование ищется по payfor_id, а если его нет, то по снимку
        booking_snapshot. Отсутствующее бронирование только логируется:
        статус платежа важнее статуса бронирования.

        Не коммитит: вызывается внутри транзакции, которая переводит платеж.

        Returns:
            (бронирование или None, изменился ли статус)
        """
        if outcome not in self.SYNC_FROM:
            raise ValueError(f"Unsupported booking outcome: {outcome}")

        booking_id = payment.booking_id
        if not booking_id:
            logger.info(f"Payment {payment.id} has no linked booking, nothing to sync")
            return None, False

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.status.in_(self.SYNC_FROM[outcome]))
            .values(status=outcome, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        changed = result.rowcount == 1

        booking = await self.get(booking_id, fresh=True)
        if not booking:
            logger.warning(f"⚠️ Booking {booking_id} for payment {payment.id} not found, skipping sync")
            return None, False

        if changed:
            logger.info(f"Booking {booking.id} -> {outcome} (payment {payment.id})")
        else:
            logger.info(f"Booking {booking.id} left as '{booking.status}' (payment {payment.id} -> {outcome})")
        return booking, changed
