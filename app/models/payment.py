"""Модель платежа."""
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Text, Numeric, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

PAYMENT_PENDING = "pending"
PAYMENT_INITIATED = "initiated"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_INITIATED,
    PAYMENT_PROCESSING,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_CANCELLED,
    PAYMENT_REFUNDED,
)

# Статусы, из которых возможен автоматический переход
OPEN_STATUSES = (PAYMENT_PENDING, PAYMENT_INITIATED, PAYMENT_PROCESSING)
# Финальные статусы: автоматическая сверка их никогда не перезаписывает
TERMINAL_STATUSES = (PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_REFUNDED)

GATEWAY_PHONEPE = "phonepe"


class Payment(Base):
    """Модель платежа за аренду/бронирование."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    payfor_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("bookings.id"), nullable=True, index=True)
    booking_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)  # В рупиях, пайсы только на границе со шлюзом
    status: Mapped[str] = mapped_column(String, nullable=False, default=PAYMENT_PENDING, index=True)

    # Данные шлюза
    gateway: Mapped[str | None] = mapped_column(String, nullable=True)  # phonepe
    merchant_order_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True, index=True)
    gateway_last_code: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_last_state: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_last_raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payment_date: Mapped[datetime | None] = mapped_column(nullable=True)  # Только при переходе в completed
    due_date: Mapped[date | None] = mapped_column(nullable=True)
    late_fees: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    utility_charges: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    booking: Mapped["Booking"] = relationship("Booking", back_populates="payments")

    @property
    def is_terminal(self) -> bool:
        """Платеж в финальном статусе."""
        return self.status in TERMINAL_STATUSES

    @property
    def booking_id(self) -> uuid.UUID | None:
        """ID бронирования: из связи или из снимка."""
        if self.payfor_id:
            return self.payfor_id
        snapshot_id = (self.booking_snapshot or {}).get("id")
        if not snapshot_id:
            return None
        try:
            return uuid.UUID(str(snapshot_id))
        except ValueError:
            return None
