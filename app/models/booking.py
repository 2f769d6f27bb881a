"""Модель бронирования."""
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Text, Numeric, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

BOOKING_PENDING = "pending"
BOOKING_CONFIRMED = "confirmed"
BOOKING_CANCELLED = "cancelled"
BOOKING_COMPLETED = "completed"

BOOKING_STATUSES = (BOOKING_PENDING, BOOKING_CONFIRMED, BOOKING_CANCELLED, BOOKING_COMPLETED)


class Booking(Base):
    """Модель бронирования комнаты."""

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("customers.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=BOOKING_PENDING)  # pending / confirmed / cancelled / completed
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)  # Стоимость в рупиях
    start_date: Mapped[date | None] = mapped_column(nullable=True)
    end_date: Mapped[date | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    customer: Mapped["Customer"] = relationship("Customer")
    payments: Mapped[list["Payment"]] = relationship("Payment", back_populates="booking")

    def snapshot(self) -> dict:
        """Денормализованная копия бронирования для платежа."""
        return {
            "id": str(self.id),
            "status": self.status,
            "price": str(self.price),
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }
