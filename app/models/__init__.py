"""Модели базы данных."""
from app.models.customer import Customer
from app.models.booking import Booking
from app.models.payment import Payment

__all__ = [
    "Customer",
    "Booking",
    "Payment",
]
