"""Сервис для работы с клиентами."""
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import uuid

from app.core.security import verify_password, get_password_hash
from app.models.customer import Customer


class CustomerService:
    """Сервис для работы с клиентами."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, customer_id: uuid.UUID) -> Customer | None:
        """Получить клиента по ID."""
        return await self.db.get(Customer, customer_id)

    async def get_by_email(self, email: str) -> Customer | None:
        """Получить клиента по email."""
        stmt = select(Customer).where(Customer.email == email.strip().lower())
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def verify_customer_password(self, email: str, password: str) -> Customer | None:
        """
        Проверить пароль клиента.

        Возвращает Customer если пароль верный, иначе None.
        """
        customer = await self.get_by_email(email)
        if not customer or not customer.password_hash:
            return None

        if verify_password(password, customer.password_hash):
            return customer

        return None

    async def mark_login(self, customer: Customer) -> None:
        """Обновить время последнего входа."""
        customer.last_login = datetime.utcnow()
        await self.db.commit()

    async def create_customer(
        self,
        email: str,
        password: str,
        name: str | None = None,
        phone: str | None = None,
        role: str = "customer",
    ) -> Customer:
        """Создать нового клиента."""
        customer = Customer(
            email=email.strip().lower(),
            password_hash=get_password_hash(password),
            name=name,
            phone=phone,
            role=role,
        )
        self.db.add(customer)
        await self.db.commit()
        await self.db.refresh(customer)
        return customer
