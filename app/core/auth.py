"""Dependencies для аутентификации."""
import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import decode_access_token
from app.database import get_db
from app.models.customer import Customer
from app.services.customer_service import CustomerService

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_customer(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Customer:
    """
    Проверка сессии клиента.

    Используется как dependency для эндпоинтов клиента.
    Нет токена, токен невалиден или клиент неактивен -> 401.
    """
    if credentials is None:
        raise _unauthorized("Unauthorized - No valid customer session")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    try:
        customer_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Invalid token subject")

    customer = await CustomerService(db).get(customer_id)
    if not customer or not customer.is_active:
        raise _unauthorized("Unauthorized - No valid customer session")

    return customer


async def get_current_admin(
    customer: Customer = Depends(get_current_customer),
) -> Customer:
    """Проверка прав администратора."""
    if customer.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return customer
