"""Авторизация клиентов."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.database import get_db
from app.core.rate_limit import enforce_rate_limit
from app.core.security import create_access_token
from app.services.customer_service import CustomerService

router = APIRouter()


class LoginRequest(BaseModel):
    """Запрос на авторизацию."""

    email: str
    password: str


class LoginResponse(BaseModel):
    """Ответ на авторизацию."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str
    token_type: str = "bearer"


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    _throttle: None = Depends(enforce_rate_limit),
    db: AsyncSession = Depends(get_db),
):
    """
    Вход клиента по email и паролю.

    Возвращает bearer-токен для эндпоинтов платежей.
    """
    customer_service = CustomerService(db)

    customer = await customer_service.verify_customer_password(request.email, request.password)
    if not customer:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    if not customer.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )

    await customer_service.mark_login(customer)

    access_token = create_access_token(str(customer.id), customer.role)
    return LoginResponse(access_token=access_token)
