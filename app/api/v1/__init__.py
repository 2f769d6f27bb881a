"""API v1 роутеры."""
from fastapi import APIRouter

from app.api.v1 import auth, payments

router = APIRouter()

# Подключаем все роутеры
router.include_router(auth.router, prefix="/auth", tags=["auth"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
