"""Dependencies для FastAPI."""
from fastapi import HTTPException, Request, status

from app.services.phonepe_service import PhonePeService


def get_phonepe_service(request: Request) -> PhonePeService:
    """
    Клиент PhonePe, созданный при старте приложения.

    Если ключи не настроены, любой платежный запрос завершается 500.
    """
    service = getattr(request.app.state, "phonepe", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway not configured",
        )
    return service
