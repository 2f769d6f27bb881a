"""Payments API."""
import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_admin, get_current_customer
from app.core.dependencies import get_phonepe_service
from app.core.rate_limit import enforce_rate_limit
from app.database import get_db
from app.models.customer import Customer
from app.models.payment import Payment, PAYMENT_STATUSES
from app.services.booking_service import BookingService
from app.services.checkout_service import (
    CheckoutConflictError,
    CheckoutGatewayError,
    CheckoutService,
)
from app.services.gateway_status import extract_merchant_order_id
from app.services.payment_service import PaymentService
from app.services.phonepe_service import GatewayConfigurationError, PhonePeService
from app.services.reconciliation_service import (
    ReconcileOutcome,
    ReconcileResult,
    ReconciliationService,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class CamelModel(BaseModel):
    """Модель с camelCase в JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentInfo(CamelModel):
    """Краткая информация о платеже."""

    id: uuid.UUID
    status: str
    amount: float
    payment_date: datetime | None = None
    merchant_order_id: str | None = None


class PaymentDetail(PaymentInfo):
    """Платеж целиком."""

    booking_id: uuid.UUID | None = None
    gateway: str | None = None
    due_date: date | None = None
    late_fees: float = 0
    utility_charges: float = 0
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class GatewayInfo(CamelModel):
    """Последний ответ шлюза."""

    code: str | None = None
    state: str | None = None


class PaymentStatusResponse(CamelModel):
    """Ответ на запрос статуса."""

    success: bool = True
    status: str
    payment: PaymentInfo
    gateway: GatewayInfo | None = None


class BookingInfo(CamelModel):
    """Бронирование, связанное с платежом."""

    id: uuid.UUID
    status: str


class CompletePaymentRequest(CamelModel):
    """Запрос ручной сверки."""

    payment_id: uuid.UUID | None = None
    merchant_transaction_id: str | None = None

    @model_validator(mode="after")
    def check_reference(self):
        if self.payment_id is None and not self.merchant_transaction_id:
            raise ValueError("paymentId or merchantTransactionId is required")
        return self


class CompletePaymentResponse(PaymentStatusResponse):
    """Ответ ручной сверки."""

    booking: BookingInfo | None = None
    is_success: bool = False
    is_failed: bool = False


class CreatePaymentRequest(CamelModel):
    """Запрос на создание платежа."""

    booking_id: uuid.UUID
    amount: Decimal | None = Field(default=None, gt=0)
    due_date: date | None = None
    notes: str | None = None


class InitiatePaymentResponse(CamelModel):
    """Ответ на отправку платежа в шлюз."""

    success: bool = True
    redirect_url: str
    merchant_order_id: str
    payment: PaymentInfo


def _payment_info(payment: Payment) -> PaymentInfo:
    return PaymentInfo(
        id=payment.id,
        status=payment.status,
        amount=float(payment.amount),
        payment_date=payment.payment_date,
        merchant_order_id=payment.merchant_order_id,
    )


def _payment_detail(payment: Payment) -> PaymentDetail:
    return PaymentDetail(
        id=payment.id,
        status=payment.status,
        amount=float(payment.amount),
        payment_date=payment.payment_date,
        merchant_order_id=payment.merchant_order_id,
        booking_id=payment.booking_id,
        gateway=payment.gateway,
        due_date=payment.due_date,
        late_fees=float(payment.late_fees or 0),
        utility_charges=float(payment.utility_charges or 0),
        notes=payment.notes,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


def _raise_for_outcome(result: ReconcileResult) -> None:
    """Перевести результат сверки в HTTP ошибку, если это ошибка."""
    if result.outcome == ReconcileOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if result.outcome == ReconcileOutcome.FORBIDDEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Payment belongs to another customer")
    if result.outcome == ReconcileOutcome.NOT_INITIATED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="payment not initiated with gateway")


def _status_response(result: ReconcileResult) -> PaymentStatusResponse:
    gateway = None
    if result.gateway is not None and not result.gateway.is_transient_error:
        gateway = GatewayInfo(code=result.gateway.code, state=result.gateway.state)
    return PaymentStatusResponse(
        status=result.payment.status,
        payment=_payment_info(result.payment),
        gateway=gateway,
    )


@router.post("", response_model=PaymentDetail, status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: CreatePaymentRequest,
    _throttle: None = Depends(enforce_rate_limit),
    customer: Customer = Depends(get_current_customer),
    db: AsyncSession = Depends(get_db),
):
    """Создать платеж (pending) за свое бронирование."""
    booking = await BookingService(db).get(request.booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    if booking.customer_id != customer.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Booking belongs to another customer")

    payment = await PaymentService(db).create(
        customer_id=customer.id,
        amount=request.amount or booking.price,
        booking=booking,
        due_date=request.due_date,
        notes=request.notes,
    )
    return _payment_detail(payment)


@router.get("", response_model=list[PaymentDetail])
async def list_payments(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    _throttle: None = Depends(enforce_rate_limit),
    customer: Customer = Depends(get_current_customer),
    db: AsyncSession = Depends(get_db),
):
    """Платежи текущего клиента."""
    if status_filter and status_filter not in PAYMENT_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status: {status_filter}")
    payments = await PaymentService(db).list_for_customer(customer.id, status=status_filter, limit=limit)
    return [_payment_detail(payment) for payment in payments]


@router.post("/gateway/complete", response_model=CompletePaymentResponse)
async def complete_payment(
    request: CompletePaymentRequest,
    admin: Customer = Depends(get_current_admin),
    gateway: PhonePeService = Depends(get_phonepe_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Ручная сверка платежа (для администратора).

    Нужна для платежей, зависших в pending после потерянного webhook.
    """
    logger.info(
        f"Manual reconciliation by {admin.id}: payment={request.payment_id}, "
        f"merchant_transaction_id={request.merchant_transaction_id}"
    )
    service = ReconciliationService(db, gateway)
    try:
        result = await service.reconcile_by_reference(
            payment_id=request.payment_id,
            merchant_order_id=request.merchant_transaction_id,
        )
    except GatewayConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    _raise_for_outcome(result)

    base = _status_response(result)
    booking = None
    if result.booking is not None:
        booking = BookingInfo(id=result.booking.id, status=result.booking.status)
    return CompletePaymentResponse(
        **base.model_dump(),
        booking=booking,
        is_success=bool(result.gateway and result.gateway.is_success),
        is_failed=bool(result.gateway and result.gateway.is_failed),
    )


@router.post("/gateway/callback")
async def phonepe_callback(
    request: Request,
    gateway: PhonePeService = Depends(get_phonepe_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Webhook от PhonePe.

    Сначала проверяется подпись, без нее ничего не меняется. Любой принятый
    callback получает 200, иначе PhonePe будет повторять доставку.
    """
    body = await request.body()
    signature = request.headers.get("Authorization") or request.headers.get("X-VERIFY")
    logger.info(f"=== PhonePe callback received, {len(body)} bytes ===")

    try:
        valid = gateway.verify_callback_signature(body, signature)
    except GatewayConfigurationError as e:
        logger.error(f"❌ Callback rejected: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if not valid:
        logger.error("❌ Invalid PhonePe callback signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        event_data = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(event_data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    merchant_order_id = extract_merchant_order_id(event_data)
    if not merchant_order_id:
        logger.error("❌ Callback without merchant order id")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing merchantOrderId")

    logger.debug(f"Callback payload: {event_data}")
    observed = gateway.normalize(event_data)

    result = await ReconciliationService(db, gateway).apply_callback(merchant_order_id, observed)
    if result.outcome == ReconcileOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    logger.info(f"✅ Callback processed for {merchant_order_id}: {result.outcome.value}, status={result.status}")
    return {"success": True, "status": result.status}


@router.get("/{payment_id}", response_model=PaymentDetail)
async def get_payment(
    payment_id: uuid.UUID,
    _throttle: None = Depends(enforce_rate_limit),
    customer: Customer = Depends(get_current_customer),
    db: AsyncSession = Depends(get_db),
):
    """Платеж текущего клиента (только локальные данные)."""
    payment = await PaymentService(db).get(payment_id)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if payment.customer_id != customer.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Payment belongs to another customer")
    return _payment_detail(payment)


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    payment_id: uuid.UUID,
    _throttle: None = Depends(enforce_rate_limit),
    customer: Customer = Depends(get_current_customer),
    gateway: PhonePeService = Depends(get_phonepe_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Статус платежа со сверкой в PhonePe.

    200 означает, что проверка статуса удалась, а не что платеж прошел:
    упавший платеж тоже возвращается с 200 и status=failed.
    """
    service = ReconciliationService(db, gateway)
    try:
        result = await service.reconcile_for_customer(payment_id, customer.id)
    except GatewayConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    _raise_for_outcome(result)
    return _status_response(result)


@router.post("/{payment_id}/initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    payment_id: uuid.UUID,
    _throttle: None = Depends(enforce_rate_limit),
    customer: Customer = Depends(get_current_customer),
    gateway: PhonePeService = Depends(get_phonepe_service),
    db: AsyncSession = Depends(get_db),
):
    """Отправить платеж в PhonePe и получить ссылку на оплату."""
    payment = await PaymentService(db).get(payment_id)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if payment.customer_id != customer.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Payment belongs to another customer")

    try:
        session = await CheckoutService(db, gateway).initiate(payment)
    except CheckoutConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except CheckoutGatewayError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": str(e), "details": e.raw},
        )
    except ValueError as e:
        logger.error(f"Cannot initiate payment {payment_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return InitiatePaymentResponse(
        redirect_url=session.redirect_url,
        merchant_order_id=session.merchant_order_id,
        payment=_payment_info(session.payment),
    )
