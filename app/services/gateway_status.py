"""Нормализация ответов платежного шлюза.

PhonePe непоследователен в том, где лежит статус: `state` (Checkout v2),
`code` и `data.state` (PG v1), `payload.state` (webhook v2), `status`
(старые webhook). Здесь все эти формы сводятся к одному закрытому набору
исходов, с которым работает сверка платежей.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

SUCCESS_MARKERS = frozenset({"PAYMENT_SUCCESS", "SUCCESS", "COMPLETED"})
FAILURE_MARKERS = frozenset({"PAYMENT_ERROR", "FAILED", "PAYMENT_DECLINED"})
PENDING_MARKERS = frozenset({"PAYMENT_PENDING", "PENDING", "EMPTY_RESPONSE"})

# Где искать состояние и код, в порядке приоритета
STATE_PATHS = (("state",), ("data", "state"), ("payload", "state"), ("status",))
CODE_PATHS = (("code",), ("data", "code"), ("payload", "code"), ("responseCode",))
MERCHANT_ORDER_ID_PATHS = (
    ("payload", "merchantOrderId"),
    ("data", "merchantTransactionId"),
    ("data", "merchantOrderId"),
    ("merchantOrderId",),
    ("merchantTransactionId",),
)
MESSAGE_PATHS = (
    ("payload", "errorCode"),
    ("data", "responseMessage"),
    ("responseMessage",),
    ("message",),
)


class GatewayStatusKind(str, Enum):
    """Исход запроса статуса."""

    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class GatewayStatus:
    """Нормализованный ответ шлюза.

    `error` заполняется, только если сам запрос статуса не удался
    (таймаут, сеть, пустой ответ). Такой ответ всегда PENDING.
    """

    kind: GatewayStatusKind
    code: str | None = None
    state: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    success: bool = False
    error: str | None = None

    @property
    def is_success(self) -> bool:
        return self.kind == GatewayStatusKind.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.kind == GatewayStatusKind.FAILED

    @property
    def is_transient_error(self) -> bool:
        return self.error is not None

    @property
    def normalized_state(self) -> str | None:
        """Состояние в терминах PhonePe: PAYMENT_SUCCESS / PAYMENT_PENDING / PAYMENT_ERROR."""
        if self.kind == GatewayStatusKind.SUCCESS:
            return "PAYMENT_SUCCESS"
        if self.kind == GatewayStatusKind.FAILED:
            return "PAYMENT_ERROR"
        if self.kind == GatewayStatusKind.PENDING:
            return "PAYMENT_PENDING"
        return self.state or self.code


def _dig(raw: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = raw
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _first_string(raw: dict[str, Any], paths: Iterable[tuple[str, ...]]) -> str | None:
    for path in paths:
        value = _dig(raw, path)
        if isinstance(value, str) and value:
            return value
    return None


def _classify_marker(
    marker: Any,
    success_markers: frozenset[str],
    failure_markers: frozenset[str],
) -> GatewayStatusKind | None:
    if not isinstance(marker, str) or not marker:
        return None
    marker = marker.upper()
    if marker in success_markers:
        return GatewayStatusKind.SUCCESS
    if marker in failure_markers:
        return GatewayStatusKind.FAILED
    if marker in PENDING_MARKERS:
        return GatewayStatusKind.PENDING
    return None


def classify(
    raw: Any,
    extra_success: Iterable[str] = (),
    extra_failure: Iterable[str] = (),
) -> GatewayStatusKind:
    """Определить исход по сырому ответу шлюза.

    Сначала смотрим на поля состояния (они точнее), затем на коды.
    Первое распознанное значение побеждает. Ничего не распознали -> UNKNOWN.
    """
    if not isinstance(raw, dict) or not raw:
        return GatewayStatusKind.PENDING

    success_markers = SUCCESS_MARKERS | {m.upper() for m in extra_success}
    failure_markers = FAILURE_MARKERS | {m.upper() for m in extra_failure}

    for path in (*STATE_PATHS, *CODE_PATHS):
        kind = _classify_marker(_dig(raw, path), success_markers, failure_markers)
        if kind is not None:
            return kind
    return GatewayStatusKind.UNKNOWN


def normalize_gateway_response(
    raw: Any,
    success: bool = True,
    extra_success: Iterable[str] = (),
    extra_failure: Iterable[str] = (),
) -> GatewayStatus:
    """Свести любой наблюдавшийся формат ответа к GatewayStatus."""
    if not isinstance(raw, dict) or not raw:
        return transient_status("EMPTY_RESPONSE", raw={} if not isinstance(raw, dict) else raw)

    return GatewayStatus(
        kind=classify(raw, extra_success, extra_failure),
        code=_first_string(raw, CODE_PATHS),
        state=_first_string(raw, STATE_PATHS),
        raw=raw,
        success=success,
    )


def transient_status(reason: str, raw: dict[str, Any] | None = None) -> GatewayStatus:
    """Ответ для неудачного запроса статуса: платеж остается в ожидании."""
    return GatewayStatus(
        kind=GatewayStatusKind.PENDING,
        code=reason if reason == "EMPTY_RESPONSE" else None,
        state="PENDING",
        raw=raw or {"error": reason},
        success=False,
        error=reason,
    )


def extract_merchant_order_id(raw: Any) -> str | None:
    """Найти merchant order id в теле callback (v2 или v1)."""
    if not isinstance(raw, dict):
        return None
    return _first_string(raw, MERCHANT_ORDER_ID_PATHS)


def extract_failure_message(raw: Any) -> str | None:
    """Текст ошибки от шлюза, если он есть."""
    if not isinstance(raw, dict):
        return None
    return _first_string(raw, MESSAGE_PATHS)
