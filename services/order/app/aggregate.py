"""
Order Service — 注文集約 (Order Aggregate)

注文には独立した 2 つの状態軸がある。

    status (配送):
        PENDING → PROCESSING → COMPLETED
        PENDING → CANCELLED
    payment_status (決済):
        PENDING → PAID → REFUNDED
        PENDING → CANCELLED

COMPLETED / CANCELLED / REFUNDED は終端。これ以外の遷移は存在しない。
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from .results import ErrorCode, OrderError


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class DeliverySlot(str, Enum):
    MORNING = "10-14"
    AFTERNOON = "14-18"
    EVENING = "18-21"
    NIGHT = "21-00"


STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.CANCELLED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition_status(current: OrderStatus, target: OrderStatus) -> bool:
    return target in STATUS_TRANSITIONS[current]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


def status_transition_error(current: OrderStatus, target: OrderStatus) -> OrderError | None:
    if can_transition_status(current, target):
        return None
    return OrderError(
        ErrorCode.INVALID_TRANSITION,
        f"Order status cannot move from {current.value} to {target.value}",
        {"axis": "status", "from": current.value, "to": target.value},
    )


def payment_transition_error(current: PaymentStatus, target: PaymentStatus) -> OrderError | None:
    if can_transition_payment(current, target):
        return None
    return OrderError(
        ErrorCode.INVALID_TRANSITION,
        f"Payment status cannot move from {current.value} to {target.value}",
        {"axis": "payment_status", "from": current.value, "to": target.value},
    )


def as_utc(value: datetime | None) -> datetime | None:
    """タイムゾーンを保持しない DB (SQLite) から読んだ値を UTC として扱う。"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class OrderItem:
    product_id: int
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @classmethod
    def from_row(cls, row) -> "OrderItem":
        return cls(
            product_id=row.product_id,
            quantity=row.quantity,
            unit_price=as_decimal(row.unit_price),
        )


@dataclass(frozen=True)
class Order:
    """
    注文。total_amount は作成時の明細から一度だけ計算し、
    以後は商品価格が変わっても再計算しない。
    """

    id: str
    user_id: int
    address_id: int | None
    delivery_date: date | None
    delivery_time_slot: DeliverySlot | None
    total_amount: Decimal
    status: OrderStatus
    payment_status: PaymentStatus
    gateway_invoice_id: str | None
    gateway_payment_id: str | None
    invoice_expires_at: datetime | None
    invoice_qr_text: str | None
    paid_at: datetime | None
    receipt_id: str | None
    created_at: datetime
    updated_at: datetime
    items: tuple[OrderItem, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row, items=()) -> "Order":
        return cls(
            id=row.id,
            user_id=row.user_id,
            address_id=row.address_id,
            delivery_date=row.delivery_date,
            delivery_time_slot=DeliverySlot(row.delivery_time_slot) if row.delivery_time_slot else None,
            total_amount=as_decimal(row.total_amount),
            status=OrderStatus(row.status),
            payment_status=PaymentStatus(row.payment_status),
            gateway_invoice_id=row.gateway_invoice_id,
            gateway_payment_id=row.gateway_payment_id,
            invoice_expires_at=as_utc(row.invoice_expires_at),
            invoice_qr_text=row.invoice_qr_text,
            paid_at=as_utc(row.paid_at),
            receipt_id=row.receipt_id,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            items=tuple(items),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "address_id": self.address_id,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "delivery_time_slot": self.delivery_time_slot.value if self.delivery_time_slot else None,
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "gateway_invoice_id": self.gateway_invoice_id,
            "gateway_payment_id": self.gateway_payment_id,
            "invoice_expires_at": self.invoice_expires_at.isoformat() if self.invoice_expires_at else None,
            "invoice_qr_text": self.invoice_qr_text,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "receipt_id": self.receipt_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "items": [
                {
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "unit_price": str(item.unit_price),
                }
                for item in self.items
            ],
        }


@dataclass(frozen=True)
class DraftOrder:
    session_token: str
    product_id: int
    quantity: int
    total_amount: Decimal
    expires_at: datetime

    @classmethod
    def from_row(cls, row) -> "DraftOrder":
        return cls(
            session_token=row.session_token,
            product_id=row.product_id,
            quantity=row.quantity,
            total_amount=as_decimal(row.total_amount),
            expires_at=as_utc(row.expires_at),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "session_token": self.session_token,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "total_amount": str(self.total_amount),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class Address:
    id: int
    user_id: int
    full_name: str
    phone_number: str
    district: str
    details: str

    @classmethod
    def from_row(cls, row) -> "Address":
        return cls(
            id=row.id,
            user_id=row.user_id,
            full_name=row.full_name,
            phone_number=row.phone_number,
            district=row.district,
            details=row.details,
        )
