"""
Order Service — 外部コラボレータ

カート・住所・配送枠はこのサービスの外側の責務。ここではインターフェースと、
同じ DB のテーブルを読む既定の実装を置く。

Collaborators はリクエストごとに明示的に渡す依存関係の束。
プロセス全体で共有される暗黙の DB 接続は持たない。
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import Address, DeliverySlot, as_decimal
from .config import OrderSettings
from .gateway import PaymentGatewayClient
from .receipts import ReceiptIssuer
from .tables import addresses, cart_items, disabled_delivery_slots


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AddressPayload(BaseModel):
    """新規住所の入力"""
    full_name: str = Field(min_length=1, max_length=255)
    phone_number: str = Field(pattern=r"^\+?[0-9]{8,15}$")
    district: str = Field(min_length=1, max_length=100)
    details: str = Field(min_length=1, max_length=500)


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class Requester:
    user_id: int
    is_admin: bool = False

    def can_access(self, owner_id: int) -> bool:
        return self.is_admin or self.user_id == owner_id


# ── インターフェース ─────────────────────────────

class CartProvider(Protocol):
    async def get_lines(self, session: AsyncSession, user_id: int) -> list[CartLine]: ...

    async def clear(self, session: AsyncSession, user_id: int, product_ids: list[int]) -> None: ...


class AddressProvider(Protocol):
    async def resolve(self, session: AsyncSession, address_id: int, user_id: int) -> Address | None: ...

    async def create(self, session: AsyncSession, user_id: int, payload: AddressPayload) -> Address: ...


class DeliverySlotPolicy(Protocol):
    def is_valid_slot(self, slot: str) -> bool: ...

    async def is_slot_disabled_for_date(self, session: AsyncSession, day: date, slot: DeliverySlot) -> bool: ...


# ── 既定の実装 (同じ DB を読む) ──────────────────

class SqlCartProvider:
    async def get_lines(self, session: AsyncSession, user_id: int) -> list[CartLine]:
        result = await session.execute(
            select(cart_items)
            .where(cart_items.c.user_id == user_id)
            .order_by(cart_items.c.id)
        )
        return [
            CartLine(row.product_id, row.quantity, as_decimal(row.unit_price))
            for row in result.fetchall()
        ]

    async def clear(self, session: AsyncSession, user_id: int, product_ids: list[int]) -> None:
        """注文に含めた商品の行だけを消す。途中で追加された行は残る。"""
        await session.execute(
            delete(cart_items).where(
                cart_items.c.user_id == user_id,
                cart_items.c.product_id.in_(product_ids),
            )
        )


class SqlAddressProvider:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    async def resolve(self, session: AsyncSession, address_id: int, user_id: int) -> Address | None:
        result = await session.execute(
            select(addresses).where(
                addresses.c.id == address_id, addresses.c.user_id == user_id
            )
        )
        row = result.fetchone()
        return Address.from_row(row) if row else None

    async def create(self, session: AsyncSession, user_id: int, payload: AddressPayload) -> Address:
        result = await session.execute(
            insert(addresses)
            .values(user_id=user_id, created_at=self.clock(), **payload.model_dump())
            .returning(addresses)
        )
        return Address.from_row(result.one())


class SqlDeliverySlotPolicy:
    """固定の 4 枠。休配曜日と disabled_delivery_slots の行で無効化される。"""

    def __init__(self, off_weekdays: frozenset[int] = frozenset()) -> None:
        self.off_weekdays = off_weekdays

    def is_valid_slot(self, slot: str) -> bool:
        return slot in {s.value for s in DeliverySlot}

    async def is_slot_disabled_for_date(self, session: AsyncSession, day: date, slot: DeliverySlot) -> bool:
        if day.weekday() in self.off_weekdays:
            return True
        result = await session.execute(
            select(disabled_delivery_slots.c.slot).where(
                disabled_delivery_slots.c.delivery_date == day,
                disabled_delivery_slots.c.slot == slot.value,
            )
        )
        return result.first() is not None


# ── 依存関係の束 ─────────────────────────────────

@dataclass
class Collaborators:
    redis: aioredis.Redis
    settings: OrderSettings
    carts: CartProvider = field(default_factory=SqlCartProvider)
    addresses: AddressProvider = field(default_factory=SqlAddressProvider)
    slots: DeliverySlotPolicy = field(default_factory=SqlDeliverySlotPolicy)
    gateway: PaymentGatewayClient | None = None
    receipts: ReceiptIssuer | None = None
    clock: Callable[[], datetime] = utcnow

    def now(self) -> datetime:
        return self.clock()

    def local_now(self) -> datetime:
        """店舗のローカル時刻。注文番号と「今日」の判定に使う。"""
        return self.clock().astimezone(timezone(timedelta(hours=self.settings.utc_offset_hours)))
