"""
Order Service — 注文作成コマンド (Order Assembler)

カート・今すぐ購入・ドラフトの 3 つの入口は、同じ 1 つの作業単位を通る。

  1 トランザクション内:
  ┌─────────────────────────────────────────────────┐
  │ 住所の解決/作成 → 配送枠の検証 → 商品と価格の確定 │
  │ → 注文番号の採番 → 注文・明細の INSERT          │
  │ → 在庫引き当て (商品 ID 順) → カート/ドラフト削除 │
  └─────────────────────────────────────────────────┘
  どこで失敗してもロールバックし、注文・明細・在庫・カートは一切変わらない。
  OrderCreated はコミット後に発行する。
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Awaitable, Callable, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import drafts, events, inventory, store
from .aggregate import (
    DeliverySlot,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    as_decimal,
    status_transition_error,
)
from .collaborators import AddressPayload, Collaborators, Requester
from .results import Abort, Err, ErrorCode, Ok, OrderError, Result, fail
from .tables import products

logger = logging.getLogger(__name__)

AddressInput = Union[int, AddressPayload]


@dataclass(frozen=True)
class _Line:
    product_id: int
    quantity: int


def _abort(code: ErrorCode, message: str, **detail) -> Abort:
    return Abort(OrderError(code, message, detail))


# ── 作業単位の各ステップ ─────────────────────────

async def _resolve_address(
    session: AsyncSession,
    deps: Collaborators,
    user_id: int,
    address: AddressInput,
) -> int:
    if isinstance(address, AddressPayload):
        created = await deps.addresses.create(session, user_id, address)
        return created.id

    found = await deps.addresses.resolve(session, address, user_id)
    if found is None:
        raise _abort(
            ErrorCode.INVALID_ADDRESS,
            f"Address {address} not found for user",
            address_id=address,
        )
    return found.id


async def _validate_slot(
    session: AsyncSession,
    deps: Collaborators,
    slot: str | None,
    delivery_date: date | None,
) -> tuple[DeliverySlot | None, date | None]:
    """枠の指定が無ければ検証しない。日付の既定は店舗ローカルの今日。"""
    if slot is None:
        return None, delivery_date

    if not deps.slots.is_valid_slot(slot):
        raise _abort(ErrorCode.INVALID_SLOT, f"Unknown delivery time slot: {slot}", slot=slot)

    day = delivery_date or deps.local_now().date()
    parsed = DeliverySlot(slot)
    if await deps.slots.is_slot_disabled_for_date(session, day, parsed):
        raise _abort(
            ErrorCode.INVALID_SLOT,
            f"Delivery slot {slot} is not available on {day.isoformat()}",
            slot=slot,
            delivery_date=day.isoformat(),
        )
    return parsed, day


async def _price_lines(session: AsyncSession, lines: list[_Line]) -> list[OrderItem]:
    """
    各商品の現在価格を明細に確定する。

    ここで確定した単価が注文の唯一の価格になり、後で商品価格が
    変わっても注文の合計と明細は変わらない。
    """
    product_ids = sorted({line.product_id for line in lines})
    result = await session.execute(
        select(products.c.id, products.c.price).where(
            products.c.id.in_(product_ids), products.c.deleted_at.is_(None)
        )
    )
    prices = {row.id: as_decimal(row.price) for row in result.fetchall()}

    items = []
    for line in lines:
        if line.quantity <= 0:
            raise _abort(
                ErrorCode.INVALID_QUANTITY,
                "Quantity must be a positive number",
                product_id=line.product_id,
                quantity=line.quantity,
            )
        if line.product_id not in prices:
            raise _abort(
                ErrorCode.PRODUCT_UNAVAILABLE,
                f"Product {line.product_id} is not available",
                product_id=line.product_id,
            )
        items.append(OrderItem(line.product_id, line.quantity, prices[line.product_id]))
    return items


async def _reserve_all(session: AsyncSession, items: list[OrderItem]) -> None:
    # 複数の注文が同じ商品群をロックし合わないよう、常に商品 ID 順で引き当てる
    for item in sorted(items, key=lambda i: i.product_id):
        outcome = await inventory.reserve(session, item.product_id, item.quantity)
        if isinstance(outcome, inventory.InsufficientStock):
            raise _abort(
                ErrorCode.INSUFFICIENT_STOCK,
                f"Insufficient stock for product {outcome.product_id}. "
                f"Available: {outcome.available}, Requested: {outcome.requested}",
                product_id=outcome.product_id,
                requested=outcome.requested,
                available=outcome.available,
            )


async def _assemble(
    session: AsyncSession,
    deps: Collaborators,
    *,
    user_id: int,
    lines: list[_Line],
    address: AddressInput,
    slot: str | None,
    delivery_date: date | None,
    source: str,
    clear_source: Callable[[AsyncSession], Awaitable[None]],
) -> Result[Order]:
    """3 つの入口が共有する注文作成の作業単位。"""
    now = deps.now()
    try:
        address_id = await _resolve_address(session, deps, user_id, address)
        parsed_slot, day = await _validate_slot(session, deps, slot, delivery_date)
        items = await _price_lines(session, lines)
        total = sum((item.line_total for item in items), Decimal("0"))

        order_id = await store.allocate_order_id(session, deps.local_now())
        await store.insert_order(
            session,
            order_id=order_id,
            user_id=user_id,
            address_id=address_id,
            delivery_date=day,
            slot=parsed_slot,
            total_amount=total,
            now=now,
        )
        await store.insert_items(session, order_id, items)
        await _reserve_all(session, items)
        await clear_source(session)

        await session.commit()
    except Abort as e:
        await session.rollback()
        logger.info("Order creation (%s) rejected for user %s: %s", source, user_id, e.error.message)
        return Err(e.error)
    except Exception:
        await session.rollback()
        raise

    order = await store.load_order(session, order_id)
    logger.info("Order %s created from %s (total=%s)", order_id, source, total)
    await events.publish(deps.redis, events.OrderCreated(
        order_id=order.id,
        user_id=user_id,
        source=source,
        total_amount=order.total_amount,
        item_count=len(order.items),
        timestamp=now,
    ))
    return Ok(order)


# ── 入口 ─────────────────────────────────────────

async def create_order_from_cart(
    session: AsyncSession,
    deps: Collaborators,
    user_id: int,
    address: AddressInput,
    slot: str | None = None,
    delivery_date: date | None = None,
) -> Result[Order]:
    """
    カートから注文作成

    カートの全行を 1 つの注文にし、注文に含めた商品の行をカートから消す。
    """
    cart = await deps.carts.get_lines(session, user_id)
    if not cart:
        await session.rollback()
        return fail(ErrorCode.EMPTY_CART, "Cart is empty")

    lines = [_Line(line.product_id, line.quantity) for line in cart]
    product_ids = [line.product_id for line in lines]

    async def clear_cart(s: AsyncSession) -> None:
        await deps.carts.clear(s, user_id, product_ids)

    return await _assemble(
        session,
        deps,
        user_id=user_id,
        lines=lines,
        address=address,
        slot=slot,
        delivery_date=delivery_date,
        source="cart",
        clear_source=clear_cart,
    )


async def buy_now(
    session: AsyncSession,
    deps: Collaborators,
    user_id: int,
    product_id: int,
    quantity: int,
    address: AddressInput,
    slot: str | None = None,
    delivery_date: date | None = None,
) -> Result[Order]:
    """今すぐ購入 (1 商品の注文、カートは触らない)"""
    if quantity <= 0:
        return fail(ErrorCode.INVALID_QUANTITY, "Quantity must be a positive number", quantity=quantity)

    async def nothing_to_clear(s: AsyncSession) -> None:
        return None

    return await _assemble(
        session,
        deps,
        user_id=user_id,
        lines=[_Line(product_id, quantity)],
        address=address,
        slot=slot,
        delivery_date=delivery_date,
        source="buy_now",
        clear_source=nothing_to_clear,
    )


async def finalize_draft(
    session: AsyncSession,
    deps: Collaborators,
    user_id: int,
    session_token: str,
    address: AddressInput,
    slot: str | None = None,
    delivery_date: date | None = None,
) -> Result[Order]:
    """
    ドラフト注文の確定

    期限切れのドラフトは削除をコミットしてから EXPIRED を返す。
    有効なドラフトは注文と同じトランザクションで削除される。
    """
    draft = await drafts.get_draft(session, session_token)
    if draft is None:
        await session.rollback()
        return fail(ErrorCode.NOT_FOUND, "Draft order not found")

    if draft.is_expired(deps.now()):
        try:
            await drafts.delete_draft(session, session_token)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        logger.info("Draft for product %s expired at %s, removed", draft.product_id, draft.expires_at)
        return fail(
            ErrorCode.EXPIRED,
            "Draft order has expired",
            expired_at=draft.expires_at.isoformat(),
        )

    async def clear_draft(s: AsyncSession) -> None:
        # 別のリクエストが先に確定した
        if await drafts.delete_draft(s, session_token) == 0:
            raise _abort(ErrorCode.NOT_FOUND, "Draft order not found")

    return await _assemble(
        session,
        deps,
        user_id=user_id,
        lines=[_Line(draft.product_id, draft.quantity)],
        address=address,
        slot=slot,
        delivery_date=delivery_date,
        source="draft",
        clear_source=clear_draft,
    )


# ── 配送状態 (管理者) ────────────────────────────

async def advance_order_status(
    session: AsyncSession,
    deps: Collaborators,
    order_id: str,
    target: OrderStatus,
    requester: Requester,
) -> Result[Order]:
    """
    配送状態を進める (管理者のみ)

    PENDING → PROCESSING は決済が PAID のときだけ。
    取消はここではなく payments.cancel_payment を通す。
    """
    if not requester.is_admin:
        return fail(ErrorCode.FORBIDDEN, "Only administrators can change order status")

    order = await store.load_order(session, order_id)
    if order is None:
        await session.rollback()
        return fail(ErrorCode.NOT_FOUND, f"Order {order_id} not found")

    error = status_transition_error(order.status, target)
    if error is None and target == OrderStatus.CANCELLED:
        error = OrderError(
            ErrorCode.INVALID_TRANSITION,
            "Orders are cancelled through the payment cancellation",
            {"axis": "status", "from": order.status.value, "to": target.value},
        )
    if error is None and target == OrderStatus.PROCESSING and order.payment_status != PaymentStatus.PAID:
        error = OrderError(
            ErrorCode.INVALID_TRANSITION,
            f"Order {order_id} cannot be processed before payment",
            {"axis": "status", "from": order.status.value, "to": target.value,
             "payment_status": order.payment_status.value},
        )
    if error is not None:
        await session.rollback()
        return Err(error)

    now = deps.now()
    try:
        if not await store.compare_and_set_status(session, order_id, order.status, target, now):
            raise _abort(
                ErrorCode.INVALID_TRANSITION,
                f"Order {order_id} status changed concurrently",
                axis="status",
                to=target.value,
            )
        await session.commit()
    except Abort as e:
        await session.rollback()
        return Err(e.error)
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s status %s -> %s", order_id, order.status.value, target.value)
    await events.publish(deps.redis, events.OrderStatusChanged(
        order_id=order_id,
        from_status=order.status.value,
        to_status=target.value,
        timestamp=now,
    ))
    return Ok(await store.load_order(session, order_id))
