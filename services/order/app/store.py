"""
Order Service — 注文ストア

注文・明細の永続化と、状態の条件付き更新 (compare-and-set) を提供する。
どの関数もコミットしない。トランザクション境界は commands / payments が持つ。
"""

from datetime import date, datetime

from sqlalchemy import insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import DeliverySlot, Order, OrderItem, OrderStatus, PaymentStatus
from .tables import order_items, orders

_NEXT_SEQUENCE = text("""
    INSERT INTO order_sequences (day, last_value)
    VALUES (:day, 1)
    ON CONFLICT (day) DO UPDATE SET last_value = order_sequences.last_value + 1
    RETURNING last_value
""")


async def allocate_order_id(session: AsyncSession, local_now: datetime) -> str:
    """
    注文番号 YYMMDDNNN を採番する。

    日付ごとの行を UPSERT で加算するので、同じ日に同時に注文が作られても
    番号は重複しない。999 を超えた場合は桁を増やす。
    """
    day = local_now.strftime("%y%m%d")
    result = await session.execute(_NEXT_SEQUENCE, {"day": day})
    return f"{day}{result.scalar_one():03d}"


async def insert_order(
    session: AsyncSession,
    *,
    order_id: str,
    user_id: int,
    address_id: int | None,
    delivery_date: date | None,
    slot: DeliverySlot | None,
    total_amount,
    now: datetime,
) -> None:
    await session.execute(
        insert(orders).values(
            id=order_id,
            user_id=user_id,
            address_id=address_id,
            delivery_date=delivery_date,
            delivery_time_slot=slot.value if slot else None,
            total_amount=total_amount,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
    )


async def insert_items(session: AsyncSession, order_id: str, items: list[OrderItem]) -> None:
    await session.execute(
        insert(order_items),
        [
            {
                "order_id": order_id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
            }
            for item in items
        ],
    )


async def load_items(session: AsyncSession, order_id: str) -> list[OrderItem]:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.id)
    )
    return [OrderItem.from_row(row) for row in result.fetchall()]


async def load_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return Order.from_row(row, await load_items(session, order_id))


async def list_orders_for_user(session: AsyncSession, user_id: int | None) -> list[Order]:
    """user_id が None なら全ユーザーの注文を返す。"""
    query = select(orders).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    if user_id is not None:
        query = query.where(orders.c.user_id == user_id)
    result = await session.execute(query)
    return [
        Order.from_row(row, await load_items(session, row.id))
        for row in result.fetchall()
    ]


async def compare_and_set_payment(
    session: AsyncSession,
    order_id: str,
    expected: PaymentStatus,
    new: PaymentStatus,
    now: datetime,
    **fields,
) -> bool:
    """
    保存されている payment_status が expected のときだけ new に進める。

    同じ注文に対する通知を複数のワーカーが同時に処理しても、
    遷移に成功するのは 1 つだけ。
    """
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.payment_status == expected.value)
        .values(payment_status=new.value, updated_at=now, **fields)
    )
    return result.rowcount == 1


async def compare_and_set_status(
    session: AsyncSession,
    order_id: str,
    expected: OrderStatus,
    new: OrderStatus,
    now: datetime,
) -> bool:
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.status == expected.value)
        .values(status=new.value, updated_at=now)
    )
    return result.rowcount == 1


async def attach_invoice(
    session: AsyncSession,
    order_id: str,
    invoice_id: str,
    expires_at: datetime,
    now: datetime,
    qr_text: str | None = None,
) -> bool:
    """請求書がまだ無い未払い注文にだけ請求書 ID を記録する。"""
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.gateway_invoice_id.is_(None),
            orders.c.payment_status == PaymentStatus.PENDING.value,
        )
        .values(
            gateway_invoice_id=invoice_id,
            invoice_expires_at=expires_at,
            invoice_qr_text=qr_text,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def attach_receipt(session: AsyncSession, order_id: str, receipt_id: str, now: datetime) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(receipt_id=receipt_id, updated_at=now)
    )
