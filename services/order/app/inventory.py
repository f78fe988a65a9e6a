"""
Order Service — 在庫台帳 (Inventory Ledger)

reserve は呼び出し元のトランザクションの一部として実行され、自分ではコミットしない。
在庫チェックと減算は 1 つの条件付き UPDATE で行うため、同じ商品への同時引き当てが
合計で在庫を超えることはない (行ロックを取った側が先に減算し、後続は WHERE を再評価する)。
"""

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import products


@dataclass(frozen=True)
class Reserved:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class InsufficientStock:
    product_id: int
    requested: int
    available: int


async def current_stock(session: AsyncSession, product_id: int) -> int | None:
    result = await session.execute(
        select(products.c.stock).where(
            products.c.id == product_id, products.c.deleted_at.is_(None)
        )
    )
    return result.scalar_one_or_none()


async def reserve(
    session: AsyncSession,
    product_id: int,
    quantity: int,
) -> Reserved | InsufficientStock:
    """
    在庫引き当て

    stock >= quantity のときだけ減算する。失敗時は何も変更せず、
    呼び出し元がトランザクション全体を破棄する。
    """
    result = await session.execute(
        update(products)
        .where(
            products.c.id == product_id,
            products.c.stock >= quantity,
            products.c.deleted_at.is_(None),
        )
        .values(stock=products.c.stock - quantity)
    )
    if result.rowcount == 1:
        return Reserved(product_id, quantity)

    available = await current_stock(session, product_id)
    return InsufficientStock(product_id, quantity, available or 0)


async def restock(session: AsyncSession, product_id: int, quantity: int) -> None:
    """在庫の戻し（キャンセル時の明示的な加算）"""
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + quantity)
    )


async def check_available(session: AsyncSession, product_id: int, quantity: int) -> InsufficientStock | None:
    """減算せずに在庫を確認する（ドラフト注文用）。"""
    available = await current_stock(session, product_id)
    if available is None or available < quantity:
        return InsufficientStock(product_id, quantity, available or 0)
    return None
