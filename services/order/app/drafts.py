"""
Order Service — ドラフト注文 (ゲスト購入)

ゲストの「今すぐ購入」をセッショントークンに紐づけて一時保存する。
認証後に commands.finalize_draft で本注文に変換され、削除される。
期限切れの行はバックグラウンドの掃除タスクが定期的に消す。
"""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import inventory
from .aggregate import DraftOrder, as_decimal
from .config import OrderSettings
from .results import ErrorCode, Ok, Result, fail
from .tables import draft_orders, products

logger = logging.getLogger(__name__)


def new_session_token() -> str:
    return secrets.token_hex(32)


async def save_draft(
    session: AsyncSession,
    settings: OrderSettings,
    product_id: int,
    quantity: int,
    now: datetime,
    session_token: str | None = None,
) -> Result[DraftOrder]:
    """
    ドラフト注文の作成・更新

    在庫は確認するだけで引き当てない。同じトークンの既存ドラフトは上書きする。
    """
    if quantity <= 0:
        return fail(ErrorCode.INVALID_QUANTITY, "Quantity must be a positive number", quantity=quantity)

    result = await session.execute(
        select(products.c.price).where(
            products.c.id == product_id, products.c.deleted_at.is_(None)
        )
    )
    price = result.scalar_one_or_none()
    if price is None:
        await session.rollback()
        return fail(ErrorCode.PRODUCT_UNAVAILABLE, f"Product {product_id} is not available", product_id=product_id)

    shortage = await inventory.check_available(session, product_id, quantity)
    if shortage:
        await session.rollback()
        return fail(
            ErrorCode.INSUFFICIENT_STOCK,
            f"Insufficient stock for product {product_id}. "
            f"Available: {shortage.available}, Requested: {quantity}",
            product_id=product_id,
            requested=quantity,
            available=shortage.available,
        )

    token = session_token or new_session_token()
    values = {
        "product_id": product_id,
        "quantity": quantity,
        "total_amount": as_decimal(price) * quantity,
        "expires_at": now + timedelta(hours=settings.draft_ttl_hours),
        "updated_at": now,
    }

    try:
        updated = await session.execute(
            update(draft_orders)
            .where(draft_orders.c.session_token == token)
            .values(**values)
        )
        if updated.rowcount == 0:
            await session.execute(
                insert(draft_orders).values(session_token=token, created_at=now, **values)
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    return Ok(await get_draft(session, token))


async def get_draft(session: AsyncSession, session_token: str) -> DraftOrder | None:
    result = await session.execute(
        select(draft_orders).where(draft_orders.c.session_token == session_token)
    )
    row = result.fetchone()
    return DraftOrder.from_row(row) if row else None


async def delete_draft(session: AsyncSession, session_token: str) -> int:
    """行を削除し、削除件数を返す。コミットは呼び出し元が行う。"""
    result = await session.execute(
        delete(draft_orders).where(draft_orders.c.session_token == session_token)
    )
    return result.rowcount


async def sweep_expired(session: AsyncSession, now: datetime) -> int:
    """期限切れのドラフトをまとめて削除し、件数を返す。"""
    try:
        result = await session.execute(
            delete(draft_orders).where(draft_orders.c.expires_at < now)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return result.rowcount


async def run_draft_sweeper(
    session_factory: sessionmaker,
    interval_seconds: float,
    shutdown_event: asyncio.Event,
    clock,
) -> None:
    """
    期限切れドラフトの定期掃除。shutdown_event がセットされるまで繰り返す。

    各回は専用のセッションで実行し、失敗してもログを残して次の回に進む。
    リクエスト側の注文作成には影響しない。
    """
    logger.info("Draft sweeper started (interval=%ss)", interval_seconds)
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                deleted = await sweep_expired(session, clock())
            if deleted:
                logger.info("Swept %d expired draft orders", deleted)
        except Exception:
            logger.exception("Draft sweep failed")

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Draft sweeper stopped")
