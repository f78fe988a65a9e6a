"""
Order Service — クエリ

注文の参照。状態を変更しないのでイベントは発行しない。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import store
from .aggregate import Order
from .collaborators import Requester
from .results import ErrorCode, Ok, Result, fail


async def get_order(session: AsyncSession, order_id: str, requester: Requester) -> Result[Order]:
    """注文者本人か管理者だけが参照できる。"""
    order = await store.load_order(session, order_id)
    if order is None:
        return fail(ErrorCode.NOT_FOUND, f"Order {order_id} not found")
    if not requester.can_access(order.user_id):
        return fail(ErrorCode.FORBIDDEN, "You do not have access to this order")
    return Ok(order)


async def list_orders(session: AsyncSession, requester: Requester) -> list[Order]:
    """注文一覧 (新しい順)。管理者には全ユーザーの注文を返す。"""
    user_id = None if requester.is_admin else requester.user_id
    return await store.list_orders_for_user(session, user_id)
