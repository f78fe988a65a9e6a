"""
Order Service — イベント定義

コミット済みの事実を過去形で定義し、Redis Pub/Sub の order_events
チャネルへ発行する。発行は必ずコミットの後に行う。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


class OrderCreated(BaseModel):
    """注文が作成された（在庫引き当て済み）"""
    order_id: str
    user_id: int
    source: str
    total_amount: Decimal
    item_count: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文の配送状態が変わった"""
    order_id: str
    from_status: str
    to_status: str
    timestamp: datetime


class PaymentInvoiceCreated(BaseModel):
    """ゲートウェイに請求書が作成された"""
    order_id: str
    invoice_id: str
    amount: Decimal
    timestamp: datetime


class PaymentConfirmed(BaseModel):
    """決済が確認された（PENDING → PAID）"""
    order_id: str
    payment_id: str | None
    amount: Decimal
    timestamp: datetime


class PaymentCancelled(BaseModel):
    """未払いの決済が取り消された（在庫は戻し済み）"""
    order_id: str
    reason: str
    timestamp: datetime


class PaymentRefunded(BaseModel):
    """支払い済みの決済が返金された"""
    order_id: str
    payment_id: str | None
    amount: Decimal
    timestamp: datetime


class ReceiptIssued(BaseModel):
    """レシートが発行された"""
    order_id: str
    receipt_id: str
    timestamp: datetime


async def publish(redis: aioredis.Redis, event: BaseModel) -> None:
    """
    イベントを発行する。

    状態はすでにコミット済みなので、Redis の障害はログに残すだけで
    呼び出し元には伝えない。
    """
    message = json.dumps(
        {"event_type": type(event).__name__, "data": event.model_dump(mode="json")},
        default=str,
    )
    try:
        await redis.publish(CHANNEL, message)
    except RedisError:
        logger.exception("Failed to publish %s", type(event).__name__)
