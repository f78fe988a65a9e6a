"""
Order Service — レシート発行アダプタ

決済が PAID に確定した直後に 1 回だけ呼ばれる。ここでの失敗は
注文の決済状態を巻き戻さない。
"""

from dataclasses import dataclass
from typing import Protocol

from .aggregate import OrderItem
from .gateway import GatewayRejected, PaymentGatewayClient


@dataclass(frozen=True)
class Receipt:
    receipt_id: str


class ReceiptIssuer(Protocol):
    async def issue(
        self,
        order_id: str,
        line_items: list[OrderItem],
        payment_id: str | None,
    ) -> Receipt: ...


class GatewayReceiptIssuer:
    """ゲートウェイのレシート (ebarimt) エンドポイントで発行する。"""

    def __init__(self, gateway: PaymentGatewayClient, receiver_type: str = "CITIZEN") -> None:
        self.gateway = gateway
        self.receiver_type = receiver_type

    async def issue(
        self,
        order_id: str,
        line_items: list[OrderItem],
        payment_id: str | None,
    ) -> Receipt:
        if not payment_id:
            raise GatewayRejected(400, f"order {order_id} has no payment id for receipt")
        data = await self.gateway.create_receipt(payment_id, self.receiver_type)
        receipt_id = data.get("ebarimt_id") or data.get("id")
        if not receipt_id:
            raise GatewayRejected(200, f"receipt id missing for order {order_id}")
        return Receipt(receipt_id=str(receipt_id))
