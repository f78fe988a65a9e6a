"""
Order Service — 結果型とエラー

公開操作はドメイン上の失敗を例外ではなく戻り値 (Ok / Err) で返す。
呼び出し側は在庫・状態遷移・ゲートウェイのエラーを必ず分岐で扱う。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorCode(str, Enum):
    EMPTY_CART = "EMPTY_CART"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_SLOT = "INVALID_SLOT"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    PAYMENT_IN_PROGRESS = "PAYMENT_IN_PROGRESS"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    GATEWAY_REJECTED = "GATEWAY_REJECTED"


@dataclass(frozen=True)
class OrderError:
    code: ErrorCode
    message: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: OrderError


Result = Union[Ok[T], Err]


class Abort(Exception):
    """
    トランザクション内部から OrderError を運び出すための例外。

    操作の境界で捕捉してロールバックし、Err に変換する。
    モジュールの外には出さない。
    """

    def __init__(self, error: OrderError) -> None:
        super().__init__(error.message)
        self.error = error


def fail(code: ErrorCode, message: str, **detail: Any) -> Err:
    return Err(OrderError(code, message, detail))
