"""
Order Service — 決済コールバック処理と決済操作

ゲートウェイからの通知は複数経路 (サーバー間通知・ブラウザのリダイレクト) で
届き、同じ通知が何度も届くことがある。通知の内容は信用せず、
必ずゲートウェイの照会 API で状態を確認してから遷移させる。

  通知を受けたら:
  ┌────────────────────────────────────────────────────────────┐
  │ 1. 注文が無い            → ログを残して受理 (unknown_order)  │
  │ 2. 決済が PENDING 以外    → 照会はログ用のみ、変更なし (duplicate) │
  │ 3. ゲートウェイに照会     → PAID / PENDING / FAILED / UNKNOWN │
  │ 4. 保存済みの状態を条件にした UPDATE で遷移 (compare-and-set) │
  │ 5. PAID への遷移に勝ったワーカーだけがレシートを発行          │
  └────────────────────────────────────────────────────────────┘

レシート発行の失敗は警告として返すだけで、決済状態は巻き戻さない。
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import events, inventory, store
from .aggregate import (
    Order,
    OrderStatus,
    PaymentStatus,
    payment_transition_error,
    status_transition_error,
)
from .collaborators import Collaborators, Requester
from .gateway import (
    GatewayError,
    GatewayPaymentState,
    GatewayRejected,
    PaymentCheck,
)
from .results import Abort, Err, ErrorCode, Ok, OrderError, Result, fail

logger = logging.getLogger(__name__)

# 自分が取得したロックだけを解放する
_RELEASE_LOCK = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

class CallbackOutcome(str, Enum):
    UNKNOWN_ORDER = "unknown_order"
    DUPLICATE = "duplicate"
    NO_INVOICE = "no_invoice"
    PAID = "paid"
    PENDING = "pending"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"
    VERIFICATION_FAILED = "verification_failed"


@dataclass(frozen=True)
class CallbackAck:
    """ゲートウェイへの応答。どの結果でも受理 (200) として返す。"""
    order_id: str
    outcome: CallbackOutcome
    warning: str | None = None

    def to_dict(self) -> dict:
        body = {"acknowledged": True, "order_id": self.order_id, "outcome": self.outcome.value}
        if self.warning:
            body["warning"] = self.warning
        return body


def _gateway_failure(e: GatewayError) -> Err:
    if isinstance(e, GatewayRejected):
        return fail(ErrorCode.GATEWAY_REJECTED, str(e), status_code=e.status_code)
    return fail(ErrorCode.GATEWAY_UNAVAILABLE, str(e))


def _no_gateway() -> Err:
    return fail(ErrorCode.GATEWAY_UNAVAILABLE, "Payment gateway is not configured")


async def _load_for(
    session: AsyncSession,
    order_id: str,
    requester: Requester,
) -> Result[Order]:
    order = await store.load_order(session, order_id)
    if order is None:
        await session.rollback()
        return fail(ErrorCode.NOT_FOUND, f"Order {order_id} not found")
    if not requester.can_access(order.user_id):
        await session.rollback()
        return fail(ErrorCode.FORBIDDEN, "You do not have access to this order")
    return Ok(order)


async def _end_read(session: AsyncSession) -> None:
    # ゲートウェイ呼び出しの間、読み取りトランザクションを開いたままにしない
    await session.commit()


# ── 状態遷移 (1 トランザクション) ────────────────

async def _cancel_unpaid_in_tx(session: AsyncSession, order: Order, now) -> None:
    """
    未払いの注文を取り消し、全明細の在庫を戻す。コミットは呼び出し元。

    どちらかの compare-and-set に負けたら Abort。
    """
    if not await store.compare_and_set_payment(
        session, order.id, PaymentStatus.PENDING, PaymentStatus.CANCELLED, now
    ):
        raise Abort(OrderError(
            ErrorCode.INVALID_TRANSITION,
            f"Payment of order {order.id} is no longer pending",
            {"axis": "payment_status", "to": PaymentStatus.CANCELLED.value},
        ))
    if not await store.compare_and_set_status(
        session, order.id, OrderStatus.PENDING, OrderStatus.CANCELLED, now
    ):
        raise Abort(OrderError(
            ErrorCode.INVALID_TRANSITION,
            f"Order {order.id} is no longer pending",
            {"axis": "status", "to": OrderStatus.CANCELLED.value},
        ))
    for item in order.items:
        await inventory.restock(session, item.product_id, item.quantity)


async def _apply_paid(
    session: AsyncSession,
    deps: Collaborators,
    order: Order,
    check: PaymentCheck,
) -> tuple[bool, str | None]:
    """
    PENDING → PAID を compare-and-set で適用する。

    (遷移に勝ったか, レシート発行の警告) を返す。レシートは勝った側だけが発行する。
    """
    now = deps.now()
    try:
        won = await store.compare_and_set_payment(
            session,
            order.id,
            PaymentStatus.PENDING,
            PaymentStatus.PAID,
            now,
            gateway_payment_id=check.payment_id,
            paid_at=check.paid_at or now,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    if not won:
        logger.info("Order %s was already confirmed by another worker", order.id)
        return False, None

    logger.info("Order %s payment confirmed (payment_id=%s)", order.id, check.payment_id)
    await events.publish(deps.redis, events.PaymentConfirmed(
        order_id=order.id,
        payment_id=check.payment_id,
        amount=order.total_amount,
        timestamp=now,
    ))
    return True, await _issue_receipt(session, deps, order, check.payment_id)


async def _issue_receipt(
    session: AsyncSession,
    deps: Collaborators,
    order: Order,
    payment_id: str | None,
) -> str | None:
    if deps.receipts is None:
        logger.warning("No receipt issuer configured, receipt for order %s skipped", order.id)
        return "receipt issuer not configured"

    try:
        receipt = await deps.receipts.issue(order.id, list(order.items), payment_id)
    except Exception as e:
        logger.exception("Receipt issuance failed for order %s", order.id)
        return f"receipt issuance failed: {e}"

    try:
        await store.attach_receipt(session, order.id, receipt.receipt_id, deps.now())
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await events.publish(deps.redis, events.ReceiptIssued(
        order_id=order.id,
        receipt_id=receipt.receipt_id,
        timestamp=deps.now(),
    ))
    return None


async def _apply_failed(session: AsyncSession, deps: Collaborators, order: Order) -> bool:
    """ゲートウェイが失敗と判定した未払い注文を取り消す。"""
    now = deps.now()
    try:
        await _cancel_unpaid_in_tx(session, order, now)
        await session.commit()
    except Abort:
        await session.rollback()
        return False
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s cancelled: gateway reported payment failure", order.id)
    await _publish_cancelled(deps, order.id, "payment failed at gateway", now)
    return True


async def _publish_cancelled(deps: Collaborators, order_id: str, reason: str, now) -> None:
    await events.publish(deps.redis, events.PaymentCancelled(
        order_id=order_id, reason=reason, timestamp=now,
    ))
    await events.publish(deps.redis, events.OrderStatusChanged(
        order_id=order_id,
        from_status=OrderStatus.PENDING.value,
        to_status=OrderStatus.CANCELLED.value,
        timestamp=now,
    ))


async def _reconcile(
    session: AsyncSession,
    deps: Collaborators,
    order: Order,
) -> tuple[CallbackOutcome, str | None]:
    """
    ゲートウェイに照会し、結果に応じた遷移を適用する。

    GatewayError はそのまま呼び出し元に伝える。
    """
    await _end_read(session)
    check = await deps.gateway.check_payment(order.gateway_invoice_id)

    if check.state == GatewayPaymentState.PAID:
        won, warning = await _apply_paid(session, deps, order, check)
        return (CallbackOutcome.PAID if won else CallbackOutcome.DUPLICATE), warning

    if check.state == GatewayPaymentState.FAILED:
        won = await _apply_failed(session, deps, order)
        return (CallbackOutcome.CANCELLED if won else CallbackOutcome.DUPLICATE), None

    if check.state == GatewayPaymentState.PENDING:
        return CallbackOutcome.PENDING, None

    logger.warning("Gateway returned an unrecognized payment state for order %s", order.id)
    return CallbackOutcome.UNKNOWN, None


# ── 公開操作 ─────────────────────────────────────

async def handle_payment_callback(
    session: AsyncSession,
    deps: Collaborators,
    order_id: str,
    notification: dict[str, Any] | None = None,
) -> CallbackAck:
    """
    決済通知の処理

    同じ通知を何度受けても、PENDING → PAID の遷移とレシート発行は
    高々 1 回しか起きない。
    """
    logger.info("Payment callback for order %s: %s", order_id, notification or {})

    order = await store.load_order(session, order_id)
    if order is None:
        await session.rollback()
        logger.warning("Payment callback for unknown order %s ignored", order_id)
        return CallbackAck(order_id, CallbackOutcome.UNKNOWN_ORDER)

    if order.payment_status != PaymentStatus.PENDING:
        await _end_read(session)
        if deps.gateway is not None and order.gateway_invoice_id:
            try:
                check = await deps.gateway.check_payment(order.gateway_invoice_id)
                logger.info(
                    "Duplicate callback for order %s (stored=%s, gateway=%s)",
                    order_id, order.payment_status.value, check.state.value,
                )
            except GatewayError:
                logger.warning("Re-verification of duplicate callback for order %s failed", order_id)
        return CallbackAck(order_id, CallbackOutcome.DUPLICATE)

    if not order.gateway_invoice_id:
        await session.rollback()
        logger.warning("Payment callback for order %s without an invoice", order_id)
        return CallbackAck(order_id, CallbackOutcome.NO_INVOICE)

    if deps.gateway is None:
        await session.rollback()
        logger.error("Payment callback for order %s cannot be verified: no gateway", order_id)
        return CallbackAck(order_id, CallbackOutcome.VERIFICATION_FAILED)

    try:
        outcome, warning = await _reconcile(session, deps, order)
    except GatewayError as e:
        logger.warning("Payment verification for order %s failed: %s", order_id, e)
        return CallbackAck(order_id, CallbackOutcome.VERIFICATION_FAILED)
    return CallbackAck(order_id, outcome, warning)


async def sync_payment_status(
    session: AsyncSession,
    deps: Collaborators,
    order_id: str,
    requester: Requester,
) -> Result[Order]:
    """クライアントのポーリング用。コールバックと同じ照会・遷移を行う。"""
    loaded = await _load_for(session, order_id, requester)
    if isinstance(loaded, Err):
        return loaded
    order = loaded.value

    if order.payment_status == PaymentStatus.PENDING and order.gateway_invoice_id:
        if deps.gateway is None:
            await session.rollback()
            return _no_gateway()
        try:
            await _reconcile(session, deps, order)
        except GatewayError as e:
            return _gateway_failure(e)

    return Ok(await store.load_order(session, order_id))


async def initiate_payment(
    session: AsyncSession,
    deps: Collaborators,
    order_id: str,
    requester: Requester,
) -> Result[Order]:
    """
    請求書の作成

    既に請求書があればそれを返す。同じ注文への同時の作成は Redis のロックで
    1 つに絞り、それでも重複した請求書はゲートウェイ側で取り消す。
    """
    loaded = await _load_for(session, order_id, requester)
    if isinstance(loaded, Err):
        return loaded
    order = loaded.value

    if order.gateway_invoice_id:
        await _end_read(session)
        return Ok(order)

    error = payment_transition_error(order.payment_status, PaymentStatus.PAID)
    if error is None and order.status == OrderStatus.CANCELLED:
        error = status_transition_error(order.status, OrderStatus.PROCESSING)
    if error is not None:
        await session.rollback()
        return Err(error)

    if deps.gateway is None:
        await session.rollback()
        return _no_gateway()

    await _end_read(session)
    lock_key = f"payment-lock:{order_id}"
    lock_token = secrets.token_hex(16)
    acquired = await deps.redis.set(
        lock_key, lock_token, nx=True, ex=deps.settings.payment_lock_seconds
    )
    if not acquired:
        return fail(ErrorCode.PAYMENT_IN_PROGRESS, f"Payment for order {order_id} is already being initiated")

    try:
        now = deps.now()
        expires_at = now + timedelta(minutes=deps.settings.invoice_ttl_minutes)
        try:
            invoice = await deps.gateway.create_invoice(order, expires_at)
        except GatewayError as e:
            logger.warning("Invoice creation for order %s failed: %s", order_id, e)
            return _gateway_failure(e)

        try:
            stored = await store.attach_invoice(
                session, order_id, invoice.invoice_id, expires_at, now, qr_text=invoice.qr_text
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    finally:
        await deps.redis.eval(_RELEASE_LOCK, 1, lock_key, lock_token)

    if not stored:
        logger.warning(
            "Order %s already had an invoice, cancelling duplicate %s",
            order_id, invoice.invoice_id,
        )
        try:
            await deps.gateway.cancel_invoice(invoice.invoice_id)
        except GatewayError:
            logger.exception("Failed to cancel duplicate invoice %s", invoice.invoice_id)
    else:
        logger.info("Invoice %s created for order %s", invoice.invoice_id, order_id)
        await events.publish(deps.redis, events.PaymentInvoiceCreated(
            order_id=order_id,
            invoice_id=invoice.invoice_id,
            amount=order.total_amount,
            timestamp=now,
        ))

    return Ok(await store.load_order(session, order_id))


async def cancel_payment(
    session: AsyncSession,
    deps: Collaborators,
    order_id: str,
    requester: Requester,
) -> Result[Order]:
    """
    未払い決済の取消 (注文者または管理者)

    ゲートウェイで支払い済みと判明した場合は PAID に合わせ、取消は拒否する。
    取消が成立すると注文も CANCELLED になり、全明細の在庫が戻る。
    """
    loaded = await _load_for(session, order_id, requester)
    if isinstance(loaded, Err):
        return loaded
    order = loaded.value

    error = payment_transition_error(order.payment_status, PaymentStatus.CANCELLED)
    if error is None:
        error = status_transition_error(order.status, OrderStatus.CANCELLED)
    if error is not None:
        await session.rollback()
        return Err(error)

    if order.gateway_invoice_id:
        if deps.gateway is None:
            await session.rollback()
            return _no_gateway()
        await _end_read(session)
        try:
            check = await deps.gateway.check_payment(order.gateway_invoice_id)
            if check.state == GatewayPaymentState.PAID:
                await _apply_paid(session, deps, order, check)
                return fail(
                    ErrorCode.INVALID_TRANSITION,
                    f"Order {order_id} has already been paid",
                    axis="payment_status",
                    **{"from": PaymentStatus.PAID.value, "to": PaymentStatus.CANCELLED.value},
                )
            await deps.gateway.cancel_invoice(order.gateway_invoice_id)
        except GatewayRejected as e:
            # 期限切れ・取消済みの請求書は拒否されるが、支払われていないことは確認済み
            logger.warning("Gateway refused to cancel invoice for order %s: %s", order_id, e)
        except GatewayError as e:
            return _gateway_failure(e)

    now = deps.now()
    try:
        await _cancel_unpaid_in_tx(session, order, now)
        await session.commit()
    except Abort as e:
        await session.rollback()
        return Err(e.error)
    except Exception:
        await session.rollback()
        raise

    actor = "admin" if requester.is_admin and requester.user_id != order.user_id else "customer"
    logger.info("Order %s payment cancelled by %s", order_id, actor)
    await _publish_cancelled(deps, order_id, f"cancelled by {actor}", now)
    return Ok(await store.load_order(session, order_id))


async def refund_payment(
    session: AsyncSession,
    deps: Collaborators,
    order_id: str,
    requester: Requester,
) -> Result[Order]:
    """
    支払い済み決済の返金 (管理者のみ)

    返金はゲートウェイが受け付けてから記録する。まだ発送前 (PENDING) の
    注文は同じトランザクションで取り消し、在庫を戻す。
    """
    if not requester.is_admin:
        return fail(ErrorCode.FORBIDDEN, "Only administrators can refund payments")

    loaded = await _load_for(session, order_id, requester)
    if isinstance(loaded, Err):
        return loaded
    order = loaded.value

    error = payment_transition_error(order.payment_status, PaymentStatus.REFUNDED)
    if error is not None:
        await session.rollback()
        return Err(error)
    if not order.gateway_payment_id:
        await session.rollback()
        return fail(ErrorCode.GATEWAY_REJECTED, f"Order {order_id} has no gateway payment to refund")
    if deps.gateway is None:
        await session.rollback()
        return _no_gateway()

    await _end_read(session)
    try:
        await deps.gateway.refund_payment(order.gateway_payment_id)
    except GatewayError as e:
        logger.warning("Refund for order %s failed: %s", order_id, e)
        return _gateway_failure(e)

    now = deps.now()
    status_cancelled = False
    try:
        if not await store.compare_and_set_payment(
            session, order_id, PaymentStatus.PAID, PaymentStatus.REFUNDED, now
        ):
            raise Abort(OrderError(
                ErrorCode.INVALID_TRANSITION,
                f"Payment of order {order_id} is no longer paid",
                {"axis": "payment_status", "to": PaymentStatus.REFUNDED.value},
            ))
        if order.status == OrderStatus.PENDING:
            status_cancelled = await store.compare_and_set_status(
                session, order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, now
            )
            if status_cancelled:
                for item in order.items:
                    await inventory.restock(session, item.product_id, item.quantity)
        await session.commit()
    except Abort as e:
        await session.rollback()
        logger.error("Refund for order %s accepted by gateway but not recorded: %s", order_id, e.error.message)
        return Err(e.error)
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s refunded (payment_id=%s)", order_id, order.gateway_payment_id)
    await events.publish(deps.redis, events.PaymentRefunded(
        order_id=order_id,
        payment_id=order.gateway_payment_id,
        amount=order.total_amount,
        timestamp=now,
    ))
    if status_cancelled:
        await events.publish(deps.redis, events.OrderStatusChanged(
            order_id=order_id,
            from_status=OrderStatus.PENDING.value,
            to_status=OrderStatus.CANCELLED.value,
            timestamp=now,
        ))
    return Ok(await store.load_order(session, order_id))
