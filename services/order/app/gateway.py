"""
Order Service — 決済ゲートウェイクライアント

外部ゲートウェイの 4 操作 (請求書作成・状態照会・取消・返金) と
レシート発行エンドポイントを包む薄いクライアント。

  リトライ方針:
  ┌──────────────────────────────────────────────────────────────┐
  │ 通信エラー / タイムアウト / 5xx → 指数バックオフで再試行       │
  │   上限到達 → GatewayUnavailable                              │
  │ 401 → トークンを強制更新して 1 回だけ再試行                   │
  │ その他の 4xx → GatewayRejected (再試行しない)                │
  │ 請求書作成 → 未送信が確実な接続失敗のときだけ再試行            │
  └──────────────────────────────────────────────────────────────┘

ゲートウェイ側の請求書作成は冪等ではないため、リクエストが届いた可能性が
あるとき (レスポンス受信・タイムアウト) に再送すると請求書が重複する。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx

from .aggregate import Order, as_decimal, as_utc
from .config import GatewaySettings

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"PAID", "SUCCESS", "COMPLETED"})
FAILED_STATUSES = frozenset({"FAILED", "CANCELLED", "CANCELED", "EXPIRED"})
PENDING_STATUSES = frozenset({"NEW", "PENDING", "PROCESSING"})


class GatewayError(Exception):
    pass


class GatewayUnavailable(GatewayError):
    """再試行の上限に達した、またはタイムアウトした。外側の操作は安全に再試行できる。"""


class GatewayRejected(GatewayError):
    """ゲートウェイがリクエストを拒否した (4xx)。"""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Gateway rejected request ({status_code}): {message}")
        self.status_code = status_code


class GatewayPaymentState(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class Invoice:
    invoice_id: str
    qr_text: str | None = None
    qr_image: str | None = None
    urls: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentCheck:
    state: GatewayPaymentState
    payment_id: str | None = None
    amount: Decimal | None = None
    paid_at: datetime | None = None
    payment_type: str | None = None


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def map_payment_check(body: dict[str, Any]) -> PaymentCheck:
    """
    /payment/check のレスポンスを 4 状態に写像する。

    成功した支払いが 1 件でもあれば PAID。支払いが 1 件も無ければ PENDING。
    すべて失敗なら FAILED。
    """
    rows = (body.get("rows") or []) if body.get("count") else []
    if not rows:
        return PaymentCheck(GatewayPaymentState.PENDING)

    for row in rows:
        if str(row.get("payment_status", "")).upper() in PAID_STATUSES:
            amount = row.get("payment_amount", row.get("amount"))
            return PaymentCheck(
                GatewayPaymentState.PAID,
                payment_id=str(row.get("payment_id") or row.get("id") or "") or None,
                amount=as_decimal(amount) if amount is not None else None,
                paid_at=_parse_time(row.get("payment_date") or row.get("paid_date")),
                payment_type=row.get("payment_type"),
            )

    statuses = {str(row.get("payment_status", "")).upper() for row in rows}
    if statuses <= FAILED_STATUSES:
        return PaymentCheck(GatewayPaymentState.FAILED)
    if statuses & PENDING_STATUSES:
        return PaymentCheck(GatewayPaymentState.PENDING)
    return PaymentCheck(GatewayPaymentState.UNKNOWN)


class PaymentGatewayClient:
    """決済ゲートウェイのクライアント。アクセストークンは有効期限付きでキャッシュする。"""

    def __init__(
        self,
        settings: GatewaySettings,
        http: httpx.AsyncClient,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.http = http
        self._sleep = sleep
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # ── 認証 ─────────────────────────────────────────

    async def _access_token(self, force_refresh: bool = False) -> str:
        async with self._token_lock:
            if not force_refresh and self._token and time.monotonic() < self._token_expires_at:
                return self._token

            response = await self._send(
                "POST",
                "/auth/token",
                auth=(self.settings.username, self.settings.password),
            )
            if response.status_code != 200:
                raise GatewayRejected(response.status_code, "token request failed")
            data = self._body(response)
            token = data.get("access_token")
            if not token:
                raise GatewayRejected(response.status_code, "access_token missing")

            expires_in = int(data.get("expires_in") or 3600)
            self._token = token
            self._token_expires_at = time.monotonic() + max(
                expires_in - self.settings.token_ttl_margin_seconds, 0
            )
            logger.info("Gateway access token refreshed")
            return token

    def clear_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    # ── 送信とリトライ ───────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        token: str | None = None,
        auth: tuple[str, str] | None = None,
        unsent_only: bool = False,
    ) -> httpx.Response:
        """
        1 つのリクエストを再試行付きで送る。

        unsent_only=True のときはリクエストが送られていないことが確実な
        接続失敗だけを再試行する。401 は呼び出し元に返す。
        """
        url = f"{self.settings.api_url}{path}"
        headers = {"Authorization": f"Bearer {token}"} if token else None
        attempts = self.settings.max_attempts
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                response = await self.http.request(
                    method,
                    url,
                    json=json,
                    headers=headers,
                    auth=auth,
                    timeout=self.settings.timeout_seconds,
                )
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = e
            except httpx.TransportError as e:
                if unsent_only:
                    raise GatewayUnavailable(f"{method} {path}: {e!r} (not retried)") from e
                last_error = e
            else:
                if response.status_code >= 500:
                    if unsent_only:
                        raise GatewayUnavailable(
                            f"{method} {path}: HTTP {response.status_code} (not retried)"
                        )
                    last_error = GatewayError(f"HTTP {response.status_code}")
                elif response.status_code == 401:
                    return response
                elif response.status_code >= 400:
                    raise GatewayRejected(response.status_code, response.text[:500])
                else:
                    return response

            if attempt < attempts - 1:
                delay = self.settings.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Gateway %s %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    method, path, last_error, delay, attempt + 1, attempts,
                )
                await self._sleep(delay)

        raise GatewayUnavailable(
            f"{method} {path} failed after {attempts} attempts: {last_error}"
        ) from last_error

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        unsent_only: bool = False,
    ) -> httpx.Response:
        token = await self._access_token()
        response = await self._send(method, path, json=json, token=token, unsent_only=unsent_only)
        if response.status_code != 401:
            return response

        logger.info("Gateway returned 401 for %s %s, refreshing token", method, path)
        token = await self._access_token(force_refresh=True)
        response = await self._send(method, path, json=json, token=token, unsent_only=unsent_only)
        if response.status_code == 401:
            raise GatewayRejected(401, "unauthorized after token refresh")
        return response

    @staticmethod
    def _body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayRejected(response.status_code, "malformed JSON response") from e
        return data if isinstance(data, dict) else {}

    # ── 操作 ─────────────────────────────────────────

    async def create_invoice(self, order: Order, expires_at: datetime) -> Invoice:
        """注文 ID と金額に紐づく請求書を作成する。"""
        payload = {
            "invoice_code": self.settings.invoice_code,
            "sender_invoice_no": order.id,
            "invoice_receiver_code": "terminal",
            "sender_branch_code": self.settings.branch_code,
            "invoice_description": f"Order #{order.id}",
            "amount": float(order.total_amount),
            "callback_url": f"{self.settings.callback_base_url}/orders/{order.id}/payment-callback",
            "enable_expiry": "true",
            "expiry_date": expires_at.replace(tzinfo=None).isoformat(timespec="seconds"),
            "allow_partial": False,
            "allow_exceed": False,
            "lines": [
                {
                    "line_description": f"Product #{item.product_id} x{item.quantity}",
                    "line_quantity": f"{item.quantity:.2f}",
                    "line_unit_price": f"{item.unit_price:.2f}",
                }
                for item in order.items
            ],
        }
        response = await self._call("POST", "/invoice", json=payload, unsent_only=True)
        data = self._body(response)
        if not data.get("invoice_id"):
            raise GatewayRejected(response.status_code, "invoice_id missing")
        return Invoice(
            invoice_id=str(data["invoice_id"]),
            qr_text=data.get("qr_text"),
            qr_image=data.get("qr_image"),
            urls=data.get("urls") or [],
        )

    async def check_payment(self, invoice_id: str) -> PaymentCheck:
        """請求書の現在の支払い状態をゲートウェイに照会する。"""
        response = await self._call(
            "POST",
            "/payment/check",
            json={
                "object_type": "INVOICE",
                "object_id": invoice_id,
                "offset": {"page_number": 1, "page_limit": 100},
            },
        )
        return map_payment_check(self._body(response))

    async def cancel_invoice(self, invoice_id: str) -> None:
        await self._call("DELETE", f"/invoice/{invoice_id}")

    async def refund_payment(self, payment_id: str) -> None:
        await self._call("DELETE", f"/payment/refund/{payment_id}")

    async def create_receipt(self, payment_id: str, receiver_type: str) -> dict[str, Any]:
        response = await self._call(
            "POST",
            "/ebarimt/create",
            json={"payment_id": payment_id, "ebarimt_receiver_type": receiver_type},
        )
        return self._body(response)
