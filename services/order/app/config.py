"""
Order Service — 設定

環境変数から読み込む。各コンポーネントには設定オブジェクトを明示的に渡す。
"""

import os
from dataclasses import dataclass, field


def _weekdays(raw: str) -> frozenset[int]:
    return frozenset(int(part) for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class GatewaySettings:
    api_url: str = "https://merchant.qpay.mn/v2"
    username: str = ""
    password: str = ""
    invoice_code: str = ""
    callback_base_url: str = ""
    branch_code: str = "ONLINE"
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    token_ttl_margin_seconds: int = 60

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            api_url=os.environ.get("GATEWAY_API_URL", cls.api_url).rstrip("/"),
            username=os.environ.get("GATEWAY_USERNAME", ""),
            password=os.environ.get("GATEWAY_PASSWORD", ""),
            invoice_code=os.environ.get("GATEWAY_INVOICE_CODE", ""),
            callback_base_url=os.environ.get("GATEWAY_CALLBACK_BASE_URL", "").rstrip("/"),
            branch_code=os.environ.get("GATEWAY_BRANCH_CODE", cls.branch_code),
            timeout_seconds=float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10")),
            max_attempts=int(os.environ.get("GATEWAY_MAX_ATTEMPTS", "3")),
            backoff_seconds=float(os.environ.get("GATEWAY_BACKOFF_SECONDS", "0.5")),
            token_ttl_margin_seconds=int(
                os.environ.get("GATEWAY_TOKEN_TTL_MARGIN_SECONDS", "60")
            ),
        )


@dataclass(frozen=True)
class OrderSettings:
    utc_offset_hours: int = 8
    draft_ttl_hours: int = 24
    draft_sweep_interval_seconds: float = 600.0
    invoice_ttl_minutes: int = 60
    payment_lock_seconds: int = 30
    receipt_receiver_type: str = "CITIZEN"
    # datetime.weekday() の番号。6 = 日曜
    off_delivery_weekdays: frozenset[int] = field(default_factory=lambda: frozenset({6}))

    @classmethod
    def from_env(cls) -> "OrderSettings":
        return cls(
            utc_offset_hours=int(os.environ.get("STORE_UTC_OFFSET_HOURS", "8")),
            draft_ttl_hours=int(os.environ.get("DRAFT_TTL_HOURS", "24")),
            draft_sweep_interval_seconds=float(
                os.environ.get("DRAFT_SWEEP_INTERVAL_SECONDS", "600")
            ),
            invoice_ttl_minutes=int(os.environ.get("INVOICE_TTL_MINUTES", "60")),
            payment_lock_seconds=int(os.environ.get("PAYMENT_LOCK_SECONDS", "30")),
            receipt_receiver_type=os.environ.get("RECEIPT_RECEIVER_TYPE", "CITIZEN"),
            off_delivery_weekdays=_weekdays(os.environ.get("OFF_DELIVERY_WEEKDAYS", "6")),
        )
