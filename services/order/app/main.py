"""
Order Service — FastAPI エントリーポイント

注文作成 (カート・今すぐ購入・ドラフト確定) と決済 (請求書・通知・取消・返金) の API。
利用者の識別は上流のゲートウェイが付ける X-User-Id / X-User-Role ヘッダーで行う。

┌──────────┐  X-User-Id   ┌───────────────┐  請求書/照会  ┌──────────────┐
│ Frontend │ ───────────▶ │ Order Service │ ────────────▶ │ 決済ゲートウェイ │
└──────────┘              └──────┬────────┘ ◀──────────── └──────────────┘
                                 │            決済通知
                          order_events (Redis Pub/Sub)
"""

import asyncio
import json
import os
from contextlib import asynccontextmanager
from datetime import date

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, drafts, payments, queries
from .aggregate import OrderStatus
from .collaborators import AddressPayload, Collaborators, Requester, SqlDeliverySlotPolicy
from .config import GatewaySettings, OrderSettings
from .gateway import PaymentGatewayClient
from .receipts import GatewayReceiptIssuer
from .results import Err, ErrorCode, Result
from .tables import metadata

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

ERROR_STATUS = {
    ErrorCode.EMPTY_CART: 400,
    ErrorCode.INVALID_QUANTITY: 400,
    ErrorCode.PRODUCT_UNAVAILABLE: 400,
    ErrorCode.INVALID_ADDRESS: 400,
    ErrorCode.INVALID_SLOT: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.EXPIRED: 410,
    ErrorCode.PAYMENT_IN_PROGRESS: 429,
    ErrorCode.GATEWAY_REJECTED: 502,
    ErrorCode.GATEWAY_UNAVAILABLE: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """DB・Redis・ゲートウェイを準備し、ドラフト掃除をバックグラウンドで開始する。"""
    settings = OrderSettings.from_env()
    engine = create_async_engine(os.environ["DATABASE_URL"], echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http = httpx.AsyncClient()
    gateway = PaymentGatewayClient(GatewaySettings.from_env(), http)

    app.state.session_factory = async_session
    deps = Collaborators(
        redis=redis_pool,
        settings=settings,
        slots=SqlDeliverySlotPolicy(settings.off_delivery_weekdays),
        gateway=gateway,
        receipts=GatewayReceiptIssuer(gateway, settings.receipt_receiver_type),
    )

    app.state.deps = deps

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(
        drafts.run_draft_sweeper(
            async_session, settings.draft_sweep_interval_seconds, shutdown_event, deps.now
        )
    )
    yield
    shutdown_event.set()
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await http.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request / Response Models ────────────────────

class AddressChoice(BaseModel):
    """既存の住所 ID か、新規住所のどちらか一方"""
    address_id: int | None = None
    address: AddressPayload | None = None
    delivery_time_slot: str | None = None
    delivery_date: date | None = None

    @model_validator(mode="after")
    def exactly_one_address(self):
        if (self.address_id is None) == (self.address is None):
            raise ValueError("Provide either address_id or address")
        return self

    def address_input(self) -> commands.AddressInput:
        return self.address if self.address is not None else self.address_id


class FromCartRequest(AddressChoice):
    pass


class BuyNowRequest(AddressChoice):
    product_id: int
    quantity: int = Field(gt=0)


class FinalizeDraftRequest(AddressChoice):
    pass


class SaveDraftRequest(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    session_token: str | None = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


# ── ヘルパー ─────────────────────────────────────

def _requester(x_user_id: int | None, x_user_role: str | None) -> Requester:
    if x_user_id is None:
        raise HTTPException(401, "Authentication required")
    return Requester(user_id=x_user_id, is_admin=(x_user_role or "").upper() == "ADMIN")


def _unwrap(result: Result):
    """Err を HTTPException に変換し、Ok の中身を返す。"""
    if isinstance(result, Err):
        error = result.error
        raise HTTPException(
            ERROR_STATUS[error.code],
            {"code": error.code.value, "message": error.message, **error.detail},
        )
    return result.value


# ── 注文作成 ─────────────────────────────────────

@app.post("/orders/from-cart", status_code=201)
async def create_order_from_cart(
    req: FromCartRequest,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """カートから注文作成"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await commands.create_order_from_cart(
            session, request.app.state.deps,
            requester.user_id, req.address_input(),
            req.delivery_time_slot, req.delivery_date,
        ))
        return order.to_dict()


@app.post("/orders/buy-now", status_code=201)
async def buy_now(
    req: BuyNowRequest,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """今すぐ購入"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await commands.buy_now(
            session, request.app.state.deps,
            requester.user_id, req.product_id, req.quantity, req.address_input(),
            req.delivery_time_slot, req.delivery_date,
        ))
        return order.to_dict()


# ── ドラフト注文 (ゲスト) ────────────────────────

@app.post("/drafts", status_code=201)
async def save_draft(req: SaveDraftRequest, request: Request):
    """ドラフト注文の作成・更新 (認証不要)"""
    deps: Collaborators = request.app.state.deps
    async with request.app.state.session_factory() as session:
        draft = _unwrap(await drafts.save_draft(
            session, deps.settings, req.product_id, req.quantity,
            deps.now(), req.session_token,
        ))
        return draft.to_dict()


@app.get("/drafts/{session_token}")
async def get_draft(session_token: str, request: Request):
    deps: Collaborators = request.app.state.deps
    async with request.app.state.session_factory() as session:
        draft = await drafts.get_draft(session, session_token)
        if not draft or draft.is_expired(deps.now()):
            raise HTTPException(404, "Draft order not found")
        return draft.to_dict()


@app.post("/drafts/{session_token}/finalize", status_code=201)
async def finalize_draft(
    session_token: str,
    req: FinalizeDraftRequest,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """ログイン後にドラフトを本注文にする"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await commands.finalize_draft(
            session, request.app.state.deps,
            requester.user_id, session_token, req.address_input(),
            req.delivery_time_slot, req.delivery_date,
        ))
        return order.to_dict()


# ── 注文の参照と配送状態 ─────────────────────────

@app.get("/orders")
async def list_orders(
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        return [order.to_dict() for order in await queries.list_orders(session, requester)]


@app.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        return _unwrap(await queries.get_order(session, order_id, requester)).to_dict()


@app.post("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """配送状態の更新 (管理者)"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await commands.advance_order_status(
            session, request.app.state.deps, order_id, req.status, requester
        ))
        return order.to_dict()


# ── 決済 ─────────────────────────────────────────

@app.post("/orders/{order_id}/initiate-payment")
async def initiate_payment(
    order_id: str,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """請求書 (QR) の作成"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await payments.initiate_payment(
            session, request.app.state.deps, order_id, requester
        ))
        return order.to_dict()


@app.get("/orders/{order_id}/payment-status")
async def payment_status(
    order_id: str,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """クライアントのポーリング用。ゲートウェイに照会して状態を合わせる。"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await payments.sync_payment_status(
            session, request.app.state.deps, order_id, requester
        ))
        return order.to_dict()


@app.post("/orders/{order_id}/cancel-payment")
async def cancel_payment(
    order_id: str,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await payments.cancel_payment(
            session, request.app.state.deps, order_id, requester
        ))
        return order.to_dict()


@app.post("/orders/{order_id}/refund")
async def refund_payment(
    order_id: str,
    request: Request,
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
):
    """返金 (管理者)"""
    requester = _requester(x_user_id, x_user_role)
    async with request.app.state.session_factory() as session:
        order = _unwrap(await payments.refund_payment(
            session, request.app.state.deps, order_id, requester
        ))
        return order.to_dict()


@app.api_route("/orders/{order_id}/payment-callback", methods=["GET", "POST"])
async def payment_callback(order_id: str, request: Request):
    """
    ゲートウェイからの決済通知 (公開)

    通知の内容は照会のきっかけとしてだけ使う。処理済み・不明な注文でも
    200 を返し、ゲートウェイに再送を続けさせない。本文が壊れている場合だけ 400。
    """
    notification = dict(request.query_params)
    body = await request.body()
    if body:
        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(400, "Malformed notification body")
        if not isinstance(payload, dict):
            raise HTTPException(400, "Malformed notification body")
        notification.update(payload)

    async with request.app.state.session_factory() as session:
        ack = await payments.handle_payment_callback(
            session, request.app.state.deps, order_id, notification
        )
        return ack.to_dict()


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
