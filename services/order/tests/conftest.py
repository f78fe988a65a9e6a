"""Pytest fixtures for order service tests."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.collaborators import Collaborators
from app.config import OrderSettings
from app.gateway import GatewayPaymentState, GatewayRejected, Invoice, PaymentCheck
from app.receipts import Receipt
from app.tables import addresses, cart_items, metadata, products

# 2026-03-16 10:00 in store time (UTC+8), a Monday
BASE_TIME = datetime(2026, 3, 16, 2, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = BASE_TIME):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeRedis:
    """Records published messages and implements SET NX for locks."""

    def __init__(self):
        self.published = []
        self.store = {}

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def eval(self, script, numkeys, key, token):
        # Only the compare-and-delete lock release script is used.
        if self.store.get(key) == token:
            return await self.delete(key)
        return 0

    def event_types(self):
        return [json.loads(message)["event_type"] for _, message in self.published]


class FakeGateway:
    def __init__(self):
        self.check = PaymentCheck(GatewayPaymentState.PENDING)
        self.invoices = []
        self.cancelled = []
        self.refunded = []
        self.check_calls = 0
        self.error = None

    async def create_invoice(self, order, expires_at):
        if self.error:
            raise self.error
        invoice = Invoice(f"INV-{len(self.invoices) + 1}", qr_text=f"qr-{order.id}")
        self.invoices.append(invoice)
        return invoice

    async def check_payment(self, invoice_id):
        self.check_calls += 1
        if self.error:
            raise self.error
        return self.check

    async def cancel_invoice(self, invoice_id):
        self.cancelled.append(invoice_id)

    async def refund_payment(self, payment_id):
        if self.error:
            raise self.error
        self.refunded.append(payment_id)


class FakeReceipts:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.error = None

    async def issue(self, order_id, line_items, payment_id):
        self.calls.append((order_id, list(line_items), payment_id))
        if self.error:
            raise self.error
        if self.fail:
            raise GatewayRejected(500, "receipt service down")
        return Receipt(receipt_id=f"R-{order_id}")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(anyio_backend, tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def receipts():
    return FakeReceipts()


@pytest.fixture
def settings():
    return OrderSettings()


@pytest.fixture
def deps(redis, settings, gateway, receipts, clock):
    return Collaborators(
        redis=redis,
        settings=settings,
        gateway=gateway,
        receipts=receipts,
        clock=clock,
    )


# ── seed helpers ─────────────────────────────────

async def add_product(session, name, price, stock):
    result = await session.execute(
        insert(products).values(name=name, price=Decimal(price), stock=stock)
    )
    await session.commit()
    return result.inserted_primary_key[0]


async def add_address(session, user_id):
    result = await session.execute(
        insert(addresses).values(
            user_id=user_id,
            full_name="Bat Dorj",
            phone_number="99112233",
            district="Sukhbaatar",
            details="Apartment 12, door 34",
            created_at=BASE_TIME,
        )
    )
    await session.commit()
    return result.inserted_primary_key[0]


async def add_cart_line(session, user_id, product_id, quantity, unit_price):
    await session.execute(
        insert(cart_items).values(
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            unit_price=Decimal(unit_price),
            created_at=BASE_TIME,
        )
    )
    await session.commit()


async def stock_of(session, product_id):
    result = await session.execute(select(products.c.stock).where(products.c.id == product_id))
    return result.scalar_one()
