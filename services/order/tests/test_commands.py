"""Tests for order creation from cart, buy-now and drafts."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from app import commands, drafts, store
from app.aggregate import OrderStatus, PaymentStatus
from app.collaborators import AddressPayload, Requester, SqlDeliverySlotPolicy
from app.results import Err, ErrorCode, Ok
from app.tables import (
    addresses,
    cart_items,
    disabled_delivery_slots,
    draft_orders,
    order_items,
    orders,
    products,
)

from conftest import add_address, add_cart_line, add_product, stock_of

pytestmark = pytest.mark.anyio

USER = 7


async def count(session, table):
    result = await session.execute(select(func.count()).select_from(table))
    return result.scalar_one()


class TestCreateOrderFromCart:
    async def test_happy_path(self, session, deps, redis):
        a = await add_product(session, "A", "10.00", 5)
        b = await add_product(session, "B", "5.00", 1)
        address_id = await add_address(session, USER)
        await add_cart_line(session, USER, a, 2, "10.00")
        await add_cart_line(session, USER, b, 1, "5.00")

        result = await commands.create_order_from_cart(session, deps, USER, address_id)

        assert isinstance(result, Ok)
        order = result.value
        assert order.total_amount == Decimal("25.00")
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert len(order.items) == 2
        assert await stock_of(session, a) == 3
        assert await stock_of(session, b) == 0
        assert await count(session, cart_items) == 0
        assert redis.event_types() == ["OrderCreated"]

    async def test_empty_cart(self, session, deps):
        address_id = await add_address(session, USER)

        result = await commands.create_order_from_cart(session, deps, USER, address_id)

        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.EMPTY_CART

    async def test_insufficient_stock_changes_nothing(self, session, deps, redis):
        a = await add_product(session, "A", "10.00", 5)
        b = await add_product(session, "B", "5.00", 1)
        address_id = await add_address(session, USER)
        await add_cart_line(session, USER, a, 2, "10.00")
        await add_cart_line(session, USER, b, 2, "5.00")

        result = await commands.create_order_from_cart(session, deps, USER, address_id)

        assert isinstance(result, Err)
        assert result.error.code == ErrorCode.INSUFFICIENT_STOCK
        assert result.error.detail == {"product_id": b, "requested": 2, "available": 1}
        assert await stock_of(session, a) == 5
        assert await stock_of(session, b) == 1
        assert await count(session, orders) == 0
        assert await count(session, order_items) == 0
        assert await count(session, cart_items) == 2
        assert redis.published == []

    async def test_new_address_rolled_back_with_failed_order(self, session, deps):
        a = await add_product(session, "A", "10.00", 1)
        await add_cart_line(session, USER, a, 3, "10.00")
        payload = AddressPayload(
            full_name="Bat Dorj", phone_number="99112233",
            district="Khan-Uul", details="House 5",
        )

        result = await commands.create_order_from_cart(session, deps, USER, payload)

        assert result.error.code == ErrorCode.INSUFFICIENT_STOCK
        assert await count(session, addresses) == 0

    async def test_address_of_other_user_is_invalid(self, session, deps):
        a = await add_product(session, "A", "10.00", 5)
        other_address = await add_address(session, 99)
        await add_cart_line(session, USER, a, 1, "10.00")

        result = await commands.create_order_from_cart(session, deps, USER, other_address)

        assert result.error.code == ErrorCode.INVALID_ADDRESS
        assert await stock_of(session, a) == 5

    async def test_soft_deleted_product_is_unavailable(self, session, deps, clock):
        a = await add_product(session, "A", "10.00", 5)
        address_id = await add_address(session, USER)
        await add_cart_line(session, USER, a, 1, "10.00")
        await session.execute(update(products).where(products.c.id == a).values(deleted_at=clock()))
        await session.commit()

        result = await commands.create_order_from_cart(session, deps, USER, address_id)

        assert result.error.code == ErrorCode.PRODUCT_UNAVAILABLE

    async def test_clears_only_ordered_products(self, session, deps):
        a = await add_product(session, "A", "10.00", 5)
        address_id = await add_address(session, USER)
        await add_cart_line(session, USER, a, 1, "10.00")
        other_user_product = await add_product(session, "B", "1.00", 5)
        await add_cart_line(session, 8, other_user_product, 1, "1.00")

        await commands.create_order_from_cart(session, deps, USER, address_id)

        assert await count(session, cart_items) == 1


class TestBuyNow:
    async def test_creates_single_line_order_with_new_address(self, session, deps):
        a = await add_product(session, "A", "12.50", 4)
        payload = AddressPayload(
            full_name="Bat Dorj", phone_number="+97699112233",
            district="Khan-Uul", details="House 5",
        )

        result = await commands.buy_now(session, deps, USER, a, 2, payload)

        order = result.value
        assert order.total_amount == Decimal("25.00")
        assert order.address_id is not None
        assert [(i.product_id, i.quantity) for i in order.items] == [(a, 2)]
        assert await stock_of(session, a) == 2

    async def test_rejects_non_positive_quantity(self, session, deps):
        a = await add_product(session, "A", "12.50", 4)
        address_id = await add_address(session, USER)

        result = await commands.buy_now(session, deps, USER, a, 0, address_id)

        assert result.error.code == ErrorCode.INVALID_QUANTITY

    async def test_insufficient_stock(self, session, deps):
        a = await add_product(session, "A", "12.50", 1)
        address_id = await add_address(session, USER)

        result = await commands.buy_now(session, deps, USER, a, 2, address_id)

        assert result.error.code == ErrorCode.INSUFFICIENT_STOCK
        assert await count(session, orders) == 0

    async def test_price_is_fixed_at_creation(self, session, deps):
        a = await add_product(session, "A", "10.00", 5)
        address_id = await add_address(session, USER)
        order = (await commands.buy_now(session, deps, USER, a, 2, address_id)).value

        await session.execute(update(products).where(products.c.id == a).values(price=Decimal("99.00")))
        await session.commit()

        reloaded = await store.load_order(session, order.id)
        assert reloaded.total_amount == Decimal("20.00")
        assert reloaded.items[0].unit_price == Decimal("10.00")


class TestOrderIds:
    async def test_sequence_per_store_day(self, session, deps, clock):
        a = await add_product(session, "A", "1.00", 10)
        address_id = await add_address(session, USER)

        first = (await commands.buy_now(session, deps, USER, a, 1, address_id)).value
        second = (await commands.buy_now(session, deps, USER, a, 1, address_id)).value
        # 17:00 UTC is already the next day in store time
        clock.advance(hours=15)
        third = (await commands.buy_now(session, deps, USER, a, 1, address_id)).value

        assert first.id == "260316001"
        assert second.id == "260316002"
        assert third.id == "260317001"


class TestDeliverySlots:
    async def test_unknown_slot(self, session, deps):
        a = await add_product(session, "A", "1.00", 10)
        address_id = await add_address(session, USER)

        result = await commands.buy_now(session, deps, USER, a, 1, address_id, slot="09-10")

        assert result.error.code == ErrorCode.INVALID_SLOT

    async def test_valid_slot_defaults_to_store_today(self, session, deps):
        a = await add_product(session, "A", "1.00", 10)
        address_id = await add_address(session, USER)

        order = (await commands.buy_now(session, deps, USER, a, 1, address_id, slot="14-18")).value

        assert order.delivery_date == date(2026, 3, 16)
        assert order.delivery_time_slot.value == "14-18"

    async def test_disabled_slot(self, session, deps):
        a = await add_product(session, "A", "1.00", 10)
        address_id = await add_address(session, USER)
        await session.execute(
            disabled_delivery_slots.insert().values(delivery_date=date(2026, 3, 18), slot="18-21")
        )
        await session.commit()

        result = await commands.buy_now(
            session, deps, USER, a, 1, address_id, slot="18-21", delivery_date=date(2026, 3, 18)
        )

        assert result.error.code == ErrorCode.INVALID_SLOT
        assert await stock_of(session, a) == 10

    async def test_off_weekday_disables_every_slot(self, session, deps):
        deps.slots = SqlDeliverySlotPolicy(frozenset({6}))
        a = await add_product(session, "A", "1.00", 10)
        address_id = await add_address(session, USER)

        result = await commands.buy_now(
            session, deps, USER, a, 1, address_id, slot="10-14", delivery_date=date(2026, 3, 22)
        )

        assert result.error.code == ErrorCode.INVALID_SLOT


class TestFinalizeDraft:
    async def test_converts_draft_and_deletes_it(self, session, deps, settings, clock):
        a = await add_product(session, "A", "8.00", 3)
        address_id = await add_address(session, USER)
        draft = (await drafts.save_draft(session, settings, a, 2, clock())).value

        result = await commands.finalize_draft(session, deps, USER, draft.session_token, address_id)

        assert result.value.total_amount == Decimal("16.00")
        assert await stock_of(session, a) == 1
        assert await count(session, draft_orders) == 0

    async def test_unknown_token(self, session, deps):
        address_id = await add_address(session, USER)

        result = await commands.finalize_draft(session, deps, USER, "nope", address_id)

        assert result.error.code == ErrorCode.NOT_FOUND

    async def test_expired_draft_is_removed(self, session, deps, settings, clock):
        a = await add_product(session, "A", "8.00", 3)
        address_id = await add_address(session, USER)
        draft = (await drafts.save_draft(session, settings, a, 1, clock())).value

        clock.advance(hours=25)
        result = await commands.finalize_draft(session, deps, USER, draft.session_token, address_id)

        assert result.error.code == ErrorCode.EXPIRED
        assert await count(session, draft_orders) == 0
        assert await count(session, orders) == 0
        assert await stock_of(session, a) == 3

    async def test_stock_shortage_keeps_draft(self, session, deps, settings, clock):
        a = await add_product(session, "A", "8.00", 3)
        address_id = await add_address(session, USER)
        draft = (await drafts.save_draft(session, settings, a, 3, clock())).value
        await session.execute(update(products).where(products.c.id == a).values(stock=1))
        await session.commit()

        result = await commands.finalize_draft(session, deps, USER, draft.session_token, address_id)

        assert result.error.code == ErrorCode.INSUFFICIENT_STOCK
        assert await count(session, draft_orders) == 1

    async def test_draft_finalized_by_another_request(self, session, deps, settings, clock, monkeypatch):
        a = await add_product(session, "A", "8.00", 5)
        address_id = await add_address(session, USER)
        draft = (await drafts.save_draft(session, settings, a, 2, clock())).value

        first = await commands.finalize_draft(session, deps, USER, draft.session_token, address_id)

        # a concurrent request read the draft before the first one deleted it
        async def stale_read(s, token):
            return draft

        monkeypatch.setattr(drafts, "get_draft", stale_read)
        second = await commands.finalize_draft(session, deps, USER, draft.session_token, address_id)

        assert isinstance(first, Ok)
        assert second.error.code == ErrorCode.NOT_FOUND
        assert await count(session, orders) == 1
        assert await stock_of(session, a) == 3


class TestAdvanceOrderStatus:
    ADMIN = Requester(user_id=1, is_admin=True)

    async def _order(self, session, deps):
        a = await add_product(session, "A", "1.00", 10)
        address_id = await add_address(session, USER)
        return (await commands.buy_now(session, deps, USER, a, 1, address_id)).value

    async def test_requires_admin(self, session, deps):
        order = await self._order(session, deps)

        result = await commands.advance_order_status(
            session, deps, order.id, OrderStatus.PROCESSING, Requester(USER)
        )

        assert result.error.code == ErrorCode.FORBIDDEN

    async def test_processing_requires_payment(self, session, deps):
        order = await self._order(session, deps)

        result = await commands.advance_order_status(
            session, deps, order.id, OrderStatus.PROCESSING, self.ADMIN
        )

        assert result.error.code == ErrorCode.INVALID_TRANSITION

    async def test_paid_order_moves_to_completed(self, session, deps, redis):
        order = await self._order(session, deps)
        await session.execute(
            update(orders).where(orders.c.id == order.id).values(payment_status="PAID")
        )
        await session.commit()

        processing = await commands.advance_order_status(
            session, deps, order.id, OrderStatus.PROCESSING, self.ADMIN
        )
        completed = await commands.advance_order_status(
            session, deps, order.id, OrderStatus.COMPLETED, self.ADMIN
        )
        backwards = await commands.advance_order_status(
            session, deps, order.id, OrderStatus.PENDING, self.ADMIN
        )

        assert processing.value.status == OrderStatus.PROCESSING
        assert completed.value.status == OrderStatus.COMPLETED
        assert backwards.error.code == ErrorCode.INVALID_TRANSITION
        assert redis.event_types().count("OrderStatusChanged") == 2

    async def test_missing_order(self, session, deps):
        result = await commands.advance_order_status(
            session, deps, "260316999", OrderStatus.PROCESSING, self.ADMIN
        )

        assert result.error.code == ErrorCode.NOT_FOUND
