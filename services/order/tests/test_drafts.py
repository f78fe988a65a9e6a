"""Tests for guest draft orders and the expiry sweeper."""

import asyncio
from decimal import Decimal

import pytest

from app import drafts
from app.results import ErrorCode

from conftest import add_product, stock_of

pytestmark = pytest.mark.anyio


class TestSaveDraft:
    async def test_new_draft_gets_token_and_expiry(self, session, settings, clock):
        product_id = await add_product(session, "A", "7.50", 4)

        draft = (await drafts.save_draft(session, settings, product_id, 2, clock())).value

        assert len(draft.session_token) == 64
        assert draft.total_amount == Decimal("15.00")
        assert (draft.expires_at - clock()).total_seconds() == 24 * 3600
        assert await stock_of(session, product_id) == 4

    async def test_same_token_updates_draft(self, session, settings, clock):
        product_id = await add_product(session, "A", "7.50", 4)
        first = (await drafts.save_draft(session, settings, product_id, 1, clock())).value

        clock.advance(hours=2)
        second = (await drafts.save_draft(
            session, settings, product_id, 3, clock(), first.session_token
        )).value

        assert second.session_token == first.session_token
        assert second.quantity == 3
        assert second.expires_at > first.expires_at

    async def test_insufficient_stock(self, session, settings, clock):
        product_id = await add_product(session, "A", "7.50", 1)

        result = await drafts.save_draft(session, settings, product_id, 2, clock())

        assert result.error.code == ErrorCode.INSUFFICIENT_STOCK
        assert result.error.detail["available"] == 1

    async def test_unknown_product(self, session, settings, clock):
        result = await drafts.save_draft(session, settings, 404, 1, clock())

        assert result.error.code == ErrorCode.PRODUCT_UNAVAILABLE

    async def test_invalid_quantity(self, session, settings, clock):
        product_id = await add_product(session, "A", "7.50", 1)

        result = await drafts.save_draft(session, settings, product_id, 0, clock())

        assert result.error.code == ErrorCode.INVALID_QUANTITY


class TestSweep:
    async def test_sweep_removes_only_expired(self, session, settings, clock):
        product_id = await add_product(session, "A", "1.00", 10)
        old = (await drafts.save_draft(session, settings, product_id, 1, clock())).value
        clock.advance(hours=12)
        fresh = (await drafts.save_draft(session, settings, product_id, 1, clock())).value

        clock.advance(hours=13)
        deleted = await drafts.sweep_expired(session, clock())

        assert deleted == 1
        assert await drafts.get_draft(session, old.session_token) is None
        assert await drafts.get_draft(session, fresh.session_token) is not None

    async def test_sweeper_loop_stops_on_shutdown(self, session_factory, settings, clock):
        async with session_factory() as session:
            product_id = await add_product(session, "A", "1.00", 10)
            draft = (await drafts.save_draft(session, settings, product_id, 1, clock())).value
        clock.advance(hours=30)

        shutdown = asyncio.Event()
        task = asyncio.create_task(drafts.run_draft_sweeper(session_factory, 0.01, shutdown, clock))
        for _ in range(100):
            async with session_factory() as session:
                if await drafts.get_draft(session, draft.session_token) is None:
                    break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        async with session_factory() as session:
            assert await drafts.get_draft(session, draft.session_token) is None

    async def test_sweeper_survives_failed_sweep(self, clock):
        calls = []

        class BrokenSession:
            async def __aenter__(self):
                calls.append(1)
                raise RuntimeError("database unavailable")

            async def __aexit__(self, *exc):
                return False

        shutdown = asyncio.Event()
        task = asyncio.create_task(
            drafts.run_draft_sweeper(lambda: BrokenSession(), 0.01, shutdown, clock)
        )
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert len(calls) >= 2
