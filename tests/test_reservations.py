"""
Tests for the reservation lifecycle manager.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from reservation_service.errors import (
    AlreadyTerminal,
    InsufficientStock,
    InvalidHolder,
    InvalidQuantity,
    LockTimeout,
    NotFound,
    ReservationExpired,
    StockLedgerError,
    StoreUnavailable,
)
from reservation_service.inventory_reservation import ReservationManager
from reservation_service.kafka_client import EventTypes, KafkaProducer, Topics
from reservation_service.ledger import StockLedger
from reservation_service.locking import KeyedLock
from reservation_service.models import Holder, ReservationStatus, StockKey
from reservation_service.redis_client import AvailabilityCache


async def on_hand(session_factory, product_id, variant_id=None):
    async with session_factory() as session:
        return await StockLedger().get_on_hand(session, StockKey(product_id, variant_id))


class TestReserve:
    """Tests for reserve()."""

    async def test_reserve_reduces_available_stock(self, manager, stock):
        """On hand 5, reserve 3: two left for everyone else."""
        await stock("prod-1", 5)

        handle = await manager.reserve("prod-1", 3, Holder.user("user-1"))

        assert handle.reservation_id
        assert handle.available_stock == 2
        assert await manager.get_available_stock("prod-1") == 2

    async def test_reservation_expires_after_ttl(self, manager, stock, clock):
        """A new hold expires 15 minutes after creation."""
        await stock("prod-1", 5)

        handle = await manager.reserve("prod-1", 1, Holder.session("sess-1"))

        assert handle.expires_at == clock.now + timedelta(minutes=15)
        reservation = await manager.get_reservation(handle.reservation_id)
        assert reservation.status == ReservationStatus.ACTIVE.value
        assert reservation.holder == Holder.session("sess-1")
        assert reservation.created_at == clock.now

    async def test_insufficient_stock_leaves_no_hold(self, manager, stock):
        """A failed reserve writes nothing."""
        await stock("prod-1", 2)

        with pytest.raises(InsufficientStock) as exc_info:
            await manager.reserve("prod-1", 3, Holder.user("user-1"))

        assert exc_info.value.requested == 3
        assert exc_info.value.available == 2
        assert await manager.get_available_stock("prod-1") == 2

    async def test_unknown_product_has_no_stock(self, manager):
        with pytest.raises(InsufficientStock) as exc_info:
            await manager.reserve("missing", 1, Holder.user("user-1"))

        assert exc_info.value.available == 0

    @pytest.mark.parametrize("quantity", [0, -1, 1000, 1.5, True, "2"])
    async def test_invalid_quantity_never_touches_store(self, settings, quantity):
        """Bad quantities are rejected before any session is opened."""
        session_factory = Mock(side_effect=AssertionError("store touched"))
        manager = ReservationManager(session_factory, settings=settings)

        with pytest.raises(InvalidQuantity):
            await manager.reserve("prod-1", quantity, Holder.user("user-1"))

        session_factory.assert_not_called()

    async def test_quantity_cap_is_inclusive(self, manager, stock):
        await stock("prod-1", 1000)

        handle = await manager.reserve("prod-1", 999, Holder.user("user-1"))

        assert handle.available_stock == 1

    async def test_holder_required(self, manager, stock):
        await stock("prod-1", 5)

        with pytest.raises(InvalidHolder):
            await manager.reserve("prod-1", 1, Holder.user(""))

    async def test_variants_are_separate_keys(self, manager, stock):
        """Holding one variant does not touch its siblings or the bare product."""
        await stock("prod-1", 3, variant_id="red")
        await stock("prod-1", 1, variant_id="blue")
        await stock("prod-1", 7)

        await manager.reserve("prod-1", 3, Holder.user("user-1"), variant_id="red")

        assert await manager.get_available_stock("prod-1", "red") == 0
        assert await manager.get_available_stock("prod-1", "blue") == 1
        assert await manager.get_available_stock("prod-1") == 7


class TestConcurrentReserve:
    """Concurrent reserve calls must never oversell."""

    async def test_last_unit_goes_to_exactly_one_caller(self, manager, stock):
        """On hand 1, two concurrent reserve(1): one hold, one InsufficientStock."""
        await stock("prod-1", 1)

        results = await asyncio.gather(
            manager.reserve("prod-1", 1, Holder.session("sess-a")),
            manager.reserve("prod-1", 1, Holder.session("sess-b")),
            return_exceptions=True
        )

        handles = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(handles) == 1
        assert len(failures) == 1
        assert await manager.get_available_stock("prod-1") == 0

    async def test_flash_sale_burst_never_oversells(self, manager, stock):
        await stock("flash-1", 5)

        results = await asyncio.gather(
            *[manager.reserve("flash-1", 1, Holder.session(f"sess-{i}")) for i in range(20)],
            return_exceptions=True
        )

        handles = [r for r in results if not isinstance(r, Exception)]
        assert len(handles) == 5
        assert all(isinstance(r, InsufficientStock) for r in results if isinstance(r, Exception))
        assert await manager.get_available_stock("flash-1") == 0

    async def test_mixed_quantities_stay_within_stock(self, manager, stock):
        await stock("prod-1", 10)

        results = await asyncio.gather(
            *[manager.reserve("prod-1", 3, Holder.user(f"user-{i}")) for i in range(4)],
            return_exceptions=True
        )

        held = sum(r.quantity for r in results if not isinstance(r, Exception))
        assert held == 9
        assert await manager.get_available_stock("prod-1") == 1

    async def test_reserve_and_release_interleave(self, manager, stock):
        """Capacity released by one caller is reusable by a concurrent one."""
        await stock("prod-1", 1)
        first = await manager.reserve("prod-1", 1, Holder.user("user-1"))

        await asyncio.gather(
            manager.release(first.reservation_id),
            manager.get_available_stock("prod-1")
        )
        handle = await manager.reserve("prod-1", 1, Holder.user("user-2"))

        assert handle.available_stock == 0


class TestRelease:
    """Tests for release()."""

    async def test_release_returns_capacity(self, manager, stock, clock):
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 3, Holder.user("user-1"))

        reservation = await manager.release(handle.reservation_id)

        assert reservation.status == ReservationStatus.RELEASED.value
        assert reservation.released_at == clock.now
        assert await manager.get_available_stock("prod-1") == 5

    async def test_double_release_is_already_terminal(self, manager, stock):
        """Second release reports AlreadyTerminal and frees nothing twice."""
        await stock("prod-1", 5)
        first = await manager.reserve("prod-1", 3, Holder.user("user-1"))
        await manager.reserve("prod-1", 2, Holder.user("user-2"))
        await manager.release(first.reservation_id)

        with pytest.raises(AlreadyTerminal) as exc_info:
            await manager.release(first.reservation_id)

        assert exc_info.value.status == ReservationStatus.RELEASED.value
        assert await manager.get_available_stock("prod-1") == 3

    async def test_release_unknown_reservation(self, manager):
        with pytest.raises(NotFound):
            await manager.release("00000000-0000-0000-0000-000000000000")

    async def test_release_after_expiry_reports_expired(self, manager, stock, clock):
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))
        clock.advance(minutes=15, seconds=1)

        with pytest.raises(ReservationExpired) as exc_info:
            await manager.release(handle.reservation_id)

        assert isinstance(exc_info.value, AlreadyTerminal)
        reservation = await manager.get_reservation(handle.reservation_id)
        assert reservation.status == ReservationStatus.EXPIRED.value


class TestConsume:
    """Tests for consume() at order commit."""

    async def test_consume_decrements_on_hand(self, manager, stock, session_factory, clock):
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))

        reservation = await manager.consume(handle.reservation_id, order_id="order-1")

        assert reservation.status == ReservationStatus.CONSUMED.value
        assert reservation.order_id == "order-1"
        assert reservation.consumed_at == clock.now
        assert await on_hand(session_factory, "prod-1") == 3
        assert await manager.get_available_stock("prod-1") == 3

    async def test_consume_twice_is_already_terminal(self, manager, stock, session_factory):
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))
        await manager.consume(handle.reservation_id)

        with pytest.raises(AlreadyTerminal):
            await manager.consume(handle.reservation_id)

        assert await on_hand(session_factory, "prod-1") == 3

    async def test_failed_decrement_keeps_hold_active(self, manager, stock, session_factory):
        """A manual correction below the hold makes consume fail without retiring it."""
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 3, Holder.user("user-1"))
        await manager.adjust_stock("prod-1", 1, operation="set")

        with pytest.raises(StockLedgerError):
            await manager.consume(handle.reservation_id, order_id="order-1")

        reservation = await manager.get_reservation(handle.reservation_id)
        assert reservation.status == ReservationStatus.ACTIVE.value
        assert reservation.order_id is None
        assert await on_hand(session_factory, "prod-1") == 1

    async def test_consume_expired_hold_is_refused(self, manager, stock, session_factory, clock):
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))
        clock.advance(minutes=16)

        with pytest.raises(ReservationExpired):
            await manager.consume(handle.reservation_id, order_id="order-1")

        assert await on_hand(session_factory, "prod-1") == 5

    async def test_release_after_consume_is_already_terminal(self, manager, stock):
        await stock("prod-1", 5)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))
        await manager.consume(handle.reservation_id)

        with pytest.raises(AlreadyTerminal) as exc_info:
            await manager.release(handle.reservation_id)

        assert exc_info.value.status == ReservationStatus.CONSUMED.value


class TestExpiryAndExtension:
    """Expired holds stop counting immediately; extend() refreshes live ones."""

    async def test_expired_hold_excluded_before_sweep(self, manager, stock, clock):
        await stock("prod-1", 4)
        await manager.reserve("prod-1", 4, Holder.user("user-1"))
        assert await manager.get_available_stock("prod-1") == 0

        clock.advance(minutes=15, seconds=1)

        assert await manager.get_available_stock("prod-1") == 4
        handle = await manager.reserve("prod-1", 4, Holder.user("user-2"))
        assert handle.available_stock == 0

    async def test_hold_counts_until_exact_expiry(self, manager, stock, clock):
        await stock("prod-1", 1)
        await manager.reserve("prod-1", 1, Holder.user("user-1"))

        clock.advance(minutes=14, seconds=59)
        assert await manager.get_available_stock("prod-1") == 0

        clock.advance(seconds=1)
        assert await manager.get_available_stock("prod-1") == 1

    async def test_extend_refreshes_expiry_from_now(self, manager, stock, clock):
        await stock("prod-1", 2)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))
        clock.advance(minutes=10)

        reservation = await manager.extend(handle.reservation_id)

        assert reservation.expires_at == clock.now + timedelta(minutes=15)
        clock.advance(minutes=10)
        assert await manager.get_available_stock("prod-1") == 0

    async def test_extend_expired_hold_is_refused(self, manager, stock, clock):
        await stock("prod-1", 2)
        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))
        clock.advance(minutes=20)

        with pytest.raises(ReservationExpired):
            await manager.extend(handle.reservation_id)

        assert await manager.get_available_stock("prod-1") == 2


class TestStockAdjustment:
    """Catalog-side corrections through adjust_stock()."""

    async def test_add_and_subtract(self, manager, stock, session_factory):
        await stock("prod-1", 5)

        added = await manager.adjust_stock("prod-1", 3, operation="add")
        subtracted = await manager.adjust_stock("prod-1", 2, operation="subtract")

        assert added["quantity_on_hand"] == 8
        assert subtracted["quantity_on_hand"] == 6
        assert await on_hand(session_factory, "prod-1") == 6

    async def test_subtract_below_zero_refused(self, manager, stock):
        await stock("prod-1", 2)

        with pytest.raises(StockLedgerError):
            await manager.adjust_stock("prod-1", 3, operation="subtract")

    async def test_reports_available_after_holds(self, manager, stock):
        await stock("prod-1", 5)
        await manager.reserve("prod-1", 2, Holder.user("user-1"))

        result = await manager.adjust_stock("prod-1", 10, operation="set")

        assert result == {"quantity_on_hand": 10, "available_stock": 8}

    async def test_negative_quantity_rejected(self, manager):
        with pytest.raises(InvalidQuantity):
            await manager.adjust_stock("prod-1", -1, operation="set")


class TestCollaborators:
    """Event publishing, display cache and store failures."""

    async def test_reserve_publishes_event(self, session_factory, settings, clock, stock):
        producer = AsyncMock()
        manager = ReservationManager(session_factory, settings=settings, clock=clock, producer=producer)
        await stock("prod-1", 5)

        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))

        producer.publish.assert_awaited_once()
        topic, event = producer.publish.await_args.args
        assert topic == Topics.INVENTORY
        assert event["event_type"] == EventTypes.INVENTORY_RESERVED
        assert event["reservation_id"] == handle.reservation_id
        assert producer.publish.await_args.kwargs["key"] == "prod-1:*"

    async def test_publish_failure_does_not_fail_reserve(self, session_factory, settings, clock, stock):
        producer = AsyncMock()
        producer.publish.side_effect = RuntimeError("broker down")
        manager = ReservationManager(session_factory, settings=settings, clock=clock, producer=producer)
        await stock("prod-1", 5)

        handle = await manager.reserve("prod-1", 2, Holder.user("user-1"))

        assert handle.available_stock == 3
        assert await manager.get_available_stock("prod-1") == 3

    async def test_cache_served_and_invalidated(self, session_factory, settings, clock, stock):
        client = AsyncMock()
        client.get.return_value = None
        cache = AvailabilityCache(client, ttl_seconds=5)
        manager = ReservationManager(session_factory, settings=settings, clock=clock, cache=cache)
        await stock("prod-1", 5)

        assert await manager.get_available_stock("prod-1") == 5
        client.set.assert_awaited_with("availability:prod-1:*", 5, ttl=5)

        await manager.reserve("prod-1", 1, Holder.user("user-1"))
        client.delete.assert_awaited_with("availability:prod-1:*")

        client.get.return_value = 42
        assert await manager.get_available_stock("prod-1") == 42

    async def test_store_outage_is_store_unavailable(self, settings):
        session_factory = Mock(side_effect=OperationalError("SELECT 1", {}, Exception("connection refused")))
        manager = ReservationManager(session_factory, settings=settings)

        with pytest.raises(StoreUnavailable) as exc_info:
            await manager.get_available_stock("prod-1")

        assert exc_info.value.retryable


    async def test_kafka_producer_sends_keyed_events(self):
        with patch("reservation_service.kafka_client.AIOKafkaProducer") as producer_cls:
            producer_cls.return_value = AsyncMock()
            producer = KafkaProducer("localhost:9092")
            await producer.start()
            await producer.publish(Topics.INVENTORY, {"event_type": EventTypes.INVENTORY_RESERVED}, key="prod-1:*")
            await producer.stop()

        producer_cls.return_value.send_and_wait.assert_awaited_once_with(
            Topics.INVENTORY, value={"event_type": EventTypes.INVENTORY_RESERVED}, key="prod-1:*"
        )

    async def test_unstarted_producer_refuses_publish(self):
        with pytest.raises(RuntimeError):
            await KafkaProducer("localhost:9092").publish(Topics.INVENTORY, {})

class TestKeyedLock:
    """Tests for per-key serialization."""

    async def test_lock_wait_times_out(self):
        """A caller stuck behind a held key gets LockTimeout, a retryable StoreUnavailable."""
        locks = KeyedLock(timeout=0.05)

        async with locks.hold("prod-1:*", "reserve"):
            with pytest.raises(LockTimeout) as exc_info:
                async with locks.hold("prod-1:*", "reserve"):
                    pass

        assert isinstance(exc_info.value, StoreUnavailable)
        assert exc_info.value.retryable
        assert not locks.locked("prod-1:*")

    async def test_other_keys_are_not_blocked(self):
        locks = KeyedLock(timeout=0.05)

        async with locks.hold("prod-1:*"):
            async with locks.hold("prod-2:*"):
                assert locks.locked("prod-1:*")
                assert locks.locked("prod-2:*")

    async def test_reserve_behind_held_key_is_retryable(self, manager, stock):
        await stock("prod-1", 5)
        manager.locks.timeout = 0.05

        async with manager.locks.hold("prod-1:*"):
            with pytest.raises(LockTimeout):
                await manager.reserve("prod-1", 1, Holder.user("user-1"))

        assert await manager.get_available_stock("prod-1") == 5
