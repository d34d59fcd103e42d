"""
Inventory Reservation System with Consistency Guarantees.

Preventing oversell is the hard part of checkout.

Strategy:
1. Reservation + Expiry Model
   - Reserve stock with a TTL (15 minutes by default)
   - Holds past their expiry stop counting immediately; the sweeper only
     converges their status later

2. Per-key serialization
   - One asyncio.Lock per (product, variant) inside the process
   - SELECT ... FOR UPDATE on the stock row across processes
   - Availability is read and the hold is written in the same transaction

3. Atomic commit
   - consume() decrements the ledger and retires the hold in one
     transaction; a failed decrement leaves the hold active
"""

import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .availability import AvailabilityCalculator
from .config import Settings, get_settings
from .errors import (
    AlreadyTerminal,
    InsufficientStock,
    InvalidHolder,
    InvalidQuantity,
    LockTimeout,
    NotExpired,
    NotFound,
    ReservationError,
    ReservationExpired,
    StoreUnavailable,
)
from .kafka_client import EventTypes, KafkaProducer, Topics
from .ledger import StockLedger
from .locking import KeyedLock
from .metrics import RESERVATION_EVENTS_FAILED_TOTAL, track_reservation_operation
from .models import Holder, Reservation, ReservationStatus, StockKey, utcnow
from .redis_client import AvailabilityCache
from .store import ReservationStore

logger = logging.getLogger(__name__)

# PostgreSQL lock_not_available
LOCK_NOT_AVAILABLE_SQLSTATE = "55P03"

STOCK_OPERATIONS = ("set", "add", "subtract")


@dataclass
class ReservationHandle:
    """What a successful reserve call hands back to checkout."""
    reservation_id: str
    product_id: str
    variant_id: Optional[str]
    quantity: int
    expires_at: datetime
    available_stock: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "expires_at": self.expires_at.isoformat(),
            "available_stock": self.available_stock,
        }


def _is_lock_timeout(error: DBAPIError) -> bool:
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == LOCK_NOT_AVAILABLE_SQLSTATE


class ReservationManager:
    """
    Create/release/consume/extend/expire operations on stock holds.

    Every mutation for a stock key runs under that key's lock and inside one
    database transaction, so the read of availability and the write that
    depends on it are linearizable per key.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
        cache: Optional[AvailabilityCache] = None,
        producer: Optional[KafkaProducer] = None,
        clock: Callable[[], datetime] = utcnow,
        ledger: Optional[StockLedger] = None,
        store: Optional[ReservationStore] = None
    ):
        self.db_factory = session_factory
        self.settings = settings or get_settings()
        self.cache = cache
        self.producer = producer
        self.clock = clock
        self.ledger = ledger or StockLedger()
        self.store = store or ReservationStore()
        self.availability = AvailabilityCalculator(self.ledger, self.store)
        self.locks = KeyedLock(timeout=self.settings.lock_timeout_seconds)

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.reservation_ttl_minutes)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        holder: Holder,
        variant_id: Optional[str] = None
    ) -> ReservationHandle:
        """
        Hold `quantity` units of a product/variant for a holder.

        Raises:
            InvalidQuantity: quantity is not a positive int within the cap
            InvalidHolder: no user or session to attribute the hold to
            InsufficientStock: fewer units available than requested
        """
        key = StockKey(product_id, variant_id)

        with track_reservation_operation("reserve"):
            self._validate_quantity(quantity)
            if holder is None or not holder.id:
                raise InvalidHolder()

            async with self._unit_of_work(key, "reserve") as session:
                now = self.clock()
                available = await self.availability.available(session, key, now, for_update=True)
                if available < quantity:
                    raise InsufficientStock(str(key), quantity, available)

                reservation = await self.store.insert(
                    session, key, quantity, holder, now, now + self.ttl
                )

        await self._after_commit(key, EventTypes.INVENTORY_RESERVED, reservation)

        logger.info(
            f"Reserved {quantity} of {key} for {holder.kind.value} {holder.id}: "
            f"{reservation.id}, expires at {reservation.expires_at.isoformat()}"
        )

        return ReservationHandle(
            reservation_id=reservation.id,
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            expires_at=reservation.expires_at,
            available_stock=available - quantity
        )

    async def release(self, reservation_id: str) -> Reservation:
        """
        Cancel a hold and return its units to the pool.

        Releasing a reservation that is no longer active raises
        AlreadyTerminal; callers such as double-fired cleanups treat it as
        benign. A hold found past its expiry is converged to `expired`
        and reported as ReservationExpired.
        """
        with track_reservation_operation("release"):
            key = await self._key_for(reservation_id)
            expired = False

            async with self._unit_of_work(key, "release") as session:
                now = self.clock()
                reservation = await self._load_active(session, key, reservation_id)
                if reservation.expires_at <= now:
                    await self.store.transition(session, reservation, ReservationStatus.EXPIRED, now)
                    expired = True
                else:
                    await self.store.transition(session, reservation, ReservationStatus.RELEASED, now)

            if expired:
                await self._after_commit(key, EventTypes.INVENTORY_EXPIRED, reservation)
                raise ReservationExpired(reservation_id)

        await self._after_commit(key, EventTypes.INVENTORY_RELEASED, reservation)
        logger.info(f"Released reservation {reservation_id} ({reservation.quantity} of {key})")
        return reservation

    async def consume(self, reservation_id: str, order_id: Optional[str] = None) -> Reservation:
        """
        Convert a hold into a permanent stock decrement at order commit.

        The ledger decrement and the status change share one transaction.
        If the decrement fails the hold stays active and StockLedgerError
        propagates.
        """
        with track_reservation_operation("consume"):
            key = await self._key_for(reservation_id)
            expired = False

            async with self._unit_of_work(key, "consume") as session:
                now = self.clock()
                reservation = await self._load_active(session, key, reservation_id)
                if reservation.expires_at <= now:
                    await self.store.transition(session, reservation, ReservationStatus.EXPIRED, now)
                    expired = True
                else:
                    remaining = await self.ledger.decrement(session, key, reservation.quantity)
                    await self.store.transition(
                        session, reservation, ReservationStatus.CONSUMED, now, order_id=order_id
                    )

            if expired:
                await self._after_commit(key, EventTypes.INVENTORY_EXPIRED, reservation)
                raise ReservationExpired(reservation_id)

        await self._after_commit(
            key, EventTypes.INVENTORY_CONSUMED, reservation, quantity_on_hand=remaining
        )
        logger.info(
            f"Consumed reservation {reservation_id} for order {order_id}: "
            f"{reservation.quantity} of {key}, {remaining} left on hand"
        )
        return reservation

    async def extend(self, reservation_id: str) -> Reservation:
        """Keep-alive: push a live hold's expiry to now + TTL."""
        with track_reservation_operation("extend"):
            key = await self._key_for(reservation_id)
            expired = False

            async with self._unit_of_work(key, "extend") as session:
                now = self.clock()
                reservation = await self._load_active(session, key, reservation_id)
                if reservation.expires_at <= now:
                    await self.store.transition(session, reservation, ReservationStatus.EXPIRED, now)
                    expired = True
                else:
                    await self.store.set_expiry(session, reservation, now + self.ttl, now)

            if expired:
                await self._after_commit(key, EventTypes.INVENTORY_EXPIRED, reservation)
                raise ReservationExpired(reservation_id)

        await self._after_commit(key, EventTypes.INVENTORY_EXTENDED, reservation)
        logger.info(f"Extended reservation {reservation_id} until {reservation.expires_at.isoformat()}")
        return reservation

    async def expire(self, reservation_id: str) -> Reservation:
        """
        Move one overdue hold to `expired`. Used by the sweeper.

        Raises AlreadyTerminal when someone else finished it first and
        NotExpired when it was extended after the sweep selected it.
        """
        with track_reservation_operation("expire"):
            key = await self._key_for(reservation_id)

            async with self._unit_of_work(key, "expire") as session:
                now = self.clock()
                reservation = await self._load_active(session, key, reservation_id)
                if reservation.expires_at > now:
                    raise NotExpired(reservation_id)
                await self.store.transition(session, reservation, ReservationStatus.EXPIRED, now)

        await self._after_commit(key, EventTypes.INVENTORY_EXPIRED, reservation)
        logger.debug(f"Expired reservation {reservation_id}")
        return reservation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_reservation(self, reservation_id: str) -> Reservation:
        with self._map_store_errors():
            async with self.db_factory() as session:
                reservation = await self.store.get(session, reservation_id)
        if reservation is None:
            raise NotFound(reservation_id)
        return reservation

    async def get_available_stock(self, product_id: str, variant_id: Optional[str] = None) -> int:
        """
        Advisory availability for display.

        Snapshot read outside the key lock, possibly served from cache.
        Only reserve() is authoritative.
        """
        key = StockKey(product_id, variant_id)

        if self.cache:
            cached = await self.cache.get(str(key))
            if cached is not None:
                return cached

        with self._map_store_errors():
            async with self.db_factory() as session:
                available = await self.availability.available(session, key, self.clock())

        if self.cache:
            await self.cache.set(str(key), available)
        return available

    async def find_expired_ids(self, limit: int) -> List[str]:
        """Ids of active holds already past expiry, oldest first."""
        with self._map_store_errors():
            async with self.db_factory() as session:
                return await self.store.find_expired_ids(session, self.clock(), limit)

    # ------------------------------------------------------------------
    # Catalog-side stock correction
    # ------------------------------------------------------------------

    async def adjust_stock(
        self,
        product_id: str,
        quantity: int,
        operation: str = "set",
        variant_id: Optional[str] = None
    ) -> Dict[str, int]:
        """Set, add to, or subtract from on-hand under the key lock."""
        if operation not in STOCK_OPERATIONS:
            raise ValueError(f"Unknown stock operation: {operation}")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise InvalidQuantity(quantity)

        key = StockKey(product_id, variant_id)

        with track_reservation_operation("adjust"):
            async with self._unit_of_work(key, "adjust") as session:
                now = self.clock()
                if operation == "set":
                    on_hand = await self.ledger.set_on_hand(session, key, quantity)
                elif operation == "add":
                    on_hand = await self.ledger.adjust(session, key, quantity)
                else:
                    on_hand = await self.ledger.adjust(session, key, -quantity)
                available = await self.availability.available(session, key, now)

        await self._after_commit(
            key, EventTypes.INVENTORY_ADJUSTED, quantity_on_hand=on_hand, available_stock=available
        )
        logger.info(f"Stock {operation} {quantity} for {key}: on_hand={on_hand}, available={available}")
        return {"quantity_on_hand": on_hand, "available_stock": available}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_quantity(self, quantity: Any):
        maximum = self.settings.max_reservation_quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidQuantity(quantity, maximum)
        if quantity <= 0 or quantity > maximum:
            raise InvalidQuantity(quantity, maximum)

    async def _key_for(self, reservation_id: str) -> StockKey:
        """Stock key of a reservation; the key never changes after insert."""
        reservation = await self.get_reservation(reservation_id)
        return reservation.key

    async def _load_active(self, session: AsyncSession, key: StockKey, reservation_id: str) -> Reservation:
        # Stock row first, then the reservation row: the same order reserve() uses
        await self.ledger.get_on_hand(session, key, for_update=True)
        reservation = await self.store.get(session, reservation_id, for_update=True)
        if reservation is None:
            raise NotFound(reservation_id)
        if reservation.is_terminal:
            raise AlreadyTerminal(reservation_id, reservation.status)
        return reservation

    @asynccontextmanager
    async def _unit_of_work(self, key: StockKey, operation: str) -> AsyncIterator[AsyncSession]:
        """Key lock + one transaction. Commits on clean exit, rolls back otherwise."""
        async with self.locks.hold(str(key), operation):
            with self._map_store_errors(str(key)):
                async with self.db_factory() as session:
                    async with session.begin():
                        await self._apply_lock_timeout(session)
                        yield session

    async def _apply_lock_timeout(self, session: AsyncSession):
        if session.bind is not None and session.bind.dialect.name == "postgresql":
            timeout_ms = int(self.settings.lock_timeout_seconds * 1000)
            await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

    @contextmanager
    def _map_store_errors(self, stock_key: str = "") -> Iterator[None]:
        try:
            yield
        except ReservationError:
            raise
        except DBAPIError as e:
            if _is_lock_timeout(e):
                raise LockTimeout(stock_key, self.settings.lock_timeout_seconds) from e
            if e.connection_invalidated or isinstance(e, (OperationalError, InterfaceError)):
                logger.error(f"Reservation store unavailable: {e}")
                raise StoreUnavailable("Reservation store unavailable") from e
            raise
        except (ConnectionError, OSError) as e:
            logger.error(f"Reservation store unavailable: {e}")
            raise StoreUnavailable("Reservation store unavailable") from e

    async def _after_commit(
        self,
        key: StockKey,
        event_type: str,
        reservation: Optional[Reservation] = None,
        **extra: Any
    ):
        """Invalidate the display cache and publish the lifecycle event."""
        if self.cache:
            await self.cache.invalidate(str(key))

        if not self.producer:
            return

        event = {
            "event_type": event_type,
            "product_id": key.product_id,
            "variant_id": key.variant_id,
            "timestamp": self.clock().isoformat(),
        }
        if reservation is not None:
            event.update(
                reservation_id=reservation.id,
                quantity=reservation.quantity,
                status=reservation.status,
                holder=reservation.holder_kind,
                order_id=reservation.order_id,
            )
        event.update(extra)

        try:
            await self.producer.publish(Topics.INVENTORY, event, key=str(key))
        except Exception as e:
            # The transition is committed; a lost event must not be reported as a failed operation
            RESERVATION_EVENTS_FAILED_TOTAL.labels(event_type=event_type).inc()
            logger.error(f"Failed to publish {event_type} for {key}: {e}")
