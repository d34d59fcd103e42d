"""
Stock ledger: the authoritative on-hand quantity per product/variant.

The ledger has no concurrency logic of its own. Callers run it inside the
reservation manager's per-key lock and transaction.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StockLedgerError
from .models import StockKey, StockRecord, utcnow

logger = logging.getLogger(__name__)


class StockLedger:

    async def get_record(
        self,
        session: AsyncSession,
        key: StockKey,
        for_update: bool = False
    ) -> Optional[StockRecord]:
        query = (
            select(StockRecord)
            .where(StockRecord.stock_key == str(key))
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def get_on_hand(
        self,
        session: AsyncSession,
        key: StockKey,
        for_update: bool = False
    ) -> int:
        """On-hand quantity for a key; unknown keys have none."""
        query = select(StockRecord.quantity_on_hand).where(StockRecord.stock_key == str(key))
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        on_hand = result.scalar_one_or_none()
        return on_hand if on_hand is not None else 0

    async def decrement(self, session: AsyncSession, key: StockKey, quantity: int) -> int:
        """
        Permanently remove sold units.

        SQL: UPDATE stock_records
             SET quantity_on_hand = quantity_on_hand - :qty
             WHERE stock_key = :key AND quantity_on_hand >= :qty

        Raises StockLedgerError when no row matched.
        """
        result = await session.execute(
            update(StockRecord)
            .where(StockRecord.stock_key == str(key))
            .where(StockRecord.quantity_on_hand >= quantity)
            .values(
                quantity_on_hand=StockRecord.quantity_on_hand - quantity,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Ledger decrement of {quantity} refused for {key}")
            raise StockLedgerError(
                f"Insufficient stock on hand to decrement {quantity} from {key}",
                stock_key=str(key)
            )
        return await self.get_on_hand(session, key)

    async def set_on_hand(self, session: AsyncSession, key: StockKey, quantity: int) -> int:
        """Catalog-side upsert of the on-hand quantity."""
        if quantity < 0:
            raise StockLedgerError(f"On-hand quantity cannot be negative: {quantity}", stock_key=str(key))

        record = await self.get_record(session, key, for_update=True)
        if record is None:
            record = StockRecord(
                stock_key=str(key),
                product_id=key.product_id,
                variant_id=key.variant_id,
                quantity_on_hand=quantity
            )
            session.add(record)
        else:
            record.quantity_on_hand = quantity
        await session.flush()

        logger.info(f"Stock set for {key}: {quantity}")
        return quantity

    async def adjust(self, session: AsyncSession, key: StockKey, delta: int) -> int:
        """Relative correction; refuses to take on-hand below zero."""
        current = await self.get_on_hand(session, key, for_update=True)
        if current + delta < 0:
            raise StockLedgerError(
                f"Adjustment of {delta} would take {key} below zero (on hand {current})",
                stock_key=str(key)
            )
        return await self.set_on_hand(session, key, current + delta)
