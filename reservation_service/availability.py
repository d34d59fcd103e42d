"""
Availability calculator: sellable quantity = on hand minus live holds.

Never stored. Always computed with the caller's session so that a reserve
decision reads availability inside the same transaction and lock scope as
its write.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from .ledger import StockLedger
from .metrics import record_oversell_incident
from .models import StockKey
from .store import ReservationStore

logger = logging.getLogger(__name__)


class AvailabilityCalculator:

    def __init__(self, ledger: StockLedger, store: ReservationStore):
        self.ledger = ledger
        self.store = store

    async def held(self, session: AsyncSession, key: StockKey, now: datetime) -> int:
        return await self.store.sum_active_held(session, key, now)

    async def available(
        self,
        session: AsyncSession,
        key: StockKey,
        now: datetime,
        for_update: bool = False
    ) -> int:
        """
        Sellable quantity for a key at `now`.

        With for_update=True the stock row is locked first, so concurrent
        reservers on other processes queue behind this transaction.
        """
        on_hand = await self.ledger.get_on_hand(session, key, for_update=for_update)
        held = await self.held(session, key, now)
        available = on_hand - held
        if available < 0:
            # Holds exceed on hand: a manual stock correction went below outstanding holds
            logger.error(f"Holds exceed stock for {key}: on_hand={on_hand}, held={held}")
            record_oversell_incident(str(key))
            return 0
        return available
