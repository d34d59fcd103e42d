"""
Reservation store: persistence of holds and their status transitions.

Table layout (see models.Reservation):
    inventory_reservations(id, product_id, variant_id, stock_key, quantity,
                           holder_kind, holder_id, order_id, status,
                           created_at, expires_at, released_at, consumed_at)
    INDEX (stock_key, status, expires_at)
    INDEX (status, expires_at)
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Holder, Reservation, ReservationStatus, StockKey


class ReservationStore:

    async def insert(
        self,
        session: AsyncSession,
        key: StockKey,
        quantity: int,
        holder: Holder,
        now: datetime,
        expires_at: datetime
    ) -> Reservation:
        reservation = Reservation(
            product_id=key.product_id,
            variant_id=key.variant_id,
            stock_key=str(key),
            quantity=quantity,
            holder_kind=holder.kind.value,
            holder_id=holder.id,
            status=ReservationStatus.ACTIVE.value,
            created_at=now,
            expires_at=expires_at
        )
        session.add(reservation)
        await session.flush()
        return reservation

    async def get(
        self,
        session: AsyncSession,
        reservation_id: str,
        for_update: bool = False
    ) -> Optional[Reservation]:
        query = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def sum_active_held(self, session: AsyncSession, key: StockKey, now: datetime) -> int:
        """
        Units held by live reservations.

        SQL: SELECT COALESCE(SUM(quantity), 0) FROM inventory_reservations
             WHERE stock_key = :key AND status = 'active' AND expires_at > :now
        """
        result = await session.execute(
            select(func.coalesce(func.sum(Reservation.quantity), 0))
            .where(Reservation.stock_key == str(key))
            .where(Reservation.status == ReservationStatus.ACTIVE.value)
            .where(Reservation.expires_at > now)
        )
        return int(result.scalar_one())

    async def find_expired_ids(self, session: AsyncSession, now: datetime, limit: int) -> List[str]:
        """Ids of active reservations whose expiry has passed, oldest first."""
        result = await session.execute(
            select(Reservation.id)
            .where(Reservation.status == ReservationStatus.ACTIVE.value)
            .where(Reservation.expires_at <= now)
            .order_by(Reservation.expires_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def transition(
        self,
        session: AsyncSession,
        reservation: Reservation,
        status: ReservationStatus,
        now: datetime,
        order_id: Optional[str] = None
    ) -> Reservation:
        """Move an active reservation to a terminal status."""
        reservation.status = status.value
        reservation.updated_at = now
        if status == ReservationStatus.CONSUMED:
            reservation.consumed_at = now
            reservation.order_id = order_id
        else:
            reservation.released_at = now
        await session.flush()
        return reservation

    async def set_expiry(
        self,
        session: AsyncSession,
        reservation: Reservation,
        expires_at: datetime,
        now: datetime
    ) -> Reservation:
        reservation.expires_at = expires_at
        reservation.updated_at = now
        await session.flush()
        return reservation
