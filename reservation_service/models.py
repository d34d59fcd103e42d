"""
Data model for stock on hand and reservations.

Timestamps are naive UTC throughout, matching what the columns store.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CONSUMED = "consumed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {ReservationStatus.RELEASED, ReservationStatus.CONSUMED, ReservationStatus.EXPIRED}
)


class HolderKind(str, Enum):
    USER = "user"
    SESSION = "session"


@dataclass(frozen=True)
class Holder:
    """Who a reservation is held for: a signed-in user or an anonymous cart session."""
    kind: HolderKind
    id: str

    @classmethod
    def user(cls, user_id: str) -> "Holder":
        return cls(HolderKind.USER, user_id)

    @classmethod
    def session(cls, session_id: str) -> "Holder":
        return cls(HolderKind.SESSION, session_id)


class StockKey(NamedTuple):
    """Identifies a sellable unit: a product, optionally narrowed to one variant."""
    product_id: str
    variant_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.product_id}:{self.variant_id or '*'}"


# Database Models
class StockRecord(Base):
    __tablename__ = "stock_records"

    stock_key = Column(String(120), primary_key=True)
    product_id = Column(String(36), nullable=False, index=True)
    variant_id = Column(String(36), nullable=True)
    quantity_on_hand = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("quantity_on_hand >= 0", name="ck_stock_on_hand_non_negative"),
    )


class Reservation(Base):
    __tablename__ = "inventory_reservations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    product_id = Column(String(36), nullable=False, index=True)
    variant_id = Column(String(36), nullable=True)
    stock_key = Column(String(120), nullable=False)
    quantity = Column(Integer, nullable=False)
    holder_kind = Column(String(16), nullable=False)
    holder_id = Column(String(128), nullable=False, index=True)
    order_id = Column(String(36), nullable=True, index=True)
    status = Column(String(16), nullable=False, default=ReservationStatus.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    released_at = Column(DateTime, nullable=True)
    consumed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        Index("ix_reservations_key_status_expiry", "stock_key", "status", "expires_at"),
        Index("ix_reservations_status_expiry", "status", "expires_at"),
    )

    @property
    def key(self) -> StockKey:
        return StockKey(self.product_id, self.variant_id)

    @property
    def holder(self) -> Holder:
        return Holder(HolderKind(self.holder_kind), self.holder_id)

    @property
    def is_terminal(self) -> bool:
        return ReservationStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "reservation_id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "holder": {"kind": self.holder_kind, "id": self.holder_id},
            "order_id": self.order_id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
        }
