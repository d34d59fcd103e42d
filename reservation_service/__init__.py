# Inventory reservation ledger: holds between stock on hand and stock sold
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
    StockLedgerError,
    StoreUnavailable,
)
from .inventory_reservation import ReservationHandle, ReservationManager
from .models import Holder, HolderKind, Reservation, ReservationStatus, StockKey
from .sweeper import ExpirySweeper, SweepResult
