"""
Reservation Service - Inventory holds for checkout, flash sales and carts
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt
from redis.exceptions import RedisError

from .config import get_settings
from .database import Database
from .errors import InvalidHolder, ReservationError, StoreUnavailable
from .fastapi_middleware import setup_observability
from .inventory_reservation import ReservationManager
from .kafka_client import KafkaProducer
from .models import Holder
from .redis_client import AvailabilityCache, RedisClient
from .sweeper import ExpirySweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

# Column widths in models.py
ID_MAX_LENGTH = 36
HOLDER_ID_MAX_LENGTH = 128


# Pydantic Schemas
class ReserveRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)
    variant_id: Optional[str] = Field(None, max_length=ID_MAX_LENGTH)
    quantity: StrictInt
    user_id: Optional[str] = Field(None, max_length=HOLDER_ID_MAX_LENGTH)
    session_id: Optional[str] = Field(None, max_length=HOLDER_ID_MAX_LENGTH)


class ReserveResponse(BaseModel):
    reservation_id: str
    product_id: str
    variant_id: Optional[str]
    quantity: int
    expires_at: str
    # Units left after this hold
    available_stock: int


class HolderResponse(BaseModel):
    kind: str
    id: str


class ReservationResponse(BaseModel):
    reservation_id: str
    product_id: str
    variant_id: Optional[str]
    quantity: int
    holder: HolderResponse
    order_id: Optional[str]
    status: str
    created_at: Optional[str]
    expires_at: Optional[str]
    released_at: Optional[str]
    consumed_at: Optional[str]


class ConsumeRequest(BaseModel):
    order_id: Optional[str] = Field(None, max_length=ID_MAX_LENGTH)


class StockUpdate(BaseModel):
    quantity: StrictInt
    operation: Literal["set", "add", "subtract"] = "set"


# Lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests and embedding callers may wire a manager in before startup
    if getattr(app.state, "manager", None) is not None:
        yield
        return

    logger.info("Starting Reservation Service...")
    database = Database(settings.database_url, echo=settings.debug)
    await database.connect()

    redis_client = RedisClient(settings.redis_url)
    producer = None
    try:
        cache = None
        if settings.cache_enabled:
            try:
                await redis_client.connect()
                cache = AvailabilityCache(redis_client, settings.availability_cache_ttl_seconds)
            except (RedisError, OSError) as e:
                logger.warning(f"Redis unavailable, availability cache disabled: {e}")

        if settings.kafka_enabled:
            kafka_producer = KafkaProducer(settings.kafka_bootstrap_servers)
            await kafka_producer.start()
            producer = kafka_producer

        app.state.manager = ReservationManager(
            database.session_factory,
            settings=settings,
            cache=cache,
            producer=producer
        )

        yield
    finally:
        # Shutdown, also reached when startup fails part-way
        app.state.manager = None
        if producer:
            await producer.stop()
        await redis_client.disconnect()
        await database.disconnect()
        logger.info("Reservation Service stopped")


# FastAPI App
app = FastAPI(
    title="Reservation Service",
    description="Inventory reservation ledger with oversell protection",
    version="1.0.0",
    lifespan=lifespan
)

setup_observability(app, service_name=settings.service_name)


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def get_manager(request: Request) -> ReservationManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise StoreUnavailable("Reservation service is not ready")
    return manager


def resolve_holder(body: ReserveRequest, session_header: Optional[str]) -> Holder:
    """Signed-in user wins over an anonymous cart session."""
    if body.user_id:
        return Holder.user(body.user_id)
    session_id = body.session_id or session_header
    if session_id:
        return Holder.session(session_id)
    raise InvalidHolder()


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    manager: ReservationManager = Depends(get_manager)
):
    """Shared-secret check for the external scheduler."""
    expected = manager.settings.cron_secret
    if not expected:
        logger.warning("CRON_SECRET environment variable not set")
        raise HTTPException(status_code=500, detail="Server misconfiguration")

    supplied = x_cron_secret
    if not supplied and authorization and authorization.startswith("Bearer "):
        supplied = authorization[len("Bearer "):]

    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


# API Endpoints
@app.post(
    "/api/v1/reservations",
    response_model=ReserveResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_reservation(
    body: ReserveRequest,
    x_session_id: Optional[str] = Header(None, max_length=HOLDER_ID_MAX_LENGTH),
    manager: ReservationManager = Depends(get_manager)
):
    """Hold stock for a checkout, flash-sale claim or cart."""
    holder = resolve_holder(body, x_session_id)
    handle = await manager.reserve(
        body.product_id,
        body.quantity,
        holder,
        variant_id=body.variant_id
    )
    return handle.to_dict()


@app.get("/api/v1/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: str = Path(..., max_length=ID_MAX_LENGTH),
    manager: ReservationManager = Depends(get_manager)
):
    reservation = await manager.get_reservation(reservation_id)
    return reservation.to_dict()


@app.delete("/api/v1/reservations/{reservation_id}")
async def release_reservation(
    reservation_id: str = Path(..., max_length=ID_MAX_LENGTH),
    manager: ReservationManager = Depends(get_manager)
):
    """Release a hold (cart abandoned, checkout cancelled)."""
    reservation = await manager.release(reservation_id)
    return {"ok": True, "reservation_id": reservation.id, "status": reservation.status}


@app.post("/api/v1/reservations/{reservation_id}/consume", response_model=ReservationResponse)
async def consume_reservation(
    reservation_id: str = Path(..., max_length=ID_MAX_LENGTH),
    body: Optional[ConsumeRequest] = None,
    manager: ReservationManager = Depends(get_manager)
):
    """Order commit: turn the hold into a permanent stock decrement."""
    order_id = body.order_id if body else None
    reservation = await manager.consume(reservation_id, order_id=order_id)
    return reservation.to_dict()


@app.post("/api/v1/reservations/{reservation_id}/extend", response_model=ReservationResponse)
async def extend_reservation(
    reservation_id: str = Path(..., max_length=ID_MAX_LENGTH),
    manager: ReservationManager = Depends(get_manager)
):
    """Keep-alive for a shopper still on the checkout page."""
    reservation = await manager.extend(reservation_id)
    return reservation.to_dict()


@app.get("/api/v1/products/{product_id}/availability")
async def get_availability(
    product_id: str = Path(..., max_length=ID_MAX_LENGTH),
    variant_id: Optional[str] = Query(None, max_length=ID_MAX_LENGTH),
    manager: ReservationManager = Depends(get_manager)
):
    """Advisory available stock for display."""
    available = await manager.get_available_stock(product_id, variant_id)
    return {"product_id": product_id, "variant_id": variant_id, "available_stock": available}


@app.put("/api/v1/products/{product_id}/stock")
async def update_stock(
    stock_update: StockUpdate,
    product_id: str = Path(..., max_length=ID_MAX_LENGTH),
    variant_id: Optional[str] = Query(None, max_length=ID_MAX_LENGTH),
    manager: ReservationManager = Depends(get_manager)
):
    """Catalog stock correction (set, add, subtract on hand)."""
    result = await manager.adjust_stock(
        product_id,
        stock_update.quantity,
        operation=stock_update.operation,
        variant_id=variant_id
    )
    return {"product_id": product_id, "variant_id": variant_id, **result}


@app.post("/api/v1/cron/cleanup-reservations")
async def cleanup_expired_reservations(
    manager: ReservationManager = Depends(get_manager),
    _: None = Depends(verify_cron_secret)
):
    """Expire overdue holds. Invoked by an external scheduler."""
    result = await ExpirySweeper(manager).run_once()
    return {"cleaned_count": result.cleaned_count, "skipped_count": result.skipped_count}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8003)
