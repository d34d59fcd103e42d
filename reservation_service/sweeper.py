"""
Expiry sweeper: releases holds whose TTL has passed.

The sweeper owns no timer. An external scheduler (cron, orchestrator job or
an operator) calls run_once(), either through the protected HTTP endpoint or
by running this module:

    python -m reservation_service.sweeper
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Set

from .config import get_settings
from .database import create_engine, create_session_factory, init_db
from .errors import AlreadyTerminal, NotExpired, NotFound
from .inventory_reservation import ReservationManager
from .metrics import SWEEP_DURATION_SECONDS, SWEEP_EXPIRED_TOTAL, SWEEP_RUNS_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    cleaned_count: int = 0
    skipped_count: int = 0
    batches: int = 0

    def to_dict(self):
        return {
            "cleaned_count": self.cleaned_count,
            "skipped_count": self.skipped_count,
            "batches": self.batches,
        }


class ExpirySweeper:
    """
    Batch job that moves overdue active reservations to `expired`.

    Each row goes through ReservationManager.expire(), the same per-key
    atomic transition release() uses, so two overlapping sweeps or a sweep
    racing a checkout never double-process a row. The batch as a whole is
    not transactional.
    """

    def __init__(
        self,
        manager: ReservationManager,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None
    ):
        self.manager = manager
        self.batch_size = batch_size or manager.settings.sweep_batch_size
        self.max_batches = max_batches or manager.settings.sweep_max_batches

    async def run_once(self) -> SweepResult:
        """Expire every overdue hold visible now. Returns counts."""
        result = SweepResult()
        seen: Set[str] = set()
        start_time = time.time()

        try:
            while result.batches < self.max_batches:
                ids = await self._next_batch()
                fresh = [reservation_id for reservation_id in ids if reservation_id not in seen]
                if not fresh:
                    break

                result.batches += 1
                for reservation_id in fresh:
                    seen.add(reservation_id)
                    try:
                        await self.manager.expire(reservation_id)
                        result.cleaned_count += 1
                    except (AlreadyTerminal, NotExpired, NotFound) as e:
                        logger.debug(f"Sweep skipped {reservation_id}: {e.detail}")
                        result.skipped_count += 1

                if len(ids) < self.batch_size:
                    break
        except Exception:
            SWEEP_RUNS_TOTAL.labels(status="failed").inc()
            raise
        finally:
            SWEEP_DURATION_SECONDS.observe(time.time() - start_time)

        SWEEP_RUNS_TOTAL.labels(status="completed").inc()
        SWEEP_EXPIRED_TOTAL.inc(result.cleaned_count)
        logger.info(
            f"Expiry sweep finished: cleaned={result.cleaned_count}, "
            f"skipped={result.skipped_count}, batches={result.batches}"
        )
        return result

    async def _next_batch(self) -> List[str]:
        return await self.manager.find_expired_ids(self.batch_size)


async def main() -> SweepResult:
    """Run one sweep against the configured database."""
    settings = get_settings()
    engine = create_engine(settings.database_url)
    try:
        await init_db(engine)
        manager = ReservationManager(create_session_factory(engine), settings=settings)
        return await ExpirySweeper(manager).run_once()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
