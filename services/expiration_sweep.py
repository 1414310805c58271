"""
Payment expiration sweep.

Purpose:
- Move every active paid rider entry whose payment window has elapsed back to
  pending (PAID -> PENDING), across all buses with riders
- Run as a scheduled batch (see workers/expiration_worker.py) or on demand

Algorithm:
1. query buses whose current_riders is non-empty (failure here is fatal)
2. split into batches of SWEEP_BATCH_SIZE
3. run batches concurrently, at most SWEEP_MAX_CONCURRENCY at a time;
   buses inside a batch are processed one after another
4. per bus: expire due entries, write back only if something changed
5. a failing bus is logged and counted, the run goes on
6. buses not reached before the time budget are skipped for the next run

Retries:
- StoreUnavailable on a bus is retried with exponential backoff and jitter,
  up to SWEEP_WRITE_RETRIES times
- VersionConflict re-reads the bus and re-evaluates it (same attempt budget)
- nothing else is retried within a run

Re-running is safe: an entry already back to pending is never expired twice.
"""
import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from pydantic import BaseModel, computed_field

from config.settings import settings
from core.exceptions import StoreUnavailable, VersionConflict
from models.subscription import CURRENT_RIDERS_FIELD, BusAggregate
from services import state_machine
from services.bus_store import AggregateStore

logger = logging.getLogger(__name__)


class SweepStats(BaseModel):
    total_buses: int = 0
    processed_buses: int = 0
    expired_riders: int = 0
    errors: int = 0
    skipped_buses: int = 0
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.total_buses == 0:
            return 100.0
        return round(self.processed_buses / self.total_buses * 100, 2)


def calculate_backoff(attempt: int, initial_delay: float, max_delay: float = 30.0, jitter: float = 0.1) -> float:
    """initial * 2^attempt, capped, with +/- jitter."""
    delay = min(initial_delay * (2 ** attempt), max_delay)
    delay += random.uniform(-delay * jitter, delay * jitter)  # nosec B311 - not crypto
    return max(delay, 0.0)


def chunk(items: list, size: int) -> List[list]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


class ExpirationSweep:
    def __init__(
        self,
        store: AggregateStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        time_budget_sec: Optional[float] = None,
        write_retries: Optional[int] = None,
        retry_backoff_sec: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        self.max_concurrency = max_concurrency or settings.SWEEP_MAX_CONCURRENCY
        self.time_budget_sec = time_budget_sec if time_budget_sec is not None else settings.SWEEP_TIME_BUDGET_SEC
        self.write_retries = write_retries if write_retries is not None else settings.SWEEP_WRITE_RETRIES
        self.retry_backoff_sec = retry_backoff_sec if retry_backoff_sec is not None else settings.SWEEP_RETRY_BACKOFF_SEC

    async def run(self) -> SweepStats:
        """One sweep over every bus with riders. Raises only if the initial query fails."""
        stats = SweepStats(started_at=self.clock())
        started = time.monotonic()
        deadline = started + self.time_budget_sec
        logger.info("Starting payment expiration check at %s", stats.started_at.isoformat())

        try:
            buses = await self.store.query_where_field_non_empty(CURRENT_RIDERS_FIELD)
        except Exception:
            logger.exception("Critical error querying buses for expiration check")
            raise

        stats.total_buses = len(buses)
        logger.info("Found %d buses with current riders", stats.total_buses)

        if buses:
            semaphore = asyncio.Semaphore(self.max_concurrency)
            batches = chunk(buses, self.batch_size)
            await asyncio.gather(*(self._run_batch(batch, stats, semaphore, deadline) for batch in batches))

        stats.finished_at = self.clock()
        stats.duration_ms = round((time.monotonic() - started) * 1000.0, 2)
        logger.info(
            "Payment expiration check completed: total=%d processed=%d expired=%d errors=%d skipped=%d "
            "duration_ms=%.2f success_rate=%.2f%%",
            stats.total_buses, stats.processed_buses, stats.expired_riders, stats.errors,
            stats.skipped_buses, stats.duration_ms, stats.success_rate,
        )
        if stats.errors:
            logger.warning("Payment expiration check completed with %d errors", stats.errors)
        if stats.skipped_buses:
            logger.warning("Time budget reached; %d buses left for the next run", stats.skipped_buses)
        return stats

    async def _run_batch(self, batch: List[BusAggregate], stats: SweepStats,
                         semaphore: asyncio.Semaphore, deadline: float) -> None:
        async with semaphore:
            for bus in batch:
                if time.monotonic() >= deadline:
                    stats.skipped_buses += 1
                    continue
                try:
                    expired = await self.process_bus(bus)
                except Exception as e:
                    stats.errors += 1
                    logger.error("Error processing bus %s: %s", bus.id, e)
                    continue
                stats.processed_buses += 1
                stats.expired_riders += expired

    async def process_bus(self, bus: BusAggregate) -> int:
        """Expire due entries on one bus; returns how many were expired."""
        attempt = 0
        while True:
            now = self.clock()
            riders, expired = state_machine.expire_entries(bus.current_riders, now)
            if expired == 0:
                return 0
            try:
                await self.store.set_document(
                    bus.model_copy(update={"current_riders": riders, "last_payment_check": now}),
                    expected_version=bus.version,
                )
                logger.info("Expired %d riders on bus %s", expired, bus.bus_name or bus.id)
                return expired
            except VersionConflict as e:
                if attempt >= self.write_retries:
                    raise
                logger.info("Bus %s changed during sweep, re-evaluating: %s", bus.id, e)
            except StoreUnavailable as e:
                if attempt >= self.write_retries:
                    raise
                delay = calculate_backoff(attempt, self.retry_backoff_sec)
                logger.warning("Store unavailable writing bus %s (attempt %d), retrying in %.2fs: %s",
                               bus.id, attempt + 1, delay, e)
                await asyncio.sleep(delay)
            attempt += 1
            bus = await self.store.get_document(bus.id)
