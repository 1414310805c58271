"""
Payment expiration worker.

Purpose:
- Run the expiration sweep at the top of every hour (cron "0 * * * *", UTC)
- Hold a Redis lock while sweeping so several worker instances never sweep
  at the same time; without Redis the sweep still runs (it is idempotent)
- Serve on-demand runs triggered by operators (POST /admin/sweep/run)

Usage:
- python -m workers.expiration_worker

Production notes:
- A failed run (initial query failed) is logged and the worker waits for the
  next slot; buses not reached in one run are picked up by the next one
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from config.settings import settings
from infra import redis_client
from services.expiration_sweep import ExpirationSweep, SweepStats

logger = logging.getLogger(__name__)

SWEEP_LOCK_NAME = "payment_expiration"


def seconds_until_next_run(now: datetime, interval_sec: int) -> float:
    """Seconds until the next multiple of interval_sec since the epoch (hourly -> top of the hour)."""
    ts = now.timestamp()
    next_ts = (int(ts // interval_sec) + 1) * interval_sec
    return next_ts - ts


class SweepAlreadyRunning(Exception):
    """Another instance holds the sweep lock."""


class ExpirationWorker:
    def __init__(self, sweep: ExpirationSweep, interval_sec: Optional[int] = None,
                 lock_ttl_sec: Optional[int] = None, use_lock: bool = True, redis=None):
        self.sweep = sweep
        self.interval_sec = interval_sec or settings.SWEEP_INTERVAL_SEC
        self.lock_ttl_sec = lock_ttl_sec or settings.SWEEP_LOCK_TTL_SEC
        self.use_lock = use_lock
        self.redis = redis
        self.runs = 0
        self.failed_runs = 0
        self.last_stats: Optional[SweepStats] = None

    async def run_once(self, triggered_by: str = "scheduler") -> SweepStats:
        """
        One locked sweep run.

        Raises SweepAlreadyRunning if another instance holds the lock, and
        re-raises a fatal sweep failure.
        """
        logger.info("Payment expiration run triggered by %s", triggered_by)
        lock = None
        if self.use_lock:
            try:
                lock = await redis_client.acquire_lock(SWEEP_LOCK_NAME, self.lock_ttl_sec, client=self.redis)
            except RedisError as e:
                logger.warning("Redis unavailable (%s); sweeping without lock", e)
            else:
                if lock is None:
                    raise SweepAlreadyRunning("Payment expiration sweep is already running")
        try:
            stats = await self.sweep.run()
        except Exception:
            self.failed_runs += 1
            raise
        finally:
            await redis_client.release_lock(lock)
        self.runs += 1
        self.last_stats = stats
        return stats

    async def run_forever(self):
        """Scheduler loop. Call this in a separate asyncio task or process."""
        logger.info("Expiration worker started (interval=%ss)", self.interval_sec)
        while True:
            delay = seconds_until_next_run(datetime.now(timezone.utc), self.interval_sec)
            logger.info("Next payment expiration check in %.0fs", delay)
            await asyncio.sleep(delay)
            try:
                await self.run_once()
            except SweepAlreadyRunning:
                logger.info("Skipping run: another instance is sweeping")
            except Exception:
                logger.exception("Payment expiration run failed")


async def main():
    """Entry point for running the worker."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    from core.singleton import expiration_worker, init_storage

    await init_storage()
    try:
        await expiration_worker.run_forever()
    finally:
        await redis_client.close()
        logger.info("Worker stopped. Runs: %d, Failed: %d", expiration_worker.runs, expiration_worker.failed_runs)


if __name__ == "__main__":
    # Run worker: python -m workers.expiration_worker
    asyncio.run(main())
