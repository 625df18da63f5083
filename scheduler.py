"""Batch scheduler: decides when the daily recommendation batch runs and runs it."""

import logging
import threading
from concurrent.futures import Future
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

import events
from cache import CacheResult, RecommendationCache
from config import Settings
from errors import GenerationFailure
from models import from_iso, to_iso

logger = logging.getLogger(__name__)

LAST_RUN_KEY = "batch:last_run"
BUDGET_KEY = "batch:budget"
RESTOCK_KEY = "batch:restock"


def product_key(product_id: str) -> str:
    return f"product:{product_id}"


def local_now() -> datetime:
    """Aware current time in the host timezone; run_at is a local wall-clock time."""
    return datetime.now().astimezone()


def read_last_run(store) -> Optional[datetime]:
    """The persisted completion time of the last batch, if any."""
    raw = store.get(LAST_RUN_KEY)
    if raw is None:
        return None
    try:
        return from_iso(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Ignoring unreadable last run timestamp: {e}")
        return None


def next_run_time(now: datetime, last_run: Optional[datetime],
                  run_at: time = time(3, 0),
                  period: timedelta = timedelta(hours=24)) -> datetime:
    """When the next batch is due.

    Without a prior run this is the next occurrence of run_at strictly after
    now, in now's timezone. Otherwise it is last_run + period.
    """
    if last_run is not None:
        return last_run + period
    candidate = now.replace(hour=run_at.hour, minute=run_at.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _failed_future(error: BaseException) -> Future:
    future = Future()
    future.set_exception(error)
    return future


def _collect(futures: dict[str, Future]) -> dict[str, CacheResult]:
    """Batch results per key; a refresh that raised counts as a failed key."""
    results = {}
    for key, future in futures.items():
        try:
            results[key] = future.result()
        except Exception as e:
            results[key] = CacheResult(key, None, True, error=GenerationFailure(key, e))
    return results


class BatchScheduler:
    """Periodic tick over APScheduler that runs the batch once it is due.

    `collect` returns the cache key -> generator mapping for one batch; it is
    called at the start of every run so the batch sees current tracking state.
    """

    def __init__(self, store, cache: RecommendationCache,
                 collect: Callable[[], dict], settings: Optional[Settings] = None,
                 is_entitled: Callable[[], bool] = lambda: True,
                 clock: Callable[[], datetime] = local_now,
                 event_stream: Optional[events.EventStream] = None,
                 on_tick: Optional[Callable[[datetime], None]] = None):
        self.store = store
        self.cache = cache
        self.collect = collect
        self.settings = settings or Settings()
        self.is_entitled = is_entitled
        self.clock = clock
        self.events = event_stream or events.EventStream()
        self.on_tick = on_tick
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()
        self._is_running = False
        self._last_result: Optional[dict] = None

    # ── Schedule ───────────────────────────────────────────────

    @property
    def last_run(self) -> Optional[datetime]:
        return read_last_run(self.store)

    def next_run(self) -> datetime:
        return next_run_time(self.clock(), self.last_run,
                             self.settings.batch_run_at, self.settings.batch_period)

    def is_due(self) -> bool:
        return self.clock() >= self.next_run()

    def tick(self):
        """APScheduler job: run the batch if due, then sweep expired cache entries."""
        now = self.clock()
        if now >= self.next_run():
            logger.info("Scheduled batch starting...")
            self.run_batch(wait=False)
        self.cache.evict_expired()
        if self.on_tick is not None:
            try:
                self.on_tick(now)
            except Exception as e:
                logger.error(f"Tick hook failed: {e}")

    # ── Batch ──────────────────────────────────────────────────

    def run_batch(self, wait: bool = True) -> dict:
        """Refresh every batch key through the cache.

        With wait=False the refreshes are submitted and this returns at once;
        the last-run timestamp is persisted when the final refresh settles.
        """
        with self._lock:
            if self._is_running:
                return {"error": "Batch already in progress"}
            self._is_running = True

        try:
            if not self.is_entitled():
                logger.info("Batch skipped: not entitled")
                self.events.publish(events.BATCH_SKIPPED, {"reason": "not entitled"})
                self._is_running = False
                return {"skipped": True, "reason": "not entitled"}
            started = self.clock()
            jobs = self.collect()
        except Exception as e:
            logger.error(f"Batch failed: {e}")
            self.events.publish(events.BATCH_FAILED, {"error": str(e)})
            self._is_running = False
            return {"error": str(e)}

        self.events.publish(events.BATCH_STARTED, {"keys": sorted(jobs), "started_at": started.isoformat()})
        if not jobs:
            return self._complete(started, {})

        futures = {}
        for key, generator in jobs.items():
            try:
                futures[key] = self.cache.submit_refresh(key, generator)
            except RuntimeError as e:
                logger.error(f"Could not dispatch refresh for {key}: {e}")
                futures[key] = _failed_future(e)
        if wait:
            return self._complete(started, _collect(futures))

        remaining = [len(futures)]
        counter = threading.Lock()

        def settled(_):
            with counter:
                remaining[0] -= 1
                last = remaining[0] == 0
            if last:
                self._complete(started, _collect(futures))

        for f in futures.values():
            f.add_done_callback(settled)
        return {"status": "submitted", "keys": sorted(futures)}

    def _complete(self, started: datetime, results: dict[str, CacheResult]) -> dict:
        finished = self.clock()
        try:
            self.store.put(LAST_RUN_KEY, to_iso(finished).encode("utf-8"))
            errors = {key: str(r.error) for key, r in results.items() if r.error is not None}
            result = {
                "refreshed": len(results) - len(errors),
                "failed": len(errors),
                "errors": errors,
                "started_at": started.isoformat(),
                "finished_at": finished.isoformat(),
            }
            self._last_result = result
            if errors:
                logger.warning(f"Batch finished with {len(errors)} failed keys: {sorted(errors)}")
            logger.info(f"Batch done: refreshed={result['refreshed']} failed={result['failed']}")
            self.events.publish(events.BATCH_COMPLETED, result)
            return result
        finally:
            self._is_running = False

    # ── Lifecycle ──────────────────────────────────────────────

    def start(self):
        """Start the background tick."""
        with self._lock:
            if self._scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)

            self._scheduler = BackgroundScheduler()
            self._scheduler.add_job(
                self.tick,
                "interval",
                minutes=self.settings.tick_minutes,
                id="batch_tick",
                replace_existing=True,
                next_run_time=datetime.now(timezone.utc),
            )
            self._scheduler.start()
            logger.info(f"Scheduler started: checking every {self.settings.tick_minutes}m")

    def stop(self):
        with self._lock:
            if self._scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")

    def trigger_now(self) -> dict:
        """Run a batch immediately in a background thread, ignoring the schedule."""
        if self._is_running:
            return {"error": "Batch already in progress"}
        thread = threading.Thread(target=self.run_batch, daemon=True)
        thread.start()
        return {"status": "triggered"}

    def get_status(self) -> dict:
        running = self._scheduler is not None and self._scheduler.running
        last_run = self.last_run
        status = {
            "running": running,
            "batch_running": self._is_running,
            "last_run": to_iso(last_run),
            "next_run": self.next_run().isoformat(),
            "last_result": self._last_result,
            "entitled": bool(self.is_entitled()),
        }
        if running:
            job = self._scheduler.get_job("batch_tick")
            if job and job.next_run_time:
                status["next_tick"] = job.next_run_time.isoformat()
        return status
