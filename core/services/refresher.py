"""
Background refresh of each active bed's sample cache.

Key patterns:
- Fixed-interval polling (staleness bounded by one interval)
- Structured concurrency with asyncio.TaskGroup for the per-bed reads
- Per-bed time budget so one slow or broken series cannot starve the others
- Graceful shutdown through a stop event
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from core.services.bed_registry import BedRegistry, RefreshTarget
from core.services.timeseries import VitalsSource

logger = structlog.get_logger(__name__)


class RefreshConfig(BaseModel):
    """
    Configuration with validation and smart defaults.
    """

    interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Interval between refresh ticks in seconds.",
    )
    read_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Time budget for reading one bed's series.",
    )
    cache_capacity: int = Field(
        default=100,
        gt=0,
        description="Number of most recent samples requested per bed.",
    )
    max_concurrent_reads: int = Field(
        default=10,
        gt=0,
        description="Max number of bed series read at the same time.",
    )
    shutdown_grace_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="How long stop() lets an in-flight tick finish.",
    )


class BedOutcome(str, Enum):
    REFRESHED = "refreshed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class RefreshReport:
    """Summary of one refresh tick."""

    refreshed_at: datetime
    outcomes: dict[str, BedOutcome]
    duration_seconds: float

    def count(self, outcome: BedOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value is outcome)

    @property
    def refreshed(self) -> int:
        return self.count(BedOutcome.REFRESHED)

    @property
    def failed(self) -> int:
        return self.count(BedOutcome.FAILED) + self.count(BedOutcome.TIMED_OUT)


class VitalsRefresher:
    """
    Periodically re-reads the tail of every active bed's series.

    Design principles:
    - Graceful degradation (a failed bed keeps its stale cache)
    - Ticks never overlap, so cache replacements for one bed stay in order
    - Observable (structured logging per tick and per failure)
    """

    def __init__(
        self, registry: BedRegistry, source: VitalsSource, config: RefreshConfig | None = None
    ) -> None:
        self.registry = registry
        self.source = source
        self.config = config or RefreshConfig()
        self.logger = logger.bind(component="vitals_refresher")
        self._tick_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_reads)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.ticks_completed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh_once(self) -> RefreshReport:
        """Run a single refresh tick over every active bed."""
        async with self._tick_lock:
            start_time = time.perf_counter()
            refreshed_at = datetime.now(UTC)
            targets = await self.registry.refresh_targets()

            async with asyncio.TaskGroup() as task_group:
                tasks = {
                    target.bed_id: task_group.create_task(
                        self._refresh_bed(target, refreshed_at), name=target.bed_id
                    )
                    for target in targets
                }

            outcomes = {bed_id: task.result() for bed_id, task in tasks.items()}
            report = RefreshReport(
                refreshed_at=refreshed_at,
                outcomes=outcomes,
                duration_seconds=time.perf_counter() - start_time,
            )
            self.ticks_completed += 1

            self.logger.debug(
                "refresh_tick_completed",
                total_beds=len(targets),
                refreshed=report.refreshed,
                failed=report.failed,
                discarded=report.count(BedOutcome.DISCARDED),
                duration_seconds=round(report.duration_seconds, 3),
            )
            return report

    async def _refresh_bed(self, target: RefreshTarget, refreshed_at: datetime) -> BedOutcome:
        try:
            async with self._semaphore:
                result = await asyncio.wait_for(
                    self.source.read_tail(target.bed_id, self.config.cache_capacity),
                    timeout=self.config.read_timeout_seconds,
                )
        except TimeoutError:
            self.logger.warning(
                "bed_refresh_timeout",
                bed_id=target.bed_id,
                timeout_seconds=self.config.read_timeout_seconds,
            )
            return BedOutcome.TIMED_OUT
        except Exception as e:
            self.logger.exception(
                "unexpected_bed_refresh_error", bed_id=target.bed_id, error=str(e)
            )
            return BedOutcome.FAILED

        if result.is_err():
            self.logger.warning(
                "bed_refresh_failed", bed_id=target.bed_id, error=str(result.unwrap_err())
            )
            return BedOutcome.FAILED

        applied = await self.registry.apply_refresh(target, result.unwrap(), refreshed_at)
        return BedOutcome.REFRESHED if applied else BedOutcome.DISCARDED

    async def run(self) -> None:
        """Refresh on a fixed cadence until stop() is called."""
        self.logger.info("refresh_loop_started", interval_seconds=self.config.interval_seconds)

        while not self._stop_event.is_set():
            tick_start = time.perf_counter()

            try:
                await self.refresh_once()
                elapsed = time.perf_counter() - tick_start
                sleep_time = max(0.0, self.config.interval_seconds - elapsed)
                if sleep_time == 0:
                    self.logger.warning(
                        "refresh_tick_slower_than_interval",
                        elapsed_seconds=round(elapsed, 3),
                        interval_seconds=self.config.interval_seconds,
                    )
            except Exception as e:
                self.logger.exception("unexpected_refresh_loop_error", error=str(e))
                # Back off on errors
                sleep_time = min(60.0, self.config.interval_seconds * 2)

            await self._sleep(sleep_time)

        self.logger.info("refresh_loop_stopped", ticks_completed=self.ticks_completed)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def start(self) -> None:
        """Schedule the refresh loop as a background task."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="vitals-refresher")

    async def stop(self) -> None:
        """Stop scheduling ticks; an in-flight tick gets a grace period, then is cancelled."""
        if self._task is None:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=self.config.shutdown_grace_seconds)
        except TimeoutError:
            self.logger.warning("refresh_loop_abandoned_inflight_tick")

    @asynccontextmanager
    async def refresh_session(self) -> AsyncIterator["VitalsRefresher"]:
        """
        Async context manager for the loop's lifecycle.

        Ensures the loop is stopped even if the body raises.
        """
        self.start()
        try:
            yield self
        finally:
            await self.stop()
