"""
Registry of monitored beds and their bounded sample caches.

The registry exclusively owns bed state. All mutations and snapshot reads go
through a single asyncio lock, so a reader never sees metadata from one
update mixed with a cache from another.

Refresh results are applied through `apply_refresh` using the generation
number handed out by `refresh_targets`. A bed removed (or removed and re-added)
while its series was being read no longer has that generation, so the stale
result is dropped instead of resurrecting or overwriting the entry.

Provisioning and discarding a series can be slow, so those calls run outside
the lock under a time budget. The bed id is reserved (add) or the bed is
marked as removing (remove) while the call is in flight.
"""

import asyncio
import itertools
import time
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from core.domain.errors import (
    AlreadyExistsError,
    MonitoringError,
    NotFoundError,
    SourceUnavailableError,
)
from core.domain.models import BedMonitor, VitalSample
from core.services.result import Result
from core.services.timeseries import VitalsSource

logger = structlog.get_logger(__name__)

DEFAULT_CACHE_CAPACITY = 100
DEFAULT_PROVISION_TIMEOUT_SECONDS = 30.0

_generations = itertools.count(1)


@dataclass(slots=True)
class _BedState:
    bed_id: str
    patient_id: str
    patient_name: str
    is_active: bool
    last_update: datetime
    samples: tuple[VitalSample, ...] = ()
    generation: int = field(default_factory=lambda: next(_generations))
    removing: bool = False

    def snapshot(self) -> BedMonitor:
        return BedMonitor(
            bed_id=self.bed_id,
            patient_id=self.patient_id,
            patient_name=self.patient_name,
            is_active=self.is_active,
            last_update=self.last_update,
            recent_samples=self.samples,
        )


@dataclass(frozen=True, slots=True)
class RefreshTarget:
    """Identifies one active bed at the moment a refresh tick started."""

    bed_id: str
    generation: int


class BedRegistry:
    """Owns every BedMonitor and its cache of recent samples."""

    def __init__(
        self,
        source: VitalsSource,
        cache_capacity: int = DEFAULT_CACHE_CAPACITY,
        provision_timeout_seconds: float = DEFAULT_PROVISION_TIMEOUT_SECONDS,
    ) -> None:
        if cache_capacity <= 0:
            raise ValueError("cache_capacity must be positive")
        if provision_timeout_seconds <= 0:
            raise ValueError("provision_timeout_seconds must be positive")
        self.source = source
        self.cache_capacity = cache_capacity
        self.provision_timeout_seconds = provision_timeout_seconds
        self._beds: dict[str, _BedState] = {}
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="bed_registry")

    async def list_all(self) -> list[BedMonitor]:
        """Snapshot of every bed, in insertion order."""
        async with self._lock:
            return [state.snapshot() for state in self._beds.values()]

    async def get(self, bed_id: str) -> Result[BedMonitor, MonitoringError]:
        async with self._lock:
            state = self._beds.get(bed_id)
            if state is None:
                return Result.err(NotFoundError(f"Bed {bed_id} not found"))
            return Result.ok(state.snapshot())

    async def contains(self, bed_id: str) -> bool:
        async with self._lock:
            return bed_id in self._beds

    async def add(
        self, bed_id: str, patient_id: str, patient_name: str
    ) -> Result[BedMonitor, MonitoringError]:
        """
        Register a new active bed with an empty cache.

        The backing series is provisioned before the bed becomes visible, so
        the next refresh tick has data to read. A concurrent add of the same
        id is rejected while provisioning is in flight.
        """
        async with self._lock:
            if bed_id in self._beds or bed_id in self._pending:
                return Result.err(AlreadyExistsError(f"Bed {bed_id} already exists"))
            self._pending.add(bed_id)

        try:
            provisioned = await self._bounded(
                "provision", bed_id, self.source.provision(bed_id, patient_id, patient_name)
            )
            if provisioned.is_err():
                return Result.err(provisioned.unwrap_err())

            async with self._lock:
                state = _BedState(
                    bed_id=bed_id,
                    patient_id=patient_id,
                    patient_name=patient_name,
                    is_active=True,
                    last_update=datetime.now(UTC),
                )
                self._beds[bed_id] = state
                self.logger.info("bed_added", bed_id=bed_id, patient_id=patient_id)
                return Result.ok(state.snapshot())
        finally:
            async with self._lock:
                self._pending.discard(bed_id)

    async def remove(self, bed_id: str) -> Result[str, MonitoringError]:
        """
        Discard the backing series, then drop the bed.

        The bed stops being a refresh target as soon as removal starts. If
        the discard fails the bed is kept and refreshing resumes.
        """
        async with self._lock:
            state = self._beds.get(bed_id)
            if state is None or state.removing:
                return Result.err(NotFoundError(f"Bed {bed_id} not found"))
            state.removing = True

        discarded: Result[str, MonitoringError] = Result.err(
            SourceUnavailableError(f"Discarding series for bed {bed_id} was interrupted")
        )
        try:
            discarded = await self._bounded("discard", bed_id, self.source.discard(bed_id))
        finally:
            async with self._lock:
                if discarded.is_ok():
                    del self._beds[bed_id]
                    self.logger.info("bed_removed", bed_id=bed_id)
                else:
                    state.removing = False

        if discarded.is_err():
            return Result.err(discarded.unwrap_err())
        return Result.ok(bed_id)

    async def _bounded(
        self,
        operation: str,
        bed_id: str,
        call: Awaitable[Result[str, MonitoringError]],
    ) -> Result[str, MonitoringError]:
        try:
            return await asyncio.wait_for(call, timeout=self.provision_timeout_seconds)
        except TimeoutError:
            self.logger.warning(
                f"{operation}_timeout",
                bed_id=bed_id,
                timeout_seconds=self.provision_timeout_seconds,
            )
            return Result.err(
                SourceUnavailableError(f"Series for bed {bed_id} did not respond in time")
            )

    async def reassign_patient(
        self, bed_id: str, patient_id: str, patient_name: str
    ) -> Result[BedMonitor, MonitoringError]:
        async with self._lock:
            state = self._beds.get(bed_id)
            if state is None:
                return Result.err(NotFoundError(f"Bed {bed_id} not found"))
            state.patient_id = patient_id
            state.patient_name = patient_name
            self.logger.info("bed_patient_reassigned", bed_id=bed_id, patient_id=patient_id)
            return Result.ok(state.snapshot())

    async def set_active(self, bed_id: str, is_active: bool) -> Result[BedMonitor, MonitoringError]:
        """Inactive beds keep their (stale) cache and stay readable."""
        async with self._lock:
            state = self._beds.get(bed_id)
            if state is None:
                return Result.err(NotFoundError(f"Bed {bed_id} not found"))
            state.is_active = is_active
            self.logger.info("bed_status_changed", bed_id=bed_id, is_active=is_active)
            return Result.ok(state.snapshot())

    async def recent_samples(
        self, bed_id: str, limit: int = DEFAULT_CACHE_CAPACITY
    ) -> list[VitalSample]:
        """Up to `limit` most recent cached samples, newest last; empty for unknown beds."""
        if limit <= 0:
            return []
        async with self._lock:
            state = self._beds.get(bed_id)
            if state is None:
                return []
            return list(state.samples[-limit:])

    async def current_vitals(self, bed_id: str) -> VitalSample | None:
        latest = await self.recent_samples(bed_id, 1)
        return latest[0] if latest else None

    async def history(
        self, bed_id: str, hours: float = 24.0
    ) -> Result[list[VitalSample], MonitoringError]:
        """Samples from the backing series within the last `hours`, inclusive."""
        if not await self.contains(bed_id):
            return Result.err(NotFoundError(f"Bed {bed_id} not found"))
        since = time.time() - hours * 3600
        return await self.source.read_window(bed_id, since)

    async def refresh_targets(self) -> list[RefreshTarget]:
        """Beds that the current refresh tick should read."""
        async with self._lock:
            return [
                RefreshTarget(state.bed_id, state.generation)
                for state in self._beds.values()
                if state.is_active and not state.removing
            ]

    async def apply_refresh(
        self,
        target: RefreshTarget,
        samples: Sequence[VitalSample],
        refreshed_at: datetime,
    ) -> bool:
        """
        Replace the cache of `target` if it is still registered and active.

        Returns False when the result was discarded.
        """
        async with self._lock:
            state = self._beds.get(target.bed_id)
            if (
                state is None
                or state.generation != target.generation
                or not state.is_active
                or state.removing
            ):
                return False
            state.samples = tuple(samples[-self.cache_capacity :])
            state.last_update = refreshed_at
            return True
