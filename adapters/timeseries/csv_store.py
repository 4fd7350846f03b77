"""
File-backed vital-sign series, one CSV file per bed.

Layout per file: a header row `Time,HR,ABPsys,ABPdia,SpO2,RESP` followed by
one record per sample, oldest first. Blocking file I/O runs in worker threads
so a slow disk never stalls the event loop; writes for one bed are serialised
by a per-bed lock and provisioning replaces the file atomically.
"""

import asyncio
import csv
import os
import random
import re
import tempfile
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TypeVar

import structlog

from adapters.timeseries.synthetic import (
    CSV_FIELDS,
    decode_row,
    encode_sample,
    generate_history,
)
from core.domain.errors import (
    InternalFaultError,
    InvalidInputError,
    MonitoringError,
    SourceUnavailableError,
)
from core.domain.models import VitalSample
from core.services.result import Result

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_BED_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class _MalformedSeries(Exception):
    pass


class CsvVitalsSource:
    """
    VitalsSource implementation over a directory of CSV files.

    Design principles: fail fast on bad bed ids, report missing or unreadable
    files as SourceUnavailable and malformed records as InternalFault.
    """

    def __init__(
        self,
        data_dir: str | Path,
        seed_hours: float = 24.0,
        seed_interval_seconds: float = 10.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.seed_hours = seed_hours
        self.seed_interval_seconds = seed_interval_seconds
        self._rng = rng or random.Random()
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.logger = logger.bind(component="csv_vitals_source", data_dir=str(self.data_dir))

    def series_path(self, bed_id: str) -> Path:
        if not _BED_ID_PATTERN.fullmatch(bed_id):
            raise InvalidInputError(f"Invalid bed id: {bed_id!r}")
        return self.data_dir / f"{bed_id}.csv"

    async def read_tail(
        self, bed_id: str, max_count: int
    ) -> Result[list[VitalSample], MonitoringError]:
        if max_count <= 0:
            return Result.ok([])
        return await self._run(bed_id, "read_tail", self._read_tail_sync, bed_id, max_count)

    async def read_window(
        self, bed_id: str, since: float
    ) -> Result[list[VitalSample], MonitoringError]:
        return await self._run(bed_id, "read_window", self._read_window_sync, bed_id, since)

    async def provision(
        self, bed_id: str, patient_id: str, patient_name: str
    ) -> Result[str, MonitoringError]:
        result = await self._run(bed_id, "provision", self._provision_sync, bed_id)
        if result.is_ok():
            self.logger.info(
                "series_provisioned",
                bed_id=bed_id,
                patient_id=patient_id,
                seeded=result.unwrap(),
            )
            return Result.ok(bed_id)
        return Result.err(result.unwrap_err())

    async def discard(self, bed_id: str) -> Result[str, MonitoringError]:
        result = await self._run(bed_id, "discard", self._discard_sync, bed_id)
        if result.is_ok():
            self.logger.info("series_discarded", bed_id=bed_id, existed=result.unwrap())
            return Result.ok(bed_id)
        return Result.err(result.unwrap_err())

    async def append(
        self, bed_id: str, samples: Iterable[VitalSample]
    ) -> Result[int, MonitoringError]:
        """Append live samples to an existing series."""
        return await self._run(bed_id, "append", self._append_sync, bed_id, list(samples))

    async def _run(
        self, bed_id: str, operation: str, func: Callable[..., T], *args: object
    ) -> Result[T, MonitoringError]:
        try:
            value = await asyncio.to_thread(func, *args)
            return Result.ok(value)
        except MonitoringError as e:
            self.logger.warning(f"{operation}_failed", bed_id=bed_id, error=e.message)
            return Result.err(e)
        except _MalformedSeries as e:
            self.logger.error(f"{operation}_malformed_series", bed_id=bed_id, error=str(e))
            return Result.err(InternalFaultError(str(e)))
        except OSError as e:
            self.logger.warning(f"{operation}_io_error", bed_id=bed_id, error=str(e))
            return Result.err(SourceUnavailableError(f"Series for bed {bed_id} is unavailable"))

    def _lock_for(self, bed_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(bed_id, threading.Lock())

    def _existing_path(self, bed_id: str) -> Path:
        path = self.series_path(bed_id)
        if not path.exists():
            raise SourceUnavailableError(f"No series for bed {bed_id}")
        return path

    def _iter_samples(self, path: Path) -> Iterable[VitalSample]:
        with path.open(newline="", encoding="utf-8") as handle:
            reader = csv.DictReader(handle)
            if tuple(reader.fieldnames or ()) != CSV_FIELDS:
                raise _MalformedSeries(f"{path.name}: unexpected header {reader.fieldnames}")
            for row in reader:
                try:
                    yield decode_row(row)
                except (KeyError, TypeError, ValueError) as e:
                    raise _MalformedSeries(
                        f"{path.name}: malformed record on line {reader.line_num}"
                    ) from e

    def _read_tail_sync(self, bed_id: str, max_count: int) -> list[VitalSample]:
        with self._lock_for(bed_id):
            path = self._existing_path(bed_id)
            return list(deque(self._iter_samples(path), maxlen=max_count))

    def _read_window_sync(self, bed_id: str, since: float) -> list[VitalSample]:
        with self._lock_for(bed_id):
            path = self._existing_path(bed_id)
            return [s for s in self._iter_samples(path) if s.timestamp >= since]

    def _provision_sync(self, bed_id: str) -> bool:
        path = self.series_path(bed_id)
        with self._lock_for(bed_id):
            if path.exists():
                return False
            self.data_dir.mkdir(parents=True, exist_ok=True)
            history = generate_history(
                end_time=self._clock(),
                hours=self.seed_hours,
                interval_seconds=self.seed_interval_seconds,
                rng=self._rng,
            )
            fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=f".{bed_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", newline="", encoding="utf-8") as handle:
                    writer = csv.writer(handle, lineterminator="\n")
                    writer.writerow(CSV_FIELDS)
                    writer.writerows(encode_sample(sample) for sample in history)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            return True

    def _append_sync(self, bed_id: str, samples: list[VitalSample]) -> int:
        with self._lock_for(bed_id):
            path = self._existing_path(bed_id)
            with path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.writer(handle, lineterminator="\n")
                writer.writerows(encode_sample(sample) for sample in samples)
            return len(samples)

    def _discard_sync(self, bed_id: str) -> bool:
        path = self.series_path(bed_id)
        with self._lock_for(bed_id):
            existed = path.exists()
            path.unlink(missing_ok=True)
            return existed
