"""Shared test doubles for the monitoring core."""

import asyncio

import pytest

from core.domain.errors import MonitoringError, SourceUnavailableError
from core.domain.models import VitalSample
from core.services.result import Result


class FakeVitalsSource:
    """Test double that implements the VitalsSource protocol in memory."""

    def __init__(self) -> None:
        self.series: dict[str, list[VitalSample]] = {}
        self.failing: set[str] = set()
        self.delays: dict[str, float] = {}
        self.provision_delays: dict[str, float] = {}
        self.discard_delays: dict[str, float] = {}
        self.provision_error: MonitoringError | None = None
        self.discard_error: MonitoringError | None = None
        self.reads: list[str] = []

    async def read_tail(
        self, bed_id: str, max_count: int
    ) -> Result[list[VitalSample], MonitoringError]:
        self.reads.append(bed_id)
        # Snapshot before the delay, like a reader that opened the file first
        series = list(self.series.get(bed_id, []))
        known = bed_id in self.series
        if bed_id in self.delays:
            await asyncio.sleep(self.delays[bed_id])
        if bed_id in self.failing or not known:
            return Result.err(SourceUnavailableError(f"No series for bed {bed_id}"))
        return Result.ok(series[-max_count:] if max_count > 0 else [])

    async def read_window(
        self, bed_id: str, since: float
    ) -> Result[list[VitalSample], MonitoringError]:
        if bed_id in self.failing or bed_id not in self.series:
            return Result.err(SourceUnavailableError(f"No series for bed {bed_id}"))
        return Result.ok([s for s in self.series[bed_id] if s.timestamp >= since])

    async def provision(
        self, bed_id: str, patient_id: str, patient_name: str
    ) -> Result[str, MonitoringError]:
        if bed_id in self.provision_delays:
            await asyncio.sleep(self.provision_delays[bed_id])
        if self.provision_error is not None:
            return Result.err(self.provision_error)
        self.series.setdefault(bed_id, [])
        return Result.ok(bed_id)

    async def discard(self, bed_id: str) -> Result[str, MonitoringError]:
        if bed_id in self.discard_delays:
            await asyncio.sleep(self.discard_delays[bed_id])
        if self.discard_error is not None:
            return Result.err(self.discard_error)
        self.series.pop(bed_id, None)
        return Result.ok(bed_id)


def make_sample(timestamp: float, heart_rate: int = 70) -> VitalSample:
    return VitalSample(
        timestamp=timestamp,
        heart_rate=heart_rate,
        systolic_pressure=120,
        diastolic_pressure=80,
        oxygen_saturation=97,
        respiration_rate=16,
    )


@pytest.fixture
def vitals_source() -> FakeVitalsSource:
    return FakeVitalsSource()


@pytest.fixture
def sample_factory():
    return make_sample
