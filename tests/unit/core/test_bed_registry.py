"""
Tests for the bed registry.

Covers:
- Add/remove/update semantics and their error cases
- Bounded cache reads
- Generation checks that keep stale refresh results out
- Slow provision and discard calls that run outside the registry lock
"""

import asyncio
import time
from datetime import UTC, datetime

import pytest

from core.domain.errors import AlreadyExistsError, NotFoundError, SourceUnavailableError
from core.services.bed_registry import BedRegistry


@pytest.fixture
async def registry(vitals_source) -> BedRegistry:
    registry = BedRegistry(vitals_source, cache_capacity=5)
    await registry.add("BED001", "P001", "John Smith")
    return registry


class TestMembership:
    async def test_added_bed_is_active_with_empty_cache(self, registry: BedRegistry) -> None:
        monitor = (await registry.get("BED001")).unwrap()

        assert monitor.is_active
        assert monitor.patient_name == "John Smith"
        assert monitor.recent_samples == ()
        assert monitor.current_vitals is None
        assert monitor.last_update.tzinfo == UTC

    async def test_add_provisions_backing_series(
        self, registry: BedRegistry, vitals_source
    ) -> None:
        assert "BED001" in vitals_source.series

    async def test_duplicate_add_is_rejected(self, registry: BedRegistry) -> None:
        result = await registry.add("BED001", "P999", "Someone Else")

        assert isinstance(result.unwrap_err(), AlreadyExistsError)
        # Existing entry is untouched
        assert (await registry.get("BED001")).unwrap().patient_id == "P001"

    async def test_provision_failure_leaves_registry_unchanged(
        self, registry: BedRegistry, vitals_source
    ) -> None:
        vitals_source.provision_error = SourceUnavailableError("disk full")

        result = await registry.add("BED002", "P002", "Sarah Johnson")

        assert isinstance(result.unwrap_err(), SourceUnavailableError)
        assert not await registry.contains("BED002")

    async def test_remove_discards_series_and_entry(
        self, registry: BedRegistry, vitals_source
    ) -> None:
        assert (await registry.remove("BED001")).unwrap() == "BED001"
        assert not await registry.contains("BED001")
        assert "BED001" not in vitals_source.series

    async def test_remove_unknown_bed(self, registry: BedRegistry) -> None:
        assert isinstance((await registry.remove("NOPE")).unwrap_err(), NotFoundError)

    async def test_discard_failure_keeps_bed(self, registry: BedRegistry, vitals_source) -> None:
        vitals_source.discard_error = SourceUnavailableError("read-only filesystem")

        assert (await registry.remove("BED001")).is_err()
        assert await registry.contains("BED001")

    async def test_list_all_preserves_insertion_order(self, registry: BedRegistry) -> None:
        await registry.add("BED003", "P003", "Michael Brown")
        await registry.add("BED002", "P002", "Sarah Johnson")

        assert [m.bed_id for m in await registry.list_all()] == ["BED001", "BED003", "BED002"]

    async def test_reassign_patient_keeps_cache(
        self, registry: BedRegistry, sample_factory
    ) -> None:
        target = (await registry.refresh_targets())[0]
        await registry.apply_refresh(target, [sample_factory(1.0)], datetime.now(UTC))

        monitor = (await registry.reassign_patient("BED001", "P010", "Jane Roe")).unwrap()

        assert monitor.patient_id == "P010"
        assert monitor.patient_name == "Jane Roe"
        assert len(monitor.recent_samples) == 1

    async def test_updates_on_unknown_bed(self, registry: BedRegistry) -> None:
        assert isinstance(
            (await registry.reassign_patient("NOPE", "P1", "X")).unwrap_err(), NotFoundError
        )
        assert isinstance((await registry.set_active("NOPE", False)).unwrap_err(), NotFoundError)

    def test_cache_capacity_must_be_positive(self, vitals_source) -> None:
        with pytest.raises(ValueError):
            BedRegistry(vitals_source, cache_capacity=0)


class TestSampleReads:
    async def test_cache_keeps_only_most_recent_samples(
        self, registry: BedRegistry, sample_factory
    ) -> None:
        target = (await registry.refresh_targets())[0]
        samples = [sample_factory(float(t)) for t in range(8)]

        assert await registry.apply_refresh(target, samples, datetime.now(UTC))

        cached = await registry.recent_samples("BED001")
        assert [s.timestamp for s in cached] == [3.0, 4.0, 5.0, 6.0, 7.0]
        assert (await registry.current_vitals("BED001")).timestamp == 7.0

    async def test_recent_samples_limit(self, registry: BedRegistry, sample_factory) -> None:
        target = (await registry.refresh_targets())[0]
        await registry.apply_refresh(
            target, [sample_factory(float(t)) for t in range(5)], datetime.now(UTC)
        )

        assert [s.timestamp for s in await registry.recent_samples("BED001", 2)] == [3.0, 4.0]
        assert await registry.recent_samples("BED001", 0) == []

    async def test_recent_samples_for_unknown_bed_is_empty(self, registry: BedRegistry) -> None:
        assert await registry.recent_samples("NOPE") == []
        assert await registry.current_vitals("NOPE") is None

    async def test_history_reads_window_from_source(
        self, registry: BedRegistry, vitals_source, sample_factory
    ) -> None:
        now = time.time()
        vitals_source.series["BED001"] = [
            sample_factory(now - 7200),
            sample_factory(now - 1800),
            sample_factory(now - 60),
        ]

        history = (await registry.history("BED001", hours=1)).unwrap()

        assert len(history) == 2

    async def test_history_for_unknown_bed(self, registry: BedRegistry) -> None:
        assert isinstance((await registry.history("NOPE")).unwrap_err(), NotFoundError)


class TestRefreshApplication:
    async def test_inactive_beds_are_not_refresh_targets(self, registry: BedRegistry) -> None:
        await registry.add("BED002", "P002", "Sarah Johnson")
        await registry.set_active("BED001", False)

        assert [t.bed_id for t in await registry.refresh_targets()] == ["BED002"]

    async def test_result_for_removed_bed_is_discarded(
        self, registry: BedRegistry, sample_factory
    ) -> None:
        target = (await registry.refresh_targets())[0]
        await registry.remove("BED001")

        applied = await registry.apply_refresh(target, [sample_factory(1.0)], datetime.now(UTC))

        assert not applied
        assert not await registry.contains("BED001")

    async def test_result_for_readded_bed_is_discarded(
        self, registry: BedRegistry, sample_factory
    ) -> None:
        stale = (await registry.refresh_targets())[0]
        await registry.remove("BED001")
        await registry.add("BED001", "P100", "New Patient")

        applied = await registry.apply_refresh(stale, [sample_factory(1.0)], datetime.now(UTC))

        assert not applied
        monitor = (await registry.get("BED001")).unwrap()
        assert monitor.patient_id == "P100"
        assert monitor.recent_samples == ()

    async def test_result_for_deactivated_bed_is_discarded(
        self, registry: BedRegistry, sample_factory
    ) -> None:
        target = (await registry.refresh_targets())[0]
        await registry.set_active("BED001", False)

        assert not await registry.apply_refresh(target, [sample_factory(1.0)], datetime.now(UTC))


class TestSlowSeriesCalls:
    async def test_slow_provision_does_not_block_other_beds(
        self, registry: BedRegistry, vitals_source
    ) -> None:
        vitals_source.provision_delays["BED002"] = 1.0
        adding = asyncio.create_task(registry.add("BED002", "P002", "Sarah Johnson"))
        await asyncio.sleep(0.05)

        start = time.perf_counter()
        assert (await registry.get("BED001")).is_ok()
        assert await registry.recent_samples("BED001") == []
        assert [t.bed_id for t in await registry.refresh_targets()] == ["BED001"]
        assert time.perf_counter() - start < 0.5

        assert (await adding).is_ok()
        assert await registry.contains("BED002")

    async def test_concurrent_add_of_same_id_is_rejected(
        self, registry: BedRegistry, vitals_source
    ) -> None:
        vitals_source.provision_delays["BED002"] = 0.2
        first = asyncio.create_task(registry.add("BED002", "P002", "Sarah Johnson"))
        await asyncio.sleep(0.02)

        second = await registry.add("BED002", "P999", "Someone Else")

        assert isinstance(second.unwrap_err(), AlreadyExistsError)
        assert (await first).unwrap().patient_id == "P002"

    async def test_provision_timeout_releases_the_id(self, vitals_source) -> None:
        registry = BedRegistry(vitals_source, provision_timeout_seconds=0.05)
        vitals_source.provision_delays["BED002"] = 1.0

        result = await registry.add("BED002", "P002", "Sarah Johnson")

        assert isinstance(result.unwrap_err(), SourceUnavailableError)
        assert not await registry.contains("BED002")

        del vitals_source.provision_delays["BED002"]
        assert (await registry.add("BED002", "P002", "Sarah Johnson")).is_ok()

    async def test_bed_being_removed_is_not_refreshed(
        self, registry: BedRegistry, vitals_source, sample_factory
    ) -> None:
        target = (await registry.refresh_targets())[0]
        vitals_source.discard_delays["BED001"] = 0.2
        removing = asyncio.create_task(registry.remove("BED001"))
        await asyncio.sleep(0.02)

        assert await registry.refresh_targets() == []
        assert not await registry.apply_refresh(target, [sample_factory(1.0)], datetime.now(UTC))
        assert isinstance((await registry.remove("BED001")).unwrap_err(), NotFoundError)

        assert (await removing).unwrap() == "BED001"
        assert not await registry.contains("BED001")

    async def test_discard_timeout_keeps_bed_refreshable(self, vitals_source) -> None:
        registry = BedRegistry(vitals_source, provision_timeout_seconds=0.05)
        await registry.add("BED001", "P001", "John Smith")
        vitals_source.discard_delays["BED001"] = 1.0

        result = await registry.remove("BED001")

        assert isinstance(result.unwrap_err(), SourceUnavailableError)
        assert await registry.contains("BED001")
        assert [t.bed_id for t in await registry.refresh_targets()] == ["BED001"]

    def test_provision_timeout_must_be_positive(self, vitals_source) -> None:
        with pytest.raises(ValueError):
            BedRegistry(vitals_source, provision_timeout_seconds=0)
