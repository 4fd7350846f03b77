"""
End-to-end tests for the monitoring service facade.

Covers:
- Clearance gates in front of every operation
- Input validation and error kinds
- Activity events emitted for successful mutations
- Lifecycle (seed provisioning, background refresh, shutdown)
"""

import logging
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from core.config import AppConfig, AuditConfig, MonitoringConfig, SeedBed
from core.domain.clearance import ClearanceLevel
from core.domain.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InternalFaultError,
    InvalidInputError,
    NotFoundError,
    UnauthorizedError,
)
from core.domain.models import (
    ActivityCategory,
    ActivityEvent,
    ActivityFilter,
    CallerIdentity,
    Provenance,
    Severity,
)
from core.services import bed_registry
from core.services.activity_log import InMemoryActivityStore
from core.services.monitoring_service import MonitoringService
from core.services.user_directory import InMemoryUserDirectory, UserRecord

L1 = CallerIdentity(user_id=11, clearance_level=ClearanceLevel.L1)
L2 = CallerIdentity(user_id=12, clearance_level=ClearanceLevel.L2)
L3 = CallerIdentity(user_id=13, clearance_level=ClearanceLevel.L3)
L4 = CallerIdentity(user_id=14, clearance_level=ClearanceLevel.L4)

ORIGIN = Provenance(ip_address="10.1.2.3", user_agent="ward-terminal/2.1")


def _config(**audit: object) -> AppConfig:
    return AppConfig(
        monitoring=MonitoringConfig(
            refresh_interval_seconds=0.02,
            cache_capacity=5,
            seed_beds=[
                SeedBed(bed_id="BED001", patient_id="P001", patient_name="John Smith"),
                SeedBed(bed_id="BED002", patient_id="P002", patient_name="Sarah Johnson"),
            ],
        ),
        audit=AuditConfig(store="memory", **audit),
    )


def _users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        [
            UserRecord(user_id=21, staff_id="N-021", name="Nurse A", clearance_level="L1"),
            UserRecord(user_id=22, staff_id="D-022", name="Doctor B", clearance_level="L3"),
        ]
    )


@pytest.fixture
def activity_store() -> InMemoryActivityStore:
    return InMemoryActivityStore()


@pytest.fixture
async def service(
    vitals_source, activity_store: InMemoryActivityStore
) -> AsyncIterator[MonitoringService]:
    service = MonitoringService(
        _config(),
        source=vitals_source,
        activity_store=activity_store,
        user_directory=_users(),
    )
    async with service.session():
        yield service


async def _events(service: MonitoringService, **filters: object) -> list[ActivityEvent]:
    return (await service.activity_logger.query(ActivityFilter(**filters))).unwrap()


class TestLifecycle:
    async def test_start_provisions_seed_beds(
        self, service: MonitoringService, vitals_source
    ) -> None:
        monitors = (await service.list_monitors(L2)).unwrap()

        assert [m.bed_id for m in monitors] == ["BED001", "BED002"]
        assert set(vitals_source.series) == {"BED001", "BED002"}
        assert service.is_running

    async def test_stop_shuts_down_background_tasks(
        self, vitals_source, activity_store: InMemoryActivityStore
    ) -> None:
        service = MonitoringService(_config(), source=vitals_source, activity_store=activity_store)

        async with service.session():
            assert service.refresher.is_running
            assert service.activity_logger.is_running

        assert not service.is_running
        assert not service.refresher.is_running
        assert not service.activity_logger.is_running

    def test_construction_leaves_logging_handlers_alone(
        self, vitals_source, activity_store: InMemoryActivityStore
    ) -> None:
        root = logging.getLogger()
        handlers = list(root.handlers)

        MonitoringService(_config(), source=vitals_source, activity_store=activity_store)

        assert root.handlers == handlers

    async def test_restart_keeps_existing_seed_beds(
        self, vitals_source, activity_store: InMemoryActivityStore
    ) -> None:
        service = MonitoringService(_config(), source=vitals_source, activity_store=activity_store)
        await service.start()
        await service.stop()
        await service.start()
        try:
            assert len((await service.list_monitors(L2)).unwrap()) == 2
        finally:
            await service.stop()

    async def test_background_refresh_fills_caches(
        self, service: MonitoringService, vitals_source, sample_factory
    ) -> None:
        now = time.time()
        vitals_source.series["BED001"].extend(sample_factory(now - n) for n in range(8, 0, -1))

        await service.refresher.refresh_once()
        vitals = (await service.get_vital_signs(L2, "BED001", limit=2)).unwrap()

        assert [s.timestamp for s in vitals] == [now - 2, now - 1]
        monitor = (await service.get_monitor(L2, "BED001")).unwrap()
        assert monitor.current_vitals == vitals[-1]


class TestMonitorReads:
    @pytest.mark.parametrize(
        "caller,error_type",
        [(None, UnauthorizedError), (L1, ForbiddenError)],
    )
    async def test_reads_require_l2(
        self,
        service: MonitoringService,
        caller: CallerIdentity | None,
        error_type: type[Exception],
    ) -> None:
        for result in (
            await service.list_monitors(caller),
            await service.get_monitor(caller, "BED001"),
            await service.get_vital_signs(caller, "BED001"),
            await service.get_history(caller, "BED001"),
        ):
            assert isinstance(result.unwrap_err(), error_type)

    async def test_unknown_bed(self, service: MonitoringService) -> None:
        assert isinstance((await service.get_monitor(L2, "BED999")).unwrap_err(), NotFoundError)
        assert isinstance((await service.get_history(L2, "BED999")).unwrap_err(), NotFoundError)
        assert (await service.get_vital_signs(L2, "BED999")).unwrap() == []

    @pytest.mark.parametrize("limit", [0, -5, True, "10"])
    async def test_invalid_vitals_limit(self, service: MonitoringService, limit: object) -> None:
        result = await service.get_vital_signs(L2, "BED001", limit=limit)  # type: ignore[arg-type]
        assert isinstance(result.unwrap_err(), InvalidInputError)

    async def test_history_window(
        self, service: MonitoringService, vitals_source, sample_factory
    ) -> None:
        now = time.time()
        vitals_source.series["BED001"].extend(
            [sample_factory(now - 3 * 3600), sample_factory(now - 1800)]
        )

        assert len((await service.get_history(L2, "BED001", hours=1)).unwrap()) == 1
        assert len((await service.get_history(L2, "BED001")).unwrap()) == 2
        result = await service.get_history(L2, "BED001", hours=0)
        assert isinstance(result.unwrap_err(), InvalidInputError)

    async def test_history_window_is_inclusive_and_repeatable(
        self, service: MonitoringService, vitals_source, sample_factory, monkeypatch
    ) -> None:
        now = 1_700_000_000.0
        monkeypatch.setattr(bed_registry, "time", SimpleNamespace(time=lambda: now))
        vitals_source.series["BED001"].extend(
            [sample_factory(now - 3601), sample_factory(now - 3600), sample_factory(now - 10)]
        )

        first = (await service.get_history(L2, "BED001", hours=1)).unwrap()
        second = (await service.get_history(L2, "BED001", hours=1)).unwrap()

        assert [s.timestamp for s in first] == [now - 3600, now - 10]
        assert second == first


class TestBedManagement:
    async def test_add_bed_requires_l3(self, service: MonitoringService) -> None:
        result = await service.add_bed(L2, "BED003", "P003", "Michael Brown")

        assert isinstance(result.unwrap_err(), ForbiddenError)
        assert isinstance((await service.get_monitor(L3, "BED003")).unwrap_err(), NotFoundError)

    async def test_add_bed_is_audited(self, service: MonitoringService) -> None:
        monitor = (
            await service.add_bed(L3, "BED003", "P003", "Michael Brown", ORIGIN)
        ).unwrap()

        assert monitor.is_active
        (event,) = await _events(service, category=ActivityCategory.MONITOR_BED_ADDED)
        assert event.actor_user_id == L3.user_id
        assert event.severity is Severity.MEDIUM
        assert event.ip_address == ORIGIN.ip_address
        assert event.user_agent == ORIGIN.user_agent

    async def test_duplicate_bed(self, service: MonitoringService) -> None:
        result = await service.add_bed(L3, "BED001", "P009", "Someone Else")

        assert isinstance(result.unwrap_err(), AlreadyExistsError)
        assert await _events(service, category=ActivityCategory.MONITOR_BED_ADDED) == []

    @pytest.mark.parametrize(
        "bed_id,patient_id,patient_name",
        [("", "P003", "Michael Brown"), ("BED003", "  ", "Michael Brown"), ("BED003", "P3", None)],
    )
    async def test_add_bed_requires_all_fields(
        self,
        service: MonitoringService,
        bed_id: str,
        patient_id: str,
        patient_name: str | None,
    ) -> None:
        result = await service.add_bed(
            L3, bed_id, patient_id, patient_name  # type: ignore[arg-type]
        )
        assert isinstance(result.unwrap_err(), InvalidInputError)

    async def test_remove_bed(self, service: MonitoringService) -> None:
        assert (await service.remove_bed(L3, "BED002")).unwrap() == "BED002"

        monitors = (await service.list_monitors(L2)).unwrap()
        assert [m.bed_id for m in monitors] == ["BED001"]
        (event,) = await _events(service, category=ActivityCategory.MONITOR_BED_REMOVED)
        assert event.severity is Severity.MEDIUM

    async def test_remove_unknown_bed(self, service: MonitoringService) -> None:
        assert isinstance((await service.remove_bed(L3, "BED999")).unwrap_err(), NotFoundError)

    async def test_update_patient_info(self, service: MonitoringService) -> None:
        monitor = (
            await service.update_patient_info(L2, "BED001", "P100", "Jane Roe")
        ).unwrap()

        assert monitor.patient_name == "Jane Roe"
        (event,) = await _events(service, category=ActivityCategory.MONITOR_PATIENT_UPDATED)
        assert event.severity is Severity.LOW

    async def test_set_bed_status(self, service: MonitoringService) -> None:
        monitor = (await service.set_bed_status(L2, "BED001", False)).unwrap()

        assert not monitor.is_active
        (event,) = await _events(service, category=ActivityCategory.MONITOR_BED_STATUS_CHANGED)
        assert event.details.is_active is False  # type: ignore[union-attr]

    @pytest.mark.parametrize("value", ["false", 0, None])
    async def test_set_bed_status_requires_bool(
        self, service: MonitoringService, value: object
    ) -> None:
        result = await service.set_bed_status(L2, "BED001", value)  # type: ignore[arg-type]
        assert isinstance(result.unwrap_err(), InvalidInputError)

    async def test_failing_audit_store_does_not_fail_mutations(self, vitals_source) -> None:
        class BrokenStore(InMemoryActivityStore):
            def add(self, event: ActivityEvent) -> ActivityEvent:
                raise RuntimeError("disk I/O error")

        service = MonitoringService(_config(), source=vitals_source, activity_store=BrokenStore())
        async with service.session():
            result = await service.add_bed(L3, "BED003", "P003", "Michael Brown")

        assert result.is_ok()

    async def test_unexpected_source_error_becomes_internal_fault(
        self, service: MonitoringService, vitals_source
    ) -> None:
        async def explode(*args: object) -> None:
            raise RuntimeError("unexpected")

        vitals_source.provision = explode

        result = await service.add_bed(L3, "BED003", "P003", "Michael Brown")

        assert isinstance(result.unwrap_err(), InternalFaultError)
        assert result.unwrap_err().message == "Internal server error"
        # The registry lock was released
        assert len((await service.list_monitors(L2)).unwrap()) == 2


class TestClearanceChanges:
    async def test_l3_can_promote_to_l2(self, service: MonitoringService) -> None:
        updated = (await service.change_clearance(L3, 21, "L2", ORIGIN)).unwrap()

        assert updated.clearance_level is ClearanceLevel.L2
        (event,) = await _events(service, category=ActivityCategory.USER_CLEARANCE_CHANGED)
        assert event.severity is Severity.HIGH
        assert event.target_user_id == 21
        assert event.actor_user_id == L3.user_id

    @pytest.mark.parametrize("level", ["L3", "L4"])
    async def test_l3_cannot_grant_l3_or_above(
        self, service: MonitoringService, level: str
    ) -> None:
        result = await service.change_clearance(L3, 21, level)

        assert isinstance(result.unwrap_err(), ForbiddenError)
        assert (await service.users.get_user(21)).clearance_level is ClearanceLevel.L1

    async def test_l4_can_grant_any_level(self, service: MonitoringService) -> None:
        updated = (await service.change_clearance(L4, 22, ClearanceLevel.L4)).unwrap()
        assert updated.clearance_level is ClearanceLevel.L4

    async def test_l2_cannot_change_clearance(self, service: MonitoringService) -> None:
        result = await service.change_clearance(L2, 21, "L1")
        assert isinstance(result.unwrap_err(), ForbiddenError)

    async def test_unknown_target_user(self, service: MonitoringService) -> None:
        result = await service.change_clearance(L3, 999, "L2")
        assert isinstance(result.unwrap_err(), NotFoundError)

    async def test_denied_promotion_does_not_reveal_unknown_user(
        self, service: MonitoringService
    ) -> None:
        result = await service.change_clearance(L3, 999, "L4")
        assert isinstance(result.unwrap_err(), ForbiddenError)

    async def test_malformed_level(self, service: MonitoringService) -> None:
        result = await service.change_clearance(L3, 21, "L9")
        assert isinstance(result.unwrap_err(), InvalidInputError)

    async def test_list_users_requires_l3(self, service: MonitoringService) -> None:
        assert isinstance((await service.list_users(L2)).unwrap_err(), ForbiddenError)
        assert [u.user_id for u in (await service.list_users(L3)).unwrap()] == [21, 22]


class TestActivityQueries:
    async def test_my_activity_only_returns_own_events(self, service: MonitoringService) -> None:
        await service.add_bed(L3, "BED003", "P003", "Michael Brown")
        await service.set_bed_status(L2, "BED001", False)

        mine = (await service.my_activity(L2)).unwrap()

        assert [e.actor_user_id for e in mine] == [L2.user_id]

    async def test_my_activity_is_open_to_l1(self, service: MonitoringService) -> None:
        assert (await service.my_activity(L1)).unwrap() == []
        assert isinstance((await service.my_activity(None)).unwrap_err(), UnauthorizedError)

    async def test_user_activity_requires_l3(self, service: MonitoringService) -> None:
        assert isinstance((await service.user_activity(L2)).unwrap_err(), ForbiddenError)

    async def test_user_activity_filters(self, service: MonitoringService) -> None:
        await service.add_bed(L3, "BED003", "P003", "Michael Brown")
        await service.remove_bed(L3, "BED003")
        await service.set_bed_status(L2, "BED001", False)

        events = (
            await service.user_activity(
                L3, actor_user_id=L3.user_id, category="monitor_bed_removed"
            )
        ).unwrap()

        assert [e.category for e in events] == [ActivityCategory.MONITOR_BED_REMOVED]

    async def test_audit_activity_requires_l4(self, service: MonitoringService) -> None:
        assert isinstance((await service.audit_activity(L3)).unwrap_err(), ForbiddenError)

    async def test_audit_activity_by_severity_and_window(self, service: MonitoringService) -> None:
        start = datetime.now(UTC) - timedelta(seconds=1)
        await service.add_bed(L3, "BED003", "P003", "Michael Brown")
        await service.change_clearance(L3, 21, "L2")

        high = (await service.audit_activity(L4, severity="high", start_time=start)).unwrap()

        assert [e.category for e in high] == [ActivityCategory.USER_CLEARANCE_CHANGED]
        newest_first = (await service.audit_activity(L4, start_time=start)).unwrap()
        assert [e.category for e in newest_first] == [
            ActivityCategory.USER_CLEARANCE_CHANGED,
            ActivityCategory.MONITOR_BED_ADDED,
        ]

    async def test_invalid_filters(self, service: MonitoringService) -> None:
        now = datetime.now(UTC)
        for result in (
            await service.audit_activity(L4, severity="urgent"),
            await service.user_activity(L3, category="bed_exploded"),
            await service.audit_activity(L4, start_time=now, end_time=now - timedelta(hours=1)),
            await service.my_activity(L1, limit=0),
            await service.my_activity(L1, limit=5000),
        ):
            assert isinstance(result.unwrap_err(), InvalidInputError)

    async def test_record_activity_passthrough(self, service: MonitoringService) -> None:
        await service.record_activity(
            ActivityEvent(
                actor_user_id=L1.user_id,
                category=ActivityCategory.USER_LOGIN,
                description="User logged in: N-011",
            )
        )

        assert [e.category for e in (await service.my_activity(L1)).unwrap()] == [
            ActivityCategory.USER_LOGIN
        ]


class TestAccessDenialAuditing:
    async def test_denials_are_not_recorded_by_default(self, service: MonitoringService) -> None:
        await service.add_bed(L1, "BED003", "P003", "Michael Brown")

        assert await _events(service, category=ActivityCategory.ACCESS_DENIED) == []

    async def test_denials_recorded_when_enabled(
        self, vitals_source, activity_store: InMemoryActivityStore
    ) -> None:
        service = MonitoringService(
            _config(log_access_denials=True),
            source=vitals_source,
            activity_store=activity_store,
            user_directory=_users(),
        )
        async with service.session():
            await service.add_bed(L1, "BED003", "P003", "Michael Brown", ORIGIN)
            await service.change_clearance(L3, 21, "L4")
            await service.list_monitors(None)
            events = await _events(service, category=ActivityCategory.ACCESS_DENIED)

        assert [(e.actor_user_id, e.severity) for e in events] == [
            (L3.user_id, Severity.HIGH),
            (L1.user_id, Severity.HIGH),
        ]
