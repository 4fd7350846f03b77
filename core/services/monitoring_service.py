"""
Monitoring service: the explicitly owned entry point for callers.

This ties together the complete pipeline:
1. Authorization gate in front of every operation
2. Bed registry and its background refresh loop
3. Activity logging of sensitive actions (fire-and-forget)

One instance is constructed at process start, started, passed to whatever
serves requests, and stopped at teardown.
"""

import asyncio
import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, ParamSpec, TypeVar

import structlog
from pydantic import ValidationError

from adapters.audit.sql_store import SqlActivityStore
from adapters.timeseries.csv_store import CsvVitalsSource
from core.config import AppConfig, get_config
from core.domain.clearance import ClearanceLevel, parse_clearance
from core.domain.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InternalFaultError,
    InvalidInputError,
    MonitoringError,
    NotFoundError,
)
from core.domain.models import (
    ActivityCategory,
    ActivityEvent,
    ActivityFilter,
    BedMonitor,
    CallerIdentity,
    Provenance,
    Severity,
    VitalSample,
)
from core.observability import configure_logging
from core.services.activity_log import ActivityLogger, ActivityStore, InMemoryActivityStore
from core.services.authorization import AuthorizationGate, Operation
from core.services.bed_registry import BedRegistry
from core.services.refresher import RefreshConfig, VitalsRefresher
from core.services.result import Result
from core.services.timeseries import VitalsSource
from core.services.user_directory import InMemoryUserDirectory, UserDirectory, UserRecord

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")
E = TypeVar("E", bound=Enum)


def fault_boundary(
    func: Callable[P, Awaitable[Result[R, MonitoringError]]],
) -> Callable[P, Awaitable[Result[R, MonitoringError]]]:
    """Turn raised domain errors into Result.err and anything unexpected into InternalFault."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[R, MonitoringError]:
        try:
            return await func(*args, **kwargs)
        except MonitoringError as e:
            return Result.err(e)
        except Exception as e:
            logger.exception("internal_fault", operation=func.__name__, error=str(e))
            return Result.err(InternalFaultError(f"{func.__name__}: {e}"))

    return wrapper


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} is required")
    return value.strip()


def _require_positive(name: str, value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise InvalidInputError(f"{name} must be a positive number")
    return value


def _parse_enum(enum_type: type[E], name: str, value: E | str | None) -> E | None:
    if value is None or isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError(f"Unknown {name}: {value!r}") from None


def _build_filter(**fields: Any) -> ActivityFilter:
    try:
        return ActivityFilter(**fields)
    except ValidationError as e:
        raise InvalidInputError(str(e.errors()[0]["msg"])) from None


class MonitoringService:
    """
    Main service that orchestrates bed monitoring, authorization and auditing.

    Every caller-facing method takes the caller identity (None when the
    request is anonymous) and returns a Result whose error is one of the
    MonitoringError subclasses.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        source: VitalsSource | None = None,
        activity_store: ActivityStore | None = None,
        user_directory: UserDirectory | None = None,
        gate: AuthorizationGate | None = None,
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="monitoring_service")

        # Initialize subsystems
        self._init_monitoring(source)
        self._init_audit(activity_store)
        self.gate = gate or AuthorizationGate()
        self.users: UserDirectory = user_directory or InMemoryUserDirectory()

        self._is_running = False

    def _init_monitoring(self, source: VitalsSource | None) -> None:
        """Initialize the time-series source, the registry and the refresh loop."""
        monitoring = self.config.monitoring
        self.source: VitalsSource = source or CsvVitalsSource(
            monitoring.data_dir,
            seed_hours=monitoring.seed_history_hours,
            seed_interval_seconds=monitoring.seed_interval_seconds,
        )
        self.registry = BedRegistry(
            self.source,
            cache_capacity=monitoring.cache_capacity,
            provision_timeout_seconds=monitoring.provision_timeout_seconds,
        )
        self.refresher = VitalsRefresher(
            self.registry,
            self.source,
            RefreshConfig(
                interval_seconds=monitoring.refresh_interval_seconds,
                read_timeout_seconds=monitoring.read_timeout_seconds,
                cache_capacity=monitoring.cache_capacity,
                max_concurrent_reads=monitoring.max_concurrent_reads,
                shutdown_grace_seconds=monitoring.shutdown_grace_seconds,
            ),
        )
        self.logger.info("monitoring_initialized", data_dir=monitoring.data_dir)

    def _init_audit(self, activity_store: ActivityStore | None) -> None:
        """Initialize the activity store and logger."""
        if activity_store is None:
            if self.config.audit.store == "sql":
                activity_store = SqlActivityStore(
                    self.config.database.url, echo=self.config.database.echo
                )
            else:
                activity_store = InMemoryActivityStore()
        self.activity_store = activity_store
        self.activity_logger = ActivityLogger(activity_store, self.config.audit)
        self.logger.info("audit_initialized", store=type(activity_store).__name__)

    @property
    def is_running(self) -> bool:
        return self._is_running

    # Lifecycle

    async def start(self) -> None:
        """Provision seed beds and start the background tasks."""
        if self._is_running:
            return
        await self.activity_logger.start()
        await self._provision_seed_beds()
        self.refresher.start()
        self._is_running = True
        self.logger.info("monitoring_service_started")

    async def stop(self) -> None:
        """Gracefully stop the refresh loop and the activity writer."""
        if not self._is_running:
            return
        self.logger.info("stopping_monitoring_service")
        await self.refresher.stop()
        await self.activity_logger.stop()
        await asyncio.to_thread(self.activity_store.close)
        self._is_running = False
        self.logger.info("monitoring_service_stopped")

    @asynccontextmanager
    async def session(self) -> AsyncIterator["MonitoringService"]:
        """Run the service for the duration of the block."""
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def _provision_seed_beds(self) -> None:
        for seed in self.config.monitoring.seed_beds:
            result = await self.registry.add(seed.bed_id, seed.patient_id, seed.patient_name)
            if result.is_err() and not isinstance(result.unwrap_err(), AlreadyExistsError):
                self.logger.warning(
                    "seed_bed_provisioning_failed",
                    bed_id=seed.bed_id,
                    error=str(result.unwrap_err()),
                )

    # Authorization helpers

    async def _authorize(
        self,
        caller: CallerIdentity | None,
        operation: Operation,
        provenance: Provenance | None,
    ) -> Result[CallerIdentity, MonitoringError]:
        gated = self.gate.authorize(caller, operation)
        if gated.is_err():
            await self._audit_denial(caller, operation.value, gated.unwrap_err(), provenance)
        return gated

    async def _audit_denial(
        self,
        caller: CallerIdentity | None,
        attempted_action: str,
        error: MonitoringError,
        provenance: Provenance | None,
    ) -> None:
        if caller is None or not self.config.audit.log_access_denials:
            return
        if isinstance(error, ForbiddenError):
            await self.activity_logger.log_access_denied(
                caller.user_id, attempted_action, error.message, provenance
            )

    # Bed monitoring

    @fault_boundary
    async def list_monitors(
        self, caller: CallerIdentity | None, provenance: Provenance | None = None
    ) -> Result[list[BedMonitor], MonitoringError]:
        gated = await self._authorize(caller, Operation.READ_MONITORS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        return Result.ok(await self.registry.list_all())

    @fault_boundary
    async def get_monitor(
        self, caller: CallerIdentity | None, bed_id: str, provenance: Provenance | None = None
    ) -> Result[BedMonitor, MonitoringError]:
        gated = await self._authorize(caller, Operation.READ_MONITORS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        return await self.registry.get(_require_text("bed_id", bed_id))

    @fault_boundary
    async def get_vital_signs(
        self,
        caller: CallerIdentity | None,
        bed_id: str,
        limit: int = 100,
        provenance: Provenance | None = None,
    ) -> Result[list[VitalSample], MonitoringError]:
        """Most recent cached samples, newest last; empty for unknown beds."""
        gated = await self._authorize(caller, Operation.READ_MONITORS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        bed_id = _require_text("bed_id", bed_id)
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidInputError("limit must be an integer")
        _require_positive("limit", limit)
        return Result.ok(await self.registry.recent_samples(bed_id, limit))

    @fault_boundary
    async def get_history(
        self,
        caller: CallerIdentity | None,
        bed_id: str,
        hours: float = 24,
        provenance: Provenance | None = None,
    ) -> Result[list[VitalSample], MonitoringError]:
        """Samples from the backing series within the last `hours`."""
        gated = await self._authorize(caller, Operation.READ_MONITORS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        bed_id = _require_text("bed_id", bed_id)
        return await self.registry.history(bed_id, _require_positive("hours", hours))

    @fault_boundary
    async def add_bed(
        self,
        caller: CallerIdentity | None,
        bed_id: str,
        patient_id: str,
        patient_name: str,
        provenance: Provenance | None = None,
    ) -> Result[BedMonitor, MonitoringError]:
        gated = await self._authorize(caller, Operation.MANAGE_BEDS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        identity = gated.unwrap()

        bed_id = _require_text("bed_id", bed_id)
        patient_id = _require_text("patient_id", patient_id)
        patient_name = _require_text("patient_name", patient_name)

        result = await self.registry.add(bed_id, patient_id, patient_name)
        if result.is_ok():
            await self.activity_logger.log_bed_added(
                identity.user_id, bed_id, patient_id, patient_name, provenance
            )
        return result

    @fault_boundary
    async def remove_bed(
        self, caller: CallerIdentity | None, bed_id: str, provenance: Provenance | None = None
    ) -> Result[str, MonitoringError]:
        gated = await self._authorize(caller, Operation.MANAGE_BEDS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        identity = gated.unwrap()

        bed_id = _require_text("bed_id", bed_id)
        result = await self.registry.remove(bed_id)
        if result.is_ok():
            await self.activity_logger.log_bed_removed(identity.user_id, bed_id, provenance)
        return result

    @fault_boundary
    async def update_patient_info(
        self,
        caller: CallerIdentity | None,
        bed_id: str,
        patient_id: str,
        patient_name: str,
        provenance: Provenance | None = None,
    ) -> Result[BedMonitor, MonitoringError]:
        gated = await self._authorize(caller, Operation.UPDATE_BED, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        identity = gated.unwrap()

        bed_id = _require_text("bed_id", bed_id)
        patient_id = _require_text("patient_id", patient_id)
        patient_name = _require_text("patient_name", patient_name)

        result = await self.registry.reassign_patient(bed_id, patient_id, patient_name)
        if result.is_ok():
            await self.activity_logger.log_bed_patient_updated(
                identity.user_id, bed_id, patient_id, patient_name, provenance
            )
        return result

    @fault_boundary
    async def set_bed_status(
        self,
        caller: CallerIdentity | None,
        bed_id: str,
        is_active: bool,
        provenance: Provenance | None = None,
    ) -> Result[BedMonitor, MonitoringError]:
        gated = await self._authorize(caller, Operation.UPDATE_BED, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        identity = gated.unwrap()

        bed_id = _require_text("bed_id", bed_id)
        if not isinstance(is_active, bool):
            raise InvalidInputError("is_active must be a boolean value")

        result = await self.registry.set_active(bed_id, is_active)
        if result.is_ok():
            await self.activity_logger.log_bed_status_changed(
                identity.user_id, bed_id, is_active, provenance
            )
        return result

    # Users

    @fault_boundary
    async def list_users(
        self, caller: CallerIdentity | None, provenance: Provenance | None = None
    ) -> Result[list[UserRecord], MonitoringError]:
        gated = await self._authorize(caller, Operation.LIST_USERS, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        return Result.ok(await self.users.list_users())

    @fault_boundary
    async def change_clearance(
        self,
        caller: CallerIdentity | None,
        target_user_id: int,
        new_level: ClearanceLevel | str,
        provenance: Provenance | None = None,
    ) -> Result[UserRecord, MonitoringError]:
        """
        Set another user's clearance level.

        The level gate runs before input parsing and the promotion rule runs
        before the target lookup, so a denied caller learns nothing about
        whether the target exists.
        """
        gated = await self._authorize(caller, Operation.CHANGE_CLEARANCE, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())

        level = parse_clearance(new_level)
        promotion = self.gate.authorize_clearance_change(caller, level)
        if promotion.is_err():
            await self._audit_denial(
                caller, Operation.CHANGE_CLEARANCE.value, promotion.unwrap_err(), provenance
            )
            return Result.err(promotion.unwrap_err())
        identity = promotion.unwrap()

        if isinstance(target_user_id, bool) or not isinstance(target_user_id, int):
            raise InvalidInputError("target_user_id must be an integer")

        current = await self.users.get_user(target_user_id)
        if current is None:
            return Result.err(NotFoundError(f"User {target_user_id} not found"))

        updated = await self.users.set_clearance(target_user_id, level)
        if updated is None:
            return Result.err(NotFoundError(f"User {target_user_id} not found"))

        await self.activity_logger.log_clearance_change(
            identity.user_id, target_user_id, current.clearance_level, level, provenance
        )
        return Result.ok(updated)

    # Activity log

    async def record_activity(self, event: ActivityEvent) -> None:
        """Best-effort recording for collaborators performing sensitive actions."""
        await self.activity_logger.record(event)

    @fault_boundary
    async def my_activity(
        self,
        caller: CallerIdentity | None,
        category: ActivityCategory | str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
        provenance: Provenance | None = None,
    ) -> Result[list[ActivityEvent], MonitoringError]:
        gated = await self._authorize(caller, Operation.VIEW_OWN_ACTIVITY, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        filters = _build_filter(
            actor_user_id=gated.unwrap().user_id,
            category=_parse_enum(ActivityCategory, "category", category),
            start_time=start_time,
            end_time=end_time,
        )
        return await self.activity_logger.query(filters, limit)

    @fault_boundary
    async def user_activity(
        self,
        caller: CallerIdentity | None,
        actor_user_id: int | None = None,
        category: ActivityCategory | str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
        provenance: Provenance | None = None,
    ) -> Result[list[ActivityEvent], MonitoringError]:
        gated = await self._authorize(caller, Operation.VIEW_USER_ACTIVITY, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        filters = _build_filter(
            actor_user_id=actor_user_id,
            category=_parse_enum(ActivityCategory, "category", category),
            start_time=start_time,
            end_time=end_time,
        )
        return await self.activity_logger.query(filters, limit)

    @fault_boundary
    async def audit_activity(
        self,
        caller: CallerIdentity | None,
        severity: Severity | str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
        provenance: Provenance | None = None,
    ) -> Result[list[ActivityEvent], MonitoringError]:
        gated = await self._authorize(caller, Operation.VIEW_AUDIT_LOG, provenance)
        if gated.is_err():
            return Result.err(gated.unwrap_err())
        filters = _build_filter(
            severity=_parse_enum(Severity, "severity", severity),
            start_time=start_time,
            end_time=end_time,
        )
        return await self.activity_logger.query(filters, limit)


# Example usage and demonstration
async def main() -> None:
    """Run the monitoring service for a few refresh intervals."""

    config = get_config()
    configure_logging(config.logging)
    service = MonitoringService(config)
    supervisor = CallerIdentity(user_id=1, clearance_level=ClearanceLevel.L4)

    async with service.session():
        await asyncio.sleep(service.config.monitoring.refresh_interval_seconds * 2)

        monitors = (await service.list_monitors(supervisor)).unwrap()
        for monitor in monitors:
            vitals = monitor.current_vitals
            print(
                f"{monitor.bed_id} {monitor.patient_name:<16} "
                f"{'active' if monitor.is_active else 'inactive':<8} "
                f"HR={vitals.heart_rate if vitals else '-'}"
            )


if __name__ == "__main__":
    asyncio.run(main())
