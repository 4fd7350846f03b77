"""
Append-only activity (audit) log.

Recording is fire-and-forget: events go onto a bounded queue drained by a
background writer, so a failing store never touches the business operation
that produced the event. Failures are reported on the operational log.

Queries flush pending writes first (bounded by `flush_timeout_seconds`) so a
caller reads its own writes, then return events newest first.
"""

import asyncio
import itertools
import threading
from collections.abc import Iterable
from typing import Protocol

import structlog

from core.config import AuditConfig
from core.domain.clearance import ClearanceLevel
from core.domain.errors import InternalFaultError, InvalidInputError, MonitoringError
from core.domain.models import (
    AccessDeniedDetails,
    ActivityCategory,
    ActivityEvent,
    ActivityFilter,
    AppointmentDetails,
    AppointmentStatusDetails,
    BedDetails,
    BedStatusDetails,
    ClearanceChangeDetails,
    MedicalRecordDetails,
    PatientDetails,
    Provenance,
    Severity,
    SystemErrorDetails,
)
from core.services.result import Result

logger = structlog.get_logger(__name__)


class ActivityStore(Protocol):
    """
    Persistence collaborator for activity events.

    Methods are blocking; the logger calls them from a worker thread.
    """

    def add(self, event: ActivityEvent) -> ActivityEvent:
        """Persist `event` and return it with its assigned id."""
        ...

    def query(self, filters: ActivityFilter, limit: int) -> list[ActivityEvent]:
        """At most `limit` matching events, newest first."""
        ...

    def close(self) -> None: ...


def newest_first(events: Iterable[ActivityEvent]) -> list[ActivityEvent]:
    """Sort by creation time, then id, descending."""
    return sorted(events, key=lambda e: (e.created_at, e.id or 0), reverse=True)


class InMemoryActivityStore:
    """Thread-safe, process-local store."""

    def __init__(self) -> None:
        self._events: list[ActivityEvent] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, event: ActivityEvent) -> ActivityEvent:
        with self._lock:
            stored = event.model_copy(update={"id": next(self._ids)})
            self._events.append(stored)
            return stored

    def query(self, filters: ActivityFilter, limit: int) -> list[ActivityEvent]:
        with self._lock:
            matching = [event for event in self._events if filters.matches(event)]
        return newest_first(matching)[:limit]

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class ActivityLogger:
    """
    Records and queries activity events.

    Design principles:
    - Advisory, never transactional: record() never raises
    - Bounded memory: a full queue drops the newest event with a warning
    - Bounded waits: flush() gives up after the configured timeout
    """

    def __init__(self, store: ActivityStore, config: AuditConfig | None = None) -> None:
        self.store = store
        self.config = config or AuditConfig()
        self.logger = logger.bind(component="activity_logger")
        self._queue: asyncio.Queue[ActivityEvent] | None = None
        self._worker: asyncio.Task[None] | None = None
        self.dropped_events = 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the background writer."""
        if self.is_running:
            return
        self._queue = asyncio.Queue(maxsize=self.config.queue_max_size)
        self._worker = asyncio.create_task(self._drain(), name="activity-writer")
        self.logger.info("activity_writer_started")

    async def stop(self) -> None:
        """Flush what is pending, then stop the writer."""
        if self._worker is None:
            return
        await self.flush()
        worker, self._worker = self._worker, None
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self._queue = None
        self.logger.info("activity_writer_stopped", dropped_events=self.dropped_events)

    async def record(self, event: ActivityEvent) -> None:
        """Best-effort persistence of `event`; never raises."""
        if self.is_running and self._queue is not None:
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_events += 1
                self.logger.warning(
                    "activity_dropped_queue_full",
                    category=event.category.value,
                    actor_user_id=event.actor_user_id,
                )
            return
        await self._persist(event)

    async def flush(self) -> None:
        """Wait for queued events to be written, up to the flush timeout."""
        if not self.is_running or self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self.config.flush_timeout_seconds)
        except TimeoutError:
            self.logger.warning(
                "activity_flush_timeout",
                pending=self._queue.qsize(),
                timeout_seconds=self.config.flush_timeout_seconds,
            )

    async def query(
        self, filters: ActivityFilter, limit: int | None = None
    ) -> Result[list[ActivityEvent], MonitoringError]:
        """At most `limit` events matching every filter, newest first."""
        limit = self.config.default_query_limit if limit is None else limit
        if limit <= 0 or limit > self.config.max_query_limit:
            return Result.err(
                InvalidInputError(f"limit must be between 1 and {self.config.max_query_limit}")
            )

        await self.flush()
        try:
            events = await asyncio.to_thread(self.store.query, filters, limit)
        except Exception as e:
            self.logger.exception("activity_query_failed", error=str(e))
            return Result.err(InternalFaultError(f"activity query failed: {e}"))
        return Result.ok(events)

    async def _drain(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self._persist(event)
            finally:
                queue.task_done()

    async def _persist(self, event: ActivityEvent) -> None:
        try:
            await asyncio.to_thread(self.store.add, event)
        except Exception as e:
            self.logger.error(
                "activity_log_write_failed",
                error=str(e),
                category=event.category.value,
                actor_user_id=event.actor_user_id,
            )

    # Convenience recorders, one per sensitive action

    async def log_activity(
        self,
        actor_user_id: int,
        category: ActivityCategory,
        description: str,
        severity: Severity = Severity.LOW,
        provenance: Provenance | None = None,
        **fields: object,
    ) -> None:
        try:
            event = ActivityEvent(
                actor_user_id=actor_user_id,
                category=category,
                description=description,
                severity=severity,
                ip_address=provenance.ip_address if provenance else None,
                user_agent=provenance.user_agent if provenance else None,
                **fields,
            )
        except ValueError as e:
            self.logger.error("activity_event_invalid", category=category.value, error=str(e))
            return
        await self.record(event)

    async def log_user_registration(
        self, user_id: int, staff_id: str, email: str, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.USER_REGISTERED,
            f"User registered: {staff_id} ({email})",
            Severity.MEDIUM,
            provenance,
        )

    async def log_user_login(
        self, user_id: int, staff_id: str, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.USER_LOGIN,
            f"User logged in: {staff_id}",
            provenance=provenance,
        )

    async def log_user_logout(
        self, user_id: int, staff_id: str, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.USER_LOGOUT,
            f"User logged out: {staff_id}",
            provenance=provenance,
        )

    async def log_clearance_change(
        self,
        admin_user_id: int,
        target_user_id: int,
        old_level: ClearanceLevel,
        new_level: ClearanceLevel,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            admin_user_id,
            ActivityCategory.USER_CLEARANCE_CHANGED,
            f"Clearance level changed from {old_level.value} to {new_level.value}",
            Severity.HIGH,
            provenance,
            target_user_id=target_user_id,
            details=ClearanceChangeDetails(old_level=old_level, new_level=new_level),
        )

    async def log_password_change(
        self, user_id: int, staff_id: str, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.USER_PASSWORD_CHANGED,
            f"Password changed for user: {staff_id}",
            Severity.MEDIUM,
            provenance,
        )

    async def log_patient_registration(
        self,
        user_id: int,
        patient_id: str,
        patient_name: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.PATIENT_REGISTERED,
            f"Patient registered: {patient_id} - {patient_name}",
            Severity.MEDIUM,
            provenance,
            details=PatientDetails(patient_id=patient_id, patient_name=patient_name),
        )

    async def log_patient_update(
        self,
        user_id: int,
        patient_id: str,
        patient_name: str,
        changes: dict[str, str],
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.PATIENT_UPDATED,
            f"Patient updated: {patient_id} - {patient_name}",
            provenance=provenance,
            details=PatientDetails(
                patient_id=patient_id, patient_name=patient_name, changes=changes
            ),
        )

    async def log_appointment_creation(
        self,
        user_id: int,
        appointment_number: str,
        patient_name: str,
        appointment_date: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.APPOINTMENT_CREATED,
            f"Appointment created: {appointment_number} for {patient_name} on {appointment_date}",
            Severity.MEDIUM,
            provenance,
            details=AppointmentDetails(
                appointment_number=appointment_number,
                patient_name=patient_name,
                appointment_date=appointment_date,
            ),
        )

    async def log_appointment_status_change(
        self,
        user_id: int,
        appointment_number: str,
        old_status: str,
        new_status: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.APPOINTMENT_STATUS_CHANGED,
            f"Appointment status changed: {appointment_number} from {old_status} to {new_status}",
            Severity.MEDIUM,
            provenance,
            details=AppointmentStatusDetails(
                appointment_number=appointment_number, old_status=old_status, new_status=new_status
            ),
        )

    async def log_medical_record_creation(
        self,
        user_id: int,
        record_id: int,
        patient_name: str,
        diagnosis: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.MEDICAL_RECORD_CREATED,
            f"Medical record created for {patient_name} - Diagnosis: {diagnosis}",
            Severity.HIGH,
            provenance,
            target_medical_record_id=record_id,
            details=MedicalRecordDetails(patient_name=patient_name, diagnosis=diagnosis),
        )

    async def log_bed_added(
        self,
        user_id: int,
        bed_id: str,
        patient_id: str,
        patient_name: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.MONITOR_BED_ADDED,
            f"New monitoring bed added: {bed_id} for patient {patient_name}",
            Severity.MEDIUM,
            provenance,
            details=BedDetails(bed_id=bed_id, patient_id=patient_id, patient_name=patient_name),
        )

    async def log_bed_removed(
        self, user_id: int, bed_id: str, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.MONITOR_BED_REMOVED,
            f"Monitoring bed removed: {bed_id}",
            Severity.MEDIUM,
            provenance,
            details=BedDetails(bed_id=bed_id),
        )

    async def log_bed_patient_updated(
        self,
        user_id: int,
        bed_id: str,
        patient_id: str,
        patient_name: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.MONITOR_PATIENT_UPDATED,
            f"Patient info updated for bed {bed_id}: {patient_name}",
            provenance=provenance,
            details=BedDetails(bed_id=bed_id, patient_id=patient_id, patient_name=patient_name),
        )

    async def log_bed_status_changed(
        self, user_id: int, bed_id: str, is_active: bool, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.MONITOR_BED_STATUS_CHANGED,
            f"Bed {bed_id} status changed to {'active' if is_active else 'inactive'}",
            provenance=provenance,
            details=BedStatusDetails(bed_id=bed_id, is_active=is_active),
        )

    async def log_access_denied(
        self,
        user_id: int,
        attempted_action: str,
        reason: str,
        provenance: Provenance | None = None,
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.ACCESS_DENIED,
            f"Access denied: {attempted_action} - {reason}",
            Severity.HIGH,
            provenance,
            details=AccessDeniedDetails(attempted_action=attempted_action, reason=reason),
        )

    async def log_system_error(
        self, user_id: int, error: str, context: str, provenance: Provenance | None = None
    ) -> None:
        await self.log_activity(
            user_id,
            ActivityCategory.SYSTEM_ERROR,
            f"System error in {context}: {error}",
            Severity.CRITICAL,
            provenance,
            details=SystemErrorDetails(context=context, error=error),
        )
