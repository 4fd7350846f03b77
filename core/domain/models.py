"""
Domain models for bedside vital-sign monitoring and activity auditing.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; every value handed across a component
boundary is frozen so readers never observe a half-updated record.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from core.domain.clearance import ClearanceLevel


class Severity(str, Enum):
    """Activity severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VitalSample(BaseModel):
    """One timestamped physiological reading set for a bed."""

    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(description="Seconds since the epoch, fractional")
    heart_rate: int = Field(description="Heart rate (bpm)")
    systolic_pressure: int = Field(description="Arterial pressure, systolic (mmHg)")
    diastolic_pressure: int = Field(description="Arterial pressure, diastolic (mmHg)")
    oxygen_saturation: int = Field(description="SpO2 (%)")
    respiration_rate: int = Field(description="Respiratory rate (breaths/min)")


class BedMonitor(BaseModel):
    """Point-in-time snapshot of one monitored bed."""

    model_config = ConfigDict(frozen=True)

    bed_id: str
    patient_id: str
    patient_name: str
    is_active: bool
    last_update: datetime
    recent_samples: tuple[VitalSample, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def current_vitals(self) -> VitalSample | None:
        """Latest cached sample, if any."""
        return self.recent_samples[-1] if self.recent_samples else None


class ActivityCategory(str, Enum):
    """Closed set of auditable activity types."""

    # User management
    USER_REGISTERED = "user_registered"
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_CLEARANCE_CHANGED = "user_clearance_changed"
    USER_PASSWORD_CHANGED = "user_password_changed"

    # Patient management
    PATIENT_REGISTERED = "patient_registered"
    PATIENT_UPDATED = "patient_updated"
    PATIENT_VIEWED = "patient_viewed"

    # Appointments
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_UPDATED = "appointment_updated"
    APPOINTMENT_STATUS_CHANGED = "appointment_status_changed"
    APPOINTMENT_CANCELLED = "appointment_cancelled"

    # Medical records
    MEDICAL_RECORD_CREATED = "medical_record_created"
    MEDICAL_RECORD_UPDATED = "medical_record_updated"
    MEDICAL_RECORD_VIEWED = "medical_record_viewed"

    # Patient monitoring
    MONITOR_BED_ADDED = "monitor_bed_added"
    MONITOR_BED_REMOVED = "monitor_bed_removed"
    MONITOR_PATIENT_UPDATED = "monitor_patient_updated"
    MONITOR_BED_STATUS_CHANGED = "monitor_bed_status_changed"

    # System events
    SYSTEM_ERROR = "system_error"
    ACCESS_DENIED = "access_denied"
    DATA_EXPORTED = "data_exported"
    DATA_IMPORTED = "data_imported"


class _Details(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BedDetails(_Details):
    bed_id: str
    patient_id: str | None = None
    patient_name: str | None = None


class BedStatusDetails(_Details):
    bed_id: str
    is_active: bool


class ClearanceChangeDetails(_Details):
    old_level: ClearanceLevel
    new_level: ClearanceLevel


class PatientDetails(_Details):
    patient_id: str
    patient_name: str
    changes: dict[str, str] = Field(default_factory=dict)


class AppointmentDetails(_Details):
    appointment_number: str
    patient_name: str
    appointment_date: str


class AppointmentStatusDetails(_Details):
    appointment_number: str
    old_status: str
    new_status: str


class MedicalRecordDetails(_Details):
    patient_name: str
    diagnosis: str


class AccessDeniedDetails(_Details):
    attempted_action: str
    reason: str


class SystemErrorDetails(_Details):
    context: str
    error: str


class DataTransferDetails(_Details):
    dataset: str
    record_count: int = Field(ge=0)


EventDetails = (
    BedDetails
    | BedStatusDetails
    | ClearanceChangeDetails
    | PatientDetails
    | AppointmentDetails
    | AppointmentStatusDetails
    | MedicalRecordDetails
    | AccessDeniedDetails
    | SystemErrorDetails
    | DataTransferDetails
)

# The only payload type each category accepts; None means no payload.
DETAILS_BY_CATEGORY: dict[ActivityCategory, type[_Details] | None] = {
    ActivityCategory.USER_REGISTERED: None,
    ActivityCategory.USER_LOGIN: None,
    ActivityCategory.USER_LOGOUT: None,
    ActivityCategory.USER_CLEARANCE_CHANGED: ClearanceChangeDetails,
    ActivityCategory.USER_PASSWORD_CHANGED: None,
    ActivityCategory.PATIENT_REGISTERED: PatientDetails,
    ActivityCategory.PATIENT_UPDATED: PatientDetails,
    ActivityCategory.PATIENT_VIEWED: PatientDetails,
    ActivityCategory.APPOINTMENT_CREATED: AppointmentDetails,
    ActivityCategory.APPOINTMENT_UPDATED: AppointmentDetails,
    ActivityCategory.APPOINTMENT_STATUS_CHANGED: AppointmentStatusDetails,
    ActivityCategory.APPOINTMENT_CANCELLED: AppointmentStatusDetails,
    ActivityCategory.MEDICAL_RECORD_CREATED: MedicalRecordDetails,
    ActivityCategory.MEDICAL_RECORD_UPDATED: MedicalRecordDetails,
    ActivityCategory.MEDICAL_RECORD_VIEWED: MedicalRecordDetails,
    ActivityCategory.MONITOR_BED_ADDED: BedDetails,
    ActivityCategory.MONITOR_BED_REMOVED: BedDetails,
    ActivityCategory.MONITOR_PATIENT_UPDATED: BedDetails,
    ActivityCategory.MONITOR_BED_STATUS_CHANGED: BedStatusDetails,
    ActivityCategory.SYSTEM_ERROR: SystemErrorDetails,
    ActivityCategory.ACCESS_DENIED: AccessDeniedDetails,
    ActivityCategory.DATA_EXPORTED: DataTransferDetails,
    ActivityCategory.DATA_IMPORTED: DataTransferDetails,
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ActivityEvent(BaseModel):
    """
    Structured record of a sensitive action.

    Immutable once created. `id` is assigned by the store on persistence;
    `created_at` is assigned when the event is constructed.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    actor_user_id: int
    category: ActivityCategory
    severity: Severity = Severity.LOW
    description: str = Field(min_length=1)
    target_user_id: int | None = None
    target_patient_id: int | None = None
    target_appointment_id: int | None = None
    target_medical_record_id: int | None = None
    details: EventDetails | None = None
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="before")
    @classmethod
    def coerce_details(cls, data: Any) -> Any:
        """Validate raw detail mappings against the category's payload type."""
        if not isinstance(data, dict) or not isinstance(data.get("details"), dict):
            return data
        try:
            category = ActivityCategory(data.get("category"))
        except ValueError:
            return data
        details_type = DETAILS_BY_CATEGORY[category]
        if details_type is None:
            raise ValueError(f"{category.value} events do not carry details")
        return {**data, "details": details_type.model_validate(data["details"])}

    @model_validator(mode="after")
    def details_match_category(self) -> "ActivityEvent":
        if self.details is None:
            return self
        expected = DETAILS_BY_CATEGORY[self.category]
        if expected is None or type(self.details) is not expected:
            raise ValueError(
                f"{type(self.details).__name__} is not a valid payload for {self.category.value}"
            )
        return self

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def details_blob(self) -> str | None:
        """Serialized form of `details` used at the storage boundary."""
        return self.details.model_dump_json() if self.details is not None else None

    @staticmethod
    def decode_details(category: ActivityCategory, blob: str | None) -> EventDetails | None:
        """Inverse of `details_blob` for a stored event of `category`."""
        if blob is None:
            return None
        details_type = DETAILS_BY_CATEGORY[category]
        if details_type is None:
            return None
        return details_type.model_validate_json(blob)  # type: ignore[return-value]


class ActivityFilter(BaseModel):
    """Filters for activity queries; a missing field means no constraint."""

    model_config = ConfigDict(frozen=True)

    actor_user_id: int | None = None
    category: ActivityCategory | None = None
    severity: Severity | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_bounds(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def bounds_in_order(self) -> "ActivityFilter":
        if self.start_time and self.end_time and self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        return self

    def matches(self, event: ActivityEvent) -> bool:
        """Inclusive match of `event` against every provided filter."""
        if self.actor_user_id is not None and event.actor_user_id != self.actor_user_id:
            return False
        if self.category is not None and event.category != self.category:
            return False
        if self.severity is not None and event.severity != self.severity:
            return False
        if self.start_time is not None and event.created_at < self.start_time:
            return False
        if self.end_time is not None and event.created_at > self.end_time:
            return False
        return True


class CallerIdentity(BaseModel):
    """Authenticated caller as supplied by the identity collaborator."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    clearance_level: ClearanceLevel


class Provenance(BaseModel):
    """Request origin attached to audit events."""

    model_config = ConfigDict(frozen=True)

    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = None
