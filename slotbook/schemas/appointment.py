from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, model_validator


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @property
    def is_terminal(self) -> bool:
        return not _APPOINTMENT_TRANSITIONS[self]

    @property
    def blocks_time(self) -> bool:
        """Whether an appointment in this status occupies its interval."""
        return self not in RELEASED_STATUSES

    @property
    def is_modifiable(self) -> bool:
        return self in MODIFIABLE_STATUSES

    def can_transition_to(self, target: "AppointmentStatus") -> bool:
        return target in _APPOINTMENT_TRANSITIONS[self]


_APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

RELEASED_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})
MODIFIABLE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    EMPLOYEE_UNAVAILABLE = "employee_unavailable"
    RESCHEDULE = "reschedule"
    NO_SHOW = "no_show"
    OTHER = "other"


class AddOn(BaseModel):
    id: str
    duration_minutes: int = Field(default=0, ge=0)


class Appointment(BaseModel):
    id: str
    tenant_id: str
    resource_id: str
    service_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    service_duration_minutes: Optional[int] = Field(default=None, gt=0)
    total_duration_minutes: int = Field(gt=0)
    add_on_ids: List[str] = Field(default_factory=list)
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[CancellationReason] = None
    cancellation_notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _end_matches_duration(self) -> "Appointment":
        expected = self.start_time + timedelta(minutes=self.total_duration_minutes)
        if self.end_time != expected:
            raise ValueError("end_time must equal start_time + total_duration_minutes")
        return self

    @property
    def blocks_time(self) -> bool:
        return self.status.blocks_time


class BookingRequest(BaseModel):
    tenant_id: str
    resource_id: str
    service_id: Optional[str] = None
    service_duration_minutes: int = Field(gt=0)
    add_ons: List[AddOn] = Field(default_factory=list)
    start_time: datetime
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None


class RescheduleRequest(BaseModel):
    start_time: Optional[datetime] = None
    resource_id: Optional[str] = None
    service_duration_minutes: Optional[int] = Field(default=None, gt=0)
    add_ons: Optional[List[AddOn]] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None

    @property
    def reschedules(self) -> bool:
        return (
            self.start_time is not None
            or self.resource_id is not None
            or self.add_ons is not None
            or self.service_duration_minutes is not None
        )


class CancelRequest(BaseModel):
    reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST
    notes: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class AppointmentQuery(BaseModel):
    tenant_id: Optional[str] = None
    resource_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    status: Optional[AppointmentStatus] = None


class AppointmentListResponse(BaseModel):
    total: int
    items: List[Appointment]
