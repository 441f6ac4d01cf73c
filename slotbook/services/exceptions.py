from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Sequence


class ServiceError(Exception):
    """Base exception for service layer failures."""

    http_status = 500
    code = "SERVICE_ERROR"

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class MalformedTime(ServiceError):
    """Raised when a wall-clock value is not a valid ``HH:MM`` string."""

    http_status = 422
    code = "MALFORMED_TIME"

    def __init__(self, value: object) -> None:
        super().__init__(f"Expected time in HH:MM 24-hour format, got {value!r}")
        self.value = value


class InvalidRequest(ServiceError):
    http_status = 422
    code = "INVALID_REQUEST"


class ResourceNotFound(ServiceError):
    http_status = 404
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Resource '{resource_id}' not found or not active")
        self.resource_id = resource_id

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["resource_id"] = self.resource_id
        return detail


class AppointmentNotFound(ServiceError):
    http_status = 404
    code = "APPOINTMENT_NOT_FOUND"

    def __init__(self, appointment_id: str) -> None:
        super().__init__(f"Appointment '{appointment_id}' not found")
        self.appointment_id = appointment_id


class SlotConflict(ServiceError):
    """The requested interval is not free for the resource.

    Carries the resource and interval so callers can look up the next
    open slot and offer it instead.
    """

    http_status = 409
    code = "TIME_SLOT_CONFLICT"

    def __init__(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        conflicting_ids: Sequence[str] = (),
    ) -> None:
        super().__init__(
            f"Resource '{resource_id}' is not available between "
            f"{start.isoformat()} and {end.isoformat()}"
        )
        self.resource_id = resource_id
        self.start = start
        self.end = end
        self.conflicting_ids: List[str] = list(conflicting_ids)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            resource_id=self.resource_id,
            start=self.start.isoformat(),
            end=self.end.isoformat(),
            conflicting_ids=self.conflicting_ids,
        )
        return detail


class InvalidTransition(ServiceError):
    http_status = 409
    code = "INVALID_TRANSITION"

    def __init__(
        self,
        appointment_id: str,
        current: str,
        target: str,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message
            or f"Appointment '{appointment_id}' cannot move from '{current}' to '{target}'"
        )
        self.appointment_id = appointment_id
        self.current = current
        self.target = target

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            appointment_id=self.appointment_id,
            current_status=self.current,
            target_status=self.target,
        )
        return detail


class NotModifiable(InvalidTransition):
    code = "APPOINTMENT_NOT_MODIFIABLE"

    def __init__(self, appointment_id: str, current: str) -> None:
        super().__init__(
            appointment_id,
            current,
            "modified",
            f"Appointment '{appointment_id}' cannot be modified in status '{current}'",
        )


class NotCancellable(InvalidTransition):
    code = "APPOINTMENT_NOT_CANCELLABLE"

    def __init__(self, appointment_id: str, current: str) -> None:
        super().__init__(
            appointment_id,
            current,
            "cancelled",
            f"Appointment '{appointment_id}' cannot be cancelled in status '{current}'",
        )


class AlreadyQueued(ServiceError):
    http_status = 409
    code = "ALREADY_ON_LIST"

    def __init__(self, tenant_id: str, customer_contact: str) -> None:
        super().__init__("Already on waiting list for today")
        self.tenant_id = tenant_id
        self.customer_contact = customer_contact


class WaitingEntryNotFound(ServiceError):
    http_status = 404
    code = "NOT_ON_LIST"


class StoreConflict(ServiceError):
    """Conditional write lost against an overlapping active appointment."""

    http_status = 409
    code = "STORE_CONFLICT"

    def __init__(self, resource_id: str, conflicting_ids: Sequence[str] = ()) -> None:
        super().__init__(f"Overlapping appointment already stored for '{resource_id}'")
        self.resource_id = resource_id
        self.conflicting_ids = list(conflicting_ids)


class DownstreamServiceError(ServiceError):
    """Raised when an external service returns an error response."""

    http_status = 502
    code = "DOWNSTREAM_ERROR"

    def __init__(self, message: str, status_code: int | None = None, *, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.status_code = status_code
