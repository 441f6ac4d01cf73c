from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field


class WaitingStatus(str, Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    BOOKED = "booked"
    NO_RESPONSE = "no_response"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return not _WAITING_TRANSITIONS[self]

    def can_transition_to(self, target: "WaitingStatus") -> bool:
        return target in _WAITING_TRANSITIONS[self]


_WAITING_TRANSITIONS: Dict[WaitingStatus, FrozenSet[WaitingStatus]] = {
    WaitingStatus.WAITING: frozenset({WaitingStatus.NOTIFIED, WaitingStatus.EXPIRED}),
    WaitingStatus.NOTIFIED: frozenset(
        {WaitingStatus.BOOKED, WaitingStatus.NO_RESPONSE, WaitingStatus.EXPIRED}
    ),
    WaitingStatus.BOOKED: frozenset(),
    WaitingStatus.NO_RESPONSE: frozenset(),
    WaitingStatus.EXPIRED: frozenset(),
}


class CancellationEvent(BaseModel):
    """A slot freed by a committed cancellation."""

    tenant_id: str
    resource_id: str
    slot_start: datetime
    slot_end: datetime
    duration_minutes: int = Field(gt=0)
    service_name: Optional[str] = None


class WaitingListEntry(BaseModel):
    id: str
    tenant_id: str
    customer_contact: str
    customer_name: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    service_duration_minutes: int = Field(gt=0)
    status: WaitingStatus = WaitingStatus.WAITING
    created_at: datetime
    notified_at: Optional[datetime] = None
    notified_slot_start: Optional[datetime] = None
    response_deadline: Optional[datetime] = None
    booked_appointment_id: Optional[str] = None
    offer: Optional[CancellationEvent] = None

    def transition_to(self, target: WaitingStatus) -> "WaitingListEntry":
        if not self.status.can_transition_to(target):
            raise ValueError(
                f"Waiting list entry {self.id} cannot move from {self.status.value} to {target.value}"
            )
        return self.model_copy(update={"status": target})


class EnqueueRequest(BaseModel):
    tenant_id: str
    customer_contact: str
    customer_name: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    service_duration_minutes: Optional[int] = Field(default=None, gt=0)


class EnqueueResponse(BaseModel):
    entry: WaitingListEntry
    position: Optional[int] = None


class OfferResponseRequest(BaseModel):
    customer_contact: str
    accepted: bool


class OfferResolution(BaseModel):
    action: str  # booked | passed | not_found
    entry: Optional[WaitingListEntry] = None
    slot_start: Optional[datetime] = None
    appointment_id: Optional[str] = None


class NotificationResult(BaseModel):
    entry: WaitingListEntry
    response_window_minutes: int
    deadline: datetime
    delivered: bool


class WaitingListSummary(BaseModel):
    tenant_id: str
    entries: List[WaitingListEntry]
    count: int
    waiting: int
    notified: int
    booked: int
