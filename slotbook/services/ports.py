"""Collaborator interfaces consumed by the scheduling core.

The in-memory implementations live in :mod:`slotbook.services.mock_store`
and :mod:`slotbook.clients.sms_gateway`; a database-backed deployment only
needs to provide objects with the same shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from slotbook.schemas.appointment import Appointment, AppointmentQuery
from slotbook.schemas.availability import StaffMember, WorkingSchedule
from slotbook.schemas.waiting_list import WaitingListEntry, WaitingStatus


class Clock(Protocol):
    def now(self) -> datetime: ...


class WorkingHoursProvider(Protocol):
    async def get_resource(self, resource_id: str) -> Optional[StaffMember]: ...

    async def get_schedule(
        self, resource_id: str, day_of_week: int
    ) -> Optional[WorkingSchedule]: ...

    async def list_resources(self, tenant_id: str) -> List[StaffMember]: ...


class AppointmentStore(Protocol):
    async def find_overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[Appointment]:
        """Active (time-blocking) appointments intersecting ``[start, end)``."""

    async def insert(self, appointment: Appointment) -> Appointment:
        """Persist unless an active overlap exists; raises ``StoreConflict``."""

    async def update(self, appointment: Appointment) -> Appointment:
        """Replace the stored record; raises ``StoreConflict`` on overlap."""

    async def find(self, appointment_id: str) -> Optional[Appointment]: ...

    async def query(self, query: AppointmentQuery) -> List[Appointment]: ...

    async def delete(self, appointment_id: str) -> bool: ...

    def next_id(self) -> str: ...


class WaitingListStore(Protocol):
    async def add(self, entry: WaitingListEntry) -> WaitingListEntry: ...

    async def get(self, entry_id: str) -> Optional[WaitingListEntry]: ...

    async def save(self, entry: WaitingListEntry) -> WaitingListEntry: ...

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        since: Optional[datetime] = None,
        statuses: Optional[Sequence[WaitingStatus]] = None,
    ) -> List[WaitingListEntry]:
        """Entries in FCFS order (``created_at`` then insertion order)."""

    async def find_notified_by_contact(
        self, customer_contact: str
    ) -> Optional[WaitingListEntry]:
        """Most recently notified entry for the contact still in ``notified``."""

    async def list_created_before(self, cutoff: datetime) -> List[WaitingListEntry]: ...

    async def delete(self, entry_id: str) -> bool: ...

    def next_id(self) -> str: ...


class NotificationSender(Protocol):
    async def send(self, contact: str, message: str, *, kind: Optional[str] = None) -> bool:
        """Deliver a message; ``False`` on failure, never raises for delivery errors."""
