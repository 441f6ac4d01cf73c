from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence

from slotbook.schemas.appointment import Appointment, AppointmentQuery
from slotbook.schemas.availability import StaffMember, WorkingSchedule
from slotbook.schemas.notification import NotificationRecord
from slotbook.schemas.waiting_list import WaitingListEntry, WaitingStatus
from slotbook.services.calendar import overlaps
from slotbook.services.exceptions import StoreConflict


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _BaseRepository:
    def __init__(self, prefix: str) -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)

    def _next_id(self) -> str:
        return f"{self._prefix}-{next(self._counter):05d}"

    def next_id(self) -> str:
        return self._next_id()


def weekday_schedule(
    start: str = "09:00",
    end: str = "17:00",
    *,
    days: Iterable[int] = (1, 2, 3, 4, 5),
) -> Dict[int, WorkingSchedule]:
    """Build a weekly schedule; weekdays not listed are disabled."""

    enabled_days = set(days)
    return {
        weekday: WorkingSchedule(
            start_time=start, end_time=end, enabled=weekday in enabled_days
        )
        for weekday in range(7)
    }


class StaffDirectory:
    """Working-hours provider backed by an in-memory staff roster."""

    def __init__(self, *, seed: bool = True) -> None:
        self._staff: Dict[str, StaffMember] = {}
        if seed:
            self._seed_staff()

    def _seed_staff(self) -> None:
        self.add_resource(
            StaffMember(
                resource_id="stf-ava",
                tenant_id="chillbreeze",
                name="Ava Lim",
                schedule=weekday_schedule("09:00", "17:00", days=(1, 2, 3, 4, 5, 6)),
            )
        )
        self.add_resource(
            StaffMember(
                resource_id="stf-ben",
                tenant_id="chillbreeze",
                name="Ben Ortiz",
                schedule=weekday_schedule("11:00", "19:00", days=(2, 3, 4, 5, 6)),
            )
        )
        self.add_resource(
            StaffMember(
                resource_id="stf-kai",
                tenant_id="freshfold",
                name="Kai Watson",
                schedule=weekday_schedule("08:00", "16:00"),
            )
        )

    def add_resource(self, member: StaffMember) -> StaffMember:
        self._staff[member.resource_id] = member
        return member

    async def get_resource(self, resource_id: str) -> Optional[StaffMember]:
        member = self._staff.get(resource_id)
        if member is None or not member.active:
            return None
        return member

    async def get_schedule(
        self, resource_id: str, day_of_week: int
    ) -> Optional[WorkingSchedule]:
        member = await self.get_resource(resource_id)
        if member is None:
            return None
        return member.schedule.get(day_of_week)

    async def list_resources(self, tenant_id: str) -> List[StaffMember]:
        return [
            member
            for member in self._staff.values()
            if member.tenant_id == tenant_id and member.active
        ]


class AppointmentRepository(_BaseRepository):
    """Appointment store with conditional (overlap-checked) writes."""

    def __init__(self) -> None:
        super().__init__("APT")
        self._appointments: Dict[str, Appointment] = {}
        self._lock = Lock()

    def _overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str],
    ) -> List[Appointment]:
        matches = [
            record
            for record in self._appointments.values()
            if record.resource_id == resource_id
            and record.id != exclude_id
            and record.blocks_time
            and overlaps(record.start_time, record.end_time, start, end)
        ]
        matches.sort(key=lambda record: record.start_time)
        return matches

    async def find_overlapping(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[Appointment]:
        with self._lock:
            return [
                record.model_copy()
                for record in self._overlapping(resource_id, start, end, exclude_id)
            ]

    async def insert(self, appointment: Appointment) -> Appointment:
        with self._lock:
            if appointment.id in self._appointments:
                raise ValueError(f"Appointment {appointment.id} already exists")
            if appointment.blocks_time:
                clashes = self._overlapping(
                    appointment.resource_id,
                    appointment.start_time,
                    appointment.end_time,
                    None,
                )
                if clashes:
                    raise StoreConflict(
                        appointment.resource_id, [record.id for record in clashes]
                    )
            self._appointments[appointment.id] = appointment.model_copy()
            return appointment.model_copy()

    async def update(self, appointment: Appointment) -> Appointment:
        with self._lock:
            if appointment.id not in self._appointments:
                raise KeyError(f"Appointment {appointment.id} not found")
            if appointment.blocks_time:
                clashes = self._overlapping(
                    appointment.resource_id,
                    appointment.start_time,
                    appointment.end_time,
                    appointment.id,
                )
                if clashes:
                    raise StoreConflict(
                        appointment.resource_id, [record.id for record in clashes]
                    )
            self._appointments[appointment.id] = appointment.model_copy()
            return appointment.model_copy()

    async def find(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            record = self._appointments.get(appointment_id)
            return record.model_copy() if record is not None else None

    async def query(self, query: AppointmentQuery) -> List[Appointment]:
        with self._lock:
            records = list(self._appointments.values())

        def _matches(record: Appointment) -> bool:
            if query.tenant_id and record.tenant_id != query.tenant_id:
                return False
            if query.resource_id and record.resource_id != query.resource_id:
                return False
            if query.status and record.status != query.status:
                return False
            record_date = record.start_time.date()
            if query.date_from and record_date < query.date_from:
                return False
            if query.date_to and record_date > query.date_to:
                return False
            return True

        filtered = [record.model_copy() for record in records if _matches(record)]
        filtered.sort(key=lambda record: (record.start_time, record.id))
        return filtered

    async def delete(self, appointment_id: str) -> bool:
        with self._lock:
            return self._appointments.pop(appointment_id, None) is not None


class WaitingListRepository(_BaseRepository):
    def __init__(self) -> None:
        super().__init__("WL")
        self._entries: Dict[str, WaitingListEntry] = {}
        # insertion order breaks created_at ties
        self._sequence: Dict[str, int] = {}
        self._order = itertools.count()
        self._lock = Lock()

    async def add(self, entry: WaitingListEntry) -> WaitingListEntry:
        with self._lock:
            if entry.id in self._entries:
                raise ValueError(f"Waiting list entry {entry.id} already exists")
            self._entries[entry.id] = entry.model_copy()
            self._sequence[entry.id] = next(self._order)
            return entry.model_copy()

    async def get(self, entry_id: str) -> Optional[WaitingListEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy() if entry is not None else None

    async def save(self, entry: WaitingListEntry) -> WaitingListEntry:
        with self._lock:
            if entry.id not in self._entries:
                raise KeyError(f"Waiting list entry {entry.id} not found")
            self._entries[entry.id] = entry.model_copy()
            return entry.model_copy()

    def _fcfs_key(self, entry: WaitingListEntry):
        return (entry.created_at, self._sequence[entry.id])

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        since: Optional[datetime] = None,
        statuses: Optional[Sequence[WaitingStatus]] = None,
    ) -> List[WaitingListEntry]:
        with self._lock:
            entries = [
                entry
                for entry in self._entries.values()
                if entry.tenant_id == tenant_id
                and (since is None or entry.created_at >= since)
                and (statuses is None or entry.status in statuses)
            ]
            entries.sort(key=self._fcfs_key)
            return [entry.model_copy() for entry in entries]

    async def find_notified_by_contact(
        self, customer_contact: str
    ) -> Optional[WaitingListEntry]:
        with self._lock:
            notified = [
                entry
                for entry in self._entries.values()
                if entry.customer_contact == customer_contact
                and entry.status == WaitingStatus.NOTIFIED
            ]
            if not notified:
                return None
            latest = max(
                notified,
                key=lambda entry: (entry.notified_at or entry.created_at, self._sequence[entry.id]),
            )
            return latest.model_copy()

    async def list_created_before(self, cutoff: datetime) -> List[WaitingListEntry]:
        with self._lock:
            entries = [entry for entry in self._entries.values() if entry.created_at < cutoff]
            entries.sort(key=self._fcfs_key)
            return [entry.model_copy() for entry in entries]

    async def delete(self, entry_id: str) -> bool:
        with self._lock:
            self._sequence.pop(entry_id, None)
            return self._entries.pop(entry_id, None) is not None


class OutboxRepository(_BaseRepository):
    """Messages "sent" while the SMS gateway runs in mock mode."""

    def __init__(self) -> None:
        super().__init__("MSG")
        self._messages: Dict[str, NotificationRecord] = {}

    async def record(
        self, contact: str, message: str, *, kind: Optional[str] = None
    ) -> NotificationRecord:
        record = NotificationRecord(
            notification_id=self._next_id(),
            contact=contact,
            message=message,
            kind=kind,
            status="sent",
            delivery_time=_utc_now_iso(),
        )
        self._messages[record.notification_id] = record
        return record

    async def list(self, contact: Optional[str] = None) -> List[NotificationRecord]:
        return [
            record
            for record in self._messages.values()
            if contact is None or record.contact == contact
        ]


@dataclass
class MockDataStore:
    staff: StaffDirectory
    appointments: AppointmentRepository
    waiting_list: WaitingListRepository
    outbox: OutboxRepository


_mock_store: Optional[MockDataStore] = None


def get_mock_store() -> MockDataStore:
    global _mock_store
    if _mock_store is None:
        _mock_store = MockDataStore(
            staff=StaffDirectory(),
            appointments=AppointmentRepository(),
            waiting_list=WaitingListRepository(),
            outbox=OutboxRepository(),
        )
    return _mock_store


def reset_mock_store() -> None:
    global _mock_store
    _mock_store = None
