"""Booking Engine.

Creates, reschedules, transitions and cancels appointments. Every write
that claims time on a resource goes through ``_admit``: an overlap check
followed by a conditional store write, executed while holding that
resource's lock so two concurrent requests can never both land in
overlapping intervals.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, tzinfo
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from slotbook.schemas.appointment import (
    AddOn,
    Appointment,
    AppointmentQuery,
    AppointmentStatus,
    BookingRequest,
    CancellationReason,
    RescheduleRequest,
)
from slotbook.schemas.waiting_list import CancellationEvent
from slotbook.services import calendar
from slotbook.services.availability import is_blocked
from slotbook.services.clock import SystemClock
from slotbook.services.exceptions import (
    AppointmentNotFound,
    InvalidRequest,
    InvalidTransition,
    NotCancellable,
    NotModifiable,
    ResourceNotFound,
    SlotConflict,
    StoreConflict,
)
from slotbook.services.ports import AppointmentStore, Clock, WorkingHoursProvider

logger = logging.getLogger(__name__)

CancellationListener = Callable[[CancellationEvent], Awaitable[object]]


def total_duration(service_duration_minutes: int, add_ons: List[AddOn]) -> int:
    return service_duration_minutes + sum(add_on.duration_minutes for add_on in add_ons)


class _Contended(Exception):
    """A resource lock could not be acquired within the timeout."""


class BookingEngine:
    def __init__(
        self,
        appointments: AppointmentStore,
        *,
        tz: tzinfo,
        working_hours: WorkingHoursProvider | None = None,
        clock: Clock | None = None,
        buffer_minutes: int = 0,
        lock_timeout: float = 2.0,
        max_attempts: int = 3,
    ) -> None:
        self._appointments = appointments
        self._working_hours = working_hours
        self._tz = tz
        self._clock = clock or SystemClock()
        self.buffer_minutes = buffer_minutes
        self._lock_timeout = lock_timeout
        self._max_attempts = max_attempts
        self._resource_locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[CancellationListener] = []

    def add_cancellation_listener(self, listener: CancellationListener) -> None:
        self._listeners.append(listener)

    def _lock_for(self, resource_id: str) -> asyncio.Lock:
        lock = self._resource_locks.get(resource_id)
        if lock is None:
            lock = self._resource_locks[resource_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _serialized(self, *resource_ids: str) -> AsyncIterator[None]:
        """Hold the locks of every given resource, acquired in sorted order."""

        acquired: List[asyncio.Lock] = []
        try:
            for resource_id in sorted(set(resource_ids)):
                lock = self._lock_for(resource_id)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
                except asyncio.TimeoutError as exc:
                    raise _Contended(resource_id) from exc
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _contended(self, resource_id: str, attempt: int, action: str) -> None:
        logger.warning(
            "Resource %s busy, %s attempt %s/%s",
            resource_id,
            action,
            attempt,
            self._max_attempts,
        )

    async def _ensure_resource(self, resource_id: str) -> None:
        if self._working_hours is None:
            return
        if await self._working_hours.get_resource(resource_id) is None:
            raise ResourceNotFound(resource_id)

    def _normalize(self, value: datetime) -> datetime:
        return calendar.ensure_aware(value, self._tz)

    async def _admit(
        self,
        candidate: Appointment,
        *,
        is_new: bool,
        also_lock: Optional[str] = None,
    ) -> Appointment:
        """Overlap check plus conditional write under the resource lock.

        Lock timeouts and lost conditional writes are retried a bounded
        number of times and then reported as an ordinary ``SlotConflict``.
        """

        buffer = timedelta(minutes=self.buffer_minutes)
        exclude_id = None if is_new else candidate.id
        lock_ids = [candidate.resource_id] + ([also_lock] if also_lock else [])
        conflicting: List[str] = []
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._serialized(*lock_ids):
                    if not is_new:
                        await self._require_modifiable(candidate.id)
                    existing = await self._appointments.find_overlapping(
                        candidate.resource_id,
                        candidate.start_time - buffer,
                        candidate.end_time,
                        exclude_id=exclude_id,
                    )
                    conflicting = is_blocked(
                        existing,
                        candidate.start_time,
                        candidate.end_time,
                        self.buffer_minutes,
                    )
                    if conflicting:
                        break
                    if is_new:
                        return await self._appointments.insert(candidate)
                    return await self._appointments.update(candidate)
            except _Contended:
                self._contended(candidate.resource_id, attempt, "booking")
            except StoreConflict as exc:
                conflicting = exc.conflicting_ids
                logger.warning(
                    "Conditional write for %s lost a race, attempt %s/%s",
                    candidate.resource_id,
                    attempt,
                    self._max_attempts,
                )
        raise SlotConflict(
            candidate.resource_id, candidate.start_time, candidate.end_time, conflicting
        )

    async def _require_modifiable(self, appointment_id: str) -> Appointment:
        latest = await self.get(appointment_id)
        if not latest.status.is_modifiable:
            raise NotModifiable(appointment_id, latest.status.value)
        return latest

    async def create(self, request: BookingRequest) -> Appointment:
        await self._ensure_resource(request.resource_id)
        duration = total_duration(request.service_duration_minutes, request.add_ons)
        start = self._normalize(request.start_time)
        now = self._clock.now()
        candidate = Appointment(
            id=self._appointments.next_id(),
            tenant_id=request.tenant_id,
            resource_id=request.resource_id,
            service_id=request.service_id,
            start_time=start,
            end_time=start + timedelta(minutes=duration),
            status=AppointmentStatus.SCHEDULED,
            service_duration_minutes=request.service_duration_minutes,
            total_duration_minutes=duration,
            add_on_ids=[add_on.id for add_on in request.add_ons],
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        appointment = await self._admit(candidate, is_new=True)
        logger.info(
            "New appointment created: %s on %s for tenant %s (%s-%s)",
            appointment.id,
            appointment.resource_id,
            appointment.tenant_id,
            appointment.start_time.isoformat(),
            appointment.end_time.isoformat(),
        )
        return appointment

    async def get(self, appointment_id: str) -> Appointment:
        appointment = await self._appointments.find(appointment_id)
        if appointment is None:
            raise AppointmentNotFound(appointment_id)
        return appointment

    async def modify(self, appointment_id: str, request: RescheduleRequest) -> Appointment:
        current = await self.get(appointment_id)
        if not current.status.is_modifiable:
            raise NotModifiable(appointment_id, current.status.value)

        updates: Dict[str, object] = {"updated_at": self._clock.now()}
        for field in ("customer_name", "customer_phone", "notes"):
            value = getattr(request, field)
            if value is not None:
                updates[field] = value

        if not request.reschedules:
            return await self._update_details(appointment_id, updates)

        target_resource = request.resource_id or current.resource_id
        if target_resource != current.resource_id:
            await self._ensure_resource(target_resource)

        start = self._normalize(request.start_time) if request.start_time else current.start_time
        duration = current.total_duration_minutes
        if request.add_ons is not None or request.service_duration_minutes is not None:
            base = request.service_duration_minutes or current.service_duration_minutes
            if base is None:
                raise InvalidRequest(
                    "service_duration_minutes is required when add-ons change"
                )
            if request.add_ons is not None:
                duration = total_duration(base, request.add_ons)
                updates["add_on_ids"] = [add_on.id for add_on in request.add_ons]
            else:
                # keep the existing add-on time on top of the new service length
                add_on_minutes = current.total_duration_minutes - (
                    current.service_duration_minutes or current.total_duration_minutes
                )
                duration = base + add_on_minutes
            updates["service_duration_minutes"] = base

        updates.update(
            resource_id=target_resource,
            start_time=start,
            end_time=start + timedelta(minutes=duration),
            total_duration_minutes=duration,
        )
        candidate = Appointment.model_validate({**current.model_dump(), **updates})
        # the source resource is locked too so a concurrent cancel cannot interleave
        appointment = await self._admit(
            candidate, is_new=False, also_lock=current.resource_id
        )
        logger.info(
            "Appointment updated: %s now on %s at %s",
            appointment.id,
            appointment.resource_id,
            appointment.start_time.isoformat(),
        )
        return appointment

    async def _update_details(
        self, appointment_id: str, updates: Dict[str, object]
    ) -> Appointment:
        current = await self.get(appointment_id)
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._serialized(current.resource_id):
                    latest = await self._require_modifiable(appointment_id)
                    return await self._appointments.update(latest.model_copy(update=updates))
            except _Contended:
                self._contended(current.resource_id, attempt, "update")
        raise SlotConflict(current.resource_id, current.start_time, current.end_time)

    async def transition(
        self, appointment_id: str, target: AppointmentStatus
    ) -> Appointment:
        """Move along the status machine (confirm, start, complete, no-show)."""

        if target == AppointmentStatus.CANCELLED:
            return await self.cancel(appointment_id, CancellationReason.OTHER)
        current = await self.get(appointment_id)
        if not current.status.can_transition_to(target):
            raise InvalidTransition(appointment_id, current.status.value, target.value)

        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._serialized(current.resource_id):
                    latest = await self.get(appointment_id)
                    if not latest.status.can_transition_to(target):
                        raise InvalidTransition(
                            appointment_id, latest.status.value, target.value
                        )
                    updated = await self._appointments.update(
                        latest.model_copy(
                            update={"status": target, "updated_at": self._clock.now()}
                        )
                    )
                logger.info("Appointment %s moved to %s", appointment_id, target.value)
                return updated
            except _Contended:
                self._contended(current.resource_id, attempt, "status change")
        raise SlotConflict(current.resource_id, current.start_time, current.end_time)

    async def cancel(
        self,
        appointment_id: str,
        reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST,
        notes: Optional[str] = None,
    ) -> Appointment:
        current = await self.get(appointment_id)
        if not current.status.is_modifiable:
            raise NotCancellable(appointment_id, current.status.value)

        cancelled: Optional[Appointment] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._serialized(current.resource_id):
                    latest = await self.get(appointment_id)
                    if not latest.status.is_modifiable:
                        raise NotCancellable(appointment_id, latest.status.value)
                    now = self._clock.now()
                    cancelled = await self._appointments.update(
                        latest.model_copy(
                            update={
                                "status": AppointmentStatus.CANCELLED,
                                "cancellation_reason": reason,
                                "cancellation_notes": notes,
                                "cancelled_at": now,
                                "updated_at": now,
                            }
                        )
                    )
                break
            except _Contended:
                self._contended(current.resource_id, attempt, "cancellation")
        if cancelled is None:
            raise SlotConflict(current.resource_id, current.start_time, current.end_time)

        logger.info(
            "Appointment cancelled: %s for tenant %s, reason: %s",
            appointment_id,
            cancelled.tenant_id,
            reason.value,
        )
        # emitted only once the cancellation is stored
        await self._emit_cancellation(
            CancellationEvent(
                tenant_id=cancelled.tenant_id,
                resource_id=cancelled.resource_id,
                slot_start=cancelled.start_time,
                slot_end=cancelled.end_time,
                duration_minutes=cancelled.total_duration_minutes,
            )
        )
        return cancelled

    async def _emit_cancellation(self, event: CancellationEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    "Cancellation listener failed for %s at %s",
                    event.resource_id,
                    event.slot_start.isoformat(),
                )

    async def query(self, query: AppointmentQuery) -> List[Appointment]:
        return await self._appointments.query(query)

    async def delete(self, appointment_id: str) -> None:
        """Administrative hard delete; does not trigger the waiting list."""

        if not await self._appointments.delete(appointment_id):
            raise AppointmentNotFound(appointment_id)
        logger.info("Appointment deleted: %s", appointment_id)
