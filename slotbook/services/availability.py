"""Availability Calculator.

Computes the bookable slot grid for a staff resource on a given day by
walking candidate start times through the resource's working hours and
tagging each one against the existing, time-blocking appointments.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence

from slotbook.schemas.appointment import Appointment
from slotbook.schemas.availability import ResourceAvailability, Slot
from slotbook.services import calendar
from slotbook.services.clock import SystemClock
from slotbook.services.exceptions import InvalidRequest, ResourceNotFound
from slotbook.services.ports import AppointmentStore, Clock, WorkingHoursProvider

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 15
DEFAULT_LOOKAHEAD_MINUTES = 15


def is_blocked(
    appointments: Iterable[Appointment],
    start,
    end,
    buffer_minutes: int = 0,
) -> List[str]:
    """Ids of appointments whose buffered interval overlaps ``[start, end)``.

    Each appointment is expanded by ``buffer_minutes`` on its trailing edge
    before the half-open overlap test. Released statuses never block.
    """

    buffer = timedelta(minutes=buffer_minutes)
    return [
        appointment.id
        for appointment in appointments
        if appointment.blocks_time
        and calendar.overlaps(
            start, end, appointment.start_time, appointment.end_time + buffer
        )
    ]


class AvailabilityService:
    def __init__(
        self,
        working_hours: WorkingHoursProvider,
        appointments: AppointmentStore,
        *,
        tz: tzinfo,
        clock: Clock | None = None,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        buffer_minutes: int = 0,
        lookahead_minutes: int = DEFAULT_LOOKAHEAD_MINUTES,
    ) -> None:
        self._working_hours = working_hours
        self._appointments = appointments
        self._tz = tz
        self._clock = clock or SystemClock()
        self.interval_minutes = interval_minutes
        self.buffer_minutes = buffer_minutes
        self.lookahead_minutes = lookahead_minutes

    async def compute_slots(
        self,
        resource_id: str,
        day: date,
        duration_minutes: int,
        interval_minutes: Optional[int] = None,
        buffer_minutes: Optional[int] = None,
    ) -> List[Slot]:
        interval = self.interval_minutes if interval_minutes is None else interval_minutes
        buffer = self.buffer_minutes if buffer_minutes is None else buffer_minutes
        self._validate(duration_minutes, interval, buffer)

        if await self._working_hours.get_resource(resource_id) is None:
            raise ResourceNotFound(resource_id)

        schedule = await self._working_hours.get_schedule(
            resource_id, calendar.day_of_week(day)
        )
        if schedule is None or not schedule.enabled:
            return []

        work_start = calendar.parse_time_to_minutes(schedule.start_time)
        work_end = calendar.parse_time_to_minutes(schedule.end_time)
        first = work_start

        now_local = self._clock.now().astimezone(self._tz)
        if now_local.date() == day:
            cutoff = calendar.minutes_since_midnight(now_local) + self.lookahead_minutes
            first = max(work_start, calendar.round_up(cutoff, interval))

        last_start = work_end - duration_minutes
        if first > last_start:
            return []

        existing = await self._appointments.find_overlapping(
            resource_id,
            calendar.at_minutes(day, work_start, self._tz) - timedelta(minutes=buffer),
            calendar.at_minutes(day, work_end, self._tz),
        )

        slots: List[Slot] = []
        for offset in calendar.candidate_offsets(first, last_start, interval):
            start = calendar.at_minutes(day, offset, self._tz)
            end = start + timedelta(minutes=duration_minutes)
            slots.append(
                Slot(
                    start_time=start,
                    end_time=end,
                    resource_id=resource_id,
                    is_available=not is_blocked(existing, start, end, buffer),
                )
            )
        return slots

    async def compute_range(
        self,
        resource_id: str,
        start_date: date,
        end_date: date,
        duration_minutes: int,
        interval_minutes: Optional[int] = None,
        buffer_minutes: Optional[int] = None,
    ) -> Dict[date, List[Slot]]:
        if end_date < start_date:
            raise InvalidRequest("end_date must not be before start_date")
        days: Dict[date, List[Slot]] = {}
        for day in calendar.iter_days(start_date, end_date):
            days[day] = await self.compute_slots(
                resource_id, day, duration_minutes, interval_minutes, buffer_minutes
            )
        return days

    async def availability_for_date(
        self,
        tenant_id: str,
        day: date,
        duration_minutes: int,
        resource_ids: Optional[Sequence[str]] = None,
    ) -> List[ResourceAvailability]:
        """Open slots for each active resource of a tenant on ``day``."""

        resources = await self._working_hours.list_resources(tenant_id)
        if resource_ids:
            wanted = set(resource_ids)
            resources = [member for member in resources if member.resource_id in wanted]

        results: List[ResourceAvailability] = []
        for member in resources:
            slots = await self.compute_slots(member.resource_id, day, duration_minutes)
            open_slots = [slot for slot in slots if slot.is_available]
            results.append(
                ResourceAvailability(
                    resource_id=member.resource_id,
                    resource_name=member.name,
                    date=day,
                    duration_minutes=duration_minutes,
                    available_slots=open_slots,
                    is_available=bool(open_slots),
                )
            )
        logger.info(
            "Computed availability for %s resources of tenant %s on %s",
            len(results),
            tenant_id,
            day.isoformat(),
        )
        return results

    @staticmethod
    def _validate(duration_minutes: int, interval_minutes: int, buffer_minutes: int) -> None:
        if duration_minutes <= 0:
            raise InvalidRequest("duration_minutes must be positive")
        if interval_minutes <= 0:
            raise InvalidRequest("interval_minutes must be positive")
        if buffer_minutes < 0:
            raise InvalidRequest("buffer_minutes must not be negative")
