import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import List, Optional, Tuple

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from slotbook.schemas.appointment import BookingRequest
from slotbook.schemas.availability import StaffMember
from slotbook.schemas.waiting_list import CancellationEvent, EnqueueRequest, WaitingStatus
from slotbook.services.booking import BookingEngine
from slotbook.services.clock import ManualClock
from slotbook.services.exceptions import AlreadyQueued, SlotConflict, WaitingEntryNotFound
from slotbook.services.mock_store import (
    AppointmentRepository,
    StaffDirectory,
    WaitingListRepository,
    weekday_schedule,
)
from slotbook.services.waiting_list import WaitingListService, response_window_minutes

UTC = timezone.utc
NOW = datetime(2030, 1, 7, 9, 0, tzinfo=UTC)


class RecordingSender:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, Optional[str], str]] = []

    async def send(self, contact: str, message: str, *, kind: Optional[str] = None) -> bool:
        self.sent.append((contact, kind, message))
        return True

    def kinds_for(self, contact: str) -> List[Optional[str]]:
        return [kind for to, kind, _ in self.sent if to == contact]


class FailingSender:
    def __init__(self) -> None:
        self.attempts = 0

    async def send(self, contact: str, message: str, *, kind: Optional[str] = None) -> bool:
        self.attempts += 1
        raise ConnectionError("gateway unreachable")


def _service(sender=None, *, keep_expired: bool = False, clock: Optional[ManualClock] = None):
    clock = clock or ManualClock(NOW)
    store = WaitingListRepository()
    service = WaitingListService(
        store,
        sender or RecordingSender(),
        tz=UTC,
        clock=clock,
        keep_expired=keep_expired,
    )
    return service, store, clock


def _join(contact: str, minutes: Optional[int] = None, name: Optional[str] = None) -> EnqueueRequest:
    return EnqueueRequest(
        tenant_id="salon",
        customer_contact=contact,
        customer_name=name,
        service_name="haircut",
        service_duration_minutes=minutes,
    )


def _event(start: datetime, minutes: int, tenant_id: str = "salon") -> CancellationEvent:
    return CancellationEvent(
        tenant_id=tenant_id,
        resource_id="stf-1",
        slot_start=start,
        slot_end=start + timedelta(minutes=minutes),
        duration_minutes=minutes,
    )


@pytest.mark.parametrize(
    "lead_minutes, window",
    [
        (5, 10),
        (20, 10),
        (29, 10),
        (30, 20),
        (90, 20),
        (119, 20),
        (120, 45),
        (200, 45),
        (239, 45),
        (240, 120),
        (300, 120),
    ],
)
def test_response_window_tiers(lead_minutes: int, window: int) -> None:
    assert response_window_minutes(NOW + timedelta(minutes=lead_minutes), NOW) == window


def test_oldest_compatible_entry_is_notified_first() -> None:
    sender = RecordingSender()
    service, _, clock = _service(sender)

    async def scenario():
        first = await service.enqueue(_join("+1001", 30, "Avery"))
        clock.advance(minutes=1)
        await service.enqueue(_join("+1002", 45))
        clock.advance(minutes=1)
        await service.enqueue(_join("+1003", 20))
        result = await service.on_cancellation(_event(datetime(2030, 1, 7, 12, tzinfo=UTC), 40))
        pending = service.pending_timer_count
        await service.shutdown()
        return first, result, pending

    first, result, pending = asyncio.run(scenario())

    assert result is not None
    assert result.entry.id == first.id
    assert result.entry.status == WaitingStatus.NOTIFIED
    assert result.response_window_minutes == 45
    assert result.deadline == NOW + timedelta(minutes=2 + 45)
    assert result.entry.response_deadline == result.deadline
    assert result.entry.notified_slot_start == datetime(2030, 1, 7, 12, tzinfo=UTC)
    assert result.delivered is True
    assert pending == 1
    contact, kind, message = sender.sent[0]
    assert contact == "+1001"
    assert kind == "waiting_list_notification"
    assert "12:00 PM appointment just opened up for your haircut" in message
    assert "Reply YES within 45 minutes" in message


def test_incompatible_durations_are_skipped_not_reordered() -> None:
    service, store, _ = _service()

    async def scenario():
        await service.enqueue(_join("+1001", 60))
        second = await service.enqueue(_join("+1002", 30))
        result = await service.on_cancellation(_event(NOW + timedelta(hours=1), 30))
        await service.shutdown()
        return second, result, await store.list_for_tenant("salon")

    second, result, entries = asyncio.run(scenario())

    assert result.entry.id == second.id
    assert [entry.status for entry in entries] == [WaitingStatus.WAITING, WaitingStatus.NOTIFIED]


def test_equal_created_at_keeps_insertion_order() -> None:
    service, _, _ = _service()

    async def scenario():
        first = await service.enqueue(_join("+1001", 30))
        await service.enqueue(_join("+1002", 30))
        result = await service.on_cancellation(_event(NOW + timedelta(hours=1), 30))
        await service.shutdown()
        return first, result

    first, result = asyncio.run(scenario())

    assert result.entry.id == first.id


def test_default_duration_applies_when_missing() -> None:
    service, _, _ = _service()

    entry = asyncio.run(service.enqueue(_join("+1001")))

    assert entry.service_duration_minutes == 30
    assert entry.status == WaitingStatus.WAITING


def test_no_match_or_started_slot_sends_nothing() -> None:
    sender = RecordingSender()
    service, _, _ = _service(sender)

    async def scenario():
        await service.enqueue(_join("+1001", 60))
        too_short = await service.on_cancellation(_event(NOW + timedelta(hours=1), 30))
        other_tenant = await service.on_cancellation(
            _event(NOW + timedelta(hours=1), 60, tenant_id="elsewhere")
        )
        already_started = await service.on_cancellation(_event(NOW - timedelta(minutes=5), 60))
        return too_short, other_tenant, already_started

    assert asyncio.run(scenario()) == (None, None, None)
    assert sender.sent == []
    assert service.pending_timer_count == 0


def test_duplicate_enqueue_is_rejected() -> None:
    service, _, _ = _service()

    async def scenario():
        await service.enqueue(_join("+1001", 30))
        await service.enqueue(_join("+1001", 45))

    with pytest.raises(AlreadyQueued) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.to_detail()["code"] == "ALREADY_ON_LIST"


def test_accept_books_and_cancels_the_timer() -> None:
    sender = RecordingSender()
    service, _, _ = _service(sender)

    async def scenario():
        entry = await service.enqueue(_join("+1001", 30))
        await service.on_cancellation(_event(NOW + timedelta(hours=2), 30))
        resolution = await service.on_response("+1001", accepted=True)
        pending = service.pending_timer_count
        kinds_before_booking = sender.kinds_for("+1001")
        attached = await service.attach_booking(entry.id, "APT-00042")
        timed_out = await service.handle_timeout(entry.id)
        duplicate = await service.on_response("+1001", accepted=True)
        return resolution, pending, kinds_before_booking, attached, timed_out, duplicate

    resolution, pending, kinds_before_booking, attached, timed_out, duplicate = asyncio.run(
        scenario()
    )

    assert resolution.action == "booked"
    assert resolution.entry.status == WaitingStatus.BOOKED
    assert resolution.slot_start == NOW + timedelta(hours=2)
    assert pending == 0
    # nothing is confirmed until the appointment exists
    assert kinds_before_booking == ["waiting_list_notification"]
    assert attached.booked_appointment_id == "APT-00042"
    assert timed_out is False
    assert duplicate.action == "not_found"
    assert sender.kinds_for("+1001") == ["waiting_list_notification", "waiting_list_confirmation"]
    assert "You're confirmed for 11:00 AM today!" in sender.sent[-1][2]


def test_decline_cascades_to_next_entry() -> None:
    sender = RecordingSender()
    service, store, _ = _service(sender)

    async def scenario():
        first = await service.enqueue(_join("+1001", 30))
        second = await service.enqueue(_join("+1002", 30))
        await service.on_cancellation(_event(NOW + timedelta(minutes=90), 30))
        resolution = await service.on_response("+1001", accepted=False)
        late_accept = await service.on_response("+1001", accepted=True)
        pending = service.pending_timer_count
        await service.shutdown()
        return first, second, resolution, late_accept, pending, await store.get(second.id)

    first, second, resolution, late_accept, pending, second_after = asyncio.run(scenario())

    assert resolution.action == "passed"
    assert resolution.entry.status == WaitingStatus.NO_RESPONSE
    assert late_accept.action == "not_found"
    assert second_after.status == WaitingStatus.NOTIFIED
    assert second_after.offer.slot_start == NOW + timedelta(minutes=90)
    assert pending == 1
    assert sender.kinds_for("+1002") == ["waiting_list_notification"]


def test_timeout_lapses_entry_and_cascades() -> None:
    sender = RecordingSender()
    service, store, clock = _service(sender)

    async def scenario():
        first = await service.enqueue(_join("+1001", 30))
        await service.enqueue(_join("+1002", 30))
        result = await service.on_cancellation(_event(NOW + timedelta(minutes=20), 30))
        clock.set(result.deadline)
        fired = await service.handle_timeout(first.id)
        fired_again = await service.handle_timeout(first.id)
        late_reply = await service.on_response("+1001", accepted=True)
        await service.shutdown()
        return first, result, fired, fired_again, late_reply, await store.get(first.id)

    first, result, fired, fired_again, late_reply, lapsed = asyncio.run(scenario())

    assert result.response_window_minutes == 10
    assert fired is True
    assert fired_again is False
    assert late_reply.action == "not_found"
    assert lapsed.status == WaitingStatus.NO_RESPONSE
    assert sender.kinds_for("+1001") == ["waiting_list_notification", "waiting_list_timeout"]
    assert "offered to the next person" in sender.sent[1][2]
    # lead time is now 10 minutes, so the next customer gets the shortest window
    assert sender.kinds_for("+1002") == ["waiting_list_notification"]
    assert "Reply YES within 10 minutes" in sender.sent[-1][2]


def test_cascade_stops_once_the_slot_has_started() -> None:
    sender = RecordingSender()
    service, store, clock = _service(sender)

    async def scenario():
        first = await service.enqueue(_join("+1001", 30))
        second = await service.enqueue(_join("+1002", 30))
        await service.on_cancellation(_event(NOW + timedelta(minutes=20), 30))
        clock.advance(minutes=25)
        await service.on_response("+1001", accepted=False)
        return await store.get(second.id)

    second = asyncio.run(scenario())

    assert second.status == WaitingStatus.WAITING
    assert sender.kinds_for("+1002") == []


def test_response_and_timeout_race_resolves_once() -> None:
    service, store, _ = _service()

    async def scenario():
        entry = await service.enqueue(_join("+1001", 30))
        await service.on_cancellation(_event(NOW + timedelta(hours=3), 30))
        resolution, fired = await asyncio.gather(
            service.on_response("+1001", accepted=True),
            service.handle_timeout(entry.id),
        )
        await service.shutdown()
        return resolution, fired, await store.get(entry.id)

    resolution, fired, final = asyncio.run(scenario())

    outcomes = [resolution.action == "booked", fired]
    assert outcomes.count(True) == 1
    assert final.status in (WaitingStatus.BOOKED, WaitingStatus.NO_RESPONSE)


def test_notification_failure_does_not_block_the_offer() -> None:
    sender = FailingSender()
    service, store, _ = _service(sender)

    async def scenario():
        entry = await service.enqueue(_join("+1001", 30))
        result = await service.on_cancellation(_event(NOW + timedelta(hours=1), 30))
        pending = service.pending_timer_count
        resolution = await service.on_response("+1001", accepted=True)
        attached = await service.attach_booking(entry.id, "APT-00007")
        await service.shutdown()
        return entry, result, pending, resolution, attached

    entry, result, pending, resolution, attached = asyncio.run(scenario())

    assert result.delivered is False
    assert result.entry.status == WaitingStatus.NOTIFIED
    assert pending == 1
    assert resolution.action == "booked"
    assert attached.booked_appointment_id == "APT-00007"
    assert sender.attempts == 2


def test_shutdown_cancels_timers_without_side_effects() -> None:
    sender = RecordingSender()
    service, store, _ = _service(sender)

    async def scenario():
        entry = await service.enqueue(_join("+1001", 30))
        await service.on_cancellation(_event(NOW + timedelta(hours=1), 30))
        cancelled = await service.shutdown()
        return entry, cancelled, await store.get(entry.id)

    entry, cancelled, stored = asyncio.run(scenario())

    assert cancelled == 1
    assert service.pending_timer_count == 0
    assert stored.status == WaitingStatus.NOTIFIED
    assert sender.kinds_for("+1001") == ["waiting_list_notification"]


def test_shutdown_stops_a_deadline_that_is_already_firing() -> None:
    class HeldSender(RecordingSender):
        def __init__(self) -> None:
            super().__init__()
            self.holding = asyncio.Event()
            self.release = asyncio.Event()

        async def send(self, contact: str, message: str, *, kind: Optional[str] = None) -> bool:
            if kind == "waiting_list_timeout":
                self.holding.set()
                await self.release.wait()
            return await super().send(contact, message, kind=kind)

    async def scenario():
        sender = HeldSender()
        service, store, _ = _service(sender)
        first = await service.enqueue(_join("+1001", 30))
        second = await service.enqueue(_join("+1002", 30))
        await service.on_cancellation(_event(NOW + timedelta(minutes=20), 30))
        # bring the deadline forward so the lapse starts right away
        service._timers.cancel(first.id)
        service._timers.schedule(first.id, 0, partial(service.handle_timeout, first.id))
        await asyncio.wait_for(sender.holding.wait(), timeout=1)

        cancelled = await service.shutdown()
        sender.release.set()
        await asyncio.sleep(0.02)
        late_offer = await service.on_cancellation(_event(NOW + timedelta(hours=3), 30))
        return sender, service, cancelled, late_offer, await store.get(second.id)

    sender, service, cancelled, late_offer, untouched = asyncio.run(scenario())

    assert cancelled == 1
    assert service.closed is True
    assert service.pending_timer_count == 0
    assert late_offer is None
    assert untouched.status == WaitingStatus.WAITING
    assert [(contact, kind) for contact, kind, _ in sender.sent] == [
        ("+1001", "waiting_list_notification")
    ]


def test_today_list_position_and_remove() -> None:
    service, _, clock = _service()

    async def scenario():
        await service.enqueue(_join("+1001", 30))
        await service.enqueue(_join("+1002", 30))
        await service.enqueue(_join("+1003", 30))
        await service.on_cancellation(_event(NOW + timedelta(hours=1), 30))
        summary = await service.today_list("salon")
        position = await service.position("salon", "+1003")
        notified_position = await service.position("salon", "+1001")
        await service.remove("salon", "+1002")
        after_remove = await service.position("salon", "+1003")
        with pytest.raises(WaitingEntryNotFound):
            await service.remove("salon", "+1002")
        await service.shutdown()
        return summary, position, notified_position, after_remove

    summary, position, notified_position, after_remove = asyncio.run(scenario())

    assert summary.count == 3
    assert summary.waiting == 2
    assert summary.notified == 1
    assert summary.booked == 0
    assert position == 2
    assert notified_position is None
    assert after_remove == 1


def test_sweep_purges_entries_from_previous_days() -> None:
    clock = ManualClock(NOW - timedelta(days=1))
    service, store, _ = _service(clock=clock)

    async def scenario():
        await service.enqueue(_join("+1001", 30))
        await service.enqueue(_join("+1002", 30))
        clock.set(NOW)
        fresh = await service.enqueue(_join("+1001", 30))
        swept = await service.sweep_daily()
        return fresh, swept, await store.list_for_tenant("salon")

    fresh, swept, remaining = asyncio.run(scenario())

    assert swept == 2
    assert [entry.id for entry in remaining] == [fresh.id]


def test_sweep_can_keep_expired_entries() -> None:
    clock = ManualClock(NOW - timedelta(days=1))
    service, store, _ = _service(keep_expired=True, clock=clock)

    async def scenario():
        old = await service.enqueue(_join("+1001", 30))
        await service.on_cancellation(_event(NOW - timedelta(hours=20), 30))
        clock.set(NOW)
        swept = await service.sweep_daily()
        return old, swept, await store.get(old.id), service.pending_timer_count

    old, swept, stored, pending = asyncio.run(scenario())

    assert swept == 1
    assert stored.status == WaitingStatus.EXPIRED
    assert pending == 0


def test_cancellation_in_booking_engine_reaches_the_waiting_list() -> None:
    sender = RecordingSender()
    service, _, clock = _service(sender)
    staff = StaffDirectory(seed=False)
    staff.add_resource(
        StaffMember(
            resource_id="stf-1",
            tenant_id="salon",
            name="Riley",
            schedule=weekday_schedule("09:00", "17:00"),
        )
    )
    engine = BookingEngine(AppointmentRepository(), tz=UTC, working_hours=staff, clock=clock)
    engine.add_cancellation_listener(service.on_cancellation)

    async def scenario():
        appointment = await engine.create(
            BookingRequest(
                tenant_id="salon",
                resource_id="stf-1",
                service_duration_minutes=30,
                start_time=datetime(2030, 1, 7, 10, tzinfo=UTC),
            )
        )
        await service.enqueue(_join("+1001", 30))
        await engine.cancel(appointment.id)
        summary = await service.today_list("salon")
        await service.shutdown()
        return summary

    summary = asyncio.run(scenario())

    assert summary.notified == 1
    assert summary.entries[0].notified_slot_start == datetime(2030, 1, 7, 10, tzinfo=UTC)
    # 60 minutes of lead time
    assert "Reply YES within 20 minutes" in sender.sent[0][2]


def test_monday_cancellation_scenario_end_to_end() -> None:
    sender = RecordingSender()
    service, store, clock = _service(sender)
    staff = StaffDirectory(seed=False)
    staff.add_resource(
        StaffMember(
            resource_id="stf-1",
            tenant_id="salon",
            name="Riley",
            schedule=weekday_schedule("09:00", "17:00"),
        )
    )
    engine = BookingEngine(AppointmentRepository(), tz=UTC, working_hours=staff, clock=clock)
    engine.add_cancellation_listener(service.on_cancellation)

    def _booking(hour: int, minute: int = 0) -> BookingRequest:
        return BookingRequest(
            tenant_id="salon",
            resource_id="stf-1",
            service_duration_minutes=30,
            start_time=datetime(2030, 1, 7, hour, minute, tzinfo=UTC),
        )

    async def scenario():
        existing = await engine.create(_booking(10))
        with pytest.raises(SlotConflict):
            await engine.create(_booking(10))
        later = await engine.create(_booking(10, 30))
        first = await service.enqueue(_join("+1001", 30))
        clock.advance(minutes=5)
        await engine.cancel(existing.id)
        notified = await store.get(first.id)
        declined = await service.on_response("+1001", accepted=False)
        return later, notified, declined, service.pending_timer_count

    later, notified, declined, pending = asyncio.run(scenario())

    assert later.start_time == datetime(2030, 1, 7, 10, 30, tzinfo=UTC)
    assert notified.status == WaitingStatus.NOTIFIED
    assert notified.notified_slot_start == datetime(2030, 1, 7, 10, tzinfo=UTC)
    # cancelled at 09:05, so 55 minutes of lead time
    assert notified.response_deadline == datetime(2030, 1, 7, 9, 25, tzinfo=UTC)
    assert declined.action == "passed"
    # nobody else is queued, so the cascade stops quietly
    assert pending == 0
    assert sender.kinds_for("+1001") == ["waiting_list_notification"]
