from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from slotbook.clients.sms_gateway import SmsGatewayClient
from slotbook.config import Settings, get_settings
from slotbook.services import AvailabilityService, BookingEngine, WaitingListService
from slotbook.services.clock import SystemClock
from slotbook.services.mock_store import MockDataStore, get_mock_store
from slotbook.services.ports import Clock
from slotbook.services.sweeper import DailySweepJob


@dataclass
class SchedulingRuntime:
    settings: Settings
    clock: Clock
    store: MockDataStore
    sms_client: SmsGatewayClient
    availability: AvailabilityService
    booking: BookingEngine
    cascade: WaitingListService
    sweeper: DailySweepJob


def build_runtime(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
    store: MockDataStore | None = None,
) -> SchedulingRuntime:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = store or get_mock_store()
    tz = settings.tzinfo

    sms_client = SmsGatewayClient(
        str(settings.sms_gateway_base_url) if settings.sms_gateway_base_url else None,
        outbox=store.outbox,
        timeout=settings.sms_gateway_timeout,
        use_mock_data=settings.use_mock_data,
        token=settings.sms_gateway_token,
    )
    availability = AvailabilityService(
        store.staff,
        store.appointments,
        tz=tz,
        clock=clock,
        interval_minutes=settings.slot_interval_minutes,
        buffer_minutes=settings.buffer_minutes,
        lookahead_minutes=settings.lookahead_minutes,
    )
    booking = BookingEngine(
        store.appointments,
        tz=tz,
        working_hours=store.staff,
        clock=clock,
        buffer_minutes=settings.buffer_minutes,
        lock_timeout=settings.booking_lock_timeout,
        max_attempts=settings.booking_max_attempts,
    )
    cascade = WaitingListService(
        store.waiting_list,
        sms_client,
        tz=tz,
        clock=clock,
        default_duration_minutes=settings.default_waitlist_duration_minutes,
        keep_expired=settings.waiting_list_keep_expired,
    )
    booking.add_cancellation_listener(cascade.on_cancellation)
    sweeper = DailySweepJob(
        cascade,
        tz=tz,
        hour=settings.waiting_list_reset_hour,
        clock=clock,
    )
    return SchedulingRuntime(
        settings=settings,
        clock=clock,
        store=store,
        sms_client=sms_client,
        availability=availability,
        booking=booking,
        cascade=cascade,
        sweeper=sweeper,
    )


_runtime: Optional[SchedulingRuntime] = None


def get_runtime() -> SchedulingRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def install_runtime(runtime: SchedulingRuntime) -> SchedulingRuntime:
    global _runtime
    _runtime = runtime
    return runtime


def reset_runtime() -> None:
    global _runtime
    _runtime = None


def get_availability_service() -> AvailabilityService:
    return get_runtime().availability


def get_booking_engine() -> BookingEngine:
    return get_runtime().booking


def get_waiting_list_service() -> WaitingListService:
    return get_runtime().cascade
