"""Waiting-List Cascade Engine.

Customers queue for a same-day opening. When a committed cancellation
frees a slot, the oldest waiting entry whose service fits is offered the
slot and given a response window that shrinks as the slot gets closer.
A decline or a lapsed deadline moves the offer on to the next entry.

Each notified entry resolves exactly once: the explicit response and the
deadline timer both re-read the entry under that entry's lock and only
the one that still sees ``notified`` performs the transition.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, tzinfo
from functools import partial
from typing import Dict, List, Optional

from slotbook.schemas.waiting_list import (
    CancellationEvent,
    EnqueueRequest,
    NotificationResult,
    OfferResolution,
    WaitingListEntry,
    WaitingListSummary,
    WaitingStatus,
)
from slotbook.services import calendar
from slotbook.services.clock import SystemClock
from slotbook.services.exceptions import (
    AlreadyQueued,
    InvalidRequest,
    WaitingEntryNotFound,
)
from slotbook.services.ports import Clock, NotificationSender, WaitingListStore
from slotbook.services.timers import DeadlineTimers

logger = logging.getLogger(__name__)

# (lead time upper bound in minutes, response window in minutes)
RESPONSE_WINDOW_TIERS = (
    (30, 10),
    (120, 20),
    (240, 45),
)
LONG_LEAD_WINDOW_MINUTES = 120


def response_window_minutes(slot_start: datetime, now: datetime) -> int:
    """Minutes a notified customer has to answer, based on lead time."""

    lead = calendar.minutes_between(now, slot_start)
    for upper_bound, window in RESPONSE_WINDOW_TIERS:
        if lead < upper_bound:
            return window
    return LONG_LEAD_WINDOW_MINUTES


class WaitingListService:
    def __init__(
        self,
        entries: WaitingListStore,
        notifier: NotificationSender,
        *,
        tz: tzinfo,
        clock: Clock | None = None,
        default_duration_minutes: int = 30,
        keep_expired: bool = False,
    ) -> None:
        self._entries = entries
        self._notifier = notifier
        self._tz = tz
        self._clock = clock or SystemClock()
        self._default_duration = default_duration_minutes
        self._keep_expired = keep_expired
        self._timers = DeadlineTimers()
        self._tenant_locks: Dict[str, asyncio.Lock] = {}
        self._entry_locks: Dict[str, asyncio.Lock] = {}

    @property
    def pending_timer_count(self) -> int:
        return len(self._timers)

    @property
    def closed(self) -> bool:
        return self._timers.closed

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        return self._tenant_locks.setdefault(tenant_id, asyncio.Lock())

    def _entry_lock(self, entry_id: str) -> asyncio.Lock:
        return self._entry_locks.setdefault(entry_id, asyncio.Lock())

    def _today_start(self) -> datetime:
        return calendar.local_midnight(self._clock.now(), self._tz)

    def _format_time(self, moment: datetime) -> str:
        local = moment.astimezone(self._tz)
        return local.strftime("%I:%M %p").lstrip("0")

    async def _notify(self, contact: str, message: str, kind: str) -> bool:
        try:
            delivered = await self._notifier.send(contact, message, kind=kind)
        except Exception:
            logger.exception("[WaitingList] Failed to send %s to %s", kind, contact)
            return False
        if not delivered:
            logger.error("[WaitingList] %s to %s was not delivered", kind, contact)
        return bool(delivered)

    async def enqueue(self, request: EnqueueRequest) -> WaitingListEntry:
        duration = request.service_duration_minutes or self._default_duration
        async with self._tenant_lock(request.tenant_id):
            waiting = await self._entries.list_for_tenant(
                request.tenant_id,
                since=self._today_start(),
                statuses=[WaitingStatus.WAITING],
            )
            if any(entry.customer_contact == request.customer_contact for entry in waiting):
                raise AlreadyQueued(request.tenant_id, request.customer_contact)
            entry = await self._entries.add(
                WaitingListEntry(
                    id=self._entries.next_id(),
                    tenant_id=request.tenant_id,
                    customer_contact=request.customer_contact,
                    customer_name=request.customer_name,
                    service_id=request.service_id,
                    service_name=request.service_name,
                    service_duration_minutes=duration,
                    status=WaitingStatus.WAITING,
                    created_at=self._clock.now(),
                )
            )
        logger.info(
            "[WaitingList] Added %s to waiting list for %s (%s min)",
            entry.customer_name or entry.customer_contact,
            entry.service_name or "service",
            duration,
        )
        return entry

    async def on_cancellation(self, event: CancellationEvent) -> Optional[NotificationResult]:
        """Offer a freed slot to the oldest duration-compatible waiting entry."""

        if self.closed:
            logger.debug("[WaitingList] Shut down, ignoring freed slot at %s", event.slot_start)
            return None
        now = self._clock.now()
        if event.slot_start <= now:
            logger.debug("[WaitingList] Freed slot at %s already started", event.slot_start)
            return None

        async with self._tenant_lock(event.tenant_id):
            candidates = await self._entries.list_for_tenant(
                event.tenant_id,
                since=self._today_start(),
                statuses=[WaitingStatus.WAITING],
            )
            entry = next(
                (
                    candidate
                    for candidate in candidates
                    if candidate.service_duration_minutes <= event.duration_minutes
                ),
                None,
            )
            if entry is None:
                logger.debug("[WaitingList] No matching entries for cancelled slot")
                return None
            if self.closed:
                return None

            window = response_window_minutes(event.slot_start, now)
            deadline = now + timedelta(minutes=window)
            notified = await self._entries.save(
                entry.transition_to(WaitingStatus.NOTIFIED).model_copy(
                    update={
                        "notified_at": now,
                        "notified_slot_start": event.slot_start,
                        "response_deadline": deadline,
                        "offer": event,
                    }
                )
            )
            self._timers.schedule(
                notified.id,
                (deadline - self._clock.now()).total_seconds(),
                partial(self.handle_timeout, notified.id),
            )

        service = notified.service_name or event.service_name or "service"
        delivered = await self._notify(
            notified.customer_contact,
            f"Great news! A {self._format_time(event.slot_start)} appointment just opened up "
            f"for your {service}. Reply YES within {window} minutes to grab it, or NO to pass.",
            "waiting_list_notification",
        )
        logger.info(
            "[WaitingList] Notified %s about %s slot on %s, window %s min",
            notified.customer_name or notified.customer_contact,
            self._format_time(event.slot_start),
            event.resource_id,
            window,
        )
        return NotificationResult(
            entry=notified,
            response_window_minutes=window,
            deadline=deadline,
            delivered=delivered,
        )

    async def on_response(self, customer_contact: str, accepted: bool) -> OfferResolution:
        """Resolve the contact's pending offer; late or duplicate replies are no-ops."""

        pending = await self._entries.find_notified_by_contact(customer_contact)
        if pending is None:
            logger.debug("[WaitingList] No notified entry found for %s", customer_contact)
            return OfferResolution(action="not_found")

        async with self._entry_lock(pending.id):
            latest = await self._entries.get(pending.id)
            if latest is None or latest.status != WaitingStatus.NOTIFIED:
                return OfferResolution(action="not_found")
            self._timers.cancel(latest.id)
            target = WaitingStatus.BOOKED if accepted else WaitingStatus.NO_RESPONSE
            resolved = await self._entries.save(latest.transition_to(target))

        slot_start = resolved.notified_slot_start
        if accepted:
            # confirmation goes out from attach_booking once the appointment exists
            logger.info(
                "[WaitingList] %s confirmed - booking slot",
                resolved.customer_name or resolved.customer_contact,
            )
            return OfferResolution(action="booked", entry=resolved, slot_start=slot_start)

        logger.info(
            "[WaitingList] %s passed - notifying next in line",
            resolved.customer_name or resolved.customer_contact,
        )
        await self._cascade(resolved.offer)
        return OfferResolution(action="passed", entry=resolved, slot_start=slot_start)

    async def handle_timeout(self, entry_id: str) -> bool:
        """Deadline reached without a reply: treated as a decline."""

        async with self._entry_lock(entry_id):
            entry = await self._entries.get(entry_id)
            if entry is None or entry.status != WaitingStatus.NOTIFIED:
                return False
            self._timers.cancel(entry_id)
            lapsed = await self._entries.save(entry.transition_to(WaitingStatus.NO_RESPONSE))

        logger.info(
            "[WaitingList] %s didn't respond in time",
            lapsed.customer_name or lapsed.customer_contact,
        )
        await self._notify(
            lapsed.customer_contact,
            "The appointment slot has been offered to the next person. "
            "We'll text you if another opens up!",
            "waiting_list_timeout",
        )
        await self._cascade(lapsed.offer)
        return True

    async def _cascade(self, offer: Optional[CancellationEvent]) -> None:
        if offer is None:
            return
        if offer.slot_start <= self._clock.now():
            logger.debug("[WaitingList] Slot at %s has passed, cascade stops", offer.slot_start)
            return
        await self.on_cancellation(offer)

    async def attach_booking(self, entry_id: str, appointment_id: str) -> WaitingListEntry:
        async with self._entry_lock(entry_id):
            entry = await self._entries.get(entry_id)
            if entry is None:
                raise WaitingEntryNotFound(f"Waiting list entry '{entry_id}' not found")
            if entry.status != WaitingStatus.BOOKED:
                raise InvalidRequest(
                    f"Waiting list entry '{entry_id}' is {entry.status.value}, not booked"
                )
            booked = await self._entries.save(
                entry.model_copy(update={"booked_appointment_id": appointment_id})
            )

        if booked.notified_slot_start is not None:
            await self._notify(
                booked.customer_contact,
                f"You're confirmed for {self._format_time(booked.notified_slot_start)} today! "
                "See you soon.",
                "waiting_list_confirmation",
            )
        return booked

    async def today_list(self, tenant_id: str) -> WaitingListSummary:
        entries = await self._entries.list_for_tenant(tenant_id, since=self._today_start())

        def _count(status: WaitingStatus) -> int:
            return sum(1 for entry in entries if entry.status == status)

        return WaitingListSummary(
            tenant_id=tenant_id,
            entries=entries,
            count=len(entries),
            waiting=_count(WaitingStatus.WAITING),
            notified=_count(WaitingStatus.NOTIFIED),
            booked=_count(WaitingStatus.BOOKED),
        )

    async def position(self, tenant_id: str, customer_contact: str) -> Optional[int]:
        waiting = await self._entries.list_for_tenant(
            tenant_id, since=self._today_start(), statuses=[WaitingStatus.WAITING]
        )
        for index, entry in enumerate(waiting, start=1):
            if entry.customer_contact == customer_contact:
                return index
        return None

    async def remove(self, tenant_id: str, customer_contact: str) -> None:
        async with self._tenant_lock(tenant_id):
            waiting = await self._entries.list_for_tenant(
                tenant_id, since=self._today_start(), statuses=[WaitingStatus.WAITING]
            )
            removed: List[str] = []
            for entry in waiting:
                if entry.customer_contact == customer_contact:
                    await self._entries.delete(entry.id)
                    removed.append(entry.id)
        if not removed:
            raise WaitingEntryNotFound("Not on waiting list")
        logger.info("[WaitingList] Removed %s from waiting list", customer_contact)

    async def sweep_daily(self) -> int:
        """Purge (or expire) every entry created before local midnight."""

        stale = await self._entries.list_created_before(self._today_start())
        swept = 0
        for entry in stale:
            async with self._entry_lock(entry.id):
                self._timers.cancel(entry.id)
                if not self._keep_expired:
                    if await self._entries.delete(entry.id):
                        swept += 1
                    continue
                latest = await self._entries.get(entry.id)
                if latest is not None and not latest.status.is_terminal:
                    await self._entries.save(latest.transition_to(WaitingStatus.EXPIRED))
                    swept += 1
            if not self._keep_expired:
                self._entry_locks.pop(entry.id, None)
        logger.info("[WaitingList] Reset complete - swept %s old entries", swept)
        return swept

    async def shutdown(self) -> int:
        """Cancel every deadline, including ones already firing, and stop new offers."""

        cancelled = await self._timers.shutdown()
        logger.info("[WaitingList] Cleared %s active timeouts", cancelled)
        return cancelled
