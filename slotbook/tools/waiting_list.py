import logging

from fastapi import APIRouter, Depends, HTTPException

from slotbook.dependencies.services import get_booking_engine, get_waiting_list_service
from slotbook.schemas.appointment import BookingRequest
from slotbook.schemas.waiting_list import (
    EnqueueRequest,
    EnqueueResponse,
    OfferResolution,
    OfferResponseRequest,
    WaitingListSummary,
)
from slotbook.services import BookingEngine, WaitingListService
from slotbook.services.exceptions import ServiceError, WaitingEntryNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=EnqueueResponse, status_code=201)
async def join_waiting_list(
    req: EnqueueRequest,
    service: WaitingListService = Depends(get_waiting_list_service),
):
    try:
        entry = await service.enqueue(req)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
    position = await service.position(entry.tenant_id, entry.customer_contact)
    return EnqueueResponse(entry=entry, position=position)


@router.post("/respond", response_model=OfferResolution)
async def respond_to_offer(
    req: OfferResponseRequest,
    service: WaitingListService = Depends(get_waiting_list_service),
    engine: BookingEngine = Depends(get_booking_engine),
):
    resolution = await service.on_response(req.customer_contact, req.accepted)
    if resolution.action != "booked" or resolution.entry is None:
        return resolution

    entry = resolution.entry
    offer = entry.offer
    if offer is None:
        return resolution
    try:
        appointment = await engine.create(
            BookingRequest(
                tenant_id=entry.tenant_id,
                resource_id=offer.resource_id,
                service_id=entry.service_id,
                service_duration_minutes=entry.service_duration_minutes,
                start_time=offer.slot_start,
                customer_name=entry.customer_name,
                customer_phone=entry.customer_contact,
                notes="Booked from waiting list",
            )
        )
        entry = await service.attach_booking(entry.id, appointment.id)
    except ServiceError as exc:
        logger.error(
            "Waiting list entry %s accepted but booking failed, left booked without an "
            "appointment and no confirmation sent: %s",
            entry.id,
            exc.message,
        )
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
    return resolution.model_copy(update={"entry": entry, "appointment_id": appointment.id})


@router.get("/{tenant_id}", response_model=WaitingListSummary)
async def today_waiting_list(
    tenant_id: str,
    service: WaitingListService = Depends(get_waiting_list_service),
):
    return await service.today_list(tenant_id)


@router.get("/{tenant_id}/position")
async def waiting_list_position(
    tenant_id: str,
    customer_contact: str,
    service: WaitingListService = Depends(get_waiting_list_service),
):
    position = await service.position(tenant_id, customer_contact)
    if position is None:
        exc = WaitingEntryNotFound("Not on waiting list")
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail())
    return {"tenant_id": tenant_id, "customer_contact": customer_contact, "position": position}


@router.delete("/{tenant_id}")
async def leave_waiting_list(
    tenant_id: str,
    customer_contact: str,
    service: WaitingListService = Depends(get_waiting_list_service),
):
    try:
        await service.remove(tenant_id, customer_contact)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
    return {"removed": True}
