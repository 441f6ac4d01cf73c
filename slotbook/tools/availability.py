from typing import List

from fastapi import APIRouter, Depends, HTTPException

from slotbook.dependencies.services import get_availability_service
from slotbook.schemas.availability import (
    DayAvailabilityRequest,
    RangeRequest,
    RangeResponse,
    ResourceAvailability,
    SlotRequest,
    SlotResponse,
)
from slotbook.services import AvailabilityService
from slotbook.services.exceptions import ServiceError

router = APIRouter()


@router.post("/slots", response_model=SlotResponse)
async def list_slots(
    req: SlotRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        slots = await service.compute_slots(
            req.resource_id,
            req.date,
            req.duration_minutes,
            req.interval_minutes,
            req.buffer_minutes,
        )
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
    if req.only_available:
        slots = [slot for slot in slots if slot.is_available]
    return SlotResponse(
        resource_id=req.resource_id,
        date=req.date,
        duration_minutes=req.duration_minutes,
        slots=slots,
    )


@router.post("/range", response_model=RangeResponse)
async def list_range(
    req: RangeRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        days = await service.compute_range(
            req.resource_id,
            req.start_date,
            req.end_date,
            req.duration_minutes,
            req.interval_minutes,
            req.buffer_minutes,
        )
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
    return RangeResponse(resource_id=req.resource_id, days=days)


@router.post("/day", response_model=List[ResourceAvailability])
async def day_availability(
    req: DayAvailabilityRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        return await service.availability_for_date(
            req.tenant_id, req.date, req.duration_minutes, req.resource_ids
        )
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
