from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from slotbook.dependencies.services import get_booking_engine
from slotbook.schemas.appointment import (
    Appointment,
    AppointmentListResponse,
    AppointmentQuery,
    AppointmentStatus,
    BookingRequest,
    CancelRequest,
    RescheduleRequest,
    StatusUpdateRequest,
)
from slotbook.services import BookingEngine
from slotbook.services.exceptions import ServiceError

router = APIRouter()


@router.post("", response_model=Appointment, status_code=201)
async def book_appointment(
    req: BookingRequest,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.create(req)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


@router.get("", response_model=AppointmentListResponse)
async def list_appointments(
    tenant_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    status: Optional[AppointmentStatus] = None,
    engine: BookingEngine = Depends(get_booking_engine),
):
    items = await engine.query(
        AppointmentQuery(
            tenant_id=tenant_id,
            resource_id=resource_id,
            date_from=date_from,
            date_to=date_to,
            status=status,
        )
    )
    return AppointmentListResponse(total=len(items), items=items)


@router.get("/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: str,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.get(appointment_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


@router.patch("/{appointment_id}", response_model=Appointment)
async def modify_appointment(
    appointment_id: str,
    req: RescheduleRequest,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.modify(appointment_id, req)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


@router.post("/{appointment_id}/cancel", response_model=Appointment)
async def cancel_appointment(
    appointment_id: str,
    req: CancelRequest,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.cancel(appointment_id, req.reason, req.notes)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


@router.post("/{appointment_id}/status", response_model=Appointment)
async def update_status(
    appointment_id: str,
    req: StatusUpdateRequest,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.transition(appointment_id, req.status)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc


@router.delete("/{appointment_id}", status_code=204)
async def delete_appointment(
    appointment_id: str,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        await engine.delete(appointment_id)
    except ServiceError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_detail()) from exc
    return Response(status_code=204)
