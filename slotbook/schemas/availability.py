from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class WorkingSchedule(BaseModel):
    start_time: str = "09:00"  # HH:MM local time
    end_time: str = "17:00"
    enabled: bool = True


class StaffMember(BaseModel):
    resource_id: str
    tenant_id: str
    name: str
    active: bool = True
    # keyed by weekday, 0 = Sunday
    schedule: Dict[int, WorkingSchedule] = Field(default_factory=dict)


class Slot(BaseModel):
    start_time: datetime
    end_time: datetime
    resource_id: str
    is_available: bool


class SlotRequest(BaseModel):
    resource_id: str
    date: date
    duration_minutes: int = Field(gt=0)
    interval_minutes: Optional[int] = Field(default=None, gt=0)
    buffer_minutes: Optional[int] = Field(default=None, ge=0)
    only_available: bool = False


class SlotResponse(BaseModel):
    resource_id: str
    date: date
    duration_minutes: int
    slots: List[Slot]


class RangeRequest(BaseModel):
    resource_id: str
    start_date: date
    end_date: date
    duration_minutes: int = Field(gt=0)
    interval_minutes: Optional[int] = Field(default=None, gt=0)
    buffer_minutes: Optional[int] = Field(default=None, ge=0)


class RangeResponse(BaseModel):
    resource_id: str
    days: Dict[date, List[Slot]]


class ResourceAvailability(BaseModel):
    resource_id: str
    resource_name: str
    date: date
    duration_minutes: int
    available_slots: List[Slot]
    is_available: bool


class DayAvailabilityRequest(BaseModel):
    tenant_id: str
    date: date
    duration_minutes: int = Field(gt=0)
    resource_ids: Optional[List[str]] = None
