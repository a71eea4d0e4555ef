from typing import List, Optional
from datetime import date
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_approver
from app.core.database import get_db
from app.models.user import User
from app.schemas.booking import SlotResponse, ToggleAvailabilityRequest, ScheduleTemplateRequest
from app.services.booking_service import BookingService

router = APIRouter()


@router.get("/slots", response_model=List[SlotResponse])
async def get_available_slots(
    tutor_id: Optional[UUID] = Query(None, description="Only this tutor's slots"),
    start_date: Optional[date] = Query(None, description="First day, defaults to today"),
    end_date: Optional[date] = Query(None, description="Last day"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Open, unbooked slots"""
    return await BookingService(db).get_available_slots(tutor_id, start_date, end_date)


@router.post("/slots/toggle", response_model=SlotResponse)
async def toggle_availability(
    request: ToggleAvailabilityRequest,
    current_user: User = Depends(require_approver),
    db: AsyncSession = Depends(get_db),
):
    """Open or close one hour of the tutor's calendar"""
    return await BookingService(db).toggle_availability(current_user, request.date, request.hour)


@router.post("/slots/template", response_model=List[SlotResponse])
async def apply_schedule_template(
    request: ScheduleTemplateRequest,
    current_user: User = Depends(require_approver),
    db: AsyncSession = Depends(get_db),
):
    """Open a weekly pattern of hours across a date range"""
    return await BookingService(db).apply_schedule_template(
        current_user,
        request.start_date,
        request.end_date,
        request.weekdays,
        request.hours,
    )
