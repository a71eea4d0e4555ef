from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime
from uuid import UUID

from app.core.pricing import PackageType
from app.models.package import PackageStatus


class PackageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    course_id: str
    course_title: Optional[str] = None
    package_type: PackageType
    total_hours: float
    remaining_hours: float
    price_cents: int
    currency: str
    purchase_date: datetime
    expires_at: datetime
    is_paused: bool
    paused_at: Optional[datetime] = None
    total_days_paused: int
    pause_count: int
    forfeited_hours: float = 0
    pauses_remaining: int = 0
    status: PackageStatus


class PauseRequestBody(BaseModel):
    reason: Optional[str] = Field(None, description="Why the student needs a break")


class ExtensionRequestBody(BaseModel):
    days: int = Field(..., gt=0, le=365, description="Days to add to the expiry date")
    reason: Optional[str] = Field(None, description="Why the extension is needed")


class CreditLedgerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    student_id: UUID
    total_hours: float
    uncommitted_hours: float
    committed_hours: float
    completed_hours: float
