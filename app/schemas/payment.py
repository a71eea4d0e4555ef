from pydantic import BaseModel, Field, ConfigDict
from typing import Literal
from decimal import Decimal
from uuid import UUID

from app.core.pricing import PackageType


class PriceQuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    package_type: PackageType
    duration: int
    sessions: int
    hours: float
    base_per_lesson: Decimal
    discounted_per_lesson: Decimal
    discount_percent: int
    subtotal: Decimal
    processing_fee: Decimal
    total: Decimal
    total_cents: int


class CheckoutRequest(BaseModel):
    package_type: PackageType = Field(..., description="Package to buy")
    duration: Literal[30, 60] = Field(..., description="Session length in minutes")
    course_id: str = Field(..., description="Course ID")
    course_title: str = Field(..., description="Course title")


class SendLinkRequest(CheckoutRequest):
    student_id: UUID = Field(..., description="Student the link is for")


class CheckoutResponse(BaseModel):
    url: str


class CheckoutMetadata(BaseModel):
    """Metadata round-tripped through the Stripe checkout session"""
    model_config = ConfigDict(populate_by_name=True)

    student_id: UUID = Field(..., alias="studentId")
    course_id: str = Field(..., alias="courseId")
    course_title: str = Field("", alias="courseTitle")
    package_type: PackageType = Field(..., alias="packageType")
    duration: int = Field(..., alias="duration")
    hours: float = Field(..., gt=0, alias="hours")
    sessions: int = Field(..., gt=0, alias="sessions")
    subtotal: Decimal = Field(..., alias="subtotal")
    processing_fee: Decimal = Field(..., alias="processingFee")


class WebhookResponse(BaseModel):
    status: str
