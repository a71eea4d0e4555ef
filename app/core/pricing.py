from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import List
import enum

from app.core.exceptions import ValidationError


class PackageType(str, enum.Enum):
    SINGLE = "single"
    TEN_PACK = "10-pack"
    FULL_COURSE = "full-course"


@dataclass(frozen=True)
class PriceCalculation:
    """Price breakdown for one package purchase"""
    package_type: PackageType
    duration: int  # minutes per session
    sessions: int
    hours: float
    base_per_lesson: Decimal
    discounted_per_lesson: Decimal
    discount_percent: int
    subtotal: Decimal
    processing_fee: Decimal
    total: Decimal
    total_cents: int


# Base per-session rates (EUR); 60-min is not derived from 30-min
BASE_RATES = {
    30: Decimal("15.84"),
    60: Decimal("31.68"),
}

DISCOUNT_PERCENT = {
    PackageType.SINGLE: 0,
    PackageType.TEN_PACK: 10,
    PackageType.FULL_COURSE: 20,
}

# Full course is 60 hours whatever the session length
SESSIONS_PER_PACKAGE = {
    PackageType.SINGLE: {30: 1, 60: 1},
    PackageType.TEN_PACK: {30: 10, 60: 10},
    PackageType.FULL_COURSE: {30: 120, 60: 60},
}

PACKAGE_EXPIRY_MONTHS = {
    PackageType.SINGLE: 3,
    PackageType.TEN_PACK: 6,
    PackageType.FULL_COURSE: 12,
}

PACKAGE_LABELS = {
    PackageType.SINGLE: "Single Session",
    PackageType.TEN_PACK: "10-Pack",
    PackageType.FULL_COURSE: "Full Course",
}

PROCESSING_FEE_RATE = Decimal("0.03")

CENT = Decimal("0.01")


def _to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_package_type(value) -> PackageType:
    """Coerce a raw package type, rejecting unknown values"""
    try:
        return PackageType(value)
    except ValueError:
        raise ValidationError(f"Unknown package type: {value!r}")


def parse_duration(value) -> int:
    """Coerce a raw session duration, rejecting unsupported lengths"""
    try:
        duration = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid duration: {value!r}")
    if duration not in BASE_RATES:
        raise ValidationError(f"Unsupported duration: {duration} minutes")
    return duration


def calculate_price(package_type, duration) -> PriceCalculation:
    """Calculate the price of a package.

    Every stage is rounded to cents before the next one is computed
    (per-lesson, subtotal, fee, total) so the figures reconcile with what
    Stripe charges.
    """
    package_type = parse_package_type(package_type)
    duration = parse_duration(duration)

    base_per_lesson = BASE_RATES[duration]
    discount_percent = DISCOUNT_PERCENT[package_type]
    sessions = SESSIONS_PER_PACKAGE[package_type][duration]
    hours = sessions * duration / 60

    discounted_per_lesson = _to_cents(base_per_lesson * (100 - discount_percent) / 100)
    subtotal = _to_cents(discounted_per_lesson * sessions)
    processing_fee = _to_cents(subtotal * PROCESSING_FEE_RATE)
    total = _to_cents(subtotal + processing_fee)

    return PriceCalculation(
        package_type=package_type,
        duration=duration,
        sessions=sessions,
        hours=hours,
        base_per_lesson=base_per_lesson,
        discounted_per_lesson=discounted_per_lesson,
        discount_percent=discount_percent,
        subtotal=subtotal,
        processing_fee=processing_fee,
        total=total,
        total_cents=int(total * 100),
    )


def get_all_prices() -> List[PriceCalculation]:
    """Price every package/duration combination"""
    return [
        calculate_price(package_type, duration)
        for package_type in PackageType
        for duration in sorted(BASE_RATES)
    ]


def get_expiry_months(package_type) -> int:
    """Months a package stays valid after purchase"""
    return PACKAGE_EXPIRY_MONTHS[parse_package_type(package_type)]


def get_product_name(course_title: str, package_type, duration: int) -> str:
    """Line item name shown on the Stripe checkout page"""
    label = PACKAGE_LABELS[parse_package_type(package_type)]
    return f"{course_title} - {label} ({duration}min)"
