from typing import List, Optional, Tuple
from datetime import datetime, timedelta
from uuid import UUID
import logging

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import (
    AuthorizationError, ConflictError, NoActivePackageError, NotFoundError,
    OverConsumptionError, PackageError, PauseNotAllowedError, ValidationError
)
from app.core.pause_rules import can_pause, get_max_pauses, pauses_remaining
from app.core.pricing import PackageType, get_expiry_months
from app.models.approval_request import ApprovalRequest, ApprovalRequestType
from app.models.lesson import Lesson, LessonStatus
from app.models.package import StudentPackage, PackageStatus
from app.models.payment import Payment
from app.models.user import User
from app.schemas.approval import PauseRequestPayload, PackageExtensionPayload
from app.services.approval_service import ApprovalService
from app.services.credit_ledger_service import CreditLedgerService, EPSILON

logger = logging.getLogger(__name__)


def package_target_key(package_id: UUID) -> str:
    return f"package:{package_id}"


class PackageService:
    """Student packages: creation, consumption, pause and extension.

    ``create_from_payment``, ``consume``, ``apply_pause`` and
    ``apply_extension`` only flush; they run inside a transaction owned by
    payment intake, lesson completion or approval resolution. The
    ``request_*`` and ``resume_from_pause`` entry points commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_from_payment(
        self,
        payment: Payment,
        package_type: PackageType,
        hours: float,
        course_title: Optional[str] = None,
        purchase_date: Optional[datetime] = None,
    ) -> StudentPackage:
        """Create the package a completed payment bought"""
        if hours <= 0:
            raise ValidationError(f"Package hours must be positive, got {hours!r}")

        purchase_date = purchase_date or utcnow()
        expires_at = purchase_date + relativedelta(months=get_expiry_months(package_type))

        package = StudentPackage(
            student_id=payment.student_id,
            course_id=payment.course_id,
            course_title=course_title,
            payment_id=payment.id,
            package_type=package_type,
            total_hours=hours,
            remaining_hours=hours,
            price_cents=payment.amount_cents,
            currency=payment.currency,
            purchase_date=purchase_date,
            expires_at=expires_at,
            is_paused=False,
            total_days_paused=0,
            pause_count=0,
            forfeited_hours=0,
            reservation_version=0,
            status=PackageStatus.ACTIVE,
        )
        self.db.add(package)
        await self.db.flush()

        logger.info(
            f"Created {package_type.value} package {package.id} for student {payment.student_id}: "
            f"{hours:g}h, expires {expires_at.isoformat()}"
        )
        return package

    async def get_package(self, package_id: UUID) -> StudentPackage:
        result = await self.db.execute(
            select(StudentPackage)
            .where(StudentPackage.id == package_id)
            .execution_options(populate_existing=True)
        )
        package = result.scalar_one_or_none()
        if not package:
            raise NotFoundError("Package not found")
        return package

    async def list_packages(self, student_id: UUID) -> List[StudentPackage]:
        """Get a student's packages, newest first"""
        result = await self.db.execute(
            select(StudentPackage)
            .where(StudentPackage.student_id == student_id)
            .order_by(StudentPackage.purchase_date.desc())
        )
        return list(result.scalars().all())

    async def reserved_hours(self, package_id: UUID) -> float:
        """Hours held by scheduled lessons paid from this package"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(Lesson.duration_hours), 0.0)).where(
                and_(
                    Lesson.package_id == package_id,
                    Lesson.status == LessonStatus.SCHEDULED,
                )
            )
        )
        return float(result.scalar_one())

    async def unreserved_hours(self, package: StudentPackage) -> float:
        return max(0.0, package.remaining_hours - await self.reserved_hours(package.id))

    async def find_bookable_package(
        self,
        student_id: UUID,
        course_id: str,
        hours: float,
        now: Optional[datetime] = None,
    ) -> StudentPackage:
        """Pick the package a new booking will be paid from.

        Only active, unpaused, unexpired packages for the course qualify, and
        hours already held by scheduled lessons do not count. The package
        closest to expiry wins.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(StudentPackage)
            .where(
                and_(
                    StudentPackage.student_id == student_id,
                    StudentPackage.course_id == course_id,
                    StudentPackage.status == PackageStatus.ACTIVE,
                    StudentPackage.is_paused.is_(False),
                    StudentPackage.expires_at > now,
                )
            )
            .order_by(StudentPackage.expires_at.asc())
            .execution_options(populate_existing=True)
        )
        for package in result.scalars().all():
            if await self.unreserved_hours(package) + EPSILON >= hours:
                return package

        raise NoActivePackageError(
            "No active package has enough hours for this lesson. Please top up your credits."
        )

    async def reserve_package(
        self,
        student_id: UUID,
        course_id: str,
        hours: float,
        now: Optional[datetime] = None,
    ) -> StudentPackage:
        """Pick the package for a booking and claim it against concurrent bookings.

        The pick is confirmed by bumping ``reservation_version`` only if it
        still holds the value read with the package. A concurrent booking
        against the same package makes that write miss, and the choice is
        made again with its lesson counted. The caller commits.
        """
        for attempt in range(1, settings.LEDGER_MAX_RETRIES + 1):
            package = await self.find_bookable_package(student_id, course_id, hours, now=now)
            result = await self.db.execute(
                update(StudentPackage)
                .where(
                    and_(
                        StudentPackage.id == package.id,
                        StudentPackage.reservation_version == package.reservation_version,
                    )
                )
                .values(reservation_version=StudentPackage.reservation_version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return package

            logger.warning(
                f"Package {package.id} was booked concurrently, choosing again "
                f"(attempt {attempt}/{settings.LEDGER_MAX_RETRIES})"
            )

        raise ConflictError("Too many concurrent bookings for this package, please try again")

    async def consume(self, package_id: UUID, hours: float) -> StudentPackage:
        """Take hours off a package for a completed lesson"""
        if hours <= 0:
            raise ValidationError(f"Hours must be positive, got {hours!r}")

        result = await self.db.execute(
            update(StudentPackage)
            .where(
                and_(
                    StudentPackage.id == package_id,
                    StudentPackage.remaining_hours >= hours,
                )
            )
            .values(
                remaining_hours=StudentPackage.remaining_hours - hours,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            package = await self.get_package(package_id)
            raise OverConsumptionError(
                f"Package {package_id} has {package.remaining_hours:g}h remaining, cannot consume {hours:g}h"
            )

        # An expired package keeps its status; only a running one completes
        await self.db.execute(
            update(StudentPackage)
            .where(
                and_(
                    StudentPackage.id == package_id,
                    StudentPackage.remaining_hours <= EPSILON,
                    StudentPackage.status == PackageStatus.ACTIVE,
                )
            )
            .values(status=PackageStatus.COMPLETED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        package = await self.get_package(package_id)
        logger.info(f"Consumed {hours:g}h from package {package_id}, {package.remaining_hours:g}h left")
        return package

    async def request_pause(
        self, package_id: UUID, student: User, reason: Optional[str] = None
    ) -> ApprovalRequest:
        """Ask the tutor to pause a package"""
        package = await self._get_owned_package(package_id, student)

        if not can_pause(package):
            if package.status != PackageStatus.ACTIVE or package.is_paused:
                raise PauseNotAllowedError("Only an active, running package can be paused")
            raise PauseNotAllowedError(
                f"This package has used all {get_max_pauses(package.total_hours)} of its pauses"
            )

        approvals = ApprovalService(self.db)
        target_key = package_target_key(package.id)
        if await approvals.has_pending(target_key):
            raise ConflictError("A request for this package is already waiting for approval")

        try:
            request = await approvals.create_approval_request(
                ApprovalRequestType.PAUSE_REQUEST,
                student,
                PauseRequestPayload(package_id=package.id),
                target_key,
                reason=reason,
            )
            await self.db.commit()
            return request
        except Exception:
            await self.db.rollback()
            raise

    async def apply_pause(
        self,
        package_id: UUID,
        principal: User,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StudentPackage:
        """Pause a package; the expiry clock stops until it is resumed"""
        self._require_approver(principal)
        package = await self.get_package(package_id)
        if not can_pause(package):
            raise PauseNotAllowedError(
                f"Package cannot be paused ({pauses_remaining(package)} pauses remaining, status {package.status.value})"
            )

        now = now or utcnow()
        result = await self.db.execute(
            update(StudentPackage)
            .where(
                and_(
                    StudentPackage.id == package_id,
                    StudentPackage.status == PackageStatus.ACTIVE,
                    StudentPackage.is_paused.is_(False),
                    StudentPackage.pause_count == package.pause_count,
                )
            )
            .values(
                is_paused=True,
                paused_at=now,
                pause_reason=reason,
                pause_count=package.pause_count + 1,
                status=PackageStatus.PAUSED,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Package changed while it was being paused")

        logger.info(f"Package {package_id} paused by {principal.id}")
        return await self.get_package(package_id)

    async def resume_from_pause(
        self, package_id: UUID, principal: User, now: Optional[datetime] = None
    ) -> Tuple[StudentPackage, int]:
        """Resume a paused package, pushing the expiry back by the days it was paused"""
        self._require_approver(principal)
        try:
            package = await self.get_package(package_id)
            if not package.is_paused or package.status != PackageStatus.PAUSED:
                raise PackageError("Package is not paused")

            now = now or utcnow()
            days_paused = max(0, (now - package.paused_at).days) if package.paused_at else 0

            result = await self.db.execute(
                update(StudentPackage)
                .where(
                    and_(
                        StudentPackage.id == package_id,
                        StudentPackage.is_paused.is_(True),
                    )
                )
                .values(
                    is_paused=False,
                    paused_at=None,
                    pause_reason=None,
                    total_days_paused=package.total_days_paused + days_paused,
                    expires_at=package.expires_at + timedelta(days=days_paused),
                    status=PackageStatus.ACTIVE,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Package changed while it was being resumed")

            await self.db.commit()
            package = await self.get_package(package_id)
            logger.info(f"Package {package_id} resumed after {days_paused} days, expires {package.expires_at.isoformat()}")
            return package, days_paused

        except Exception:
            await self.db.rollback()
            raise

    async def request_extension(
        self, package_id: UUID, student: User, days: int, reason: Optional[str] = None
    ) -> ApprovalRequest:
        """Ask the tutor to push a package's expiry date back"""
        if days <= 0:
            raise ValidationError("Extension must be at least one day")

        package = await self._get_owned_package(package_id, student)
        if package.status == PackageStatus.COMPLETED:
            raise PackageError("A fully used package cannot be extended")

        approvals = ApprovalService(self.db)
        target_key = package_target_key(package.id)
        if await approvals.has_pending(target_key):
            raise ConflictError("A request for this package is already waiting for approval")

        try:
            request = await approvals.create_approval_request(
                ApprovalRequestType.PACKAGE_EXTENSION,
                student,
                PackageExtensionPayload(package_id=package.id, extension_days=days),
                target_key,
                reason=reason,
            )
            await self.db.commit()
            return request
        except Exception:
            await self.db.rollback()
            raise

    async def apply_extension(
        self,
        package_id: UUID,
        days: int,
        principal: User,
        now: Optional[datetime] = None,
    ) -> StudentPackage:
        """Extend a package's expiry.

        An expired package with hours left comes back to life when the new
        expiry is in the future, and the hours forfeited at expiry go back
        into the student's ledger.
        """
        self._require_approver(principal)
        if days <= 0:
            raise ValidationError("Extension must be at least one day")

        now = now or utcnow()
        package = await self.get_package(package_id)
        new_expiry = package.expires_at + timedelta(days=days)

        reactivate = (
            package.status == PackageStatus.EXPIRED
            and new_expiry > now
            and package.remaining_hours > EPSILON
        )

        values = {"expires_at": new_expiry, "updated_at": now}
        if reactivate:
            values.update(status=PackageStatus.ACTIVE, forfeited_hours=0)

        result = await self.db.execute(
            update(StudentPackage)
            .where(
                and_(
                    StudentPackage.id == package_id,
                    StudentPackage.expires_at == package.expires_at,
                    StudentPackage.status == package.status,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Package changed while it was being extended")

        if reactivate and package.forfeited_hours > EPSILON:
            await CreditLedgerService(self.db).restore(package.student_id, package.forfeited_hours)

        logger.info(
            f"Package {package_id} extended by {days} days to {new_expiry.isoformat()}"
            + (" and reactivated" if reactivate else "")
        )
        return await self.get_package(package_id)

    async def _get_owned_package(self, package_id: UUID, user: User) -> StudentPackage:
        package = await self.get_package(package_id)
        if package.student_id != user.id and not user.is_approver:
            raise AuthorizationError("This package belongs to another student")
        return package

    @staticmethod
    def _require_approver(principal: User):
        if not principal.is_approver:
            raise AuthorizationError("Only a tutor or admin can change a package's schedule")
