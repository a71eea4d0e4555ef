from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import UUID
import asyncio
import logging

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import AsyncSessionLocal, utcnow
from app.models.package import StudentPackage, PackageStatus
from app.services.credit_ledger_service import CreditLedgerService, EPSILON
from app.services.notification_service import NotificationService
from app.services.package_service import PackageService

logger = logging.getLogger(__name__)

# Attempts per scheduled run
SWEEP_ATTEMPTS = 2


@dataclass
class ExpirySweepResult:
    expired: List[UUID] = field(default_factory=list)
    failed: List[UUID] = field(default_factory=list)
    forfeited_hours: float = 0.0
    notified: int = 0


async def expire_packages(db: AsyncSession, now: Optional[datetime] = None) -> ExpirySweepResult:
    """Expire running packages whose expiry date has passed.

    Each package is expired in its own savepoint together with forfeiting
    its unreserved hours, so one bad package does not hold up the rest.
    Hours still held by scheduled lessons stay committed and are settled
    when those lessons complete or are cancelled. Notifications go out after
    the status changes are committed; a failed notification is logged and
    does not undo the expiry.
    """
    now = now or utcnow()
    result = ExpirySweepResult()

    rows = (await db.execute(
        select(StudentPackage.id, StudentPackage.student_id).where(
            and_(
                StudentPackage.status == PackageStatus.ACTIVE,
                StudentPackage.is_paused.is_(False),
                StudentPackage.expires_at < now,
            )
        ).order_by(StudentPackage.expires_at)
    )).all()

    if not rows:
        logger.info("No packages to expire")
        return result

    ledger = CreditLedgerService(db)
    packages = PackageService(db)

    for package_id, student_id in rows:
        try:
            async with db.begin_nested():
                changed = await db.execute(
                    update(StudentPackage)
                    .where(
                        and_(
                            StudentPackage.id == package_id,
                            StudentPackage.status == PackageStatus.ACTIVE,
                            StudentPackage.is_paused.is_(False),
                        )
                    )
                    .values(status=PackageStatus.EXPIRED, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if changed.rowcount != 1:
                    continue

                package = await packages.get_package(package_id)
                forfeit = await packages.unreserved_hours(package)

                entry = await ledger.get_entry(student_id)
                if entry is not None:
                    forfeit = min(forfeit, entry.uncommitted_hours)
                else:
                    forfeit = 0.0

                if forfeit > EPSILON:
                    await ledger.forfeit(student_id, forfeit)
                    await db.execute(
                        update(StudentPackage)
                        .where(StudentPackage.id == package_id)
                        .values(forfeited_hours=forfeit)
                        .execution_options(synchronize_session=False)
                    )
                    result.forfeited_hours += forfeit

            result.expired.append(package_id)
            logger.info(f"Expired package {package_id} for student {student_id}, forfeited {forfeit:g}h")

        except Exception as e:
            result.failed.append(package_id)
            logger.error(f"Error expiring package {package_id}: {e}")

    await db.commit()

    notifications = NotificationService(db)
    for package_id in result.expired:
        try:
            async with db.begin_nested():
                package = await packages.get_package(package_id)
                await notifications.notify_package_expired(package)
            result.notified += 1
        except Exception as e:
            logger.error(f"Error notifying expiry of package {package_id}: {e}")

    await db.commit()

    logger.info(
        f"Expired {len(result.expired)} packages ({len(result.failed)} failed), "
        f"forfeited {result.forfeited_hours:g}h, sent {result.notified} notifications"
    )
    return result


async def run_expiry_sweep(now: Optional[datetime] = None) -> ExpirySweepResult:
    """Background task to expire packages, retried once on failure"""
    for attempt in range(1, SWEEP_ATTEMPTS + 1):
        async with AsyncSessionLocal() as db:
            try:
                return await expire_packages(db, now=now)
            except Exception as e:
                await db.rollback()
                logger.error(f"Error in package expiry sweep (attempt {attempt}/{SWEEP_ATTEMPTS}): {e}")
                if attempt == SWEEP_ATTEMPTS:
                    raise


async def schedule_expiry_tasks():
    """Run the expiry sweep once a day at midnight UTC"""
    last_run = None
    while True:
        try:
            now = utcnow()
            if now.hour == 0 and last_run != now.date():
                await run_expiry_sweep()
                last_run = now.date()

            await asyncio.sleep(300)

        except Exception as e:
            logger.error(f"Error in expiry task scheduler: {e}")
            await asyncio.sleep(60)


def expire_packages_task():
    """Synchronous entry point for running the expiry sweep from cron"""
    return asyncio.run(run_expiry_sweep())
