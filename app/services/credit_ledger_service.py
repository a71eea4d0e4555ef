from dataclasses import dataclass, replace
from typing import Callable, Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import (
    CreditError, InsufficientCreditError, LedgerConflictError, ValidationError
)
from app.models.credit_ledger import CreditLedger, CreditTransaction, CreditReason

logger = logging.getLogger(__name__)

# Hours move in half-hour steps; anything smaller is float noise
EPSILON = 1e-6


@dataclass(frozen=True)
class LedgerBuckets:
    """Immutable snapshot of a ledger entry's buckets.

    Every transition returns a new snapshot and refuses to produce one that
    breaks ``total == uncommitted + committed + completed`` or drives a
    bucket below zero, so a rejected operation never reaches the database.
    """

    total: float = 0.0
    uncommitted: float = 0.0
    committed: float = 0.0
    completed: float = 0.0

    @classmethod
    def from_entry(cls, entry) -> "LedgerBuckets":
        return cls(
            total=entry.total_hours,
            uncommitted=entry.uncommitted_hours,
            committed=entry.committed_hours,
            completed=entry.completed_hours,
        )

    def check(self) -> "LedgerBuckets":
        for name in ("total", "uncommitted", "committed", "completed"):
            if getattr(self, name) < -EPSILON:
                raise CreditError(f"Ledger bucket {name} would go negative")
        if abs(self.total - (self.uncommitted + self.committed + self.completed)) > EPSILON:
            raise CreditError("Ledger buckets no longer add up to the total")
        return self

    def purchase(self, hours: float) -> "LedgerBuckets":
        return replace(self, total=self.total + hours, uncommitted=self.uncommitted + hours).check()

    def commit(self, hours: float) -> "LedgerBuckets":
        if self.uncommitted + EPSILON < hours:
            raise InsufficientCreditError(
                f"Insufficient credit. Available: {self.uncommitted:g}h, Required: {hours:g}h"
            )
        return replace(self, uncommitted=self.uncommitted - hours, committed=self.committed + hours).check()

    def release(self, hours: float) -> "LedgerBuckets":
        if self.committed + EPSILON < hours:
            raise CreditError(f"Cannot release {hours:g}h, only {self.committed:g}h committed")
        return replace(self, uncommitted=self.uncommitted + hours, committed=self.committed - hours).check()

    def complete(self, hours: float) -> "LedgerBuckets":
        if self.committed + EPSILON < hours:
            raise CreditError(f"Cannot complete {hours:g}h, only {self.committed:g}h committed")
        return replace(self, committed=self.committed - hours, completed=self.completed + hours).check()

    def forfeit(self, hours: float) -> "LedgerBuckets":
        if self.uncommitted + EPSILON < hours:
            raise CreditError(f"Cannot forfeit {hours:g}h, only {self.uncommitted:g}h uncommitted")
        return replace(self, total=self.total - hours, uncommitted=self.uncommitted - hours).check()


class CreditLedgerService:
    """Moves hours between a student's ledger buckets.

    Writes are compare-and-set on ``CreditLedger.version``: read the entry,
    compute the new buckets, then update only if nobody else has written in
    between, retrying a bounded number of times. The service flushes but
    never commits; the caller owns the transaction so ledger movements land
    together with the records that caused them.
    """

    def __init__(self, db: AsyncSession, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries or settings.LEDGER_MAX_RETRIES

    async def get_entry(self, student_id: UUID) -> Optional[CreditLedger]:
        """Get a student's ledger entry, bypassing stale identity-map state"""
        result = await self.db.execute(
            select(CreditLedger)
            .where(CreditLedger.student_id == student_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def apply_purchase(
        self, student_id: UUID, hours: float, payment_id: Optional[UUID] = None
    ) -> CreditLedger:
        """Add purchased hours to total and uncommitted, creating the entry if needed"""
        self._check_hours(hours)
        await self._ensure_entry(student_id)
        return await self._mutate(
            student_id, hours, CreditReason.PURCHASE, LedgerBuckets.purchase, payment_id=payment_id
        )

    async def commit(self, student_id: UUID, hours: float, lesson_id: Optional[UUID] = None) -> CreditLedger:
        """Reserve uncommitted hours for a confirmed booking"""
        self._check_hours(hours)
        return await self._mutate(student_id, hours, CreditReason.BOOKING, LedgerBuckets.commit, lesson_id=lesson_id)

    async def release(self, student_id: UUID, hours: float, lesson_id: Optional[UUID] = None) -> CreditLedger:
        """Return committed hours to the uncommitted pool"""
        self._check_hours(hours)
        return await self._mutate(student_id, hours, CreditReason.RELEASE, LedgerBuckets.release, lesson_id=lesson_id)

    async def complete(self, student_id: UUID, hours: float, lesson_id: Optional[UUID] = None) -> CreditLedger:
        """Mark committed hours as used.

        Not idempotent on its own: callers check ``Lesson.completed_at``
        before calling.
        """
        self._check_hours(hours)
        return await self._mutate(
            student_id, hours, CreditReason.COMPLETION, LedgerBuckets.complete, lesson_id=lesson_id
        )

    async def forfeit(self, student_id: UUID, hours: float) -> CreditLedger:
        """Remove unused hours from the pool (package expiry)"""
        self._check_hours(hours)
        return await self._mutate(student_id, hours, CreditReason.FORFEIT, LedgerBuckets.forfeit)

    async def restore(self, student_id: UUID, hours: float) -> CreditLedger:
        """Put forfeited hours back in the pool (expired package extended)"""
        self._check_hours(hours)
        return await self._mutate(student_id, hours, CreditReason.RESTORE, LedgerBuckets.purchase)

    @staticmethod
    def _check_hours(hours: float):
        if hours is None or hours <= 0:
            raise ValidationError(f"Hours must be positive, got {hours!r}")

    async def _ensure_entry(self, student_id: UUID):
        """Insert an empty entry unless one exists; concurrent inserts are no-ops"""
        insert = pg_insert if self.db.get_bind().dialect.name == "postgresql" else sqlite_insert
        stmt = insert(CreditLedger).values(
            student_id=student_id,
            total_hours=0,
            uncommitted_hours=0,
            committed_hours=0,
            completed_hours=0,
            version=0,
        ).on_conflict_do_nothing(index_elements=["student_id"])
        await self.db.execute(stmt)

    async def _mutate(
        self,
        student_id: UUID,
        hours: float,
        reason: CreditReason,
        transition: Callable[[LedgerBuckets, float], LedgerBuckets],
        lesson_id: Optional[UUID] = None,
        payment_id: Optional[UUID] = None,
    ) -> CreditLedger:
        for attempt in range(1, self.max_retries + 1):
            row = (await self.db.execute(
                select(
                    CreditLedger.id,
                    CreditLedger.version,
                    CreditLedger.total_hours,
                    CreditLedger.uncommitted_hours,
                    CreditLedger.committed_hours,
                    CreditLedger.completed_hours,
                ).where(CreditLedger.student_id == student_id)
            )).one_or_none()

            if row is None:
                raise InsufficientCreditError("No credit found for this student")

            new = transition(LedgerBuckets.from_entry(row), hours)

            result = await self.db.execute(
                update(CreditLedger)
                .where(CreditLedger.id == row.id, CreditLedger.version == row.version)
                .values(
                    total_hours=new.total,
                    uncommitted_hours=new.uncommitted,
                    committed_hours=new.committed,
                    completed_hours=new.completed,
                    version=row.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                self.db.add(CreditTransaction(
                    student_id=student_id,
                    reason=reason,
                    hours=hours,
                    lesson_id=lesson_id,
                    payment_id=payment_id,
                    total_after=new.total,
                ))
                await self.db.flush()
                logger.info(
                    f"Ledger {reason.value} of {hours:g}h for student {student_id}: "
                    f"total={new.total:g} uncommitted={new.uncommitted:g} "
                    f"committed={new.committed:g} completed={new.completed:g}"
                )
                return await self.get_entry(student_id)

            logger.warning(
                f"Ledger version conflict for student {student_id} "
                f"({reason.value}, attempt {attempt}/{self.max_retries})"
            )

        raise LedgerConflictError(
            f"Could not update credit ledger for student {student_id} after {self.max_retries} attempts"
        )
