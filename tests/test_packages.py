from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select, func, insert, update

from app.core.exceptions import (
    AuthorizationError, ConflictError, NoActivePackageError, OverConsumptionError,
    PauseNotAllowedError
)
from app.core.pause_rules import can_pause, get_max_pauses
from app.core.pricing import PackageType
from app.models.approval_request import ApprovalRequest, ApprovalRequestType, ApprovalStatus
from app.models.lesson import Lesson, LessonStatus
from app.models.package import PackageStatus, StudentPackage
from app.models.payment import Payment, PaymentType
from app.services.approval_service import ApprovalService
from app.services.credit_ledger_service import CreditLedgerService
from app.services.package_service import PackageService

from conftest import COURSE_ID, fund_student


async def make_package(db, student, package_type=PackageType.TEN_PACK, hours=10.0, purchase_date=None):
    payment = Payment(
        student_id=student.id,
        course_id=COURSE_ID,
        amount_cents=29365,
        currency="eur",
        type=PaymentType.PACKAGE,
        stripe_session_id=f"cs_test_{uuid4().hex}",
    )
    db.add(payment)
    await db.flush()
    package = await PackageService(db).create_from_payment(
        payment, package_type, hours, course_title="English B2", purchase_date=purchase_date
    )
    await db.commit()
    return package


def test_max_pauses_by_size():
    assert get_max_pauses(1) == 1
    assert get_max_pauses(9.5) == 1
    assert get_max_pauses(10) == 2
    assert get_max_pauses(59) == 2
    assert get_max_pauses(60) == 3


@pytest.mark.parametrize("package_type, expected", [
    (PackageType.SINGLE, (2025, 4, 30)),
    (PackageType.TEN_PACK, (2025, 7, 31)),
    (PackageType.FULL_COURSE, (2026, 1, 31)),
])
async def test_expiry_follows_package_type(db, student, package_type, expected):
    purchased = datetime(2025, 1, 31, 12, tzinfo=timezone.utc)
    package = await make_package(db, student, package_type, purchase_date=purchased)

    assert package.expires_at.date() == date(*expected)
    assert package.status == PackageStatus.ACTIVE
    assert package.remaining_hours == package.total_hours


async def test_consume_to_zero_completes_package(db, student):
    package = await make_package(db, student, hours=2)
    service = PackageService(db)

    package = await service.consume(package.id, 1)
    assert package.remaining_hours == 1
    assert package.status == PackageStatus.ACTIVE

    package = await service.consume(package.id, 1)
    assert package.remaining_hours == 0
    assert package.status == PackageStatus.COMPLETED


async def test_over_consumption_rejected(db, student):
    package = await make_package(db, student, hours=1)

    with pytest.raises(OverConsumptionError):
        await PackageService(db).consume(package.id, 1.5)

    package = await PackageService(db).get_package(package.id)
    assert package.remaining_hours == 1


async def test_consuming_expired_package_keeps_it_expired(db, student):
    package = await make_package(db, student, hours=1)
    package.status = PackageStatus.EXPIRED
    await db.commit()

    package = await PackageService(db).consume(package.id, 1)
    assert package.status == PackageStatus.EXPIRED


async def test_find_bookable_package_prefers_soonest_expiry(db, student):
    now = datetime.now(timezone.utc)
    later = await make_package(db, student, PackageType.FULL_COURSE, 60, purchase_date=now)
    sooner = await make_package(db, student, PackageType.SINGLE, 1, purchase_date=now)

    package = await PackageService(db).find_bookable_package(student.id, COURSE_ID, 1)
    assert package.id == sooner.id

    package = await PackageService(db).find_bookable_package(student.id, COURSE_ID, 2)
    assert package.id == later.id


async def test_find_bookable_package_skips_paused_and_other_courses(db, student):
    package = await make_package(db, student)
    package.is_paused = True
    package.status = PackageStatus.PAUSED
    await db.commit()

    with pytest.raises(NoActivePackageError):
        await PackageService(db).find_bookable_package(student.id, COURSE_ID, 1)
    with pytest.raises(NoActivePackageError):
        await PackageService(db).find_bookable_package(student.id, "maths", 1)


async def test_reserve_package_claims_the_package(db, student):
    package = await make_package(db, student, hours=2)
    service = PackageService(db)

    reserved = await service.reserve_package(student.id, COURSE_ID, 1)
    assert reserved.id == package.id
    await service.reserve_package(student.id, COURSE_ID, 1)
    await db.commit()

    assert (await service.get_package(package.id)).reservation_version == 2


async def test_reserve_package_counts_a_concurrent_booking(db, student, tutor, monkeypatch):
    package = await make_package(db, student, PackageType.SINGLE, 1)
    execute = db.execute
    raced = []

    async def racing_execute(statement, *args, **kwargs):
        if getattr(statement, "is_update", False) and not raced:
            # Another booking takes the package's last hour first
            raced.append(True)
            await execute(
                insert(Lesson).values(
                    student_id=student.id,
                    tutor_id=tutor.id,
                    course_id=COURSE_ID,
                    title="Conversation",
                    package_id=package.id,
                    date=date.today() + timedelta(days=7),
                    hour=10,
                    duration_minutes=60,
                    duration_hours=1.0,
                    status=LessonStatus.SCHEDULED,
                )
            )
            await execute(
                update(StudentPackage)
                .where(StudentPackage.id == package.id)
                .values(reservation_version=StudentPackage.reservation_version + 1)
            )
        return await execute(statement, *args, **kwargs)

    monkeypatch.setattr(db, "execute", racing_execute)

    with pytest.raises(NoActivePackageError):
        await PackageService(db).reserve_package(student.id, COURSE_ID, 1)
    assert raced


async def test_pause_rejected_when_allowance_used(db, student):
    package = await make_package(db, student, hours=10)
    package.pause_count = 2
    await db.commit()

    assert not can_pause(package)
    with pytest.raises(PauseNotAllowedError):
        await PackageService(db).request_pause(package.id, student, "Holiday")

    count = await db.execute(select(func.count()).select_from(ApprovalRequest))
    assert count.scalar_one() == 0


async def test_pause_request_then_approval_pauses(session_factory, student, tutor):
    async with session_factory() as db:
        package = await make_package(db, student, hours=10)
        request = await PackageService(db).request_pause(package.id, student, "Exams")

    assert request.type == ApprovalRequestType.PAUSE_REQUEST
    assert request.status == ApprovalStatus.PENDING

    async with session_factory() as db:
        with pytest.raises(ConflictError):
            await PackageService(db).request_pause(package.id, student, "Exams again")

    async with session_factory() as db:
        resolved = await ApprovalService(db).resolve(request.id, "approved", tutor)
        assert resolved.status == ApprovalStatus.APPROVED

    async with session_factory() as db:
        package = await PackageService(db).get_package(package.id)
        assert package.is_paused
        assert package.status == PackageStatus.PAUSED
        assert package.pause_count == 1
        assert package.pause_reason == "Exams"


async def test_resume_pushes_expiry_back(session_factory, student, tutor):
    async with session_factory() as db:
        package = await make_package(db, student, hours=10)
        paused_at = datetime.now(timezone.utc)
        await PackageService(db).apply_pause(package.id, tutor, now=paused_at)
        await db.commit()
        original_expiry = package.expires_at

    async with session_factory() as db:
        package, days = await PackageService(db).resume_from_pause(
            package.id, tutor, now=paused_at + timedelta(days=14, hours=3)
        )

    assert days == 14
    assert package.expires_at == original_expiry + timedelta(days=14)
    assert package.total_days_paused == 14
    assert not package.is_paused
    assert package.status == PackageStatus.ACTIVE


async def test_students_cannot_pause_directly(db, student):
    package = await make_package(db, student)

    with pytest.raises(AuthorizationError):
        await PackageService(db).apply_pause(package.id, student)


async def test_extension_reactivates_expired_package_and_restores_hours(session_factory, student, tutor):
    await fund_student(session_factory, student)

    async with session_factory() as db:
        package = (await PackageService(db).list_packages(student.id))[0]
        package.status = PackageStatus.EXPIRED
        package.expires_at = datetime.now(timezone.utc) - timedelta(days=2)
        package.forfeited_hours = 10
        await db.commit()

    async with session_factory() as db:
        await CreditLedgerService(db).forfeit(student.id, 10)
        await db.commit()

    async with session_factory() as db:
        request = await PackageService(db).request_extension(package.id, student, 30, "Was ill")

    async with session_factory() as db:
        await ApprovalService(db).resolve(request.id, "approved", tutor)

    async with session_factory() as db:
        package = await PackageService(db).get_package(package.id)
        assert package.status == PackageStatus.ACTIVE
        assert package.forfeited_hours == 0
        assert package.expires_at > datetime.now(timezone.utc)

        entry = await CreditLedgerService(db).get_entry(student.id)
        assert entry.uncommitted_hours == 10
        assert entry.total_hours == 10
