from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

import app.models  # noqa: F401
from app.core.database import Base, create_engine_for
from app.core.pricing import calculate_price
from app.models.availability import Slot
from app.models.lesson import Lesson, LessonStatus
from app.models.user import User, UserRole
from app.services.payment_intake_service import PaymentIntakeService
from app.services.stripe_service import StripeService

COURSE_ID = "english-b2"
COURSE_TITLE = "English B2"


@pytest.fixture
async def engine(tmp_path):
    # File database: an in-memory one cannot be shared by concurrent sessions
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'lessonlink.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def create_user(session_factory, role=UserRole.STUDENT, name="Anna Student"):
    async with session_factory() as session:
        user = User(role=role, name=name, email=f"{uuid4().hex[:10]}@example.com", timezone="UTC")
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
async def student(session_factory):
    return await create_user(session_factory)


@pytest.fixture
async def tutor(session_factory):
    return await create_user(session_factory, role=UserRole.TUTOR, name="Tom Tutor")


def checkout_session(student_id, package_type="10-pack", duration=60, session_id=None):
    """A checkout.session.completed object as Stripe sends it"""
    price = calculate_price(package_type, duration)
    metadata = StripeService().build_metadata(student_id, COURSE_ID, COURSE_TITLE, price)
    return {
        "id": session_id or f"cs_test_{uuid4().hex}",
        "object": "checkout.session",
        "amount_total": price.total_cents,
        "currency": "eur",
        "payment_intent": f"pi_{uuid4().hex[:12]}",
        "metadata": metadata,
    }


async def fund_student(session_factory, student, package_type="10-pack", duration=60):
    """Buy a package for the student through payment intake"""
    async with session_factory() as session:
        return await PaymentIntakeService(session).process_checkout_completed(
            checkout_session(student.id, package_type, duration)
        )


async def open_slot(session_factory, tutor, days_ahead=7, hour=10):
    async with session_factory() as session:
        slot = Slot(
            tutor_id=tutor.id,
            date=date.today() + timedelta(days=days_ahead),
            hour=hour,
            is_available=True,
            is_booked=False,
        )
        session.add(slot)
        await session.commit()
        return slot


async def add_completed_lesson(session_factory, student, tutor):
    """Give the student lesson history so they no longer count as new"""
    async with session_factory() as session:
        lesson = Lesson(
            student_id=student.id,
            tutor_id=tutor.id,
            course_id=COURSE_ID,
            title="Trial lesson",
            date=date.today() - timedelta(days=14),
            hour=9,
            duration_minutes=60,
            duration_hours=1.0,
            status=LessonStatus.COMPLETED,
        )
        session.add(lesson)
        await session.commit()
        return lesson
