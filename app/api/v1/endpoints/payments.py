from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_approver
from app.core.database import get_db
from app.core.exceptions import AuthorizationError, NotFoundError
from app.models.user import User, UserRole
from app.schemas.payment import CheckoutRequest, CheckoutResponse, SendLinkRequest
from app.services.stripe_service import StripeService

router = APIRouter()


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    current_user: User = Depends(get_current_user),
):
    """Start a checkout for the signed-in student"""
    if current_user.role != UserRole.STUDENT:
        raise AuthorizationError("Only students can buy packages")

    session = StripeService().create_checkout_session(
        current_user,
        request.package_type,
        request.duration,
        request.course_id,
        request.course_title,
    )
    return CheckoutResponse(url=session["url"])


@router.post("/send-link", response_model=CheckoutResponse)
async def send_payment_link(
    request: SendLinkRequest,
    current_user: User = Depends(require_approver),
    db: AsyncSession = Depends(get_db),
):
    """Create a checkout link a tutor can send to a student"""
    student = await db.get(User, request.student_id)
    if not student or student.role != UserRole.STUDENT:
        raise NotFoundError("Student not found")

    session = StripeService().create_payment_link(
        student,
        request.package_type,
        request.duration,
        request.course_id,
        request.course_title,
    )
    return CheckoutResponse(url=session["url"])
