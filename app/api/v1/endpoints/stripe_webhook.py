from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.database import get_db
from app.schemas.payment import WebhookResponse
from app.services.payment_intake_service import PaymentIntakeService
from app.services.stripe_service import StripeService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Handle Stripe webhook events with signature verification and idempotency"""
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    event = StripeService().construct_event(body, signature)
    logger.info(f"Received Stripe event {event.get('id')} ({event.get('type')})")

    outcome = await PaymentIntakeService(db).handle_event(event)
    return WebhookResponse(status=outcome)
