from typing import Any, Dict, Optional
from datetime import datetime, timedelta
import json
import logging

import stripe

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import PaymentError, SignatureVerificationError
from app.core.pricing import PriceCalculation, calculate_price, get_product_name
from app.models.user import User
from app.schemas.payment import CheckoutMetadata

logger = logging.getLogger(__name__)


class StripeService:
    """Stripe checkout sessions and webhook verification"""

    def __init__(self):
        stripe.api_key = settings.STRIPE_SECRET_KEY
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET

    def build_metadata(
        self, student_id, course_id: str, course_title: str, price: PriceCalculation
    ) -> Dict[str, str]:
        """Metadata the webhook needs to credit the purchase"""
        metadata = CheckoutMetadata(
            student_id=student_id,
            course_id=course_id,
            course_title=course_title,
            package_type=price.package_type,
            duration=price.duration,
            hours=price.hours,
            sessions=price.sessions,
            subtotal=price.subtotal,
            processing_fee=price.processing_fee,
        )
        # Stripe metadata values are strings
        return {key: str(value) for key, value in metadata.model_dump(mode="json", by_alias=True).items()}

    def create_checkout_session(
        self,
        student: User,
        package_type,
        duration: int,
        course_id: str,
        course_title: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create a one-time payment checkout session for a package"""
        price = calculate_price(package_type, duration)

        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "customer_email": student.email,
            "line_items": [{
                "price_data": {
                    "currency": settings.CURRENCY,
                    "product_data": {
                        "name": get_product_name(course_title, price.package_type, price.duration),
                        "description": (
                            f"{price.sessions} x {price.duration}min sessions, "
                            f"incl. {price.processing_fee} processing fee"
                        ),
                    },
                    "unit_amount": price.total_cents,
                },
                "quantity": 1,
            }],
            "success_url": success_url or f"{settings.APP_URL}/s-portal/payments?status=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url or f"{settings.APP_URL}/s-portal/payments?status=cancelled",
            "metadata": self.build_metadata(student.id, course_id, course_title, price),
        }
        if expires_at:
            params["expires_at"] = int(expires_at.timestamp())

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Error creating checkout session for student {student.id}: {e}")
            raise PaymentError(f"Failed to create checkout session: {str(e)}")

        logger.info(f"Created checkout session {session.id} for student {student.id} ({price.total_cents} cents)")
        return {
            "session_id": session.id,
            "url": session.url,
        }

    def create_payment_link(
        self,
        student: User,
        package_type,
        duration: int,
        course_id: str,
        course_title: str,
    ) -> Dict[str, Any]:
        """Checkout session a tutor sends to a student; it lapses after a day"""
        expires_at = utcnow() + timedelta(hours=settings.PAYMENT_LINK_EXPIRY_HOURS)
        return self.create_checkout_session(
            student,
            package_type,
            duration,
            course_id,
            course_title,
            expires_at=expires_at,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict"""
        if not signature:
            raise SignatureVerificationError("Missing Stripe signature")
        if not self.webhook_secret:
            raise PaymentError("Stripe webhook secret is not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise SignatureVerificationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise SignatureVerificationError("Invalid signature")

        return json.loads(payload)
