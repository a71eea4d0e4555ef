from typing import Any, Dict
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import DuplicateTransactionError, ValidationError
from app.core.pricing import PackageType, calculate_price
from app.models.payment import Payment, PaymentStatus, PaymentType
from app.models.user import User
from app.schemas.payment import CheckoutMetadata
from app.services.credit_ledger_service import CreditLedgerService, EPSILON
from app.services.package_service import PackageService

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
RECOVERED = "recovered"
IGNORED = "ignored"


class PaymentIntakeService:
    """Turns a completed checkout into a payment, a package and ledger credit.

    The payment row is committed first; its unique ``stripe_session_id``
    makes a redelivered event a no-op. Package creation and the ledger
    credit then happen in one transaction that also stamps
    ``Payment.credited_at``, so a payment whose ``credited_at`` is still
    NULL is one that has to be credited again on the next delivery.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = CreditLedgerService(db)
        self.packages = PackageService(db)

    async def handle_event(self, event: Dict[str, Any]) -> str:
        """Dispatch a verified Stripe event"""
        event_type = event.get("type")
        if event_type == "checkout.session.completed":
            return await self.process_checkout_completed(event.get("data", {}).get("object", {}))

        logger.info(f"Unhandled event type: {event_type}")
        return IGNORED

    async def process_checkout_completed(self, session: Dict[str, Any]) -> str:
        """Credit a completed checkout exactly once"""
        transaction_id = session.get("id")
        if not transaction_id:
            raise ValidationError("Checkout session has no id")

        metadata = self._parse_metadata(session.get("metadata") or {})
        await self._check_student(metadata)

        try:
            payment = await self._record_payment(transaction_id, session, metadata)
            outcome = PROCESSED
        except DuplicateTransactionError:
            payment = await self._get_payment(transaction_id)
            if payment.credited_at is not None:
                logger.info(f"Checkout session {transaction_id} already processed")
                return ALREADY_PROCESSED
            logger.warning(f"Checkout session {transaction_id} was recorded but never credited, recovering")
            outcome = RECOVERED

        if not await self._credit_payment(payment, metadata):
            return ALREADY_PROCESSED
        return outcome

    def _parse_metadata(self, raw: Dict[str, Any]) -> CheckoutMetadata:
        """Validate metadata and check it against the price table"""
        try:
            metadata = CheckoutMetadata.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Checkout metadata is invalid: {e}")

        price = calculate_price(metadata.package_type, metadata.duration)
        if abs(price.hours - metadata.hours) > EPSILON or price.sessions != metadata.sessions:
            raise ValidationError(
                f"Checkout metadata does not match the price table: "
                f"{metadata.sessions} sessions / {metadata.hours:g}h for {metadata.package_type.value} "
                f"at {metadata.duration}min, expected {price.sessions} / {price.hours:g}h"
            )
        return metadata

    async def _check_student(self, metadata: CheckoutMetadata):
        student = await self.db.get(User, metadata.student_id)
        if student is None:
            raise ValidationError(f"Unknown student {metadata.student_id}")

    async def _get_payment(self, transaction_id: str) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.stripe_session_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _record_payment(
        self, transaction_id: str, session: Dict[str, Any], metadata: CheckoutMetadata
    ) -> Payment:
        """Insert and commit the payment; a second insert for the same session is refused"""
        existing = await self.db.execute(
            select(Payment.id).where(Payment.stripe_session_id == transaction_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateTransactionError(f"Checkout session {transaction_id} already recorded")

        price = calculate_price(metadata.package_type, metadata.duration)
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        payment = Payment(
            student_id=metadata.student_id,
            course_id=metadata.course_id,
            amount_cents=session.get("amount_total") or price.total_cents,
            currency=session.get("currency") or settings.CURRENCY,
            type=PaymentType.ONE_OFF if metadata.package_type == PackageType.SINGLE else PaymentType.PACKAGE,
            method="stripe",
            status=PaymentStatus.COMPLETED,
            notes=f"{metadata.course_title} - {metadata.package_type.value} ({metadata.duration}min)",
            stripe_session_id=transaction_id,
            stripe_payment_intent_id=payment_intent,
        )
        self.db.add(payment)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent delivery of the same event
            await self.db.rollback()
            raise DuplicateTransactionError(f"Checkout session {transaction_id} already recorded")

        logger.info(f"Recorded payment {payment.id} for checkout session {transaction_id}")
        return payment

    async def _credit_payment(self, payment: Payment, metadata: CheckoutMetadata) -> bool:
        """Create the package and credit the ledger; False if another delivery already did"""
        payment_id = payment.id
        try:
            now = utcnow()
            claimed = await self.db.execute(
                update(Payment)
                .where(and_(Payment.id == payment.id, Payment.credited_at.is_(None)))
                .values(credited_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await self.db.rollback()
                return False

            package = await self.packages.create_from_payment(
                payment,
                metadata.package_type,
                metadata.hours,
                course_title=metadata.course_title or None,
                purchase_date=now,
            )
            await self.ledger.apply_purchase(payment.student_id, metadata.hours, payment_id=payment.id)
            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Crediting payment {payment_id} failed, it stays uncredited: {e}")
            raise

        logger.info(
            f"Credited {metadata.hours:g}h to student {payment.student_id} "
            f"(payment {payment.id}, package {package.id})"
        )
        return True
