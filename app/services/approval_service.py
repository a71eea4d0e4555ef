from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID
import logging

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import utcnow
from app.core.exceptions import (
    AlreadyResolvedError, AuthorizationError, NotFoundError, ValidationError
)
from app.models.approval_request import ApprovalRequest, ApprovalRequestType, ApprovalStatus
from app.models.user import User
from app.schemas.approval import parse_payload
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

# (db, request, typed payload, principal) -> result of the completion action
ApprovalAction = Callable[[AsyncSession, ApprovalRequest, Any, User], Awaitable[Any]]


class ApprovalService:
    """Approval requests and their pending -> approved | denied state machine.

    Resolving is a conditional write on ``status == pending``; on approval
    the completion action runs in the same transaction, so a failing action
    rolls the request back to pending and a resolved request never changes
    again.
    """

    def __init__(self, db: AsyncSession, actions: Optional[Dict[ApprovalRequestType, ApprovalAction]] = None):
        self.db = db
        self._actions = actions
        self.notifications = NotificationService(db)

    @property
    def actions(self) -> Dict[ApprovalRequestType, ApprovalAction]:
        if self._actions is None:
            # Actions call back into booking and package services
            from app.services.approval_actions import APPROVAL_ACTIONS
            self._actions = APPROVAL_ACTIONS
        return self._actions

    async def create_approval_request(
        self,
        request_type: ApprovalRequestType,
        student: User,
        payload: BaseModel,
        target_key: str,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record a pending request and tell the approvers; the caller commits"""
        if payload.type != request_type.value:
            raise ValidationError(f"Payload of type {payload.type} does not match {request_type.value}")

        request = ApprovalRequest(
            type=request_type,
            status=ApprovalStatus.PENDING,
            student_id=student.id,
            student_name=student.name,
            student_email=student.email,
            target_key=target_key,
            payload=payload.model_dump(mode="json"),
            reason=reason,
        )
        self.db.add(request)
        await self.db.flush()

        await self.notifications.notify_approval_requested(request)
        logger.info(f"Created {request_type.value} approval request {request.id} for student {student.id}")
        return request

    async def get_request(self, request_id: UUID) -> ApprovalRequest:
        result = await self.db.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError("Approval request not found")
        return request

    async def list_requests(
        self,
        status: Optional[ApprovalStatus] = None,
        student_id: Optional[UUID] = None,
    ) -> List[ApprovalRequest]:
        """Get approval requests, newest first"""
        query = select(ApprovalRequest)
        if status:
            query = query.where(ApprovalRequest.status == status)
        if student_id:
            query = query.where(ApprovalRequest.student_id == student_id)

        result = await self.db.execute(query.order_by(ApprovalRequest.created_at.desc()))
        return list(result.scalars().all())

    async def has_pending(self, target_key: str) -> bool:
        """True if a request about this resource is still waiting"""
        result = await self.db.execute(
            select(ApprovalRequest.id).where(
                and_(
                    ApprovalRequest.target_key == target_key,
                    ApprovalRequest.status == ApprovalStatus.PENDING,
                )
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def resolve(self, request_id: UUID, decision, principal: User) -> ApprovalRequest:
        """Approve or deny a pending request.

        The status is claimed first with a conditional update, so of two
        concurrent resolutions exactly one proceeds and the other gets
        AlreadyResolvedError. Approving then runs the type's completion
        action before the commit.
        """
        if not principal.is_approver:
            raise AuthorizationError("Only a tutor or admin can resolve approval requests")

        try:
            decision = ApprovalStatus(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}")
        if decision == ApprovalStatus.PENDING:
            raise ValidationError("Decision must be approved or denied")

        request = await self.get_request(request_id)
        if request.status != ApprovalStatus.PENDING:
            raise AlreadyResolvedError(f"Approval request was already {request.status.value}")

        try:
            now = utcnow()
            result = await self.db.execute(
                update(ApprovalRequest)
                .where(
                    and_(
                        ApprovalRequest.id == request_id,
                        ApprovalRequest.status == ApprovalStatus.PENDING,
                    )
                )
                .values(status=decision, resolved_at=now, resolved_by=principal.id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyResolvedError("Approval request was resolved by someone else")

            if decision == ApprovalStatus.APPROVED:
                await self._run_action(request, principal)

            await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to resolve approval request {request_id}: {e}")
            raise

        request = await self.get_request(request_id)
        logger.info(f"Approval request {request_id} {decision.value} by {principal.id}")

        await self.notifications.notify_approval_resolved(request)
        await self.db.commit()
        return request

    async def _run_action(self, request: ApprovalRequest, principal: User):
        action = self.actions.get(request.type)
        if action is None:
            raise ValidationError(f"No completion action for {request.type.value} requests")

        try:
            payload = parse_payload(request.payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Approval request payload is malformed: {e}")

        return await action(self.db, request, payload, principal)
