from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_approver
from app.core.database import get_db
from app.models.approval_request import ApprovalStatus
from app.models.user import User
from app.schemas.approval import ApprovalListResponse, ApprovalRequestResponse, ResolveApprovalRequest
from app.services.approval_service import ApprovalService

router = APIRouter()


@router.get("", response_model=ApprovalListResponse)
async def list_approval_requests(
    status: Optional[ApprovalStatus] = Query(ApprovalStatus.PENDING, description="Filter by status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Tutors see every request; students see their own"""
    student_id = None if current_user.is_approver else current_user.id
    requests = await ApprovalService(db).list_requests(status=status, student_id=student_id)
    return ApprovalListResponse(requests=requests)


@router.post("/{request_id}/resolve", response_model=ApprovalRequestResponse)
async def resolve_approval_request(
    request_id: UUID,
    request: ResolveApprovalRequest,
    current_user: User = Depends(require_approver),
    db: AsyncSession = Depends(get_db),
):
    """Approve or deny a pending request"""
    return await ApprovalService(db).resolve(request_id, request.decision, current_user)
