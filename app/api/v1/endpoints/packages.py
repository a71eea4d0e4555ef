from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_approver
from app.core.database import get_db
from app.core.pause_rules import pauses_remaining
from app.models.package import StudentPackage
from app.models.user import User
from app.schemas.approval import ApprovalRequestResponse
from app.schemas.package import PackageResponse, PauseRequestBody, ExtensionRequestBody
from app.services.package_service import PackageService

router = APIRouter()


def _to_response(package: StudentPackage) -> PackageResponse:
    response = PackageResponse.model_validate(package)
    response.pauses_remaining = pauses_remaining(package)
    return response


@router.get("", response_model=List[PackageResponse])
async def list_my_packages(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The signed-in student's packages"""
    packages = await PackageService(db).list_packages(current_user.id)
    return [_to_response(package) for package in packages]


@router.post("/{package_id}/pause", response_model=ApprovalRequestResponse)
async def request_pause(
    package_id: UUID,
    request: PauseRequestBody,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Ask the tutor to pause a package"""
    return await PackageService(db).request_pause(package_id, current_user, request.reason)


@router.post("/{package_id}/resume", response_model=PackageResponse)
async def resume_package(
    package_id: UUID,
    current_user: User = Depends(require_approver),
    db: AsyncSession = Depends(get_db),
):
    """Resume a paused package and push its expiry back"""
    package, _ = await PackageService(db).resume_from_pause(package_id, current_user)
    return _to_response(package)


@router.post("/{package_id}/extend", response_model=ApprovalRequestResponse)
async def request_extension(
    package_id: UUID,
    request: ExtensionRequestBody,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Ask the tutor for more time on a package"""
    return await PackageService(db).request_extension(package_id, current_user, request.days, request.reason)
