from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.database import get_db
from app.models.user import User
from app.schemas.package import CreditLedgerResponse
from app.services.credit_ledger_service import CreditLedgerService

router = APIRouter()


@router.get("/me", response_model=CreditLedgerResponse)
async def get_my_credits(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The signed-in student's hour balances"""
    entry = await CreditLedgerService(db).get_entry(current_user.id)
    if entry is None:
        return CreditLedgerResponse(
            student_id=current_user.id,
            total_hours=0,
            uncommitted_hours=0,
            committed_hours=0,
            completed_hours=0,
        )
    return entry
