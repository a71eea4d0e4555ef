from fastapi import APIRouter

from app.api.v1.endpoints import (
    approvals, calendar, credits, lessons, packages, payments, pricing, stripe_webhook
)

api_router = APIRouter()

api_router.include_router(pricing.router, prefix="/pricing", tags=["pricing"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(stripe_webhook.router, tags=["webhooks"])
api_router.include_router(calendar.router, prefix="/calendar", tags=["calendar"])
api_router.include_router(lessons.router, prefix="/lessons", tags=["lessons"])
api_router.include_router(approvals.router, prefix="/approvals", tags=["approvals"])
api_router.include_router(packages.router, prefix="/packages", tags=["packages"])
api_router.include_router(credits.router, prefix="/credits", tags=["credits"])
