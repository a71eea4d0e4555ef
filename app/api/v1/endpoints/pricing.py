from typing import List
from fastapi import APIRouter, Query

from app.core.pricing import calculate_price, get_all_prices
from app.schemas.payment import PriceQuoteResponse

router = APIRouter()


@router.get("/quote", response_model=PriceQuoteResponse)
async def get_quote(
    package_type: str = Query(..., description="single, 10-pack or full-course"),
    duration: int = Query(..., description="Session length in minutes"),
):
    """Price breakdown for one package"""
    return calculate_price(package_type, duration)


@router.get("", response_model=List[PriceQuoteResponse])
async def list_prices():
    """Price every package and session length"""
    return get_all_prices()
