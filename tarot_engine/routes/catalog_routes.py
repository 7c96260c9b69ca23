from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..errors import SpreadNotFound
from ..models import Card, Spread
from ..services import Services
from .deps import get_services

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("/cards", response_model=List[Card])
async def list_cards(services: Services = Depends(get_services)):
    return await services.catalog.cards()


@router.get("/spreads", response_model=List[Spread])
async def list_spreads(services: Services = Depends(get_services)):
    return await services.catalog.spreads()


@router.get("/spreads/{spread_id}", response_model=Spread)
async def get_spread(spread_id: str, services: Services = Depends(get_services)):
    try:
        return await services.catalog.spread(spread_id)
    except SpreadNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
