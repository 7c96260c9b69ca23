from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator

from ..errors import UnknownTheme
from ..models import PersonaVector, Vote
from ..services import Services
from .deps import get_services

log = logging.getLogger("tarot.routes.persona")
router = APIRouter(prefix="/persona", tags=["persona"])


class FeedbackRequest(BaseModel):
    vote: Vote
    theme_id: Optional[str] = None
    card_ids: List[str] = Field(default_factory=list, max_length=20)
    is_anonymous: bool = False

    @model_validator(mode="after")
    def _target(self) -> "FeedbackRequest":
        if not self.theme_id and not self.card_ids:
            raise ValueError("theme_id or card_ids is required")
        return self


class AdjustRequest(BaseModel):
    theme_id: str = Field(..., min_length=1)
    delta: float = Field(..., ge=-1.0, le=1.0)
    is_anonymous: bool = False


class WeightsResponse(BaseModel):
    subject_id: str
    weights: Dict[str, float]


@router.get("/{subject_id}", response_model=PersonaVector)
def get_persona(subject_id: str, anonymous: bool = False, services: Services = Depends(get_services)):
    return services.persona.get_persona(subject_id, is_anonymous=anonymous)


@router.post("/{subject_id}/feedback", response_model=WeightsResponse)
def post_feedback(subject_id: str, req: FeedbackRequest, services: Services = Depends(get_services)):
    try:
        if req.theme_id:
            weight = services.persona.apply_feedback(subject_id, req.theme_id, req.vote, is_anonymous=req.is_anonymous)
            return WeightsResponse(subject_id=subject_id, weights={req.theme_id: weight})

        cards = []
        for card_id in req.card_ids:
            card = services.catalog_store.card(card_id)
            if card is None:
                raise HTTPException(status_code=404, detail=f"Unknown card_id: {card_id}")
            cards.append(card)
        weights = services.persona.apply_reading_feedback(subject_id, cards, req.vote, is_anonymous=req.is_anonymous)
        return WeightsResponse(subject_id=subject_id, weights=weights)
    except UnknownTheme as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{subject_id}/adjust", response_model=WeightsResponse)
def adjust_weight(subject_id: str, req: AdjustRequest, services: Services = Depends(get_services)):
    try:
        weight = services.orchestrator.update_theme_weight(
            subject_id, req.theme_id, req.delta, is_anonymous=req.is_anonymous
        )
    except UnknownTheme as e:
        raise HTTPException(status_code=404, detail=str(e))
    return WeightsResponse(subject_id=subject_id, weights={req.theme_id: weight})


@router.delete("/{subject_id}")
async def delete_subject(subject_id: str, anonymous: bool = False, services: Services = Depends(get_services)):
    """Remove the subject's theme weights, recent readings and usage patterns."""
    rows = await asyncio.to_thread(services.persona.clear_subject, subject_id, anonymous)
    await services.history.clear_subject(subject_id, is_anonymous=anonymous)
    log.info("Cleared subject=%s anonymous=%s rows=%d", subject_id, anonymous, rows)
    return {"ok": True, "rows_deleted": rows}
