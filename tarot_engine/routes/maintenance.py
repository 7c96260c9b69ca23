from __future__ import annotations

import hmac
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from ..services import Services
from .deps import get_services

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/decay")
def run_decay(authorization: Optional[str] = Header(None), services: Services = Depends(get_services)):
    """Scheduled sweep applying theme weight decay to every stored subject."""
    secret = services.settings.cron_secret
    if not secret:
        raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = services.persona.apply_decay_all()
    return {"ok": result.errors == 0, **asdict(result)}
