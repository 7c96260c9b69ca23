from __future__ import annotations

import json
import logging
import uuid
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..errors import InsufficientCards, NoCardsAvailable, SpreadNotFound
from ..models import ChatMessage, DrawnCard, RecentReading, SessionState, StreamEvent, UserPattern
from ..services import Services
from ..streaming import to_sse
from .deps import get_services

log = logging.getLogger("tarot.routes.reading")
router = APIRouter(tags=["reading"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class SelectRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=100)
    n: Optional[int] = Field(None, ge=1, le=78)
    query: Optional[str] = Field(None, max_length=2000)
    spread_id: Optional[str] = None
    is_anonymous: bool = False
    seed: Optional[str] = Field(None, max_length=200)


class SelectResponse(BaseModel):
    cards: List[DrawnCard]


class ReadingRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=100)
    session_id: Optional[str] = Field(None, max_length=100)
    query: str = Field("", max_length=2000)
    spread_id: Optional[str] = None
    is_anonymous: bool = False


class ChatRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=100)
    session_id: str = Field(..., min_length=1, max_length=100)
    messages: List[ChatMessage] = Field(..., min_length=1, max_length=50)


class MessageRequest(ChatRequest):
    session_id: Optional[str] = Field(None, max_length=100)
    is_anonymous: bool = False


class HistoryResponse(BaseModel):
    subject_id: str
    recent: List[RecentReading]
    patterns: UserPattern


async def _sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield to_sse(event)


@router.post("/cards/select", response_model=SelectResponse)
async def select_cards(req: SelectRequest, services: Services = Depends(get_services)):
    try:
        cards = await services.orchestrator.select_cards(
            req.subject_id,
            n=req.n,
            query=req.query,
            spread_id=req.spread_id,
            is_anonymous=req.is_anonymous,
            seed=req.seed,
        )
    except SpreadNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (InsufficientCards, NoCardsAvailable) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return SelectResponse(cards=cards)


@router.post("/reading")
async def start_reading(req: ReadingRequest, services: Services = Depends(get_services)):
    session_id = req.session_id or str(uuid.uuid4())
    log.info("reading payload=%s", json.dumps(req.model_dump(), ensure_ascii=False))
    events = services.orchestrator.start_reading(
        req.subject_id, session_id, req.query, spread_id=req.spread_id, is_anonymous=req.is_anonymous
    )
    headers = dict(SSE_HEADERS, **{"X-Session-Id": session_id})
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=headers)


@router.post("/chat")
async def chat(req: ChatRequest, services: Services = Depends(get_services)):
    events = services.orchestrator.process_chat(req.subject_id, req.session_id, req.messages)
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/message")
async def message(req: MessageRequest, services: Services = Depends(get_services)):
    """Start a reading when the latest message asks for one, otherwise chat."""
    session_id = req.session_id or str(uuid.uuid4())
    events = services.orchestrator.handle_message(
        req.subject_id, session_id, req.messages, is_anonymous=req.is_anonymous
    )
    headers = dict(SSE_HEADERS, **{"X-Session-Id": session_id})
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=headers)


@router.get("/session/{session_id}", response_model=SessionState)
async def get_session(session_id: str, services: Services = Depends(get_services)):
    state = await services.orchestrator.get_session_state(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return state


@router.post("/session/{session_id}/reset", response_model=SessionState)
async def reset_session(session_id: str, services: Services = Depends(get_services)):
    state = await services.orchestrator.reset_session(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return state


@router.get("/history/{subject_id}", response_model=HistoryResponse)
async def get_history(subject_id: str, anonymous: bool = False, services: Services = Depends(get_services)):
    return HistoryResponse(
        subject_id=subject_id,
        recent=await services.history.get_recent_readings(subject_id, is_anonymous=anonymous),
        patterns=await services.history.get_patterns(subject_id, is_anonymous=anonymous),
    )
