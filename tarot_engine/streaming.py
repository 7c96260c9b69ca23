"""Typed events emitted by reading runs and chat, plus SSE framing."""

from __future__ import annotations

import json

from .models import StreamEvent

CARDS_DRAWN = "cards-drawn"
ANALYSIS_PRODUCED = "analysis-produced"
INTERPRETATION_PRODUCED = "interpretation-produced"
FINAL_RESPONSE = "final-response"
READING_COMPLETED = "reading-completed"
TEXT_DELTA = "text-delta"
ERROR = "error"
DONE = "done"


def done_event() -> StreamEvent:
    return StreamEvent(type=DONE)


def error_event(code: str, message: str, details=None) -> StreamEvent:
    return StreamEvent(type=ERROR, content={"code": code, "message": message, "details": details})


def to_sse(event: StreamEvent) -> str:
    payload = json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
    return f"event: {event.type}\ndata: {payload}\n\n"
