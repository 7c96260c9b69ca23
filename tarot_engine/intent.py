"""Keyword routing for free-form chat messages.

"use spread <id>" (or "spread: <id>") asks for a reading on that spread,
any of the reading keywords asks for a plain reading, everything else is
conversation. "<N> cards" sets the card count of a plain reading.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional

IntentKind = Literal["reading", "spread", "none"]

READING_KEYWORDS = ("tarot", "cards", "reading", "draw")

_SPREAD_RE = re.compile(r"(?:use spread|spread:)\s*([\w-]+)")
_COUNT_RE = re.compile(r"(\d+)\s+cards?\b")


@dataclass(frozen=True)
class Intent:
    kind: IntentKind
    spread_id: Optional[str] = None
    card_count: Optional[int] = None

    @property
    def wants_reading(self) -> bool:
        return self.kind != "none"


def parse_card_count(message: str) -> Optional[int]:
    match = _COUNT_RE.search(message)
    if not match:
        return None
    count = int(match.group(1))
    return count if count >= 1 else None


def detect_intent(message: str) -> Intent:
    msg = message.lower()
    spread = _SPREAD_RE.search(msg)
    if spread:
        return Intent(kind="spread", spread_id=spread.group(1))
    if any(keyword in msg for keyword in READING_KEYWORDS):
        return Intent(kind="reading", card_count=parse_card_count(msg))
    return Intent(kind="none")
