from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Arcana = Literal["major", "minor"]
Role = Literal["system", "user", "assistant"]
Vote = Literal["up", "down"]


class Theme(BaseModel):
    id: str
    name: str
    embedding: Optional[List[float]] = None


class Card(BaseModel):
    id: str
    name: str
    arcana: Arcana
    suit: Optional[str] = None
    rank: str
    description: str
    symbols: List[str] = Field(default_factory=list)
    image_url: str = ""
    embedding: Optional[List[float]] = None


class CardThemeRelevance(BaseModel):
    card_id: str
    theme_id: str
    relevance: float = Field(..., ge=0.0, le=1.0)


class SpreadPosition(BaseModel):
    name: str
    description: str = ""
    theme_multiplier: float = 1.0
    index: int


class Spread(BaseModel):
    id: str
    name: str
    description: str = ""
    positions: List[SpreadPosition] = Field(default_factory=list)
    is_public: bool = True
    owner_id: Optional[str] = None


class PersonaWeight(BaseModel):
    subject_id: str
    theme_id: str
    weight: float
    updated_at: float


class PersonaVector(BaseModel):
    subject_id: str
    is_anonymous: bool = False
    weights: Dict[str, float] = Field(default_factory=dict)
    # True when the rows were created by this read, so the vector carries no signal yet.
    fresh: bool = False

    def weight(self, theme_id: str) -> float:
        return self.weights.get(theme_id, 0.0)


class DrawnCard(Card):
    is_reversed: bool = False
    position: Optional[SpreadPosition] = None


class ReadingStep(str, Enum):
    INITIALIZING = "INITIALIZING"
    DRAWING_CARDS = "DRAWING_CARDS"
    ANALYZING_SPREAD = "ANALYZING_SPREAD"
    INTERPRETING = "INTERPRETING"
    RESPONDING = "RESPONDING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class AgentError(BaseModel):
    code: str
    message: str
    details: Any = None


class SessionState(BaseModel):
    session_id: str
    subject_id: str
    is_anonymous: bool = False
    step: ReadingStep = ReadingStep.INITIALIZING
    drawn_cards: List[DrawnCard] = Field(default_factory=list)
    spread: Optional[Spread] = None
    analysis: Optional[str] = None
    interpretation: Optional[str] = None
    response: Optional[str] = None
    error: Optional[AgentError] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    @property
    def query(self) -> str:
        return self.metadata.get("query") or ""


class RecentReading(BaseModel):
    cards: List[DrawnCard] = Field(default_factory=list)
    spread: Optional[Spread] = None
    timestamp: float


class UserPattern(BaseModel):
    common_cards: Dict[str, int] = Field(default_factory=dict)
    preferred_spreads: Dict[str, int] = Field(default_factory=dict)
    themes: Dict[str, int] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    role: Role
    content: str


class StreamEvent(BaseModel):
    type: str
    content: Any = None
    role: Role = "assistant"
