from __future__ import annotations

from typing import List, Optional, Sequence

from .models import ChatMessage, DrawnCard, Spread

BASE_READER_PROMPT = """You are a natural, intuitive tarot reader. Respond conversationally and concisely.

Rules:
- Ground every response in the cards provided
- Frame interpretations as invitations for self-reflection rather than predictions
- NEVER echo the user's question
- Maximum 3 short paragraphs"""


def card_line(card: DrawnCard, i: int) -> str:
    label = f" ({card.position.name})" if card.position else ""
    orientation = "reversed" if card.is_reversed else "upright"
    return f"Card {i}{label}: {card.name}, {orientation}. {card.description}"


def card_block(cards: Sequence[DrawnCard], spread: Optional[Spread] = None) -> str:
    """
    Build a rich text block for the drawn cards.
    """
    parts: List[str] = []
    if spread:
        parts.append(f"Spread: {spread.name} - {spread.description}")
    for i, card in enumerate(cards, start=1):
        parts.append(card_line(card, i))
        details = [f"Arcana: {card.arcana}"]
        if card.suit:
            details.append(f"Suit: {card.suit}")
        if card.symbols:
            details.append("Symbols: " + ", ".join(card.symbols))
        if card.position and card.position.description:
            details.append(f"Position meaning: {card.position.description}")
        parts.append("  " + " | ".join(details))
    return "\n".join(parts)


def analysis_messages(cards: Sequence[DrawnCard], spread: Optional[Spread], query: str) -> List[ChatMessage]:
    system = (
        f"{BASE_READER_PROMPT}\n\n"
        "Analyze this spread: note recurring symbols, how reversals shift each card, "
        "and how the positions relate to one another.\n\n"
        f"{card_block(cards, spread)}"
    )
    return [
        ChatMessage(role="system", content=system),
        ChatMessage(role="user", content=query or "What does this spread show?"),
    ]


def interpretation_messages(
    cards: Sequence[DrawnCard],
    spread: Optional[Spread],
    query: str,
    analysis: str,
) -> List[ChatMessage]:
    system = (
        f"{BASE_READER_PROMPT}\n\n"
        "Interpret the cards for the querent using the analysis below.\n\n"
        f"{card_block(cards, spread)}"
    )
    return [
        ChatMessage(role="system", content=system),
        ChatMessage(role="user", content=query or "What does this spread show?"),
        ChatMessage(role="assistant", content=analysis),
    ]


def response_messages(
    cards: Sequence[DrawnCard],
    spread: Optional[Spread],
    query: str,
    analysis: Optional[str],
    interpretation: str,
) -> List[ChatMessage]:
    system = (
        f"{BASE_READER_PROMPT}\n\n"
        "Write the final reading. End with one reflective question.\n\n"
        f"Previous analysis:\n{analysis or 'None'}\n\n"
        f"{card_block(cards, spread)}"
    )
    return [
        ChatMessage(role="system", content=system),
        ChatMessage(role="user", content=query or "What does this spread show?"),
        ChatMessage(role="assistant", content=interpretation),
    ]


def chat_messages(
    history: Sequence[ChatMessage],
    cards: Sequence[DrawnCard] = (),
    spread: Optional[Spread] = None,
) -> List[ChatMessage]:
    system = BASE_READER_PROMPT
    if cards:
        system += f"\n\nThe querent's current reading:\n{card_block(cards, spread)}"
    return [ChatMessage(role="system", content=system)] + [m for m in history if m.role != "system"]
