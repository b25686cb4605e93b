"""
narrative.py — The reading-text side of a session: request bundle, prompt, Gemini narrator.

Responsibilities:
- Bundle everything a narrator needs into one immutable ReadingRequest.
- Build the system instruction and the prompt (cards + positions + orientation,
  querent profile, preferences, recent history).
- GeminiNarrator: stream the reading through llm.stream_chat.
- Condense a finished reading into a ReadingLog for the history store.

Notes:
- A narrator is anything with `stream_reading(request) -> Iterator[str]`.
  Yielded fragments concatenate to the full text; raising ends the stream as a failure.
- The session does not interpret the text; Markdown structure is a contract
  between this module and whatever renders it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Protocol, Sequence

from .config import GeminiSettings
from .llm import stream_chat
from .profile_store import PersonalizationSnapshot, ReadingCardLog, ReadingLog
from .tarot_core import DrawnCard, SpreadDefinition


FAILURE_NOTICE = "*The spirits are clouded... (An error occurred while contacting the oracle).*"

SUMMARY_MAX_CHARS = 280


@dataclass(frozen=True)
class ReadingRequest:
    question: str
    spread: SpreadDefinition
    cards: Sequence[DrawnCard]
    personalization: PersonalizationSnapshot = field(default_factory=PersonalizationSnapshot)


class Narrator(Protocol):
    def stream_reading(self, request: ReadingRequest) -> Iterator[str]: ...


# -----------------------------------------------------------------------------
# Prompt construction for the LLM
# -----------------------------------------------------------------------------

SYSTEM_INSTRUCTION = """
You are the Oracle of Arcanum, an ancient, mystical, and empathetic Tarot Reader.
Your goal is to provide insightful, comforting, and honest readings based on the cards drawn.

GUIDELINES:
1. **Tone**: Mystical, calm, wise, yet accessible. Avoid overly modern slang. Speak like a wise counselor.
2. **Structure**:
   - **The Overview**: A 2-sentence summary of the energy.
   - **The Cards**: Analyze each card. Format as "### Card Name (Position Name)". Explain the card's meaning (Upright/Reversed) and how it specifically answers the position in the spread.
   - **The Synthesis**: A concluding paragraph weaving the cards together into actionable advice.
3. **Reversals**: Pay close attention to reversed cards. They are not always "bad", but indicate internal energy, delays, or blocks.
4. **Format**: Use strictly Markdown. Use bolding for emphasis.
5. **No AI Meta-talk**: Do NOT say "As an AI", "I have generated". Act as the interface to the cards.
""".strip()

_STYLE_HINTS = {
    "Psychological": "Lean on Jungian archetypes and subconscious patterns.",
    "Esoteric": "Draw on astrology, Kabbalah and magickal correspondences.",
    "Balanced": "Blend modern psychology with the traditional symbolism.",
}


def _card_lines(spread: SpreadDefinition, cards: Sequence[DrawnCard]) -> List[str]:
    lines: List[str] = []
    for index, card in enumerate(cards):
        position = spread.positions[index]
        lines.append(f'{index + 1}. Position: "{position.name}" ({position.description})')
        lines.append(f"   Card: {card.name}")
        lines.append(f"   Orientation: {card.orientation}")
    return lines


def _querent_lines(personalization: PersonalizationSnapshot) -> List[str]:
    profile = personalization.profile
    if profile is None:
        return ["Querent: Anonymous Traveler."]

    lines = [f"Querent Name: {profile.name}"]
    if profile.age:
        lines.append(f"Querent Age: {profile.age}")

    soul = profile.soul_profile
    if soul is not None:
        lines.append("")
        lines.append("Soul Profile:")
        if soul.core_values:
            lines.append(f"- Core values: {soul.core_values}")
        if soul.deepest_fear:
            lines.append(f"- Deepest fear: {soul.deepest_fear}")
        if soul.current_goal:
            lines.append(f"- Current goal: {soul.current_goal}")
        if soul.struggle:
            lines.append(f"- Current struggle: {soul.struggle}")
        lines.append(f"- Decides with: {soul.decision_style}")

    prefs = profile.preferences
    if prefs is not None:
        lines.append("")
        lines.append("Reading Preferences:")
        lines.append(f"- Style: {prefs.style}. {_STYLE_HINTS[prefs.style]}")
        if prefs.verbosity == "Concise":
            lines.append("- Keep it brief: one short paragraph per card.")
        else:
            lines.append("- Be thorough and detailed.")
        if prefs.skepticism == "Analytical":
            lines.append("- Tone: grounded and analytical; frame the cards as prompts for reflection.")
        else:
            lines.append("- Tone: fully embrace the mystical voice.")
    return lines


def _history_lines(personalization: PersonalizationSnapshot) -> List[str]:
    if not personalization.history:
        return []
    lines = ["", "Recent Readings (newest first):"]
    for log in personalization.history:
        cards = ", ".join(
            f"{c.name}{' (Reversed)' if c.reversed else ''} as {c.position}" for c in log.cards
        )
        lines.append(f'- "{log.question}" [{log.spread_name}]: {cards}')
        if log.summary:
            lines.append(f"  Summary: {log.summary}")
    return lines


def build_prompt(request: ReadingRequest) -> str:
    """
    Build the user prompt. The system instruction is sent separately (SYSTEM_INSTRUCTION).
    """
    lines: List[str] = []
    lines.extend(_querent_lines(request.personalization))
    lines.extend(_history_lines(request.personalization))
    lines.append("")
    lines.append(f'User Question: "{request.question.strip()}"')
    lines.append(f"Spread Type: {request.spread.name}")
    lines.append("")
    lines.append("Cards Drawn:")
    lines.extend(_card_lines(request.spread, request.cards))
    lines.append("")
    closing = "Please provide a detailed Arcanum reading adhering to the system instructions."
    if request.personalization.profile is not None:
        closing += " Address the querent by name."
    if request.personalization.history:
        closing += " Where it genuinely helps, connect this reading to the recent ones."
    lines.append(closing)
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Narrators
# -----------------------------------------------------------------------------

class GeminiNarrator:
    """Streams a reading from Gemini. Any failure surfaces as NarrativeError from the iterator."""

    def __init__(
        self,
        settings: Optional[GeminiSettings] = None,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.settings = settings or GeminiSettings.from_env()
        self.model = model
        self.temperature = temperature

    def stream_reading(self, request: ReadingRequest) -> Iterator[str]:
        return stream_chat(
            build_prompt(request),
            system_instruction=SYSTEM_INSTRUCTION,
            model=self.model,
            temperature=self.temperature,
            settings=self.settings,
        )


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------

_OVERVIEW_RE = re.compile(r"\*\*The Overview\*\*:?\s*", re.IGNORECASE)


def summarize_reading(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """
    First prose paragraph of a reading (headings and the Overview label stripped),
    clipped to max_chars on a word boundary.
    """
    for block in re.split(r"\n\s*\n", text or ""):
        block = block.strip()
        if not block or block.startswith("#"):
            continue
        block = _OVERVIEW_RE.sub("", block).strip()
        if not block:
            continue
        block = " ".join(block.split())
        if len(block) <= max_chars:
            return block
        clipped = block[:max_chars].rsplit(" ", 1)[0]
        return clipped.rstrip(",;:") + "…"
    return ""


def reading_log_for(request: ReadingRequest, text: str) -> ReadingLog:
    return ReadingLog(
        question=request.question.strip(),
        spread_name=request.spread.name,
        cards=[
            ReadingCardLog(name=card.name, position=request.spread.positions[i].name, reversed=card.reversed)
            for i, card in enumerate(request.cards)
        ],
        summary=summarize_reading(text),
    )
