"""Arcanum: tarot reading sessions with streamed, personalized interpretations."""

from .config import GeminiSettings, SessionConfig
from .narrative import GeminiNarrator, ReadingRequest
from .scheduler import AsyncioScheduler, ManualScheduler
from .session import GenerationStatus, ReadingSession, SessionState, Signal
from .tarot_core import CARD_REGISTRY, DrawnCard, get_spread, list_spreads, shuffle_deck

__version__ = "0.1.0"

__all__ = [
    "CARD_REGISTRY",
    "AsyncioScheduler",
    "DrawnCard",
    "GeminiNarrator",
    "GeminiSettings",
    "GenerationStatus",
    "ManualScheduler",
    "ReadingRequest",
    "ReadingSession",
    "SessionConfig",
    "SessionState",
    "Signal",
    "get_spread",
    "list_spreads",
    "shuffle_deck",
]
