"""
config.py — Runtime settings read from the environment (and a local .env).

The timing values are presentation pacing for the reveal flow; the session
only relies on them being non-negative.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .tarot_core import DEFAULT_REVERSAL_PROB, InvalidParameterError

load_dotenv()

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_STORE_PATH = os.path.join("data", "profiles.json")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidParameterError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidParameterError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class SessionConfig:
    """Pacing and randomness knobs for a reading session (seconds)."""
    reversal_prob: float = DEFAULT_REVERSAL_PROB
    shuffle_seconds: float = 2.5
    final_draw_delay: float = 0.8
    reveal_signal_delay: float = 0.1
    reveal_seconds: float = 2.0
    history_limit: int = 5

    def __post_init__(self) -> None:
        if not (0.0 <= self.reversal_prob <= 1.0):
            raise InvalidParameterError("reversal_prob must be within [0.0, 1.0]")
        for name in ("shuffle_seconds", "final_draw_delay", "reveal_signal_delay", "reveal_seconds"):
            if getattr(self, name) < 0:
                raise InvalidParameterError(f"{name} must be >= 0")
        if self.history_limit < 0:
            raise InvalidParameterError("history_limit must be >= 0")

    @classmethod
    def from_env(cls) -> "SessionConfig":
        return cls(
            reversal_prob=_env_float("ARCANUM_REVERSAL_PROB", DEFAULT_REVERSAL_PROB),
            shuffle_seconds=_env_float("ARCANUM_SHUFFLE_SECONDS", 2.5),
            final_draw_delay=_env_float("ARCANUM_FINAL_DRAW_DELAY", 0.8),
            reveal_signal_delay=_env_float("ARCANUM_REVEAL_SIGNAL_DELAY", 0.1),
            reveal_seconds=_env_float("ARCANUM_REVEAL_SECONDS", 2.0),
            history_limit=_env_int("ARCANUM_HISTORY_LIMIT", 5),
        )

    @classmethod
    def instant(cls, **overrides) -> "SessionConfig":
        """All delays zero; handy for tests and headless callers."""
        values = dict(shuffle_seconds=0.0, final_draw_delay=0.0, reveal_signal_delay=0.0, reveal_seconds=0.0)
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class GeminiSettings:
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    temperature: float = 1.0

    @classmethod
    def from_env(cls) -> "GeminiSettings":
        return cls(
            api_key=os.getenv("GEMINI_TOKEN") or os.getenv("GEMINI_API_KEY"),
            model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            temperature=_env_float("GEMINI_TEMPERATURE", 1.0),
        )


def store_path() -> str:
    return os.getenv("ARCANUM_STORE_PATH", DEFAULT_STORE_PATH)
