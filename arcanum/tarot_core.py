# -*- coding: utf-8 -*-
"""
tarot_core.py — Card catalog, spread catalog and the shuffle & reversal engine

Responsibilities:
- Define the 78-card deck (id / name / suit / ordinal number)
- Define the spreads a session can select (single / three_card / decision / celtic_cross)
- Shuffle the *whole* deck (Fisher–Yates) and pre-assign reversals card by card
- Provide reproducible randomness (seed can be int or str; str will be hashed)
- Public API: list_spreads / get_spread / get_card / shuffle_deck

Note:
- Everything here is immutable, module-level data shared by every session.
  Sequencing (who draws what, when) lives in session.py.
"""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union


# =========================
# Types & Error classes
# =========================

class TarotCoreError(Exception):
    """Base class for tarot-core errors."""


class InvalidSpreadError(TarotCoreError):
    """Raised when a spread id is not registered."""


class InvalidParameterError(TarotCoreError):
    """Raised when an input parameter is invalid."""


class Suit(str, Enum):
    WANDS = "Wands"
    CUPS = "Cups"
    SWORDS = "Swords"
    PENTACLES = "Pentacles"
    MAJOR = "Major Arcana"


@dataclass(frozen=True)
class CardDefinition:
    """Card definition (immutable catalog entry)."""
    id: str              # e.g., "major-0", "cups-13"
    name: str            # e.g., "The Fool", "King of Cups"
    suit: Suit
    number: int          # major: 0..21; minor: 1..14 (display numbering only)
    description: str     # short keyword line

    @property
    def is_major(self) -> bool:
        return self.suit is Suit.MAJOR

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "suit": self.suit.value,
            "number": self.number,
            "description": self.description,
        }


@dataclass(frozen=True)
class DrawnCard:
    """A card as it sits in a shuffled sequence: definition + orientation."""
    card: CardDefinition
    reversed: bool = False

    @property
    def id(self) -> str:
        return self.card.id

    @property
    def name(self) -> str:
        return self.card.name

    @property
    def orientation(self) -> str:
        return "Reversed" if self.reversed else "Upright"

    def to_dict(self) -> Dict[str, object]:
        return {**self.card.to_dict(), "reversed": self.reversed}


@dataclass(frozen=True)
class SpreadPosition:
    name: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "description": self.description}


@dataclass(frozen=True)
class SpreadDefinition:
    """Spread definition; len(positions) is the number of cards to draw."""
    id: str
    name: str
    description: str
    positions: Tuple[SpreadPosition, ...]

    @property
    def card_count(self) -> int:
        return len(self.positions)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "positions": [p.to_dict() for p in self.positions],
        }


# =========================
# Spread registry
# =========================

SPREAD_REGISTRY: Dict[str, SpreadDefinition] = {
    "single": SpreadDefinition(
        id="single",
        name="Single Card",
        description="A quick answer to a specific question or a daily theme.",
        positions=(
            SpreadPosition("The Answer", "Insight into the situation."),
        ),
    ),
    "three_card": SpreadDefinition(
        id="three_card",
        name="Past, Present, Future",
        description="Understand the temporal flow of your situation.",
        positions=(
            SpreadPosition("Past", "Influences from the past."),
            SpreadPosition("Present", "Current situation."),
            SpreadPosition("Future", "Likely outcome."),
        ),
    ),
    "decision": SpreadDefinition(
        id="decision",
        name="Decision Making",
        description="Weighing two options.",
        positions=(
            SpreadPosition("The Dilemma", "The nature of the choice."),
            SpreadPosition("Option A", "What happens if you choose A."),
            SpreadPosition("Option B", "What happens if you choose B."),
        ),
    ),
    "celtic_cross": SpreadDefinition(
        id="celtic_cross",
        name="Celtic Cross (Simplified)",
        # Five-card version of the classic ten-card cross
        description="Deep dive into a complex situation.",
        positions=(
            SpreadPosition("The Heart", "Central issue."),
            SpreadPosition("The Cross", "Challenge or obstacle."),
            SpreadPosition("The Foundation", "Subconscious influences."),
            SpreadPosition("The Crown", "Goals and ideals."),
            SpreadPosition("The Outcome", "Final trajectory."),
        ),
    ),
}

DEFAULT_SPREAD_ID = "single"


def list_spreads() -> List[SpreadDefinition]:
    """Return all available spreads."""
    return list(SPREAD_REGISTRY.values())


def get_spread(spread_id: str) -> SpreadDefinition:
    """
    Get a single spread definition by id, or by display name (case-insensitive).
    Raise if not registered.
    """
    if spread_id in SPREAD_REGISTRY:
        return SPREAD_REGISTRY[spread_id]
    wanted = (spread_id or "").strip().lower()
    for spread in SPREAD_REGISTRY.values():
        if spread.name.lower() == wanted:
            return spread
    raise InvalidSpreadError(f"Spread '{spread_id}' is not registered.")


# =========================
# 78-card deck definition
# =========================

MAJOR_ARCANA_NAMES = [
    "The Fool", "The Magician", "The High Priestess", "The Empress",
    "The Emperor", "The Hierophant", "The Lovers", "The Chariot",
    "Strength", "The Hermit", "Wheel of Fortune", "Justice",
    "The Hanged Man", "Death", "Temperance", "The Devil",
    "The Tower", "The Star", "The Moon", "The Sun",
    "Judgement", "The World",
]

MINOR_SUITS = [Suit.WANDS, Suit.CUPS, Suit.SWORDS, Suit.PENTACLES]

RANK_NAMES = [
    "Ace", "Two", "Three", "Four", "Five", "Six", "Seven",
    "Eight", "Nine", "Ten", "Page", "Knight", "Queen", "King",
]


def _build_registry() -> Tuple[CardDefinition, ...]:
    """Build the 78-card registry (stable order; useful for tests/repro)."""
    registry: List[CardDefinition] = []
    for i, name in enumerate(MAJOR_ARCANA_NAMES):
        registry.append(CardDefinition(
            id=f"major-{i}", name=name, suit=Suit.MAJOR, number=i,
            description="Major Archetype",
        ))

    for suit in MINOR_SUITS:
        for i, rank in enumerate(RANK_NAMES):
            registry.append(CardDefinition(
                id=f"{suit.value.lower()}-{i}",
                name=f"{rank} of {suit.value}",
                suit=suit,
                number=i + 1,
                description="Minor Arcana",
            ))

    assert len(registry) == 78, f"Deck registry size should be 78, got {len(registry)}"
    return tuple(registry)


CARD_REGISTRY: Tuple[CardDefinition, ...] = _build_registry()
CARD_ID_INDEX: Dict[str, CardDefinition] = {c.id: c for c in CARD_REGISTRY}  # quick lookup by id


def get_card(card_id: str) -> CardDefinition:
    try:
        return CARD_ID_INDEX[card_id]
    except KeyError:
        raise InvalidParameterError(f"Unknown card id: {card_id}") from None


# =========================
# RNG / Shuffling
# =========================

DEFAULT_REVERSAL_PROB = 0.2


def _norm_seed(seed: Optional[Union[int, str]]) -> Optional[int]:
    """
    Normalize seed to int. If str, hash with sha256 and take the first 8 bytes
    as an unsigned 64-bit integer. None stays None.
    """
    if seed is None:
        return None
    if isinstance(seed, int):
        return seed
    if isinstance(seed, str):
        h = hashlib.sha256(seed.encode("utf-8")).digest()
        return int.from_bytes(h[:8], byteorder="big", signed=False)
    raise InvalidParameterError("seed must be int | str | None")


def make_rng(seed: Optional[Union[int, str]] = None) -> random.Random:
    """Build a random.Random from a normalized seed (None -> OS entropy)."""
    return random.Random(_norm_seed(seed))


def _fisher_yates_shuffle(items: Sequence[CardDefinition], rng: random.Random) -> List[CardDefinition]:
    """
    Fisher–Yates (Knuth) shuffle.
    Returns a new list and does not mutate the input.
    """
    arr = list(items)
    n = len(arr)
    for i in range(n - 1, 0, -1):
        j = rng.randint(0, i)  # inclusive
        arr[i], arr[j] = arr[j], arr[i]
    return arr


def shuffle_deck(
    cards: Sequence[CardDefinition] = CARD_REGISTRY,
    *,
    rng: Optional[random.Random] = None,
    seed: Optional[Union[int, str]] = None,
    reversal_prob: float = DEFAULT_REVERSAL_PROB,
) -> List[DrawnCard]:
    """
    Shuffle the full deck and pre-assign reversals.

    Args:
        cards: card catalog to permute (defaults to the full 78-card registry)
        rng: random source; takes precedence over `seed`
        seed: reproducibility seed (int or str). str is hashed internally
        reversal_prob: probability of each card being reversed, in [0, 1]

    Returns:
        A list of DrawnCard with the same length as `cards`. Every card appears
        exactly once; each reversal flag is an independent Bernoulli draw made
        after the permutation, so orientation does not depend on position.
    """
    if not (0.0 <= float(reversal_prob) <= 1.0):
        raise InvalidParameterError("reversal_prob must be within [0.0, 1.0]")

    rng = rng if rng is not None else make_rng(seed)
    shuffled = _fisher_yates_shuffle(cards, rng)
    return [DrawnCard(card=c, reversed=rng.random() < float(reversal_prob)) for c in shuffled]
