"""
session.py — The reading session state machine.

Intro → Selection → Shuffling → Drawing → Revealing → Reading, and Reset back
to Intro from anywhere.

Every input is a tagged event handled by ReadingSession.dispatch(): user
actions (StartSelection, Submit, DrawCard, Reset, ...) as well as timer
firings and streamed chunks. Timer and stream events carry the epoch that was
current when they were scheduled; Reset and each new submit bump the epoch,
so anything still in flight from an older run is dropped on arrival.

The session owns its deck stack and drawn cards exclusively and expects all
events on one control thread (the scheduler guarantees that for its own
callbacks).
"""
from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import SessionConfig
from .narrative import FAILURE_NOTICE, Narrator, ReadingRequest, reading_log_for
from .profile_store import PersonalizationSnapshot, ProfileStore, load_personalization
from .scheduler import Cancellable, Scheduler
from .tarot_core import (
    CARD_REGISTRY,
    DEFAULT_SPREAD_ID,
    DrawnCard,
    SpreadDefinition,
    get_spread,
    shuffle_deck,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    INTRO = "Intro"
    SELECTION = "Selection"
    SHUFFLING = "Shuffling"
    DRAWING = "Drawing"
    REVEALING = "Revealing"
    READING = "Reading"


class GenerationStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


class Signal(str, Enum):
    """What changed; sent to listeners after each applied event."""
    STATE_CHANGED = "state_changed"
    QUESTION_CHANGED = "question_changed"
    SPREAD_CHANGED = "spread_changed"
    CARD_DRAWN = "card_drawn"
    CARDS_REVEALED = "cards_revealed"
    CHUNK = "chunk"
    READING_FINISHED = "reading_finished"
    RESET = "reset"


# =========================
# Events
# =========================

@dataclass(frozen=True)
class StartSelection:
    pass


@dataclass(frozen=True)
class SetQuestion:
    text: str


@dataclass(frozen=True)
class SelectSpread:
    spread_id: str


@dataclass(frozen=True)
class Submit:
    question: Optional[str] = None
    spread_id: Optional[str] = None


@dataclass(frozen=True)
class DrawCard:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class ShuffleElapsed:
    epoch: int


@dataclass(frozen=True)
class DrawsComplete:
    epoch: int


@dataclass(frozen=True)
class RevealSignal:
    epoch: int


@dataclass(frozen=True)
class RevealElapsed:
    epoch: int


@dataclass(frozen=True)
class ChunkReceived:
    epoch: int
    text: str


@dataclass(frozen=True)
class GenerationFinished:
    epoch: int


@dataclass(frozen=True)
class GenerationFailed:
    epoch: int
    error: BaseException = field(compare=False)


Event = Union[
    StartSelection, SetQuestion, SelectSpread, Submit, DrawCard, Reset,
    ShuffleElapsed, DrawsComplete, RevealSignal, RevealElapsed,
    ChunkReceived, GenerationFinished, GenerationFailed,
]

Listener = Callable[["ReadingSession", Signal], None]


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    state: SessionState
    question: str
    spread: SpreadDefinition
    drawn_cards: Tuple[DrawnCard, ...]
    deck_stack: Tuple[DrawnCard, ...]
    deck_size: int
    cards_revealed: bool
    reading_text: str
    notice: str
    generation: GenerationStatus
    epoch: int

    @property
    def display_text(self) -> str:
        if not self.notice:
            return self.reading_text
        if not self.reading_text:
            return self.notice
        return f"{self.reading_text}\n\n{self.notice}"

    @property
    def cards_needed(self) -> int:
        return self.spread.card_count - len(self.drawn_cards)

    def to_dict(self, include_deck: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "session_id": self.session_id,
            "state": self.state.value,
            "question": self.question,
            "spread": self.spread.to_dict(),
            "drawn_cards": [
                {**card.to_dict(), "position": self.spread.positions[i].name}
                for i, card in enumerate(self.drawn_cards)
            ],
            "cards_needed": self.cards_needed,
            "deck_remaining": len(self.deck_stack),
            "deck_size": self.deck_size,
            "cards_revealed": self.cards_revealed,
            "reading_text": self.reading_text,
            "notice": self.notice,
            "generation": self.generation.value,
            "epoch": self.epoch,
        }
        if include_deck:
            out["deck_stack"] = [card.to_dict() for card in self.deck_stack]
        return out


class ReadingSession:
    """One user's reading, from question intake to the streamed interpretation."""

    def __init__(
        self,
        scheduler: Scheduler,
        narrator: Narrator,
        *,
        config: Optional[SessionConfig] = None,
        store: Optional[ProfileStore] = None,
        user_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.config = config or SessionConfig()
        self.user_id = user_id
        self._scheduler = scheduler
        self._narrator = narrator
        self._store = store
        self._rng = rng or random.Random()

        self._state = SessionState.INTRO
        self._question = ""
        self._spread = get_spread(DEFAULT_SPREAD_ID)
        self._deck_stack: List[DrawnCard] = []
        self._drawn: List[DrawnCard] = []
        self._deck_size = 0
        self._cards_revealed = False
        self._reading_text = ""
        self._notice = ""
        self._generation = GenerationStatus.IDLE
        self._request: Optional[ReadingRequest] = None
        self._epoch = 0
        self._timers: List[Cancellable] = []
        self._listeners: List[Listener] = []

        self._handlers: Dict[type, Callable[[Any], Any]] = {
            StartSelection: self._on_start_selection,
            SetQuestion: self._on_set_question,
            SelectSpread: self._on_select_spread,
            Submit: self._on_submit,
            DrawCard: self._on_draw,
            Reset: self._on_reset,
            ShuffleElapsed: self._on_shuffle_elapsed,
            DrawsComplete: self._on_draws_complete,
            RevealSignal: self._on_reveal_signal,
            RevealElapsed: self._on_reveal_elapsed,
            ChunkReceived: self._on_chunk,
            GenerationFinished: self._on_generation_finished,
            GenerationFailed: self._on_generation_failed,
        }

    # ---- read-only surface ----

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def question(self) -> str:
        return self._question

    @property
    def spread(self) -> SpreadDefinition:
        return self._spread

    @property
    def drawn_cards(self) -> Tuple[DrawnCard, ...]:
        return tuple(self._drawn)

    @property
    def deck_stack(self) -> Tuple[DrawnCard, ...]:
        return tuple(self._deck_stack)

    @property
    def deck_size(self) -> int:
        return self._deck_size

    @property
    def cards_revealed(self) -> bool:
        return self._cards_revealed

    @property
    def reading_text(self) -> str:
        return self._reading_text

    @property
    def notice(self) -> str:
        return self._notice

    @property
    def generation(self) -> GenerationStatus:
        return self._generation

    @property
    def epoch(self) -> int:
        return self._epoch

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            state=self._state,
            question=self._question,
            spread=self._spread,
            drawn_cards=tuple(self._drawn),
            deck_stack=tuple(self._deck_stack),
            deck_size=self._deck_size,
            cards_revealed=self._cards_revealed,
            reading_text=self._reading_text,
            notice=self._notice,
            generation=self._generation,
            epoch=self._epoch,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---- actions ----

    def start_selection(self) -> bool:
        return bool(self.dispatch(StartSelection()))

    def set_question(self, text: str) -> bool:
        return bool(self.dispatch(SetQuestion(text)))

    def select_spread(self, spread_id: str) -> bool:
        return bool(self.dispatch(SelectSpread(spread_id)))

    def submit(self, question: Optional[str] = None, spread_id: Optional[str] = None) -> bool:
        """Question + spread → Shuffling. False when refused (wrong state or blank question)."""
        return bool(self.dispatch(Submit(question, spread_id)))

    def draw_next_card(self) -> Optional[DrawnCard]:
        return self.dispatch(DrawCard())

    def reset(self) -> None:
        self.dispatch(Reset())

    # ---- transition function ----

    def dispatch(self, event: Event) -> Any:
        epoch = getattr(event, "epoch", None)
        if epoch is not None and epoch != self._epoch:
            logger.debug("Session %s dropped stale %s (epoch %d, now %d)",
                         self.session_id, type(event).__name__, epoch, self._epoch)
            return None
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unknown session event: {event!r}")
        return handler(event)

    def _emit(self, signal: Signal) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, signal)
            except Exception:
                logger.exception("Session listener failed on %s", signal.value)

    def _set_state(self, state: SessionState) -> None:
        logger.info("Session %s: %s -> %s", self.session_id, self._state.value, state.value)
        self._state = state
        self._emit(Signal.STATE_CHANGED)

    def _schedule(self, delay: float, event: Event) -> None:
        self._timers.append(self._scheduler.call_later(delay, self.dispatch, event))

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def _ignored(self, action: str) -> None:
        logger.debug("Session %s ignored %s in state %s", self.session_id, action, self._state.value)

    # ---- handlers ----

    def _on_start_selection(self, event: StartSelection) -> bool:
        if self._state is not SessionState.INTRO:
            self._ignored("start_selection")
            return False
        self._set_state(SessionState.SELECTION)
        return True

    def _on_set_question(self, event: SetQuestion) -> bool:
        if self._state is not SessionState.SELECTION:
            self._ignored("set_question")
            return False
        self._question = event.text or ""
        self._emit(Signal.QUESTION_CHANGED)
        return True

    def _on_select_spread(self, event: SelectSpread) -> bool:
        if self._state is not SessionState.SELECTION:
            self._ignored("select_spread")
            return False
        self._spread = get_spread(event.spread_id)
        self._emit(Signal.SPREAD_CHANGED)
        return True

    def _on_submit(self, event: Submit) -> bool:
        if self._state is not SessionState.SELECTION:
            self._ignored("submit")
            return False
        if event.spread_id is not None:
            self._spread = get_spread(event.spread_id)
        if event.question is not None:
            self._question = event.question
        if not self._question.strip():
            logger.debug("Session %s refused submit: blank question", self.session_id)
            return False

        self._epoch += 1
        self._cancel_timers()
        deck = shuffle_deck(CARD_REGISTRY, rng=self._rng, reversal_prob=self.config.reversal_prob)
        self._deck_stack = deck
        self._deck_size = len(deck)
        self._drawn = []
        self._cards_revealed = False
        self._set_state(SessionState.SHUFFLING)
        self._schedule(self.config.shuffle_seconds, ShuffleElapsed(self._epoch))
        return True

    def _on_shuffle_elapsed(self, event: ShuffleElapsed) -> None:
        if self._state is SessionState.SHUFFLING:
            self._set_state(SessionState.DRAWING)

    def _on_draw(self, event: DrawCard) -> Optional[DrawnCard]:
        if (
            self._state is not SessionState.DRAWING
            or len(self._drawn) >= self._spread.card_count
            or not self._deck_stack
        ):
            self._ignored("draw")
            return None

        card = self._deck_stack.pop(0)
        self._drawn.append(card)
        self._emit(Signal.CARD_DRAWN)
        if len(self._drawn) == self._spread.card_count:
            # Let the last card land before the table flips to Revealing
            self._schedule(self.config.final_draw_delay, DrawsComplete(self._epoch))
        return card

    def _on_draws_complete(self, event: DrawsComplete) -> None:
        if self._state is not SessionState.DRAWING:
            return
        self._cards_revealed = False
        self._set_state(SessionState.REVEALING)
        self._schedule(self.config.reveal_signal_delay, RevealSignal(self._epoch))
        self._schedule(self.config.reveal_seconds, RevealElapsed(self._epoch))

    def _on_reveal_signal(self, event: RevealSignal) -> None:
        if self._state is SessionState.REVEALING and not self._cards_revealed:
            self._cards_revealed = True
            self._emit(Signal.CARDS_REVEALED)

    def _on_reveal_elapsed(self, event: RevealElapsed) -> None:
        if self._state is not SessionState.REVEALING:
            return
        self._cards_revealed = True
        self._reading_text = ""
        self._notice = ""
        self._generation = GenerationStatus.STREAMING
        self._set_state(SessionState.READING)
        self._start_generation()

    def _start_generation(self) -> None:
        epoch = self._epoch
        personalization = self._personalization()
        self._request = ReadingRequest(
            question=self._question,
            spread=self._spread,
            cards=tuple(self._drawn),
            personalization=personalization,
        )
        logger.info("Session %s: generating reading (%d cards, personalized=%s)",
                    self.session_id, len(self._drawn), not personalization.is_empty)
        try:
            chunks = self._narrator.stream_reading(self._request)
        except Exception as exc:
            self._fail(exc)
            return
        self._scheduler.stream(
            chunks,
            on_chunk=lambda text: self.dispatch(ChunkReceived(epoch, text)),
            on_done=lambda: self.dispatch(GenerationFinished(epoch)),
            on_error=lambda exc: self.dispatch(GenerationFailed(epoch, exc)),
        )

    def _personalization(self) -> PersonalizationSnapshot:
        return load_personalization(self._store, self.user_id, self.config.history_limit)

    def _on_chunk(self, event: ChunkReceived) -> None:
        if self._state is not SessionState.READING or self._generation is not GenerationStatus.STREAMING:
            return
        self._reading_text += event.text
        self._emit(Signal.CHUNK)

    def _on_generation_finished(self, event: GenerationFinished) -> None:
        if self._generation is not GenerationStatus.STREAMING:
            return
        self._generation = GenerationStatus.COMPLETE
        logger.info("Session %s: reading complete (%d chars)", self.session_id, len(self._reading_text))
        self._record_history()
        self._emit(Signal.READING_FINISHED)

    def _on_generation_failed(self, event: GenerationFailed) -> None:
        if self._generation is not GenerationStatus.STREAMING:
            return
        self._fail(event.error)

    def _fail(self, error: BaseException) -> None:
        logger.warning("Session %s: reading generation failed: %s", self.session_id, error)
        self._generation = GenerationStatus.FAILED
        self._notice = FAILURE_NOTICE
        self._emit(Signal.READING_FINISHED)

    def _record_history(self) -> None:
        if self._store is None or not self.user_id or self._request is None:
            return
        try:
            self._store.append_history(self.user_id, reading_log_for(self._request, self._reading_text))
        except Exception:
            logger.warning("Session %s: could not save reading history", self.session_id, exc_info=True)

    def _on_reset(self, event: Reset) -> None:
        self._cancel_timers()
        self._epoch += 1
        self._question = ""
        self._drawn = []
        self._deck_stack = []
        self._deck_size = 0
        self._reading_text = ""
        self._notice = ""
        self._cards_revealed = False
        self._generation = GenerationStatus.IDLE
        self._request = None
        previous = self._state
        self._state = SessionState.INTRO
        logger.info("Session %s reset from %s", self.session_id, previous.value)
        self._emit(Signal.RESET)
        if previous is not SessionState.INTRO:
            self._emit(Signal.STATE_CHANGED)
