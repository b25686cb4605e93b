"""Tests for the reading session state machine (fake clock, scripted narrators)."""

import asyncio
import random

import pytest

from arcanum.config import SessionConfig
from arcanum.llm import NarrativeError
from arcanum.narrative import FAILURE_NOTICE
from arcanum.profile_store import (
    InMemoryProfileStore,
    ReadingLog,
    SoulProfile,
    UserProfile,
)
from arcanum.session import GenerationStatus, SessionState, Signal
from arcanum.tarot_core import InvalidSpreadError

from conftest import BrokenNarrator, ScriptedNarrator


def to_drawing(session, scheduler, question="Will I find clarity?", spread="single"):
    session.start_selection()
    assert session.submit(question, spread)
    scheduler.advance(session.config.shuffle_seconds)
    assert session.state is SessionState.DRAWING


def draw_all(session):
    while session.draw_next_card() is not None:
        pass


def drive_to(state, session, scheduler):
    """Walk a fresh session forward until it sits in `state`."""
    if state is SessionState.INTRO:
        return
    session.start_selection()
    session.set_question("What should I focus on?")
    if state is SessionState.SELECTION:
        return
    assert session.submit(spread_id="three_card")
    if state is SessionState.SHUFFLING:
        return
    scheduler.advance(session.config.shuffle_seconds)
    session.draw_next_card()
    if state is SessionState.DRAWING:
        return
    draw_all(session)
    scheduler.advance(session.config.final_draw_delay)
    if state is SessionState.REVEALING:
        return
    scheduler.advance(session.config.reveal_seconds)
    assert session.state is SessionState.READING


class TestSelection:

    def test_initial_state(self, make_session):
        session = make_session()
        assert session.state is SessionState.INTRO
        assert session.question == ""
        assert session.drawn_cards == ()
        assert session.deck_stack == ()
        assert session.reading_text == ""

    def test_start_selection_only_from_intro(self, make_session):
        session = make_session()
        assert session.start_selection()
        assert session.state is SessionState.SELECTION
        assert not session.start_selection()

    def test_blank_question_is_refused(self, make_session):
        session = make_session()
        session.start_selection()
        assert not session.submit("   \n\t", "single")
        assert session.state is SessionState.SELECTION
        assert session.deck_stack == ()

    def test_question_can_be_edited_before_submit(self, make_session):
        session = make_session()
        session.start_selection()
        session.set_question("draft")
        session.set_question("Where is my path leading?")
        assert session.submit()
        assert session.question == "Where is my path leading?"

    def test_select_spread_by_id_or_name(self, make_session):
        session = make_session()
        session.start_selection()
        session.select_spread("Past, Present, Future")
        assert session.spread.id == "three_card"
        session.select_spread("celtic_cross")
        assert session.spread.card_count == 5

    def test_unknown_spread_raises(self, make_session):
        session = make_session()
        session.start_selection()
        with pytest.raises(InvalidSpreadError):
            session.submit("question", "horseshoe")
        assert session.state is SessionState.SELECTION

    def test_selection_edits_ignored_outside_selection(self, make_session):
        session = make_session()
        assert not session.set_question("too early")
        assert not session.select_spread("three_card")
        assert not session.submit("too early", "single")
        assert session.state is SessionState.INTRO
        assert session.question == ""


class TestShufflingAndDrawing:

    def test_shuffle_timer(self, make_session, scheduler):
        session = make_session()
        session.start_selection()
        session.submit("Will I find clarity?", "single")
        assert session.state is SessionState.SHUFFLING
        assert len(session.deck_stack) == 78
        scheduler.advance(2.0)
        assert session.state is SessionState.SHUFFLING
        scheduler.advance(0.5)
        assert session.state is SessionState.DRAWING

    def test_draw_outside_drawing_is_noop(self, make_session, scheduler):
        session = make_session()
        assert session.draw_next_card() is None
        session.start_selection()
        session.submit("q", "single")
        assert session.draw_next_card() is None
        assert len(session.deck_stack) == 78
        assert session.drawn_cards == ()

    def test_draw_pops_head_of_stack(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler, spread="three_card")
        expected = session.deck_stack[:3]
        drawn = [session.draw_next_card() for _ in range(3)]
        assert tuple(drawn) == expected
        assert session.drawn_cards == expected

    def test_conservation_during_drawing(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler, spread="celtic_cross")
        assert session.deck_size == 78
        for _ in range(5):
            assert len(session.drawn_cards) + len(session.deck_stack) == session.deck_size
            session.draw_next_card()
            assert len(session.drawn_cards) + len(session.deck_stack) == session.deck_size
        assert len(session.drawn_cards) == 5

    def test_no_duplicate_cards_in_session(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler, spread="celtic_cross")
        draw_all(session)
        ids = [c.id for c in session.drawn_cards + session.deck_stack]
        assert len(ids) == len(set(ids)) == 78

    def test_draw_at_capacity_is_idempotent(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler, spread="single")
        session.draw_next_card()
        before = session.snapshot()
        assert session.draw_next_card() is None
        assert session.draw_next_card() is None
        assert session.snapshot() == before

    def test_seeded_sessions_deal_identically(self, scheduler, narrator):
        from arcanum.session import ReadingSession

        a = ReadingSession(scheduler, narrator, rng=random.Random(9))
        b = ReadingSession(scheduler, narrator, rng=random.Random(9))
        for s in (a, b):
            s.start_selection()
            s.submit("same question", "single")
        assert a.deck_stack == b.deck_stack


class TestScenarios:

    def test_single_card(self, make_session, scheduler, narrator):
        session = make_session()
        to_drawing(session, scheduler, question="Will I find clarity?", spread="single")
        assert len(session.deck_stack) == 78
        assert session.drawn_cards == ()

        session.draw_next_card()
        assert len(session.drawn_cards) == 1
        assert len(session.deck_stack) == 77
        # The final draw lingers before the reveal
        assert session.state is SessionState.DRAWING

        scheduler.advance(0.8)
        assert session.state is SessionState.REVEALING
        assert not session.cards_revealed
        scheduler.advance(0.1)
        assert session.cards_revealed

        scheduler.advance(5.0)
        assert session.state is SessionState.READING
        assert len(narrator.requests) == 1
        request = narrator.requests[0]
        assert request.question == "Will I find clarity?"
        assert request.spread.id == "single"
        assert tuple(request.cards) == session.drawn_cards

    def test_three_cards_reveal_only_after_third(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler, spread="Past, Present, Future")

        session.draw_next_card()
        scheduler.advance(1.0)
        assert session.state is SessionState.DRAWING
        session.draw_next_card()
        scheduler.advance(1.0)
        assert session.state is SessionState.DRAWING
        session.draw_next_card()
        assert session.state is SessionState.DRAWING
        scheduler.advance(1.0)
        assert session.state is SessionState.REVEALING
        assert len(session.drawn_cards) == 3

    def test_chunks_concatenate_in_order(self, make_session, scheduler):
        session = make_session(narrator=ScriptedNarrator(["Hello, ", "seeker."]))
        to_drawing(session, scheduler)
        session.draw_next_card()
        scheduler.advance(0.8)

        # Stop right after the first pull so delivery happens with gaps
        scheduler.advance_to(scheduler.now + 5.0, ready_limit=1)
        assert session.state is SessionState.READING
        assert session.reading_text == ""
        scheduler.run_ready(1)
        assert session.reading_text == "Hello, "
        assert session.generation is GenerationStatus.STREAMING
        scheduler.run_ready()
        assert session.reading_text == "Hello, seeker."
        assert session.generation is GenerationStatus.COMPLETE

    def test_adapter_fails_immediately(self, make_session, scheduler):
        session = make_session(narrator=ScriptedNarrator([], error=NarrativeError("quota exceeded")))
        drive_to(SessionState.READING, session, scheduler)
        assert session.state is SessionState.READING
        assert session.reading_text == ""
        assert session.generation is GenerationStatus.FAILED
        assert session.notice == FAILURE_NOTICE

        session.reset()
        assert session.state is SessionState.INTRO
        assert session.notice == ""

    def test_reset_drops_chunk_in_flight(self, make_session, scheduler):
        session = make_session(narrator=ScriptedNarrator(["Hello, ", "seeker."]))
        to_drawing(session, scheduler)
        session.draw_next_card()
        scheduler.advance(0.8)
        scheduler.advance_to(scheduler.now + 5.0, ready_limit=1)
        assert scheduler.has_ready  # "Hello, " is queued for delivery

        session.reset()
        scheduler.run_all()
        assert session.state is SessionState.INTRO
        assert session.reading_text == ""
        assert session.generation is GenerationStatus.IDLE


class TestNarrativeFailures:

    def test_partial_text_survives_failure(self, make_session, scheduler):
        session = make_session(narrator=ScriptedNarrator(["The Overview: ..."], error=NarrativeError("cut")))
        drive_to(SessionState.READING, session, scheduler)
        assert session.reading_text == "The Overview: ..."
        assert session.generation is GenerationStatus.FAILED
        snap = session.snapshot()
        assert snap.display_text == f"The Overview: ...\n\n{FAILURE_NOTICE}"

    def test_narrator_raising_synchronously(self, make_session, scheduler):
        narrator = BrokenNarrator()
        session = make_session(narrator=narrator)
        drive_to(SessionState.READING, session, scheduler)
        assert narrator.calls == 1
        assert session.state is SessionState.READING
        assert session.generation is GenerationStatus.FAILED
        assert session.snapshot().display_text == FAILURE_NOTICE

    def test_exactly_one_generation_per_run(self, make_session, scheduler, narrator):
        session = make_session()
        drive_to(SessionState.READING, session, scheduler)
        scheduler.advance(60.0)
        session.draw_next_card()
        scheduler.run_all()
        assert len(narrator.requests) == 1


class TestReset:

    @pytest.mark.parametrize("state", list(SessionState))
    def test_reset_from_any_state(self, state, make_session, scheduler):
        session = make_session()
        drive_to(state, session, scheduler)
        assert session.state is state

        session.reset()
        assert session.state is SessionState.INTRO
        assert session.question == ""
        assert session.drawn_cards == ()
        assert session.deck_stack == ()
        assert session.reading_text == ""
        assert not session.cards_revealed
        assert scheduler.pending_timers == 0

    def test_reset_during_shuffle_cancels_transition(self, make_session, scheduler):
        session = make_session()
        session.start_selection()
        session.submit("q", "single")
        session.reset()
        scheduler.advance(10.0)
        assert session.state is SessionState.INTRO

    def test_reset_during_final_draw_delay(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler)
        session.draw_next_card()
        session.reset()
        scheduler.advance(10.0)
        assert session.state is SessionState.INTRO

    def test_reset_during_reveal_skips_generation(self, make_session, scheduler, narrator):
        session = make_session()
        drive_to(SessionState.REVEALING, session, scheduler)
        session.reset()
        scheduler.advance(10.0)
        assert session.state is SessionState.INTRO
        assert narrator.requests == []

    def test_stale_timer_does_not_touch_new_run(self, make_session, scheduler):
        session = make_session()
        session.start_selection()
        session.submit("first", "single")
        session.reset()
        session.start_selection()
        scheduler.advance(1.0)
        session.submit("second", "single")
        # The first run's shuffle timer would have fired at t=2.5
        scheduler.advance(1.6)
        assert session.state is SessionState.SHUFFLING
        scheduler.advance(1.0)
        assert session.state is SessionState.DRAWING

    def test_reset_bumps_epoch(self, make_session):
        session = make_session()
        before = session.epoch
        session.reset()
        assert session.epoch == before + 1


class TestPersonalization:

    def _store_with_profile(self):
        store = InMemoryProfileStore()
        store.save_profile("u1", UserProfile(
            id="u1", name="Mira", age=31,
            soul_profile=SoulProfile(core_values="Freedom", current_goal="Open a studio"),
        ))
        store.append_history("u1", ReadingLog(question="Earlier?", spread_name="Single Card", summary="Patience."))
        return store

    def test_snapshot_forwarded_to_narrator(self, make_session, scheduler, narrator):
        store = self._store_with_profile()
        session = make_session(store=store, user_id="u1")
        drive_to(SessionState.READING, session, scheduler)
        personalization = narrator.requests[0].personalization
        assert personalization.profile.name == "Mira"
        assert [h.question for h in personalization.history] == ["Earlier?"]

    def test_completed_reading_is_appended_to_history(self, make_session, scheduler):
        store = self._store_with_profile()
        session = make_session(store=store, user_id="u1")
        drive_to(SessionState.READING, session, scheduler)
        history = store.load_history("u1", 5)
        assert len(history) == 2
        latest = history[0]
        assert latest.question == "What should I focus on?"
        assert latest.spread_name == "Past, Present, Future"
        assert [c.position for c in latest.cards] == ["Past", "Present", "Future"]
        assert latest.summary == "Hello, seeker."

    def test_failed_reading_is_not_recorded(self, make_session, scheduler):
        store = self._store_with_profile()
        session = make_session(store=store, user_id="u1", narrator=ScriptedNarrator([], error=NarrativeError("x")))
        drive_to(SessionState.READING, session, scheduler)
        assert len(store.load_history("u1", 5)) == 1

    def test_unavailable_store_means_no_personalization(self, make_session, scheduler, narrator):
        class DownStore(InMemoryProfileStore):
            def load_profile(self, user_id):
                raise OSError("store offline")

        session = make_session(store=DownStore(), user_id="u1")
        drive_to(SessionState.READING, session, scheduler)
        assert narrator.requests[0].personalization.is_empty
        assert session.reading_text == "Hello, seeker."


class TestSignals:

    def test_listener_sees_each_step(self, make_session, scheduler):
        session = make_session()
        seen = []
        session.subscribe(lambda s, signal: seen.append((signal, s.state)))
        drive_to(SessionState.READING, session, scheduler)

        states = [state for signal, state in seen if signal is Signal.STATE_CHANGED]
        assert states == [
            SessionState.SELECTION,
            SessionState.SHUFFLING,
            SessionState.DRAWING,
            SessionState.REVEALING,
            SessionState.READING,
        ]
        signals = [signal for signal, _ in seen]
        assert signals.count(Signal.CARD_DRAWN) == 3
        assert signals.count(Signal.CHUNK) == 2
        assert signals[-1] is Signal.READING_FINISHED

    def test_failing_listener_does_not_break_session(self, make_session, scheduler):
        session = make_session()

        def explode(s, signal):
            raise RuntimeError("render failure")

        session.subscribe(explode)
        drive_to(SessionState.READING, session, scheduler)
        assert session.reading_text == "Hello, seeker."

    def test_unsubscribe(self, make_session):
        session = make_session()
        seen = []
        unsubscribe = session.subscribe(lambda s, signal: seen.append(signal))
        unsubscribe()
        session.start_selection()
        assert seen == []


class TestSnapshot:

    def test_to_dict_aligns_cards_with_positions(self, make_session, scheduler):
        session = make_session()
        to_drawing(session, scheduler, spread="decision")
        session.draw_next_card()
        data = session.snapshot().to_dict()
        assert data["state"] == "Drawing"
        assert data["drawn_cards"][0]["position"] == "The Dilemma"
        assert data["cards_needed"] == 2
        assert data["deck_remaining"] == 77
        assert len(data["deck_stack"]) == 77
        assert "deck_stack" not in session.snapshot().to_dict(include_deck=False)

    def test_instant_config(self, scheduler, narrator):
        from arcanum.session import ReadingSession

        session = ReadingSession(scheduler, narrator, config=SessionConfig.instant())
        session.start_selection()
        session.submit("q", "single")
        scheduler.run_all()
        assert session.state is SessionState.DRAWING
        session.draw_next_card()
        scheduler.run_all()
        assert session.state is SessionState.READING
        assert session.reading_text == "Hello, seeker."


def test_full_run_on_asyncio_loop():
    from arcanum.scheduler import AsyncioScheduler
    from arcanum.session import ReadingSession

    async def scenario():
        finished = asyncio.Event()
        session = ReadingSession(
            AsyncioScheduler(),
            ScriptedNarrator(["The Overview: ", "calm waters."]),
            config=SessionConfig.instant(),
            rng=random.Random(3),
        )
        session.subscribe(lambda s, signal: signal is Signal.READING_FINISHED and finished.set())
        session.start_selection()
        assert session.submit("Is the tide turning?", "single")
        while session.state is not SessionState.DRAWING:
            await asyncio.sleep(0.01)
        session.draw_next_card()
        await asyncio.wait_for(finished.wait(), timeout=5)
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.READING
    assert session.generation is GenerationStatus.COMPLETE
    assert session.reading_text == "The Overview: calm waters."
