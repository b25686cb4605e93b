# streamlit.py — Rendering layer for an Arcanum reading session
# Run:  streamlit run streamlit.py

from __future__ import annotations

import logging
import time
from typing import Optional

import streamlit as st

from arcanum.config import SessionConfig, store_path
from arcanum.narrative import GeminiNarrator
from arcanum.profile_store import AIPreferences, JsonProfileStore, SoulProfile, UserProfile
from arcanum.scheduler import ManualScheduler
from arcanum.session import GenerationStatus, ReadingSession, SessionState
from arcanum.tarot_core import DrawnCard, list_spreads

logging.basicConfig(level=logging.INFO)

# Streamlit reruns the script on every interaction; the session and its fake
# clock live in st.session_state and the clock is caught up to wall time here.
POLL_SECONDS = 0.15
READY_STEPS_PER_RUN = 8

# -----------------------------
# Page setup
# -----------------------------
st.set_page_config(
    page_title="Arcanum",
    page_icon="🔮",
    layout="wide",
)


@st.cache_resource
def get_store() -> JsonProfileStore:
    return JsonProfileStore(store_path())


def get_session(user_id: Optional[str]) -> ReadingSession:
    session: Optional[ReadingSession] = st.session_state.get("arcanum_session")
    if session is None or session.user_id != (user_id or None):
        scheduler = ManualScheduler(start=time.monotonic())
        session = ReadingSession(
            scheduler,
            GeminiNarrator(),
            config=SessionConfig.from_env(),
            store=get_store(),
            user_id=user_id or None,
        )
        st.session_state["arcanum_session"] = session
        st.session_state["arcanum_scheduler"] = scheduler
    return session


# -----------------------------
# Sidebar: profile & preferences
# -----------------------------
st.sidebar.header("Querent")
user_id = st.sidebar.text_input("User id (optional)", value="", help="Readings are remembered per user id.").strip()

if user_id:
    store = get_store()
    existing = store.load_profile(user_id)
    soul = (existing.soul_profile if existing else None) or SoulProfile()
    prefs = (existing.preferences if existing else None) or AIPreferences()

    with st.sidebar.form("profile"):
        name = st.text_input("Name", value=existing.name if existing else "")
        age = st.number_input("Age", min_value=0, max_value=120, value=(existing.age or 0) if existing else 0)
        st.markdown("**Soul profile**")
        core_values = st.text_input("What values drive your spirit?", value=soul.core_values)
        deepest_fear = st.text_input("What is your deepest fear?", value=soul.deepest_fear)
        current_goal = st.text_input("What is your current major goal?", value=soul.current_goal)
        struggle = st.text_input("What is your biggest struggle right now?", value=soul.struggle)
        styles = ["Head", "Heart", "Intuition"]
        decision_style = st.radio("You decide with your…", styles, index=styles.index(soul.decision_style), horizontal=True)
        st.markdown("**Tuning the oracle**")
        style_opts = ["Psychological", "Balanced", "Esoteric"]
        style = st.radio("Interpretation style", style_opts, index=style_opts.index(prefs.style), horizontal=True)
        verb_opts = ["Concise", "Detailed"]
        verbosity = st.radio("Length", verb_opts, index=verb_opts.index(prefs.verbosity), horizontal=True)
        tone_opts = ["Believer", "Analytical"]
        skepticism = st.radio("Tone", tone_opts, index=tone_opts.index(prefs.skepticism), horizontal=True)
        if st.form_submit_button("Save profile"):
            store.save_profile(user_id, UserProfile(
                id=user_id,
                name=name or "Anonymous Traveler",
                age=int(age) or None,
                soul_profile=SoulProfile(
                    core_values=core_values, deepest_fear=deepest_fear, current_goal=current_goal,
                    struggle=struggle, decision_style=decision_style,
                ),
                preferences=AIPreferences(style=style, verbosity=verbosity, skepticism=skepticism),
            ))
            st.sidebar.success("Profile saved.")

    with st.sidebar.expander("Recent readings"):
        for log in store.load_history(user_id, 5):
            st.markdown(f"**{log.question}** · _{log.spread_name}_")
            if log.summary:
                st.caption(log.summary)

session = get_session(user_id)
scheduler: ManualScheduler = st.session_state["arcanum_scheduler"]
scheduler.advance_to(time.monotonic(), ready_limit=READY_STEPS_PER_RUN)
snap = session.snapshot()

# -----------------------------
# Header
# -----------------------------
head_l, head_r = st.columns([4, 1])
head_l.title("🔮 Arcanum")
if snap.state is not SessionState.INTRO:
    if head_r.button("↺ New reading", use_container_width=True):
        session.reset()
        st.rerun()


def render_card(card: Optional[DrawnCard], label: str, face_up: bool) -> None:
    st.caption(label.upper())
    if card is None:
        st.markdown("### ▫️")
        st.caption("awaiting")
    elif not face_up:
        st.markdown("### 🂠")
    else:
        st.markdown(f"**{card.name}**")
        st.caption(card.orientation.upper())


def render_spread(face_up: bool) -> None:
    cols = st.columns(max(1, snap.spread.card_count), gap="small")
    for idx, pos in enumerate(snap.spread.positions):
        card = snap.drawn_cards[idx] if idx < len(snap.drawn_cards) else None
        with cols[idx]:
            render_card(card, f"{idx + 1}. {pos.name}", face_up)


# -----------------------------
# Stages
# -----------------------------
if snap.state is SessionState.INTRO:
    st.markdown("_\"The universe speaks in symbols.\"_ Focus your intent and let the cards guide your path.")
    if st.button("Enter", type="primary"):
        session.start_selection()
        st.rerun()

elif snap.state is SessionState.SELECTION:
    question = st.text_area(
        "Your query",
        placeholder="What energies are influencing my path? What should I focus on?",
        height=100,
    )
    spreads = list_spreads()
    labels = [f"{s.name} — {s.description}" for s in spreads]
    current = [s.id for s in spreads].index(snap.spread.id)
    choice = st.radio("Sacred spread", labels, index=current)
    spread_id = spreads[labels.index(choice)].id
    if st.button("Commune with the cards", type="primary", disabled=not question.strip()):
        if session.submit(question, spread_id):
            st.rerun()
        st.warning("Please enter a question first.")

elif snap.state is SessionState.SHUFFLING:
    st.subheader("Mixing fate…")
    st.caption("The threads of destiny are being woven...")

elif snap.state is SessionState.DRAWING:
    st.subheader("The draw")
    remaining = snap.cards_needed
    st.caption(f"Focus on your question. Draw {remaining} more card{'s' if remaining != 1 else ''}.")
    if st.button(f"🂠 Draw from the deck ({len(snap.deck_stack)} left)", disabled=remaining == 0):
        session.draw_next_card()
        st.rerun()
    render_spread(face_up=False)

else:
    # Revealing & Reading share the table
    render_spread(face_up=snap.cards_revealed)
    if snap.state is SessionState.READING:
        st.markdown("---")
        st.subheader("The reading")
        if snap.reading_text:
            st.markdown(snap.reading_text)
        elif snap.generation is GenerationStatus.STREAMING:
            st.caption("Consulting the oracle…")
        if snap.notice:
            st.markdown(snap.notice)

# Keep the clock moving while a timer or the stream is pending
if snap.state in (SessionState.SHUFFLING, SessionState.REVEALING) or (
    snap.state is SessionState.DRAWING and snap.cards_needed == 0
) or (snap.state is SessionState.READING and snap.generation is GenerationStatus.STREAMING):
    time.sleep(POLL_SECONDS)
    st.rerun()
