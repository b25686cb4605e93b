# api/main.py
from __future__ import annotations

import logging
import os
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from arcanum import __version__
from arcanum.config import SessionConfig, store_path
from arcanum.narrative import GeminiNarrator, Narrator
from arcanum.profile_store import JsonProfileStore, ProfileStore, ReadingLog, UserProfile
from arcanum.scheduler import AsyncioScheduler
from arcanum.session import ReadingSession
from arcanum import tarot_core

logger = logging.getLogger(__name__)

SESSION_IDLE_SECONDS = 30 * 60
MAX_SESSIONS = 1000


# ---------- Pydantic Schemas ----------
class CreateSessionRequest(BaseModel):
    user_id: Optional[str] = Field(None, description="Bind the session to a stored profile/history")


class SubmitRequest(BaseModel):
    question: str = ""
    spread: Optional[str] = Field(None, description="single|three_card|decision|celtic_cross (or display name)")


class HealthResponse(BaseModel):
    status: str
    version: str
    has_gemini_token: bool
    sessions: int


def create_app(
    *,
    config: Optional[SessionConfig] = None,
    narrator_factory: Optional[Callable[[], Narrator]] = None,
    store: Optional[ProfileStore] = None,
    session_idle_seconds: float = SESSION_IDLE_SECONDS,
    max_sessions: int = MAX_SESSIONS,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    if max_sessions < 1:
        raise ValueError("max_sessions must be >= 1")
    config = config or SessionConfig.from_env()
    narrator_factory = narrator_factory or GeminiNarrator
    store = store if store is not None else JsonProfileStore(store_path())
    # session_id -> (session, last touched); least recently used first
    sessions: "OrderedDict[str, Tuple[ReadingSession, float]]" = OrderedDict()

    app = FastAPI(title="Arcanum Reading API", version=__version__)

    # CORS for browser front-ends
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_methods=["*"], allow_headers=["*"], allow_credentials=False
    )

    def _evict(session_id: str, reason: str) -> None:
        session, _ = sessions.pop(session_id)
        session.reset()
        logger.info("Evicted session %s (%s)", session_id, reason)

    def _sweep(room: int = 0) -> None:
        cutoff = clock() - session_idle_seconds
        for session_id, (_, touched) in list(sessions.items()):
            if touched < cutoff:
                _evict(session_id, "idle")
        while sessions and len(sessions) > max_sessions - room:
            _evict(next(iter(sessions)), "capacity")

    def _session(session_id: str) -> ReadingSession:
        entry = sessions.get(session_id)
        if entry is None or entry[1] < clock() - session_idle_seconds:
            if entry is not None:
                _evict(session_id, "idle")
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        sessions[session_id] = (entry[0], clock())
        sessions.move_to_end(session_id)
        return entry[0]

    def _view(session: ReadingSession, **extra: Any) -> Dict[str, Any]:
        return {**session.snapshot().to_dict(include_deck=False), **extra}

    @app.get("/health", response_model=HealthResponse)
    async def health():
        _sweep()
        return HealthResponse(
            status="ok",
            version=app.version,
            has_gemini_token=bool(os.getenv("GEMINI_TOKEN") or os.getenv("GEMINI_API_KEY")),
            sessions=len(sessions),
        )

    @app.get("/v1/deck")
    async def deck():
        return {"cards": [c.to_dict() for c in tarot_core.CARD_REGISTRY]}

    @app.get("/v1/spreads")
    async def list_spreads():
        return {"spreads": [s.to_dict() for s in tarot_core.list_spreads()]}

    # Session endpoints are async so every transition runs on the event loop thread.
    @app.post("/v1/sessions", status_code=201)
    async def create_session(req: Optional[CreateSessionRequest] = None):
        _sweep(room=1)
        session = ReadingSession(
            AsyncioScheduler(),
            narrator_factory(),
            config=config,
            store=store,
            user_id=req.user_id if req else None,
        )
        sessions[session.session_id] = (session, clock())
        logger.info("Created session %s", session.session_id)
        return _view(session)

    @app.get("/v1/sessions/{session_id}")
    async def get_session(session_id: str, include_deck: bool = False):
        return _session(session_id).snapshot().to_dict(include_deck=include_deck)

    @app.delete("/v1/sessions/{session_id}")
    async def delete_session(session_id: str):
        session = _session(session_id)
        session.reset()
        sessions.pop(session_id, None)
        return {"ok": True}

    @app.post("/v1/sessions/{session_id}/start")
    async def start_selection(session_id: str):
        session = _session(session_id)
        return _view(session, accepted=session.start_selection())

    @app.post("/v1/sessions/{session_id}/submit")
    async def submit(session_id: str, req: SubmitRequest):
        session = _session(session_id)
        try:
            accepted = session.submit(req.question, req.spread)
        except tarot_core.InvalidSpreadError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _view(session, accepted=accepted)

    @app.post("/v1/sessions/{session_id}/draw")
    async def draw(session_id: str):
        session = _session(session_id)
        card = session.draw_next_card()
        return _view(session, accepted=card is not None, card=card.to_dict() if card else None)

    @app.post("/v1/sessions/{session_id}/reset")
    async def reset(session_id: str):
        session = _session(session_id)
        session.reset()
        return _view(session, accepted=True)

    # Store I/O blocks, so the profile endpoints run in the threadpool.
    @app.get("/v1/profiles/{user_id}", response_model=UserProfile)
    def get_profile(user_id: str):
        profile = store.load_profile(user_id)
        if profile is None:
            raise HTTPException(status_code=404, detail=f"No profile for {user_id}")
        return profile

    @app.put("/v1/profiles/{user_id}", response_model=UserProfile)
    def put_profile(user_id: str, profile: UserProfile):
        if profile.id != user_id:
            raise HTTPException(status_code=400, detail="Profile id does not match the URL")
        store.save_profile(user_id, profile)
        return profile

    @app.get("/v1/profiles/{user_id}/history", response_model=List[ReadingLog])
    def get_history(user_id: str, limit: int = 5):
        return store.load_history(user_id, max(0, min(limit, 50)))

    return app


app = create_app()
