"""
profile_store.py — Personalization data: soul profile, AI preferences, reading history.

- Models are pydantic so the HTTP layer and the JSON file share one schema.
- Stores:
  - InMemoryProfileStore: process-local dicts (tests, anonymous demo)
  - JsonProfileStore: one JSON file with an in-memory cache and atomic writes

The reading session only ever reads a PersonalizationSnapshot and, after a
completed reading, appends one ReadingLog. A store that raises is treated as
"no personalization" by load_personalization().
"""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

MAX_STORED_HISTORY = 50


class ProfileStoreError(RuntimeError):
    """Raised when a store cannot read or write its backing data."""


# =========================
# Models
# =========================

class SoulProfile(BaseModel):
    core_values: str = ""        # "Freedom, Creativity"
    deepest_fear: str = ""       # "Stagnation, Irrelevance"
    current_goal: str = ""       # "Launching a startup"
    decision_style: Literal["Head", "Heart", "Intuition"] = "Intuition"
    struggle: str = ""           # current major challenge


class AIPreferences(BaseModel):
    style: Literal["Psychological", "Esoteric", "Balanced"] = "Balanced"
    verbosity: Literal["Concise", "Detailed"] = "Detailed"
    skepticism: Literal["Believer", "Analytical"] = "Believer"


class ReadingCardLog(BaseModel):
    name: str
    position: str
    reversed: bool = False


class ReadingLog(BaseModel):
    id: str = ""
    date: float = Field(default_factory=time.time)  # unix timestamp
    question: str
    spread_name: str
    cards: List[ReadingCardLog] = Field(default_factory=list)
    summary: str = ""  # short text kept for future prompt context


class UserProfile(BaseModel):
    id: str
    name: str = "Anonymous Traveler"
    email: str = ""
    avatar_url: Optional[str] = None
    age: Optional[int] = None
    soul_profile: Optional[SoulProfile] = None
    preferences: Optional[AIPreferences] = None


class PersonalizationSnapshot(BaseModel):
    """Read-only context forwarded to the narrative adapter."""
    profile: Optional[UserProfile] = None
    history: List[ReadingLog] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.profile is None and not self.history


# =========================
# Store contract
# =========================

class ProfileStore(Protocol):
    def load_profile(self, user_id: str) -> Optional[UserProfile]: ...

    def save_profile(self, user_id: str, profile: UserProfile) -> None: ...

    def append_history(self, user_id: str, log: ReadingLog) -> ReadingLog: ...

    def load_history(self, user_id: str, limit: int = 5) -> List[ReadingLog]: ...


def _with_id(log: ReadingLog) -> ReadingLog:
    if log.id:
        return log
    return log.model_copy(update={"id": f"reading-{uuid.uuid4().hex[:12]}"})


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._profiles: Dict[str, UserProfile] = {}
        self._history: Dict[str, List[ReadingLog]] = {}

    def load_profile(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    def save_profile(self, user_id: str, profile: UserProfile) -> None:
        self._profiles[user_id] = profile

    def append_history(self, user_id: str, log: ReadingLog) -> ReadingLog:
        log = _with_id(log)
        logs = self._history.setdefault(user_id, [])
        logs.insert(0, log)
        del logs[MAX_STORED_HISTORY:]
        return log

    def load_history(self, user_id: str, limit: int = 5) -> List[ReadingLog]:
        return list(self._history.get(user_id, [])[:max(0, limit)])


class JsonProfileStore:
    """
    File-backed store.

    Layout:
    {
      "users":   {"<user_id>": {...UserProfile...}},
      "history": {"<user_id>": [{...ReadingLog...}, ...]}   # newest first
    }
    """

    def __init__(self, file_path: str) -> None:
        self.file_path = file_path
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None

    def _read(self) -> Dict[str, Any]:
        with self._lock:
            if self._cache is not None:
                return self._cache
            try:
                with open(self.file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except FileNotFoundError:
                data = {}
            except json.JSONDecodeError:
                # Recover from a corrupted file rather than refusing every read
                logger.warning("Profile store %s is corrupted; starting empty", self.file_path)
                data = {}
            except OSError as exc:
                raise ProfileStoreError(f"Cannot read {self.file_path}: {exc}") from exc
            if not isinstance(data, dict):
                data = {}
            data.setdefault("users", {})
            data.setdefault("history", {})
            self._cache = data
            return data

    def _write(self, data: Dict[str, Any]) -> None:
        with self._lock:
            parent = os.path.dirname(self.file_path)
            temp_path = f"{self.file_path}.tmp"
            try:
                if parent:
                    os.makedirs(parent, exist_ok=True)
                with open(temp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, ensure_ascii=False, indent=2)
                os.replace(temp_path, self.file_path)
            except OSError as exc:
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
                raise ProfileStoreError(f"Cannot write {self.file_path}: {exc}") from exc
            # Cache only what made it to disk
            self._cache = data

    def _update(self, updater: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            data = copy.deepcopy(self._read())
            updater(data)
            self._write(data)

    def load_profile(self, user_id: str) -> Optional[UserProfile]:
        raw = self._read()["users"].get(user_id)
        if raw is None:
            return None
        try:
            return UserProfile.model_validate(raw)
        except ValidationError as exc:
            raise ProfileStoreError(f"Stored profile for {user_id} is invalid: {exc}") from exc

    def save_profile(self, user_id: str, profile: UserProfile) -> None:
        def _apply(data: Dict[str, Any]) -> None:
            data["users"][user_id] = profile.model_dump(mode="json")

        self._update(_apply)

    def append_history(self, user_id: str, log: ReadingLog) -> ReadingLog:
        log = _with_id(log)

        def _apply(data: Dict[str, Any]) -> None:
            logs = data["history"].setdefault(user_id, [])
            logs.insert(0, log.model_dump(mode="json"))
            del logs[MAX_STORED_HISTORY:]

        self._update(_apply)
        return log

    def load_history(self, user_id: str, limit: int = 5) -> List[ReadingLog]:
        raw = self._read()["history"].get(user_id, [])
        out: List[ReadingLog] = []
        for item in raw[:max(0, limit)]:
            try:
                out.append(ReadingLog.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed history entry for %s", user_id)
        return out


def load_personalization(
    store: Optional[ProfileStore],
    user_id: Optional[str],
    history_limit: int = 5,
) -> PersonalizationSnapshot:
    """Best-effort snapshot; any store failure degrades to an empty snapshot."""
    if store is None or not user_id:
        return PersonalizationSnapshot()
    try:
        profile = store.load_profile(user_id)
        history = store.load_history(user_id, history_limit) if history_limit > 0 else []
    except Exception:
        logger.warning("Personalization unavailable for %s; reading without it", user_id, exc_info=True)
        return PersonalizationSnapshot()
    return PersonalizationSnapshot(profile=profile, history=history)
