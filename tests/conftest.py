"""Shared fixtures: a fake clock and scripted narrators."""

import random
from typing import Iterable, Iterator, List, Optional

import pytest

from arcanum.config import SessionConfig
from arcanum.narrative import ReadingRequest
from arcanum.scheduler import ManualScheduler
from arcanum.session import ReadingSession


class ScriptedNarrator:
    """Yields the given chunks, then optionally raises."""

    def __init__(self, chunks: Iterable[str] = (), error: Optional[BaseException] = None):
        self.chunks = list(chunks)
        self.error = error
        self.requests: List[ReadingRequest] = []

    def stream_reading(self, request: ReadingRequest) -> Iterator[str]:
        self.requests.append(request)
        return self._generate()

    def _generate(self) -> Iterator[str]:
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


class BrokenNarrator:
    """Fails before returning an iterator at all."""

    def __init__(self):
        self.calls = 0

    def stream_reading(self, request: ReadingRequest) -> Iterator[str]:
        self.calls += 1
        raise ConnectionError("oracle unreachable")


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def narrator():
    return ScriptedNarrator(["Hello, ", "seeker."])


@pytest.fixture
def make_session(scheduler, narrator):
    def _make(**kwargs) -> ReadingSession:
        kwargs.setdefault("config", SessionConfig())
        kwargs.setdefault("rng", random.Random(42))
        return ReadingSession(scheduler, kwargs.pop("narrator", narrator), **kwargs)

    return _make
