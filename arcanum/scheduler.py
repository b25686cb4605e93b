"""Schedulers that drive a reading session's timers and chunk delivery.

A session never sleeps or spawns threads itself; it asks a scheduler to call
it back later. Two implementations:

- AsyncioScheduler: production, bound to a running asyncio loop.
- ManualScheduler: a fake clock that only moves when told to. Used by tests
  and by the Streamlit UI, which advances it to wall-clock time on each rerun.

Both guarantee that every callback runs on the caller's control thread, one
at a time.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections import deque
from typing import Any, Callable, Deque, Iterable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
DoneCallback = Callable[[], None]
ErrorCallback = Callable[[BaseException], None]


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable: ...

    def stream(
        self,
        chunks: Iterable[str],
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> None: ...


class AsyncioScheduler:
    """Timers via loop.call_later; streams iterated on a worker thread."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return self._loop.call_later(max(0.0, delay), callback, *args)

    def stream(
        self,
        chunks: Iterable[str],
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> None:
        loop = self._loop

        # Blocking SDK iterators run off-loop; results hop back in order.
        def _drain() -> None:
            try:
                for chunk in chunks:
                    loop.call_soon_threadsafe(on_chunk, chunk)
            except Exception as exc:
                loop.call_soon_threadsafe(on_error, exc)
                return
            loop.call_soon_threadsafe(on_done)

        future = loop.run_in_executor(None, _drain)
        future.add_done_callback(_log_executor_failure)


def _log_executor_failure(future: "asyncio.Future[None]") -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error("Stream worker crashed", exc_info=future.exception())


class ManualHandle:
    __slots__ = ("due", "callback", "args", "cancelled")

    def __init__(self, due: float, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        self.due = due
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Deterministic scheduler with a fake clock.

    Timers fire only inside advance()/advance_to(); ready work (stream pulls
    and chunk deliveries) runs inside run_ready(). Streams are consumed lazily,
    one item per ready step, so a test can stop between "chunk pulled" and
    "chunk delivered".
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._timers: List[Tuple[float, int, ManualHandle]] = []
        self._ready: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()
        self._seq = itertools.count()

    # ---- Scheduler protocol ----

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualHandle:
        handle = ManualHandle(self.now + max(0.0, delay), callback, args)
        heapq.heappush(self._timers, (handle.due, next(self._seq), handle))
        return handle

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        self._ready.append((callback, args))

    def stream(
        self,
        chunks: Iterable[str],
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> None:
        iterator = iter(chunks)

        def _pull() -> None:
            try:
                chunk = next(iterator)
            except StopIteration:
                self.call_soon(on_done)
                return
            except Exception as exc:
                self.call_soon(on_error, exc)
                return
            self.call_soon(on_chunk, chunk)
            self.call_soon(_pull)

        self.call_soon(_pull)

    # ---- driving the clock ----

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, h in self._timers if not h.cancelled)

    @property
    def has_ready(self) -> bool:
        return bool(self._ready)

    def run_ready(self, limit: Optional[int] = None) -> int:
        """Run queued ready callbacks (at most `limit`); return how many ran."""
        ran = 0
        while self._ready and (limit is None or ran < limit):
            callback, args = self._ready.popleft()
            callback(*args)
            ran += 1
        return ran

    def advance_to(self, when: float, ready_limit: Optional[int] = None) -> None:
        """Move the clock forward, firing due timers in order."""
        self.run_ready(ready_limit)
        while self._timers and self._timers[0][0] <= when:
            due, _, handle = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self.now = max(self.now, due)
            handle.callback(*handle.args)
            self.run_ready(ready_limit)
        self.now = max(self.now, when)

    def advance(self, seconds: float = 0.0) -> None:
        self.advance_to(self.now + seconds)

    def run_all(self) -> None:
        """Fire every pending timer and drain all ready work."""
        while True:
            self.run_ready()
            live = [t for t in self._timers if not t[2].cancelled]
            if not live:
                self._timers = []
                return
            self.advance_to(min(t[0] for t in live))
