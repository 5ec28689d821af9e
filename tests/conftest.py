"""
Shared fixtures and test doubles.

VirtualScheduler    hand-advanced clock for cache debounce / stagger timers
FakeEngine          in-memory PlaybackEngine with a switchable liveness probe
FakeEngineFactory   builds FakeEngines, can be told to fail
RecordingMediaControls  records activate / deactivate calls
"""

import asyncio
import itertools

import pytest

from tours.engines.base import EngineFactory, MediaControls, PlaybackEngine
from tours.lib import config
from tours.lib.errors import EngineError


# =============================================================================
# Virtual clock
# =============================================================================

class _Timer:

    def __init__(self, when, seq, callback):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class VirtualScheduler:
    """now()/call_later() driven by advance() instead of the event loop."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._timers: list[_Timer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay, callback):
        timer = _Timer(self._now + delay, next(self._seq), callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> list:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order.

        Timers scheduled by a callback fire in the same call if they fall
        inside the window.
        """
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self._now = timer.when
            timer.callback()
        self._timers = [t for t in self._timers if not t.cancelled]
        self._now = target


# =============================================================================
# Engine doubles
# =============================================================================

class FakeEngine(PlaybackEngine):
    is_loaded = True
    playing = False
    buffering = False
    position = 0.0
    duration = 120.0
    finished = False

    def __init__(self, uri, headers=None):
        self.uri = uri
        self.headers = headers
        self.alive = True
        self.probe_error = None
        self.fail_on = set()
        self.on_replace = None
        self.removed = False
        self.calls = []

    def is_alive(self):
        if self.probe_error is not None:
            raise self.probe_error
        return self.alive

    def _call(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise EngineError(f"{name} failed")

    async def play(self):
        self._call("play")
        self.playing = True

    async def pause(self):
        self._call("pause")
        self.playing = False

    async def seek_to(self, seconds):
        self._call("seek_to", seconds)
        self.position = seconds

    async def replace(self, uri, headers=None):
        self._call("replace", uri)
        if self.on_replace:
            self.on_replace()
        self.uri = uri
        self.headers = headers

    def remove(self):
        self.calls.append(("remove",))
        self.removed = True
        self.alive = False


class FakeEngineFactory(EngineFactory):

    def __init__(self):
        self.created: list[FakeEngine] = []
        self.fail = False
        self.audio_modes = []
        self.create_calls = 0
        self.gate: asyncio.Event | None = None  # when set, create() waits on it

    async def configure_audio_mode(self, mode):
        self.audio_modes.append(mode)

    async def create(self, uri, headers=None):
        self.create_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise EngineError("engine could not start")
        engine = FakeEngine(uri, headers)
        self.created.append(engine)
        return engine

    @property
    def latest(self) -> FakeEngine | None:
        return self.created[-1] if self.created else None


class RecordingMediaControls(MediaControls):

    def __init__(self):
        self.activations = []
        self.deactivations = 0

    def activate(self, engine, now_playing, affordances):
        self.activations.append((engine, now_playing, affordances))

    def deactivate(self):
        self.deactivations += 1


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Empty config so every cfg() lookup falls back to code defaults."""
    monkeypatch.setattr(config, "_config", {})
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def media_controls():
    return RecordingMediaControls()
