# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PlaybackSession — owns the one playback engine and survives its crashes.

The session is built once at startup and handed to whoever needs transport
control (the player service, tests).  It creates its engine lazily on the
first load, reuses it across tracks by swapping the source in place, and
throws it away whenever the liveness probe says it died; the next load
builds a fresh one.

States:
    uninitialized --setup_player()--> ready(idle) --load_audio()--> ready(loaded)
    any --destroy()--> terminated

A poll task reads the engine every ``poll_interval`` seconds and pushes a
fresh StatusSnapshot to every subscriber.

Engine faults never escape play/pause/seek; they are logged and the engine
is dropped.  A missing audio URL is the one failure load_audio() raises
(NoPlayableAudioError), because the user has to be told.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass

from .engines.base import (
    Affordances,
    AudioMode,
    EngineFactory,
    MediaControls,
    NowPlaying,
    PlaybackEngine,
)
from .lib.artwork import as_data_uri, load_artwork
from .lib.errors import NoPlayableAudioError

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.5   # seconds between status broadcasts
SKIP_INTERVAL = 15    # seconds for remote skip forward / back
DEFAULT_ARTIST = "TensorTours"
DEFAULT_TITLE = "Audio Tour"


@dataclass(frozen=True)
class StatusSnapshot:
    is_loaded: bool
    is_playing: bool
    is_buffering: bool
    position_millis: float
    duration_millis: float
    playable_duration_millis: float
    did_just_finish: bool = False

    def to_dict(self) -> dict:
        """Wire shape (camelCase) pushed to UI clients."""
        d = asdict(self)
        return {
            "isLoaded": d["is_loaded"],
            "isPlaying": d["is_playing"],
            "isBuffering": d["is_buffering"],
            "positionMillis": d["position_millis"],
            "durationMillis": d["duration_millis"],
            "playableDurationMillis": d["playable_duration_millis"],
            "didJustFinish": d["did_just_finish"],
        }


def _release(engine: PlaybackEngine) -> None:
    try:
        engine.remove()
    except Exception as e:
        log.debug("Ignoring error while releasing engine: %s", e)


class PlaybackSession:

    def __init__(self, engine_factory: EngineFactory,
                 media_controls: MediaControls | None = None, *,
                 poll_interval: float = POLL_INTERVAL,
                 request_headers: dict | None = None,
                 audio_mode: AudioMode | None = None,
                 artist: str = DEFAULT_ARTIST,
                 artwork_source: str | None = None,
                 lifecycle=None,
                 pause_in_background: bool = False,
                 skip_interval: int = SKIP_INTERVAL):
        self._factory = engine_factory
        self._media_controls = media_controls
        self.poll_interval = poll_interval
        self.request_headers = dict(request_headers or {})
        self.audio_mode = audio_mode or AudioMode()
        self.artist = artist
        self.artwork_source = artwork_source
        self.skip_interval = skip_interval
        self.pause_in_background = pause_in_background

        self.current_track_id: str | None = None
        self.current_track_name: str | None = None
        self.artwork: str | None = None  # data URI of the fallback artwork
        self.is_setup = False

        self._engine: PlaybackEngine | None = None
        self._subscribers: set = set()
        self._poll_task: asyncio.Task | None = None
        self._lifecycle = lifecycle
        self._lifecycle_remover = None
        self._lock = asyncio.Lock()
        self._swapping = False     # load_audio's probe-then-swap is in progress
        self._was_finished = False
        self._destroyed = False

    @property
    def engine(self) -> PlaybackEngine | None:
        return self._engine

    # ── Setup ──

    async def setup_player(self) -> None:
        """Configure audio mode, preload artwork, start polling.  Idempotent."""
        if self.is_setup or self._destroyed:
            return

        try:
            await self._factory.configure_audio_mode(self.audio_mode)

            if self.artwork_source:
                artwork = await load_artwork(self.artwork_source)
                if artwork:
                    self.artwork = as_data_uri(artwork)
                    log.debug("Lock screen artwork loaded: %s", self.artwork_source)
                else:
                    log.error("Failed to load lock screen artwork: %s", self.artwork_source)

            if self._destroyed:
                return

            self._start_polling()

            if self._lifecycle is not None and self._lifecycle_remover is None:
                self._lifecycle_remover = self._lifecycle.add_listener(self._on_lifecycle_change)

            self.is_setup = True
            log.debug("Audio player setup complete")
        except Exception as e:
            # Don't leave a poll task behind if setup failed half way
            self._stop_polling()
            log.error("Error setting up audio player: %s", e)

    def _on_lifecycle_change(self, state: str) -> None:
        if state in ("background", "inactive") and self.pause_in_background:
            log.debug("App going to %s, pausing audio", state)
            asyncio.ensure_future(self.pause())

    # ── Status polling ──

    def _start_polling(self) -> None:
        self._stop_polling()
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop_polling(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self):
        while True:
            self.poll_once()
            await asyncio.sleep(self.poll_interval)

    def poll_once(self) -> StatusSnapshot | None:
        """One poll tick: snapshot the engine and notify subscribers."""
        if self._engine is None or self._swapping:
            return None
        try:
            status = self._snapshot(consume_finish=True)
        except Exception as e:
            log.debug("Engine not ready for status read: %s", e)
            return None
        self._notify_subscribers(status)
        return status

    def _snapshot(self, *, consume_finish: bool = False) -> StatusSnapshot:
        """Read the engine.  Only the poll tick (*consume_finish*) moves the
        end-of-track edge forward, so on-demand reads can't swallow it."""
        engine = self._engine
        finished = engine.finished
        just_finished = finished and not self._was_finished
        if consume_finish:
            self._was_finished = finished
        duration_ms = engine.duration * 1000
        return StatusSnapshot(
            is_loaded=engine.is_loaded,
            is_playing=engine.playing,
            is_buffering=engine.buffering,
            position_millis=engine.position * 1000,
            duration_millis=duration_ms,
            playable_duration_millis=duration_ms,
            did_just_finish=just_finished,
        )

    # ── Subscribers ──

    def subscribe(self, callback):
        """Register *callback(StatusSnapshot)*; returns an unsubscribe function."""
        self._subscribers.add(callback)
        return lambda: self._subscribers.discard(callback)

    def _notify_subscribers(self, status: StatusSnapshot) -> None:
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception as e:
                log.error("Status subscriber failed: %s", e)

    # ── Engine health ──

    def check_player_health(self) -> bool:
        """True if there is an engine and it answers the liveness probe.

        A dead engine is released (errors ignored) and forgotten, so the
        next load_audio() builds a new one.
        """
        if self._engine is None:
            return False
        try:
            alive = self._engine.is_alive()
        except Exception as e:
            log.debug("Liveness probe raised: %s", e)
            alive = False
        if alive:
            return True
        log.warning("Player appears to be crashed, cleaning up...")
        self._discard_engine()
        return False

    def _discard_engine(self) -> None:
        engine, self._engine = self._engine, None
        self._was_finished = False
        if engine is not None:
            _release(engine)

    # ── Transport ──

    async def load_audio(self, uri: str, track_id: str, track_name: str = "") -> bool:
        """Make *uri* the current track.

        Returns False if no engine could be built (the next call retries).
        Raises NoPlayableAudioError when *uri* is empty.
        """
        if self._destroyed:
            raise RuntimeError("PlaybackSession has been destroyed")
        if not uri:
            raise NoPlayableAudioError()

        await self.setup_player()
        if self._destroyed:
            return False

        # Already the current track: don't reload it
        if self.current_track_id == track_id and self._engine is not None:
            return True

        self.current_track_name = track_name
        self.current_track_id = track_id

        async with self._lock:
            if self._destroyed:
                return False
            self._swapping = True
            try:
                if self.check_player_health():
                    try:
                        # Pause first so the new source doesn't auto-play
                        await self._engine.pause()
                        await self._engine.replace(uri, self.request_headers)
                        self._was_finished = False
                    except Exception as e:
                        log.error("Player operation failed, recreating player: %s", e)
                        self._discard_engine()

                if self._engine is None:
                    try:
                        engine = await self._factory.create(uri, self.request_headers)
                    except Exception as e:
                        log.error("Error loading audio: could not create engine: %s", e)
                        return False
                    if self._destroyed:
                        log.warning("Session destroyed while loading %s, releasing engine", track_id)
                        _release(engine)
                        return False
                    self._engine = engine
            finally:
                self._swapping = False

            self._activate_media_controls()

        log.debug("Audio loaded: %s", track_name)
        return True

    def _activate_media_controls(self) -> None:
        if self._media_controls is None:
            return
        now_playing = NowPlaying(
            title=self.current_track_name or DEFAULT_TITLE,
            artist=self.artist,
            artwork=self.artwork,
        )
        affordances = Affordances(seek_forward=True, seek_backward=True,
                                  skip_interval=self.skip_interval)
        try:
            self._media_controls.activate(self._engine, now_playing, affordances)
        except Exception as e:
            log.error("Could not register now playing info: %s", e)

    async def play(self) -> None:
        async with self._lock:
            try:
                if self.check_player_health():
                    await self._engine.play()
                else:
                    log.error("Cannot play: player is not healthy")
            except Exception as e:
                log.error("Error playing audio: %s", e)
                self._discard_engine()

    async def pause(self) -> None:
        async with self._lock:
            try:
                if self.check_player_health():
                    await self._engine.pause()
            except Exception as e:
                log.error("Error pausing audio: %s", e)
                self._discard_engine()

    async def seek_to(self, position_millis: float) -> None:
        async with self._lock:
            try:
                if self.check_player_health():
                    await self._engine.seek_to(position_millis / 1000)
            except Exception as e:
                log.error("Error seeking: %s", e)
                self._discard_engine()

    async def skip_forward(self, seconds: float | None = None) -> None:
        status = self.get_status()
        if status is None:
            return
        step = (seconds if seconds is not None else self.skip_interval) * 1000
        target = status.position_millis + step
        if status.duration_millis:
            target = min(target, status.duration_millis)
        await self.seek_to(target)

    async def skip_backward(self, seconds: float | None = None) -> None:
        status = self.get_status()
        if status is None:
            return
        step = (seconds if seconds is not None else self.skip_interval) * 1000
        await self.seek_to(max(0, status.position_millis - step))

    def get_status(self) -> StatusSnapshot | None:
        """Current snapshot, or None when there is no usable engine."""
        if self._swapping or not self.check_player_health():
            return None
        try:
            return self._snapshot()
        except Exception as e:
            log.debug("Status read failed: %s", e)
            self._discard_engine()
            return None

    async def unload_audio(self) -> None:
        """Pause and forget the current track.  The engine is kept for reuse."""
        async with self._lock:
            try:
                if self.check_player_health():
                    await self._engine.pause()
            except Exception as e:
                log.error("Error unloading audio: %s", e)
            self.current_track_id = None
            self.current_track_name = None

    async def destroy(self) -> None:
        """Tear everything down.  Only for process shutdown; not reversible."""
        self._destroyed = True
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._lifecycle_remover:
            self._lifecycle_remover()
            self._lifecycle_remover = None

        if self._media_controls is not None:
            try:
                self._media_controls.deactivate()
            except Exception as e:
                log.debug("Ignoring error while clearing media controls: %s", e)

        # Waits out a load in progress so its engine is released here too
        async with self._lock:
            if self._engine is not None:
                try:
                    await self._engine.pause()
                except Exception:
                    pass  # engine may already be dead
                self._discard_engine()

        self._subscribers.clear()
        self.current_track_id = None
        self.current_track_name = None
        self.is_setup = False
        log.debug("Audio manager destroyed")
