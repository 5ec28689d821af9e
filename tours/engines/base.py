# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Abstract interfaces the playback session consumes.

PlaybackEngine   one audio stream: transport commands + state reads
EngineFactory    builds engines, applies the system audio mode
MediaControls    publishes now-playing metadata and remote affordances

Transport state is read synchronously from whatever the engine last
observed; commands are awaited.  ``is_alive()`` is the only liveness signal
the session trusts; test doubles flip it to simulate a crash.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class AudioMode:
    plays_in_silent_mode: bool = True
    play_in_background: bool = True
    interruption_mode: str = "do_not_mix"  # or "mix_with_others"


@dataclass(frozen=True)
class NowPlaying:
    title: str
    artist: str
    artwork: str | None = None  # data URI


@dataclass(frozen=True)
class Affordances:
    seek_forward: bool = True
    seek_backward: bool = True
    skip_interval: int = 15  # seconds


class PlaybackEngine(ABC):
    """Interface every playback engine must implement."""

    @abstractmethod
    def is_alive(self) -> bool: ...

    # -- Transport state (seconds) --

    @property
    @abstractmethod
    def is_loaded(self) -> bool: ...

    @property
    @abstractmethod
    def playing(self) -> bool: ...

    @property
    @abstractmethod
    def buffering(self) -> bool: ...

    @property
    @abstractmethod
    def position(self) -> float: ...

    @property
    @abstractmethod
    def duration(self) -> float: ...

    @property
    def finished(self) -> bool:
        return False  # engines without end-of-file reporting

    # -- Commands --

    @abstractmethod
    async def play(self) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def seek_to(self, seconds: float) -> None: ...

    @abstractmethod
    async def replace(self, uri: str, headers: dict | None = None) -> None: ...

    @abstractmethod
    def remove(self) -> None:
        """Release the engine.  Must not block for long; may raise."""


class EngineFactory(ABC):

    async def configure_audio_mode(self, mode: AudioMode) -> None:
        pass  # no-op by default (no system audio session)

    @abstractmethod
    async def create(self, uri: str, headers: dict | None = None) -> PlaybackEngine: ...


class MediaControls(ABC):

    @abstractmethod
    def activate(self, engine: PlaybackEngine, now_playing: NowPlaying,
                 affordances: Affordances) -> None: ...

    def deactivate(self) -> None:
        pass
