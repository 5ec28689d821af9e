"""
Pluggable playback engines for the tour player.

The factory function ``create_engine_factory`` reads config.json and returns
the engine factory the session should use.

Supported engines:
  - ``mpv`` – one mpv process per engine, controlled over JSON IPC (default)
"""

import logging

from ..lib.config import cfg
from .base import (
    Affordances,
    AudioMode,
    EngineFactory,
    MediaControls,
    NowPlaying,
    PlaybackEngine,
)
from .mpv import MpvEngine, MpvEngineFactory

logger = logging.getLogger(__name__)

__all__ = [
    "Affordances",
    "AudioMode",
    "EngineFactory",
    "MediaControls",
    "MpvEngine",
    "MpvEngineFactory",
    "NowPlaying",
    "PlaybackEngine",
    "create_engine_factory",
]


def create_engine_factory() -> EngineFactory:
    """Create the engine factory named by config.json.

    Reads from config.json "player" section:
      engine    – "mpv" (default)
      mpv_path  – mpv binary (default "mpv")
    """
    engine = cfg("player", "engine", default="mpv")
    if engine != "mpv":
        logger.warning("Unknown player.engine '%s', falling back to mpv", engine)
    mpv_path = cfg("player", "mpv_path", default="mpv")
    logger.info("Playback engine: mpv (%s)", mpv_path)
    return MpvEngineFactory(mpv_path=mpv_path)
