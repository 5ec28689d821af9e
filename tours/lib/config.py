"""
Shared configuration loader for the tour playback services.

Loads a single JSON config file per device.  Search order:
  1. /etc/tensortours/config.json   (deployed install)
  2. config.json                    (CWD — handy for local dev)
  3. ../config/default.json         (repo fallback)

Secrets (TOURS_API_TOKEN, CDN_ACCESS_KEY) stay in environment variables.

Usage:
    from tours.lib.config import cfg

    base_url  = cfg("api", "base_url", default="http://localhost:8000")
    max_size  = cfg("cache", "max_size", default=500)
    player    = cfg("player")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/tensortours/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

KNOWN_ENGINES = ("mpv",)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    api = config.get("api") or {}
    if not api.get("base_url"):
        logger.warning("Config %s: missing api.base_url — tour fetches will fail", path)

    cache = config.get("cache") or {}
    max_size = cache.get("max_size")
    if max_size is not None and (not isinstance(max_size, int) or max_size <= 0):
        logger.warning("Config %s: cache.max_size must be a positive integer, got %r", path, max_size)
    for key in ("debounce", "stagger", "cooldown"):
        val = cache.get(key)
        if val is not None and (not isinstance(val, (int, float)) or val < 0):
            logger.warning("Config %s: cache.%s must be a non-negative number, got %r", path, key, val)

    player = config.get("player") or {}
    engine = player.get("engine", "mpv")
    if engine not in KNOWN_ENGINES:
        logger.warning("Config %s: unknown player.engine '%s'", path, engine)
    interval = player.get("poll_interval")
    if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
        logger.warning("Config %s: player.poll_interval must be positive, got %r", path, interval)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _SEARCH_PATHS:
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("api")                         → config["api"]
    cfg("api", "base_url")             → config["api"]["base_url"]
    cfg("cache", "max_size", default=500) → config["cache"]["max_size"] or 500
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
