#!/usr/bin/env python3
# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Tour Player service (tours-player)

Wires the tour content cache, the tour API client and the playback session
into one aiohttp app.  UI clients (full player, mini player, lock screen
widget) connect to the WebSocket for status pushes and drive playback over
HTTP:

  GET  /ws                 — push-only feed: "status" and "now_playing"
  POST /player/load        — {place_id, tour_type}: resolve tour, load audio
  POST /player/play        — resume playback
  POST /player/pause       — pause playback
  POST /player/seek        — {position_millis}
  POST /player/forward     — skip forward (default 15 s)
  POST /player/backward    — skip back (default 15 s)
  POST /player/unload      — stop and forget the current track
  GET  /player/status      — current snapshot + track identity
  POST /cache/prefill      — {place_ids, tour_type}: background prefetch
  POST /cache/clear        — drop all cached tours
  GET  /cache/stats        — hit / miss counts
  POST /app/state          — {state}: active | inactive | background

Port: 8766
"""

import asyncio
import json
import logging
import os
import signal

from aiohttp import web

from .api import TourApiClient, audio_url, place_name
from .engines import create_engine_factory
from .engines.base import (
    Affordances,
    EngineFactory,
    MediaControls,
    NowPlaying,
    PlaybackEngine,
)
from .lib.config import cfg
from .lib.errors import NoPlayableAudioError, TourNotFoundError, TourSourceError
from .lib.lifecycle import AppLifecycle
from .lib.tour_cache import TourContentCache
from .lib.watchdog import sd_notify, watchdog_loop
from .session import PlaybackSession

logger = logging.getLogger("tours-player")

PLAYER_PORT = 8766


def _cors_headers():
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }


def _ok(**extra) -> web.Response:
    return web.json_response({"status": "ok", **extra}, headers=_cors_headers())


def _error(message: str, status: int = 400) -> web.Response:
    return web.json_response({"status": "error", "message": message},
                             status=status, headers=_cors_headers())


async def _read_json(request: web.Request) -> dict:
    try:
        data = await request.json()
    except (json.JSONDecodeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def build_session(media_controls: MediaControls | None = None,
                  lifecycle: AppLifecycle | None = None,
                  engine_factory: EngineFactory | None = None) -> PlaybackSession:
    """PlaybackSession configured from config.json + environment secrets."""
    headers = {}
    cdn_key = os.getenv("CDN_ACCESS_KEY")
    if cdn_key:
        headers[cfg("cdn", "access_header", default="X-CDN-Access-Key")] = cdn_key
    return PlaybackSession(
        engine_factory or create_engine_factory(),
        media_controls,
        poll_interval=cfg("player", "poll_interval", default=0.5),
        request_headers=headers,
        artist=cfg("player", "artist", default="TensorTours"),
        artwork_source=cfg("player", "artwork"),
        lifecycle=lifecycle,
        pause_in_background=cfg("player", "pause_in_background", default=False),
        skip_interval=cfg("player", "skip_interval", default=15),
    )


class TourPlayerService(MediaControls):
    """HTTP + WebSocket front for one PlaybackSession and one tour cache.

    Also acts as the session's MediaControls: now-playing metadata is pushed
    to every WebSocket client instead of a lock screen.
    """

    def __init__(self, session: PlaybackSession | None = None,
                 cache: TourContentCache | None = None,
                 source: TourApiClient | None = None,
                 lifecycle: AppLifecycle | None = None,
                 port: int | None = None,
                 engine_factory: EngineFactory | None = None):
        self.port = port if port is not None else cfg("player", "port", default=PLAYER_PORT)
        self.lifecycle = lifecycle or AppLifecycle()
        self.session = session or build_session(self, self.lifecycle, engine_factory)
        self.cache = cache or TourContentCache()
        self.source = source or TourApiClient(
            cfg("api", "base_url", default="http://localhost:8000"),
            token=os.getenv("TOURS_API_TOKEN"),
            timeout=cfg("api", "timeout", default=15),
        )
        self.running = False
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._broadcast_tasks: set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()
        self._runner: web.AppRunner | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._unsubscribe = None
        self._last_status: dict | None = None
        self._now_playing: dict | None = None

    # ── MediaControls ──

    def activate(self, engine: PlaybackEngine, now_playing: NowPlaying,
                 affordances: Affordances) -> None:
        self._now_playing = {
            "title": now_playing.title,
            "artist": now_playing.artist,
            "artwork": now_playing.artwork,
            "track_id": self.session.current_track_id,
            "controls": {
                "seek_forward": affordances.seek_forward,
                "seek_backward": affordances.seek_backward,
                "skip_interval": affordances.skip_interval,
            },
        }
        self._schedule_broadcast("now_playing", self._now_playing)

    def deactivate(self) -> None:
        self._now_playing = None

    # ── Status fan-out ──

    def _on_status(self, snapshot) -> None:
        data = snapshot.to_dict()
        if data == self._last_status:
            return
        self._last_status = data
        if self._ws_clients:
            self._schedule_broadcast("status", data)

    def _schedule_broadcast(self, message_type: str, data) -> None:
        task = asyncio.ensure_future(self.broadcast(message_type, data))
        self._broadcast_tasks.add(task)
        task.add_done_callback(self._broadcast_tasks.discard)

    async def broadcast(self, message_type: str, data):
        """Push a message to all connected WebSocket clients.

        Broadcasts queue on a lock so clients see messages in the order
        they were scheduled.
        """
        if not self._ws_clients:
            return

        message = json.dumps({"type": message_type, "data": data})

        async with self._send_lock:
            disconnected = set()
            for ws in list(self._ws_clients):
                try:
                    await ws.send_str(message)
                except Exception:
                    disconnected.add(ws)

            self._ws_clients.difference_update(disconnected)

    # ── Tour resolution ──

    async def resolve_tour(self, place_id: str, tour_type: str) -> dict:
        """Cached tour data, or fetch it now and cache the result."""
        tour = self.cache.get(place_id, tour_type)
        if tour is not None:
            return tour
        try:
            tour = await self.source.fetch(place_id, tour_type)
        except TourSourceError:
            self.cache.record_miss(place_id, tour_type)
            raise
        self.cache.set(place_id, tour_type, tour)
        return tour

    # ── HTTP + WebSocket server ──

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_post("/player/load", self._handle_load)
        app.router.add_post("/player/play", self._handle_play)
        app.router.add_post("/player/pause", self._handle_pause)
        app.router.add_post("/player/seek", self._handle_seek)
        app.router.add_post("/player/forward", self._handle_forward)
        app.router.add_post("/player/backward", self._handle_backward)
        app.router.add_post("/player/unload", self._handle_unload)
        app.router.add_get("/player/status", self._handle_status)
        app.router.add_post("/cache/prefill", self._handle_prefill)
        app.router.add_post("/cache/clear", self._handle_cache_clear)
        app.router.add_get("/cache/stats", self._handle_cache_stats)
        app.router.add_post("/app/state", self._handle_app_state)
        return app

    async def start(self):
        self.running = True
        self._unsubscribe = self.session.subscribe(self._on_status)
        await self.session.setup_player()

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        logger.info("Tour player: HTTP + WebSocket on port %d", self.port)

        self._watchdog_task = asyncio.create_task(watchdog_loop(status="Tour player ready"))

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Clean up resources."""
        self.running = False
        sd_notify("STOPPING=1")

        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        await self.session.destroy()
        await self.cache.drain()
        await self.source.close()

        if self._broadcast_tasks:
            await asyncio.gather(*list(self._broadcast_tasks), return_exceptions=True)

        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── WebSocket handler ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        logger.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            if self._now_playing:
                await ws.send_json({"type": "now_playing", "data": self._now_playing})
            status = self.session.get_status()
            if status is not None:
                await ws.send_json({"type": "status", "data": status.to_dict()})

            # Push-only: client messages are ignored
            async for _msg in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            logger.info("WebSocket client disconnected (%d remaining)",
                        len(self._ws_clients))

        return ws

    # ── HTTP route handlers ──

    async def _handle_load(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        place_id = data.get("place_id")
        tour_type = data.get("tour_type", "history")
        if not place_id or not isinstance(place_id, str):
            return _error("place_id is required")
        if not isinstance(tour_type, str):
            return _error("tour_type must be a string")

        try:
            tour = await self.resolve_tour(place_id, tour_type)
        except ValueError as e:
            return _error(str(e))
        except TourNotFoundError as e:
            return _error(str(e), status=404)
        except TourSourceError as e:
            logger.warning("Tour fetch failed for %s: %s", place_id, e)
            return _error(f"Failed to load audio tour: {e}", status=502)

        try:
            ok = await self.session.load_audio(audio_url(tour), place_id, place_name(tour))
        except NoPlayableAudioError as e:
            logger.error("No audio URL for %s", place_id)
            return _error(str(e), status=422)

        if not ok:
            return _error("Audio engine unavailable, try again", status=503)
        return _ok(track_id=place_id, track_name=self.session.current_track_name)

    async def _handle_play(self, request: web.Request) -> web.Response:
        await self.session.play()
        return _ok()

    async def _handle_pause(self, request: web.Request) -> web.Response:
        await self.session.pause()
        return _ok()

    async def _handle_seek(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        try:
            position = float(data["position_millis"])
        except (KeyError, TypeError, ValueError):
            return _error("position_millis is required")
        await self.session.seek_to(position)
        return _ok()

    async def _handle_forward(self, request: web.Request) -> web.Response:
        await self.session.skip_forward()
        return _ok()

    async def _handle_backward(self, request: web.Request) -> web.Response:
        await self.session.skip_backward()
        return _ok()

    async def _handle_unload(self, request: web.Request) -> web.Response:
        await self.session.unload_audio()
        return _ok()

    async def _handle_status(self, request: web.Request) -> web.Response:
        status = self.session.get_status()
        return web.json_response({
            "track_id": self.session.current_track_id,
            "track_name": self.session.current_track_name,
            "status": status.to_dict() if status else None,
            "ws_clients": len(self._ws_clients),
        }, headers=_cors_headers())

    async def _handle_prefill(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        place_ids = data.get("place_ids")
        tour_type = data.get("tour_type", "history")
        if not isinstance(place_ids, list):
            return _error("place_ids must be a list")
        if not all(isinstance(p, str) for p in place_ids if p):
            return _error("place_ids must be strings")
        if not isinstance(tour_type, str):
            return _error("tour_type must be a string")
        try:
            scheduled = self.cache.prefill(place_ids, tour_type, self.source.fetch)
        except ValueError as e:
            return _error(str(e))
        return _ok(scheduled=scheduled, stats=self.cache.get_stats())

    async def _handle_cache_clear(self, request: web.Request) -> web.Response:
        self.cache.clear()
        return _ok()

    async def _handle_cache_stats(self, request: web.Request) -> web.Response:
        return web.json_response(self.cache.get_stats(), headers=_cors_headers())

    async def _handle_app_state(self, request: web.Request) -> web.Response:
        data = await _read_json(request)
        try:
            self.lifecycle.emit(data.get("state", ""))
        except ValueError as e:
            return _error(str(e))
        return _ok(state=self.lifecycle.state)


def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    service = TourPlayerService()
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
