"""
HTTP / WebSocket tests for TourPlayerService.

The service runs on an aiohttp TestClient with FakeEngines behind the
session and an AsyncMock standing in for the tour API.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp import test_utils

from tours.lib.errors import TourNotFoundError, TourSourceError
from tours.lib.tour_cache import TourContentCache
from tours.player_service import TourPlayerService

TOUR = {
    "tour": {
        "place_info": {"place_name": "Old Town Hall"},
        "audio": {"cloudfront_url": "https://cdn.example/p1.mp3"},
    },
}


class RecordingSocket:
    """Stand-in WebSocket; send_str can be held on *gate* or made to fail."""

    def __init__(self, gate=None, fail=False):
        self.gate = gate
        self.fail = fail
        self.sent = []

    async def send_str(self, message):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionResetError("client went away")
        self.sent.append(json.loads(message))

    async def close(self):
        pass


@pytest.fixture
def source():
    src = MagicMock()
    src.fetch = AsyncMock(return_value=TOUR)
    src.close = AsyncMock()
    return src


@pytest_asyncio.fixture
async def service(engine_factory, scheduler, source):
    cache = TourContentCache(max_size=10, scheduler=scheduler)
    svc = TourPlayerService(cache=cache, source=source, port=0,
                            engine_factory=engine_factory)
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture
async def client(service):
    async with test_utils.TestClient(test_utils.TestServer(service.build_app())) as c:
        yield c


# =============================================================================
# /player/*
# =============================================================================

class TestPlayerRoutes:

    @pytest.mark.asyncio
    async def test_load_fetches_once_then_uses_cache(self, client, source, engine_factory):
        resp = await client.post("/player/load", json={"place_id": "p1"})
        assert resp.status == 200
        body = await resp.json()
        assert body == {"status": "ok", "track_id": "p1", "track_name": "Old Town Hall"}
        assert engine_factory.latest.uri == "https://cdn.example/p1.mp3"

        resp = await client.post("/player/load", json={"place_id": "p1"})
        assert resp.status == 200
        source.fetch.assert_awaited_once_with("p1", "history")

    @pytest.mark.asyncio
    async def test_load_requires_place_id(self, client):
        resp = await client.post("/player/load", json={})
        assert resp.status == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"place_id": "a||b"},
        {"place_id": 7},
        {"place_id": "p1", "tour_type": 3},
        {"place_id": "p1", "tour_type": "his||tory"},
    ])
    async def test_load_rejects_malformed_ids(self, client, source, body):
        resp = await client.post("/player/load", json=body)

        assert resp.status == 400
        assert (await resp.json())["status"] == "error"
        source.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_load_without_audio_is_unprocessable(self, client, source, engine_factory):
        source.fetch.return_value = {"tour": {"place_info": {"place_name": "Silent"}}}

        resp = await client.post("/player/load", json={"place_id": "p1"})

        assert resp.status == 422
        assert (await resp.json())["message"] == "No audio available for this location"
        assert engine_factory.created == []

    @pytest.mark.asyncio
    async def test_load_not_found_records_miss(self, client, service, source):
        source.fetch.side_effect = TourNotFoundError("p404")

        resp = await client.post("/player/load", json={"place_id": "p404"})

        assert resp.status == 404
        assert service.cache.get_stats() == {"hits": 0, "misses": 1, "total": 1}

    @pytest.mark.asyncio
    async def test_load_backend_failure_is_bad_gateway(self, client, source):
        source.fetch.side_effect = TourSourceError("boom", status=500)

        resp = await client.post("/player/load", json={"place_id": "p1"})

        assert resp.status == 502

    @pytest.mark.asyncio
    async def test_load_engine_unavailable(self, client, engine_factory):
        engine_factory.fail = True
        resp = await client.post("/player/load", json={"place_id": "p1"})
        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_transport_routes(self, client, engine_factory):
        await client.post("/player/load", json={"place_id": "p1"})
        engine = engine_factory.latest

        assert (await client.post("/player/play")).status == 200
        assert engine.playing
        assert (await client.post("/player/seek", json={"position_millis": 30000})).status == 200
        assert engine.position == 30.0
        assert (await client.post("/player/forward")).status == 200
        assert engine.position == 45.0
        assert (await client.post("/player/backward")).status == 200
        assert engine.position == 30.0
        assert (await client.post("/player/pause")).status == 200
        assert not engine.playing

    @pytest.mark.asyncio
    async def test_seek_requires_position(self, client):
        resp = await client.post("/player/seek", json={"position": 10})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_status_and_unload(self, client):
        resp = await client.get("/player/status")
        body = await resp.json()
        assert body["status"] is None
        assert body["track_id"] is None

        await client.post("/player/load", json={"place_id": "p1"})
        body = await (await client.get("/player/status")).json()
        assert body["track_id"] == "p1"
        assert body["status"]["isLoaded"] is True
        assert body["status"]["durationMillis"] == 120000

        await client.post("/player/unload")
        body = await (await client.get("/player/status")).json()
        assert body["track_id"] is None


# =============================================================================
# /cache/* and /app/state
# =============================================================================

class TestCacheRoutes:

    @pytest.mark.asyncio
    async def test_prefill_schedules_fetches(self, client, service, scheduler, source):
        resp = await client.post("/cache/prefill",
                                 json={"place_ids": ["p1", "p2"], "tour_type": "history"})
        assert (await resp.json())["scheduled"] == 2

        scheduler.advance(1)
        await service.cache.drain()

        stats = await (await client.get("/cache/stats")).json()
        assert stats == {"hits": 2, "misses": 0, "total": 2}
        assert source.fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_prefill_requires_list(self, client):
        resp = await client.post("/cache/prefill", json={"place_ids": "p1"})
        assert resp.status == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"place_ids": [5]},
        {"place_ids": ["p1", "a||b"]},
        {"place_ids": ["p1"], "tour_type": ["history"]},
    ])
    async def test_prefill_rejects_malformed_ids(self, client, scheduler, body):
        resp = await client.post("/cache/prefill", json=body)

        assert resp.status == 400
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_clear(self, client, service):
        service.cache.set("p1", "history", TOUR)
        assert (await client.post("/cache/clear")).status == 200
        assert len(service.cache) == 0

    @pytest.mark.asyncio
    async def test_app_state(self, client, service):
        resp = await client.post("/app/state", json={"state": "background"})
        assert (await resp.json())["state"] == "background"
        assert service.lifecycle.state == "background"

        resp = await client.post("/app/state", json={"state": "asleep"})
        assert resp.status == 400


# =============================================================================
# WebSocket
# =============================================================================

class TestWebSocket:

    @pytest.mark.asyncio
    async def test_now_playing_pushed_on_load(self, client):
        ws = await client.ws_connect("/ws")
        await client.post("/player/load", json={"place_id": "p1"})

        message = None
        for _ in range(10):
            msg = await asyncio.wait_for(ws.receive_json(), timeout=2)
            if msg["type"] == "now_playing":
                message = msg
                break

        assert message is not None
        assert message["data"]["title"] == "Old Town Hall"
        assert message["data"]["track_id"] == "p1"
        assert message["data"]["controls"]["skip_interval"] == 15
        await ws.close()

    @pytest.mark.asyncio
    async def test_status_broadcast_only_on_change(self, service, engine_factory):
        service.broadcast = AsyncMock()
        service._ws_clients.add(MagicMock())
        await service.session.load_audio("https://cdn.example/p1.mp3", "p1")

        service._on_status(service.session.get_status())
        service._on_status(service.session.get_status())
        engine_factory.latest.position = 3.0
        service._on_status(service.session.get_status())
        await asyncio.sleep(0)

        status_calls = [c for c in service.broadcast.call_args_list if c.args[0] == "status"]
        assert len(status_calls) == 2
        service._ws_clients.clear()

    @pytest.mark.asyncio
    async def test_disconnect_during_broadcast(self, service):
        slow, other = RecordingSocket(gate=asyncio.Event()), RecordingSocket()
        service._ws_clients.update({slow, other})

        task = asyncio.ensure_future(service.broadcast("status", {"n": 1}))
        await asyncio.sleep(0)
        service._ws_clients.discard(other)  # client leaves mid-send
        slow.gate.set()
        await task

        assert slow.sent == [{"type": "status", "data": {"n": 1}}]
        assert service._ws_clients == {slow}

    @pytest.mark.asyncio
    async def test_broadcasts_keep_their_order(self, service):
        slow = RecordingSocket(gate=asyncio.Event())
        service._ws_clients.add(slow)

        for n in range(3):
            service._schedule_broadcast("status", {"n": n})
        await asyncio.sleep(0)
        slow.gate.set()
        await asyncio.gather(*list(service._broadcast_tasks))

        assert [m["data"]["n"] for m in slow.sent] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_failed_client_is_dropped(self, service):
        broken = RecordingSocket(fail=True)
        ok = RecordingSocket()
        service._ws_clients.update({broken, ok})

        await service.broadcast("status", {"n": 1})

        assert service._ws_clients == {ok}
        assert ok.sent == [{"type": "status", "data": {"n": 1}}]
