"""
mpv playback engine.

Each engine is one mpv process started idle + paused with a JSON IPC socket.
Property observers keep a local copy of the transport state so the session
can read position/duration without a round trip; commands are written to
the socket and raise EngineError when mpv is gone.

Usage:
    factory = MpvEngineFactory()
    await factory.configure_audio_mode(AudioMode())
    engine = await factory.create("https://cdn.example/tour.mp3", {"X-Key": "..."})
    await engine.play()
"""

import asyncio
import itertools
import json
import logging
import os
import subprocess
import tempfile

from ..lib.errors import EngineError
from .base import AudioMode, EngineFactory, PlaybackEngine

log = logging.getLogger(__name__)

# mpv property -> observer id
OBSERVED_PROPERTIES = {
    "time-pos": 1,
    "duration": 2,
    "pause": 3,
    "paused-for-cache": 4,
    "idle-active": 5,
    "eof-reached": 6,
}

CONNECT_ATTEMPTS = 50     # x 0.1 s
TERMINATE_TIMEOUT = 0.5   # seconds to wait before SIGKILL

_socket_ids = itertools.count(1)


def _header_fields(headers: dict | None) -> str:
    return ",".join(f"{k}: {v}" for k, v in (headers or {}).items())


def _reap(process: subprocess.Popen) -> None:
    """Wait for a terminated mpv; SIGKILL it if it lingers.  Blocking, so it
    runs in the executor."""
    try:
        process.wait(timeout=TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def _unlink_socket(ipc_socket: str) -> None:
    try:
        os.unlink(ipc_socket)
    except FileNotFoundError:
        pass


def _stop_process(process: subprocess.Popen) -> None:
    if process.poll() is None:
        process.terminate()
        asyncio.get_running_loop().run_in_executor(None, _reap, process)


def build_mpv_command(uri: str, ipc_socket: str, *, mpv_path: str = "mpv",
                      headers: dict | None = None,
                      audio_mode: AudioMode | None = None) -> list[str]:
    """Command line for an idle, paused, audio-only mpv bound to *ipc_socket*."""
    cmd = [
        mpv_path,
        "--no-video", "--no-terminal",
        "--idle=yes", "--keep-open=yes", "--pause",
        f"--input-ipc-server={ipc_socket}",
    ]
    if audio_mode is not None and audio_mode.interruption_mode == "do_not_mix":
        cmd.append("--audio-exclusive=yes")
    fields = _header_fields(headers)
    if fields:
        cmd.append(f"--http-header-fields={fields}")
    cmd.append(uri)
    return cmd


class MpvEngine(PlaybackEngine):
    """A running mpv process controlled over its IPC socket."""

    def __init__(self, process: subprocess.Popen, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter, ipc_socket: str):
        self.process = process
        self._reader = reader
        self._writer = writer
        self._ipc_socket = ipc_socket
        self._props: dict = {}
        self._ipc_task = asyncio.create_task(self._read_ipc_events())

    # ── State ──

    def is_alive(self) -> bool:
        return (self.process.poll() is None
                and self._writer is not None
                and not self._writer.is_closing())

    @property
    def is_loaded(self) -> bool:
        return self._props.get("duration") is not None and not self._props.get("idle-active", False)

    @property
    def playing(self) -> bool:
        return (self.is_loaded
                and not self._props.get("pause", True)
                and not self._props.get("eof-reached", False))

    @property
    def buffering(self) -> bool:
        return bool(self._props.get("paused-for-cache", False))

    @property
    def position(self) -> float:
        return float(self._props.get("time-pos") or 0.0)

    @property
    def duration(self) -> float:
        return float(self._props.get("duration") or 0.0)

    @property
    def finished(self) -> bool:
        return bool(self._props.get("eof-reached", False))

    # ── Commands ──

    async def play(self) -> None:
        await self._send_ipc({"command": ["set_property", "pause", False]})

    async def pause(self) -> None:
        await self._send_ipc({"command": ["set_property", "pause", True]})

    async def seek_to(self, seconds: float) -> None:
        await self._send_ipc({"command": ["seek", max(0.0, seconds), "absolute"]})

    async def replace(self, uri: str, headers: dict | None = None) -> None:
        await self._send_ipc({"command": ["set_property", "http-header-fields",
                                          _header_fields(headers)]})
        await self._send_ipc({"command": ["loadfile", uri, "replace"]})
        # Drop state from the previous file; observers refill it
        for name in ("time-pos", "duration", "eof-reached"):
            self._props.pop(name, None)

    def remove(self) -> None:
        if self._ipc_task:
            self._ipc_task.cancel()
            self._ipc_task = None
        if self._writer:
            self._writer.close()
            self._writer = None
        self._reader = None
        _stop_process(self.process)
        _unlink_socket(self._ipc_socket)

    # ── IPC communication ──

    async def _send_ipc(self, cmd_obj: dict) -> None:
        if not self.is_alive():
            raise EngineError("mpv is not running")
        try:
            self._writer.write(json.dumps(cmd_obj).encode() + b"\n")
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise EngineError(f"mpv IPC send error: {e}") from e

    async def _read_ipc_events(self):
        """Background task: fold property-change events into self._props."""
        try:
            while self._reader:
                line = await self._reader.readline()
                if not line:
                    break  # mpv closed the socket
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if msg.get("event") == "property-change":
                    self._props[msg.get("name")] = msg.get("data")
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.debug("mpv IPC reader ended: %s", e)
        log.info("mpv IPC closed (pid %s)", self.process.pid)


class MpvEngineFactory(EngineFactory):
    """Launches one mpv process per engine."""

    def __init__(self, mpv_path: str = "mpv", socket_dir: str | None = None):
        self.mpv_path = mpv_path
        self.socket_dir = socket_dir or tempfile.gettempdir()
        self.audio_mode: AudioMode | None = None

    async def configure_audio_mode(self, mode: AudioMode) -> None:
        self.audio_mode = mode
        log.info("Audio mode: interruption=%s, background=%s",
                 mode.interruption_mode, mode.play_in_background)

    async def create(self, uri: str, headers: dict | None = None) -> MpvEngine:
        ipc_socket = os.path.join(
            self.socket_dir, f"tours-mpv-{os.getpid()}-{next(_socket_ids)}.sock")
        _unlink_socket(ipc_socket)

        env = os.environ.copy()
        env.setdefault("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
        cmd = build_mpv_command(uri, ipc_socket, mpv_path=self.mpv_path,
                                headers=headers, audio_mode=self.audio_mode)
        process = subprocess.Popen(
            cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, env=env)

        # Wait for IPC socket and connect
        for _ in range(CONNECT_ATTEMPTS):  # up to 5 s
            await asyncio.sleep(0.1)
            if process.poll() is not None:
                process.wait()
                _unlink_socket(ipc_socket)
                raise EngineError("mpv exited immediately")
            if os.path.exists(ipc_socket):
                try:
                    reader, writer = await asyncio.open_unix_connection(ipc_socket)
                    break
                except (ConnectionRefusedError, FileNotFoundError):
                    continue
        else:
            _stop_process(process)
            _unlink_socket(ipc_socket)
            raise EngineError("Could not connect to mpv IPC")

        engine = MpvEngine(process, reader, writer, ipc_socket)
        try:
            for name, observer_id in OBSERVED_PROPERTIES.items():
                await engine._send_ipc({"command": ["observe_property", observer_id, name]})
        except EngineError:
            engine.remove()
            raise
        log.info("mpv launched (pid %d) for %s", process.pid, uri)
        return engine
