"""Systemd notify + watchdog heartbeat for the asyncio player service.

Silently no-ops when NOTIFY_SOCKET is unset (macOS / dev mode / tests).

Usage:
    from tours.lib.watchdog import watchdog_loop, sd_notify
    task = asyncio.create_task(watchdog_loop())
    sd_notify("STOPPING=1")
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def _socket_address() -> str | None:
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return None
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    return addr


def sd_notify(msg: str) -> bool:
    """Send *msg* to the systemd notify socket.  Returns False when there is
    no socket to talk to."""
    addr = _socket_address()
    if addr is None:
        return False
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


async def watchdog_loop(interval: float = 20, status: str | None = None):
    """Send READY=1 once, then WATCHDOG=1 every *interval* seconds.

    Run as a task; cancel it on shutdown.
    """
    ready = "READY=1"
    if status:
        ready += f"\nSTATUS={status}"
    sd_notify(ready)
    logger.info("Watchdog started (interval=%ss)", interval)
    while True:
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)
