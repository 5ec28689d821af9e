"""App lifecycle notifications (active / inactive / background).

The client reports its foreground state to the player service, which emits
it here.  Listeners are plain callables taking the new state string.

Usage:
    lifecycle = AppLifecycle()
    remove = lifecycle.add_listener(on_change)
    lifecycle.emit("background")
    remove()
"""

import logging

log = logging.getLogger(__name__)

STATES = ("active", "inactive", "background")


class AppLifecycle:

    def __init__(self):
        self.state = "active"
        self._listeners = set()

    def add_listener(self, callback):
        """Register *callback*; returns a function that removes it again."""
        self._listeners.add(callback)
        return lambda: self._listeners.discard(callback)

    def emit(self, state: str) -> None:
        if state not in STATES:
            raise ValueError(f"Unknown lifecycle state: {state!r}")
        if state == self.state:
            return
        log.info("App state %s -> %s", self.state, state)
        self.state = state
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception as e:
                log.error("Lifecycle listener failed: %s", e)
