"""
Error types shared by the tour services.

Three kinds of failure reach this code:

  TourSourceError      transient fetch failure; the cache records a miss
                       and retries it later, nothing is surfaced
  EngineError          the playback engine faulted; the session drops the
                       engine and builds a new one on the next load
  NoPlayableAudioError the tour has no audio URL; shown to the user, never
                       retried
"""


class TourError(Exception):
    """Base class for all tour service errors."""


class TourSourceError(TourError):
    """The remote tour API could not deliver a tour."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TourNotFoundError(TourSourceError):
    """The tour has not been generated yet (HTTP 404)."""

    def __init__(self, place_id: str):
        super().__init__(
            f"Tour not found for {place_id}. You may need to generate this tour first.",
            status=404,
        )
        self.place_id = place_id


class NoPlayableAudioError(TourError):
    """The tour data carries no playable audio URL."""

    def __init__(self, message: str = "No audio available for this location"):
        super().__init__(message)


class EngineError(TourError):
    """The playback engine rejected a command or is gone."""
