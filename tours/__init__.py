"""TensorTours player: tour content cache + self-healing playback session."""

__version__ = "0.3.0"
