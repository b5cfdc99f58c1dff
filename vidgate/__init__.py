"""Vidgate: secure video upload and signed playback."""

__version__ = "1.0.0"
