"""Melody Map token service: OAuth token lifecycle for streaming-platform connections."""

__version__ = "0.1.0"
