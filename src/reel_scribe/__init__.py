"""Reel-Scribe: transcription and highlight analysis for movie discussion recordings."""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
