"""Clients for the external transcription and completion providers."""

from __future__ import annotations

from .gladia import GladiaClient, GladiaError, GladiaSettings, build_gladia_client
from .openai_api import OpenAIClient, OpenAIError, OpenAISettings, build_openai_client

__all__ = [
    "GladiaClient",
    "GladiaError",
    "GladiaSettings",
    "OpenAIClient",
    "OpenAIError",
    "OpenAISettings",
    "build_gladia_client",
    "build_openai_client",
]
