"""Shared utilities (logging, FFmpeg)."""
