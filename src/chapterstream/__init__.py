"""Resumable streaming client for AI-generated thesis chapters."""

__version__ = "0.1.0"
