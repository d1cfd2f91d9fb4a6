"""Offline-first sync engine and AI result caching for chat clients."""

__version__ = "0.1.0"
