"""Subscription billing core: webhook verification, deduplication and lifecycle."""

__version__ = "0.1.0"
