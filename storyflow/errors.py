"""Errors raised by the generation clients.

Flow-level errors (NotFound, ValidationFailure) live in storyflow.flows and
ParseFailure lives in storyflow.extract, next to the code that raises them.
"""

from __future__ import annotations


class ProviderFailure(RuntimeError):
    """A generation backend returned an error or could not be reached.

    ``transient`` marks failures worth retrying (timeouts, 5xx, 429,
    connection errors).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ProviderTimeout(ProviderFailure):
    """A network call or a bounded polling loop ran out of time."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class ConfigError(RuntimeError):
    """A required setting (e.g. an API key) is missing."""
