"""Engine layer error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class EngineError(Exception):
    """Base class for all engine layer failures."""


class EngineConnectionError(EngineError):
    """Transport cannot be established or dropped."""


class ProtocolError(EngineError):
    """Malformed or unexpected message from a backend."""


class EngineTimeoutError(EngineError):
    """No terminal response within the caller's bound."""


class StateError(EngineError):
    """A request was issued while the adapter was not idle."""


class AnalysisCancelled(EngineError):
    """The request was invalidated by stop, switch or cleanup."""


@dataclass
class EngineErrorEvent:
    """Payload for the on_error callback."""
    message: str
    fallback: bool = False
    terminal: bool = False
    error: BaseException | None = None
    data: dict[str, Any] | None = None
