"""Event model for the kernel event bus."""

from dataclasses import dataclass, field
from typing import Any

__all__ = ["Event"]


@dataclass(frozen=True)
class Event:
    """Immutable event passed to handlers. Payload values may be live objects (call contexts)."""

    id: int
    topic: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    correlation_id: str | None = None
