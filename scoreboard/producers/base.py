"""Upstream producer contract.

One producer instance serves every channel; each started channel gets its own
opaque handle. ``poll`` is tri-state: an envelope when fields changed, ``None``
when nothing changed, and an exception (normally UpstreamPollError) on failure.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from scoreboard.models import UpdateEnvelope


def changed_fields(previous: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Top-level keys of ``current`` whose value differs from ``previous``."""
    return {k: v for k, v in current.items() if previous.get(k, _MISSING) != v}


_MISSING = object()


class UpstreamProducer(ABC):
    @abstractmethod
    async def start(self, channel_id: str) -> Any:
        """Prepare to poll ``channel_id``; return a handle for poll/stop."""

    @abstractmethod
    async def poll(self, handle: Any) -> Optional[UpdateEnvelope]:
        ...

    @abstractmethod
    async def stop(self, handle: Any) -> None:
        ...

    async def aclose(self) -> None:
        """Release resources shared across handles (HTTP clients etc.)."""
