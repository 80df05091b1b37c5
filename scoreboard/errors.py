"""Relay error taxonomy.

Everything the core raises derives from RelayError. Each route in main.py
catches the ones it can meet: DuplicateClient becomes 409 (or an error frame
and close code 1008 on the WebSocket), SessionStartFailed becomes 202 with the
client id. DeliveryFailed and UpstreamPollError never reach a route.
"""
from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for subscription / fan-out failures."""


class DuplicateClient(RelayError):
    def __init__(self, client_id: str) -> None:
        super().__init__(f"Client {client_id} is already registered")
        self.client_id = client_id


class SessionStartFailed(RelayError):
    """The upstream producer for a channel could not be started.

    The subscriber that triggered the start stays registered; the next
    registration on the channel retries the start.
    """

    def __init__(self, channel_id: str, reason: str = "", client_id: Optional[str] = None) -> None:
        msg = f"Upstream session for {channel_id} failed to start"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.channel_id = channel_id
        self.reason = reason
        self.client_id = client_id


class DeliveryFailed(RelayError):
    def __init__(self, client_id: str, reason: str = "") -> None:
        super().__init__(f"Delivery to client {client_id} failed" + (f": {reason}" if reason else ""))
        self.client_id = client_id
        self.reason = reason


class UpstreamPollError(RelayError):
    """Transient upstream failure; the session retries on its next tick."""

    def __init__(self, channel_id: str, reason: str = "") -> None:
        super().__init__(f"Upstream poll for {channel_id} failed" + (f": {reason}" if reason else ""))
        self.channel_id = channel_id
        self.reason = reason
