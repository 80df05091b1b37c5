"""Game sheet producer backed by an HTTP JSON endpoint.

Each poll fetches the whole game document for the channel and reports only
the top-level fields that changed since the previous poll on the same handle.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from scoreboard.config import UPSTREAM_TIMEOUT_SEC, UPSTREAM_URL_TEMPLATE
from scoreboard.errors import UpstreamPollError
from scoreboard.models import UpdateEnvelope
from scoreboard.producers.base import UpstreamProducer, changed_fields

log = logging.getLogger(__name__)


@dataclass
class GameSheetHandle:
    channel_id: str
    url: str
    previous: dict[str, Any] = field(default_factory=dict)


class HttpGameSheetProducer(UpstreamProducer):
    def __init__(
        self,
        url_template: str = UPSTREAM_URL_TEMPLATE,
        timeout: float = UPSTREAM_TIMEOUT_SEC,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url_template = url_template
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def start(self, channel_id: str) -> GameSheetHandle:
        url = self.url_template.format(channel_id=channel_id)
        log.info("Watching game sheet %s at %s", channel_id, url)
        return GameSheetHandle(channel_id=channel_id, url=url)

    async def fetch(self, handle: GameSheetHandle) -> dict[str, Any]:
        try:
            response = await self._client.get(handle.url)
            response.raise_for_status()
            doc = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamPollError(handle.channel_id, str(exc)) from exc
        except ValueError as exc:
            raise UpstreamPollError(handle.channel_id, f"invalid JSON: {exc}") from exc
        if not isinstance(doc, dict):
            raise UpstreamPollError(handle.channel_id, "game sheet is not a JSON object")
        return doc

    async def poll(self, handle: GameSheetHandle) -> Optional[UpdateEnvelope]:
        doc = await self.fetch(handle)
        delta = changed_fields(handle.previous, doc)
        handle.previous = doc
        if not delta:
            log.debug("No change on %s", handle.channel_id)
            return None
        return UpdateEnvelope(channel_id=handle.channel_id, changed_fields=delta)

    async def stop(self, handle: GameSheetHandle) -> None:
        handle.previous = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
