"""
search.py — Web / places search (JigsawStack)
==============================================

``search(query)`` returns a SearchResult with whatever the provider gave
back: an AI overview summary, structured places with coordinates, image
URLs.  Network and HTTP errors propagate; the lookup tools own the boundary.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from config import SearchConfig

log = logging.getLogger("operator_engine.search")


@dataclass
class Place:
    name: str
    address: str
    latitude: float
    longitude: float


@dataclass
class SearchResult:
    summary_text: Optional[str] = None
    places: list[Place] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)


class WebSearch(Protocol):
    async def search(self, query: str) -> SearchResult: ...


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def parse_places(entries: Any) -> list[Place]:
    """Keep only entries that carry usable coordinates."""
    places: list[Place] = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        coords = entry.get("coordinates") if isinstance(entry.get("coordinates"), dict) else entry
        lat = _as_float(coords.get("latitude", coords.get("lat")))
        lng = _as_float(coords.get("longitude", coords.get("lng")))
        if lat is None or lng is None:
            continue
        name = str(entry.get("name") or "")
        address = str(entry.get("full_address") or entry.get("address") or name)
        places.append(Place(name=name, address=address, latitude=lat, longitude=lng))
    return places


def parse_search_response(data: dict) -> SearchResult:
    overview = data.get("ai_overview")
    images = data.get("image_urls") or []
    return SearchResult(
        summary_text=overview if isinstance(overview, str) and overview.strip() else None,
        places=parse_places(data.get("geo_results")),
        image_urls=[u for u in images if isinstance(u, str)],
    )


class JigsawStackSearch:
    """POST /web/search with an AI overview."""

    def __init__(
        self,
        config: SearchConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        self._api_key = api_key or os.environ["JIGSAWSTACK_API_KEY"]
        self._client = client

    async def search(self, query: str) -> SearchResult:
        log.info("event=web_search_start query=%.80r", query)
        payload = {"query": query, "ai_overview": self._config.ai_overview}
        headers = {"x-api-key": self._api_key, "Content-Type": "application/json"}
        url = f"{self._config.base_url.rstrip('/')}/web/search"

        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._config.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()

        result = parse_search_response(response.json())
        log.info(
            "event=web_search_complete summary=%s places=%d images=%d",
            result.summary_text is not None, len(result.places), len(result.image_urls),
        )
        return result
