"""
tools.py — Named external actions the operator model may request
=================================================================

    search-location(query)   place → coordinates
    search-person(query)     name  → age / background
    end-call(reason)         request the end of the call

Every execution yields exactly one ToolInvocation.  Lookups with a trivial
query (too short, or a filler phrase) are short-circuited to ``skipped``
before any network call.  Errors never escape a tool: they become
``status=error``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from apps.pipeline.engines import StructuredExtractor, ToolCall
from apps.pipeline.search import WebSearch

log = logging.getLogger("operator_engine.tools")

SEARCH_LOCATION = "search-location"
SEARCH_PERSON = "search-person"
END_CALL = "end-call"

NO_INFORMATION = "No information found"
NO_INFORMATION_API_ERROR = "No information found (API error)"
VAGUE_NAME = "Name query was too vague or short"
RETRIEVAL_ERROR = "Error retrieving information"

# Exactly the placeholder backgrounds search-person emits.
PLACEHOLDER_BACKGROUNDS: frozenset[str] = frozenset({
    NO_INFORMATION, NO_INFORMATION_API_ERROR, VAGUE_NAME, RETRIEVAL_ERROR,
})

TOOL_SCHEMAS: list[dict] = [
    {
        "type": "function",
        "function": {
            "name": SEARCH_LOCATION,
            "description": "Geo-resolve a place name or address to latitude/longitude",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The location or address to search for"},
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": SEARCH_PERSON,
            "description": "Find public profile information about a person",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The person's name to search for"},
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": END_CALL,
            "description": "End the emergency call when all necessary information has been collected or help has been sent",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "The reason for ending the call (e.g., 'help dispatched', 'emergency handled')",
                    },
                },
                "required": ["reason"],
            },
        },
    },
]


class ToolStatus(str, Enum):
    SKIPPED = "skipped"
    NO_DATA = "no_data"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    status: ToolStatus = ToolStatus.SKIPPED

    def to_payload(self) -> dict[str, Any]:
        """Result record handed back to the model."""
        return {**(self.result or {}), "status": self.status.value}


# Extraction schemas --------------------------------------------------------

class Coordinates(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class Biography(BaseModel):
    age: Optional[int] = None
    background: Optional[str] = None


# Helpers -------------------------------------------------------------------

def is_trivial_query(query: Optional[str], min_chars: int = 3, fillers: Iterable[str] = ()) -> bool:
    if not query:
        return True
    normalised = query.strip().lower().rstrip(".,!?")
    return len(normalised) < min_chars or normalised in {f.strip().lower() for f in fillers}


def is_useful_profile(profile: Optional[dict[str, Any]]) -> bool:
    """A profile counts only with a real (non-placeholder) background."""
    if not profile:
        return False
    background = (profile.get("background") or "").strip()
    return bool(background) and background not in PLACEHOLDER_BACKGROUNDS


def has_coordinates(location: Optional[dict[str, Any]]) -> bool:
    if not location:
        return False
    return isinstance(location.get("latitude"), (int, float)) and isinstance(location.get("longitude"), (int, float))


def map_url(latitude: float, longitude: float, zoom: int = 17) -> str:
    return f"https://www.google.com/maps?q={latitude},{longitude}&z={zoom}"


def _query_argument(arguments: dict[str, Any]) -> str:
    value = arguments.get("query") or arguments.get("name") or ""
    return value if isinstance(value, str) else str(value)


# Toolbox -------------------------------------------------------------------

class Toolbox:
    """Executes tool calls against the search and extraction collaborators."""

    def __init__(
        self,
        searcher: WebSearch,
        extractor: StructuredExtractor,
        min_query_chars: int = 3,
        filler_queries: Iterable[str] = ("i am", "breathe"),
    ):
        self._searcher = searcher
        self._extractor = extractor
        self._min_query_chars = min_query_chars
        self._fillers = tuple(filler_queries)

    def is_trivial(self, query: Optional[str]) -> bool:
        return is_trivial_query(query, self._min_query_chars, self._fillers)

    async def execute(self, call: ToolCall) -> ToolInvocation:
        log.info("event=tool_execute name=%s args=%s", call.name, call.arguments)
        if call.name == SEARCH_LOCATION:
            return await self.search_location(_query_argument(call.arguments))
        if call.name == SEARCH_PERSON:
            return await self.search_person(_query_argument(call.arguments))
        if call.name == END_CALL:
            return self.end_call(call.arguments.get("reason"))
        log.warning("event=tool_unknown name=%s", call.name)
        return ToolInvocation(
            name=call.name,
            arguments=call.arguments,
            result={"message": f"Unknown tool {call.name}"},
            status=ToolStatus.ERROR,
        )

    # -- search-location --------------------------------------------------------

    async def search_location(self, query: str) -> ToolInvocation:
        arguments = {"query": query}
        if self.is_trivial(query):
            log.info("event=tool_skipped name=%s query=%r", SEARCH_LOCATION, query)
            return ToolInvocation(
                name=SEARCH_LOCATION,
                arguments=arguments,
                result={"latitude": None, "longitude": None, "message": "Location query was too vague or short"},
                status=ToolStatus.SKIPPED,
            )

        try:
            found = await self._searcher.search(f"exact coordinates latitude and longitude of {query}")
            if found.places:
                place = found.places[0]
                return ToolInvocation(
                    name=SEARCH_LOCATION,
                    arguments=arguments,
                    result={
                        "address": place.address,
                        "latitude": place.latitude,
                        "longitude": place.longitude,
                        "source": "places",
                    },
                    status=ToolStatus.SUCCESS,
                )
            if not found.summary_text:
                return ToolInvocation(
                    name=SEARCH_LOCATION,
                    arguments=arguments,
                    result={"latitude": None, "longitude": None, "message": "No AI overview found"},
                    status=ToolStatus.NO_DATA,
                )

            coords = await self._extractor.generate_structured(
                "Extract latitude and longitude from this text. If coordinates aren't found, "
                f"return null for those fields:\n\n{found.summary_text}",
                Coordinates,
                system="Extract geographic coordinates from text.",
            )
            if coords.latitude is None or coords.longitude is None:
                return ToolInvocation(
                    name=SEARCH_LOCATION,
                    arguments=arguments,
                    result={"latitude": None, "longitude": None, "message": "No coordinates found in AI overview"},
                    status=ToolStatus.NO_DATA,
                )
            return ToolInvocation(
                name=SEARCH_LOCATION,
                arguments=arguments,
                result={
                    "address": query,
                    "latitude": coords.latitude,
                    "longitude": coords.longitude,
                    "source": "ai_overview",
                },
                status=ToolStatus.SUCCESS,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=tool_error name=%s error=%s", SEARCH_LOCATION, exc)
            return ToolInvocation(
                name=SEARCH_LOCATION,
                arguments=arguments,
                result={"latitude": None, "longitude": None, "message": "Failed to retrieve location data"},
                status=ToolStatus.ERROR,
            )

    # -- search-person ----------------------------------------------------------

    async def search_person(self, name: str) -> ToolInvocation:
        arguments = {"query": name}
        if self.is_trivial(name):
            log.info("event=tool_skipped name=%s query=%r", SEARCH_PERSON, name)
            return ToolInvocation(
                name=SEARCH_PERSON,
                arguments=arguments,
                result={"name": name, "age": None, "background": VAGUE_NAME},
                status=ToolStatus.SKIPPED,
            )

        try:
            found = await self._searcher.search(f"{name} person biography information age background")
            if not found.summary_text:
                return ToolInvocation(
                    name=SEARCH_PERSON,
                    arguments=arguments,
                    result={"name": name, "age": None, "background": NO_INFORMATION},
                    status=ToolStatus.NO_DATA,
                )

            bio = await self._extractor.generate_structured(
                f"Extract biographical information about {name} from this text. "
                f'Return "age" as a number (or null) and "background" as a concise description:\n\n'
                f"{found.summary_text}",
                Biography,
                system="Extract biographical information from text.",
            )
            return ToolInvocation(
                name=SEARCH_PERSON,
                arguments=arguments,
                result={
                    "name": name,
                    "age": bio.age,
                    "background": bio.background or found.summary_text[:200],
                    "source": "ai_overview",
                },
                status=ToolStatus.SUCCESS,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=tool_error name=%s error=%s", SEARCH_PERSON, exc)
            return ToolInvocation(
                name=SEARCH_PERSON,
                arguments=arguments,
                result={"name": name, "age": None, "background": NO_INFORMATION_API_ERROR},
                status=ToolStatus.ERROR,
            )

    # -- end-call ---------------------------------------------------------------

    def end_call(self, reason: Optional[str]) -> ToolInvocation:
        """Record the decision only; the caller ends the Session when it commits the reply."""
        reason = (reason or "").strip() or None
        return ToolInvocation(
            name=END_CALL,
            arguments={"reason": reason},
            result={
                "reason": reason,
                "ended": True,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            status=ToolStatus.SUCCESS,
        )
