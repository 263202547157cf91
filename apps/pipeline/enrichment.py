"""
enrichment.py — Side-channel analysis of the caller's words
============================================================

Per caller utterance, fire-and-forget and concurrently:
    • sentiment label for the utterance
    • running summary of the whole call
    • decision step (does it mention a place / a person?) followed by the
      conditional location and person lookups, themselves concurrent

All results settle into a single ``merge()``.  The merge is guarded by
session identity and message-id existence; it annotates the triggering
Message's sentiment and updates panel state, never the control fields of
the Session.  Nothing here blocks, cancels or is cancelled by the turn
coordinator.

``ConversationAnalyzer`` is the stateless batch form (decision + fan-out
over a posted conversation) used by the HTTP server.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from apps.pipeline.engines import StructuredExtractor, TextGenerator
from apps.pipeline.timeline import Message, Role, Session
from apps.pipeline.tools import (
    ToolInvocation,
    ToolStatus,
    Toolbox,
    has_coordinates,
    is_useful_profile,
    map_url,
)
from config import EnrichmentConfig

log = logging.getLogger("operator_engine.enrichment")

SENTIMENT_LABELS: tuple[str, ...] = ("calm", "neutral", "anxious", "distressed", "panicked", "angry")

_DECISION_SYSTEM = (
    "You are looking at a conversation between a 911 operator and a caller. "
    "Decide whether the caller's latest utterance mentions a specific location and/or a specific person "
    "that should be looked up. Only set should_use when a concrete place or name is mentioned; never for "
    "vague terms like 'I am', 'here' or single filler words. Put the exact place or name in query."
)

_SENTIMENT_SYSTEM = (
    "Classify the emotional state of a 911 caller from one utterance. "
    f"label must be one of: {', '.join(SENTIMENT_LABELS)}."
)

_SUMMARY_PROMPT = (
    "You summarise an ongoing 911 call for the dispatcher's screen. In at most three short sentences, "
    "state the emergency, the location if known, who is involved and what has been done so far. "
    "Do not invent details."
)


# ---------------------------------------------------------------------------
# Schemas & records
# ---------------------------------------------------------------------------

class LookupIntent(BaseModel):
    should_use: bool = False
    query: str = ""


class LookupDecision(BaseModel):
    location: LookupIntent = Field(default_factory=LookupIntent)
    person: LookupIntent = Field(default_factory=LookupIntent)


class SentimentScore(BaseModel):
    label: str = "neutral"


class EnrichmentKind(str, Enum):
    SENTIMENT = "sentiment"
    SUMMARY = "summary"
    LOCATION = "location"
    PERSON = "person"


@dataclass
class EnrichmentResult:
    source_message_id: str
    kind: EnrichmentKind
    payload: Any


@dataclass
class EnrichmentPanels:
    """Presentation state derived from enrichment (not part of the timeline)."""
    location: Optional[dict] = None
    person: Optional[dict] = None
    summary: Optional[str] = None
    # timeline position of the message that last wrote each panel
    positions: dict[EnrichmentKind, int] = field(default_factory=dict, repr=False)

    @property
    def map_url(self) -> Optional[str]:
        if not has_coordinates(self.location):
            return None
        return map_url(self.location["latitude"], self.location["longitude"])

    def to_dict(self) -> dict:
        return {
            "location": self.location,
            "person": self.person,
            "summary": self.summary,
            "map_url": self.map_url,
        }


def normalise_sentiment(label: Optional[str]) -> str:
    cleaned = (label or "").strip().lower()
    return cleaned if cleaned in SENTIMENT_LABELS else "neutral"


def _location_panel(invocation: Optional[ToolInvocation]) -> Optional[dict]:
    if invocation is None or invocation.status is not ToolStatus.SUCCESS:
        return None
    if not has_coordinates(invocation.result):
        return None
    result = invocation.result
    return {
        "address": result.get("address"),
        "latitude": result["latitude"],
        "longitude": result["longitude"],
    }


def _person_panel(invocation: Optional[ToolInvocation]) -> Optional[dict]:
    if invocation is None or invocation.status is not ToolStatus.SUCCESS:
        return None
    if not is_useful_profile(invocation.result):
        log.info("event=person_profile_rejected reason=placeholder_background")
        return None
    return dict(invocation.result)


def _transcript(messages: list[dict]) -> str:
    return "\n".join(f"{m['role']}: {m['content']}" for m in messages)


# ---------------------------------------------------------------------------
# Live pipeline
# ---------------------------------------------------------------------------

class EnrichmentPipeline:
    def __init__(
        self,
        extractor: StructuredExtractor,
        generator: TextGenerator,
        toolbox: Toolbox,
        config: Optional[EnrichmentConfig] = None,
        on_update: Optional[Callable[[EnrichmentPanels], None]] = None,
    ):
        self._extractor = extractor
        self._generator = generator
        self._toolbox = toolbox
        self._config = config or EnrichmentConfig()
        self._on_update = on_update
        self.panels = EnrichmentPanels()
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, session: Session, message: Message) -> asyncio.Task:
        """Start enrichment for ``message`` without waiting on it."""
        task = asyncio.create_task(self.run(session, message), name=f"enrich_{message.id[:8]}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all outstanding enrichment tasks (shutdown / tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        self.panels = EnrichmentPanels()

    async def run(self, session: Session, message: Message) -> list[EnrichmentResult]:
        session_id = session.session_id
        history = session.model_history()
        log.info("event=enrichment_start message=%s", message.id[:8])

        jobs = []
        if self._config.sentiment:
            jobs.append(self._sentiment(message))
        if self._config.summary:
            jobs.append(self._summary(message.id, history))
        if self._config.lookups:
            jobs.append(self._lookups(message))

        results: list[EnrichmentResult] = []
        for outcome in await asyncio.gather(*jobs, return_exceptions=True):
            if isinstance(outcome, BaseException):
                log.warning("event=enrichment_job_error error=%s", outcome)
                continue
            results.extend(outcome)

        self.merge(session, session_id, message.id, results)
        return results

    # -- jobs -------------------------------------------------------------------

    async def _sentiment(self, message: Message) -> list[EnrichmentResult]:
        score = await self._extractor.generate_structured(
            f"Caller utterance:\n{message.content}", SentimentScore, system=_SENTIMENT_SYSTEM,
        )
        return [EnrichmentResult(message.id, EnrichmentKind.SENTIMENT, normalise_sentiment(score.label))]

    async def _summary(self, message_id: str, history: list[dict]) -> list[EnrichmentResult]:
        try:
            completion = await self._generator.generate(_SUMMARY_PROMPT, history)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=summary_error error=%s", exc)
            return []
        if not completion.text:
            return []
        return [EnrichmentResult(message_id, EnrichmentKind.SUMMARY, completion.text)]

    async def _lookups(self, message: Message) -> list[EnrichmentResult]:
        decision = await self.decide(message.content)
        location, person = await self.lookup(decision)
        results = []
        location_panel = _location_panel(location)
        if location_panel is not None:
            results.append(EnrichmentResult(message.id, EnrichmentKind.LOCATION, location_panel))
        person_panel = _person_panel(person)
        if person_panel is not None:
            results.append(EnrichmentResult(message.id, EnrichmentKind.PERSON, person_panel))
        return results

    # -- decision + fan-out (shared with the batch analyzer) --------------------

    async def decide(self, utterance: str, context: Optional[list[dict]] = None) -> LookupDecision:
        prompt = f"Latest caller utterance:\n{utterance}"
        if context:
            prompt = f"Conversation so far:\n{_transcript(context)}\n\n{prompt}"
        decision = await self._extractor.generate_structured(prompt, LookupDecision, system=_DECISION_SYSTEM)
        log.info(
            "event=lookup_decision location=%s person=%s",
            decision.location.should_use, decision.person.should_use,
        )
        return decision

    async def lookup(
        self, decision: LookupDecision,
    ) -> tuple[Optional[ToolInvocation], Optional[ToolInvocation]]:
        """Run the lookups the decision asks for, concurrently."""
        location_job = None
        person_job = None
        if decision.location.should_use and decision.location.query.strip():
            location_job = self._toolbox.search_location(decision.location.query)
        if decision.person.should_use and decision.person.query.strip():
            person_job = self._toolbox.search_person(decision.person.query)

        jobs = [j for j in (location_job, person_job) if j is not None]
        if not jobs:
            return None, None
        settled = iter(await asyncio.gather(*jobs))
        location = next(settled) if location_job is not None else None
        person = next(settled) if person_job is not None else None
        return location, person

    # -- merge --------------------------------------------------------------------

    def merge(
        self,
        session: Session,
        session_id: str,
        message_id: str,
        results: list[EnrichmentResult],
    ) -> bool:
        """Fold settled results back in.  Returns False when the merge was dropped."""
        if session.session_id != session_id:
            log.info("event=enrichment_dropped reason=session_reset message=%s", message_id[:8])
            return False
        position = session.index_of(message_id)
        if position < 0:
            log.info("event=enrichment_dropped reason=message_missing message=%s", message_id[:8])
            return False

        changed = False
        for result in results:
            if result.kind is EnrichmentKind.SENTIMENT:
                session.annotate_sentiment(message_id, result.payload)
                continue
            if position < self.panels.positions.get(result.kind, -1):
                log.info("event=enrichment_superseded kind=%s message=%s", result.kind.value, message_id[:8])
                continue
            setattr(self.panels, result.kind.value, result.payload)
            self.panels.positions[result.kind] = position
            changed = True

        log.info("event=enrichment_merged message=%s results=%d", message_id[:8], len(results))
        if changed and self._on_update is not None:
            self._on_update(self.panels)
        return True


# ---------------------------------------------------------------------------
# Batch analyzer
# ---------------------------------------------------------------------------

@dataclass
class AnalysisResult:
    location: Optional[dict] = None
    caller_profile: Optional[dict] = None
    new_message: Optional[Message] = None

    def to_dict(self) -> dict:
        return {
            "location": self.location,
            "caller": self.caller_profile,
            "new_message": self.new_message.to_dict() if self.new_message else None,
        }


def build_notification(location: Optional[dict], profile: Optional[dict]) -> Optional[Message]:
    parts: list[str] = []
    if has_coordinates(location):
        parts.append(
            f"Location identified: {location.get('address') or 'Unknown'} "
            f"({location['latitude']:.4f}, {location['longitude']:.4f})"
        )
    if profile and profile.get("name"):
        age = f", age {profile['age']}" if profile.get("age") else ""
        parts.append(f"Caller identified: {profile['name']}{age}")
        if profile.get("background"):
            parts.append(f"Background: {profile['background']}")
    if not parts:
        return None
    return Message(
        role=Role.SYSTEM,
        content=f"[System] {'. '.join(parts)}",
        is_system_notification=True,
    )


class ConversationAnalyzer:
    """Extract {location, caller profile, notification} from a whole conversation."""

    def __init__(self, pipeline: EnrichmentPipeline, min_messages: int = 3):
        self._pipeline = pipeline
        self._min_messages = min_messages

    async def analyze(self, messages: list[dict]) -> AnalysisResult:
        chat = [{"role": m["role"], "content": m["content"]} for m in messages]
        if len(chat) < self._min_messages:
            log.info("event=analysis_skipped reason=too_few_messages count=%d", len(chat))
            return AnalysisResult()

        latest = next((m["content"] for m in reversed(chat) if m["role"] == Role.USER.value), chat[-1]["content"])
        log.info("event=analysis_start messages=%d latest=%.80r", len(chat), latest)
        try:
            decision = await self._pipeline.decide(latest, context=chat)
            location_call, person_call = await self._pipeline.lookup(decision)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=analysis_error error=%s", exc, exc_info=True)
            return AnalysisResult()

        location = location_call.result if location_call and has_coordinates(location_call.result) else None
        profile = _person_panel(person_call)
        notification = build_notification(location, profile)
        log.info(
            "event=analysis_complete location_found=%s profile_found=%s",
            location is not None, profile is not None,
        )
        return AnalysisResult(location=location, caller_profile=profile, new_message=notification)
