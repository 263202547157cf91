"""
timeline.py — Message timeline and the single live Session
============================================================

The timeline is append-only.  Message ids are minted once and never change;
the only field of an appended Message that may be written again is
``sentiment`` (by the enrichment merge).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

log = logging.getLogger("operator_engine.timeline")

DEFAULT_END_REASON = "Emergency services have been dispatched."


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


_MUTABLE_FIELDS: frozenset[str] = frozenset({"sentiment"})


@dataclass
class Message:
    role: Role
    content: str
    audio: bytes = b""
    sentiment: Optional[str] = None
    is_system_notification: bool = False
    id: str = field(default_factory=new_id)

    def __setattr__(self, name: str, value) -> None:
        # Fields are write-once; only the sentiment annotation may change later.
        if name in self.__dict__ and name not in _MUTABLE_FIELDS:
            raise AttributeError(f"Message.{name} is immutable once assigned")
        object.__setattr__(self, name, value)

    def to_chat(self) -> dict:
        """Role/content pair as sent to a chat model."""
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict:
        """JSON-safe view (audio reported by size only)."""
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "audio_bytes": len(self.audio),
            "sentiment": self.sentiment,
            "is_system_notification": self.is_system_notification,
        }


@dataclass
class Session:
    """The one live call.

    Owns its timeline exclusively.  ``pending_generation_token`` holds the id
    of the user Message the most recent response attempt was started for.
    """
    system_prompt: str
    session_id: str = field(default_factory=new_id)
    is_active: bool = False
    has_ended: bool = False
    end_reason: Optional[str] = None
    timeline: list[Message] = field(default_factory=list)
    pending_generation_token: Optional[str] = None

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if not self.is_active:
            self.is_active = True
            log.info("event=session_start session=%s", self.session_id)

    def end(self, reason: Optional[str]) -> None:
        self.has_ended = True
        self.end_reason = reason
        log.info("event=session_ended session=%s reason=%r", self.session_id, reason)

    def reset(self) -> None:
        """Drop the call.  Any in-flight work referencing old ids goes stale."""
        log.info("event=session_reset session=%s messages=%d", self.session_id, len(self.timeline))
        self.session_id = new_id()
        self.is_active = False
        self.has_ended = False
        self.end_reason = None
        self.timeline = []
        self.pending_generation_token = None

    def terminal_message(self) -> str:
        return f"This emergency call has already ended. Reason: {self.end_reason or DEFAULT_END_REASON}"

    # -- timeline --------------------------------------------------------------

    def append(self, message: Message) -> Message:
        if self.find(message.id) is not None:
            raise ValueError(f"duplicate message id {message.id}")
        self.timeline.append(message)
        return message

    @property
    def last_message(self) -> Optional[Message]:
        return self.timeline[-1] if self.timeline else None

    def find(self, message_id: str) -> Optional[Message]:
        for message in reversed(self.timeline):
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        """Position of ``message_id`` in the timeline, or -1."""
        for i in range(len(self.timeline) - 1, -1, -1):
            if self.timeline[i].id == message_id:
                return i
        return -1

    def annotate_sentiment(self, message_id: str, label: str) -> bool:
        message = self.find(message_id)
        if message is None:
            return False
        message.sentiment = label
        return True

    def model_history(self) -> list[dict]:
        """Role/content pairs for the operator model (notifications excluded)."""
        return [m.to_chat() for m in self.timeline if not m.is_system_notification]
