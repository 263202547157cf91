"""
dispatch.py — Operator reply with bounded tool resolution
==========================================================

State machine
─────────────
    AWAITING_TOOL_DECISION ──(no tool calls)──────────────► FINALIZING
            │  ▲
   tool calls  │ re-invoke with augmented working context
            ▼  │
    EXECUTING_TOOLS ──(end-call ran / round bound hit)────► FINALIZING

Tool results go into a *working copy* of the context, never onto the
visible timeline.  Nothing raised by the model or a tool escapes
``respond()``: failures become the last text seen or an apology.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional

from apps.pipeline.engines import TextGenerator
from apps.pipeline.timeline import Session
from apps.pipeline.tools import END_CALL, TOOL_SCHEMAS, ToolInvocation, ToolStatus, Toolbox

log = logging.getLogger("operator_engine.dispatch")

MAX_TOOL_ROUNDS = 4

FALLBACK_TEXT = "I'm connecting you with emergency services."
AFTER_TOOLS_FALLBACK_TEXT = "I'm processing your emergency. Stay on the line."
APOLOGY_TEXT = "I'm sorry, I'm having trouble hearing you. Please stay on the line."


def ended_reply(reason: Optional[str]) -> str:
    lead = f"Call ended. {reason.rstrip('.')}." if reason else "Call ended."
    return f"{lead} Emergency services have been dispatched to your location. Please stay safe."


class DispatchPhase(Enum):
    AWAITING_TOOL_DECISION = auto()
    EXECUTING_TOOLS = auto()
    FINALIZING = auto()


@dataclass
class DispatchResult:
    text: str
    invocations: list[ToolInvocation] = field(default_factory=list)
    has_ended: bool = False
    end_reason: Optional[str] = None
    rounds: int = 0
    error: bool = False


def _log_phase(phase: DispatchPhase, round_no: int) -> None:
    log.debug("event=dispatch_phase phase=%s round=%d", phase.name, round_no)


class ResponseDispatcher:
    """Stateless between calls; concurrent attempts may share one instance.

    An ``end-call`` is reported on the result (``has_ended``/``end_reason``)
    and never applied to the Session here.
    """

    def __init__(
        self,
        generator: TextGenerator,
        toolbox: Toolbox,
        max_rounds: int = MAX_TOOL_ROUNDS,
    ):
        self._generator = generator
        self._toolbox = toolbox
        self._max_rounds = max_rounds

    async def respond(self, session: Session) -> DispatchResult:
        """Produce the operator's next reply for the session's current history."""
        if session.has_ended:
            return DispatchResult(text=session.terminal_message(), has_ended=True, end_reason=session.end_reason)

        working = session.model_history()
        invocations: list[ToolInvocation] = []
        last_text = ""

        for round_no in range(1, self._max_rounds + 1):
            _log_phase(DispatchPhase.AWAITING_TOOL_DECISION, round_no)
            try:
                completion = await self._generator.generate(
                    session.system_prompt, working, tools=TOOL_SCHEMAS,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=dispatch_generation_error round=%d error=%s", round_no, exc, exc_info=True)
                _log_phase(DispatchPhase.FINALIZING, round_no)
                return DispatchResult(
                    text=last_text or APOLOGY_TEXT,
                    invocations=invocations,
                    rounds=round_no,
                    error=True,
                )

            if completion.text:
                last_text = completion.text

            if not completion.tool_calls:
                _log_phase(DispatchPhase.FINALIZING, round_no)
                text = completion.text or (AFTER_TOOLS_FALLBACK_TEXT if invocations else FALLBACK_TEXT)
                return DispatchResult(text=text, invocations=invocations, rounds=round_no)

            _log_phase(DispatchPhase.EXECUTING_TOOLS, round_no)
            working.append(completion.to_chat())
            ended, end_reason = False, None
            for call in completion.tool_calls:
                invocation = await self._toolbox.execute(call)
                invocations.append(invocation)
                log.info(
                    "event=tool_result name=%s status=%s round=%d",
                    invocation.name, invocation.status.value, round_no,
                )
                if invocation.name == END_CALL and invocation.status is ToolStatus.SUCCESS:
                    ended, end_reason = True, (invocation.result or {}).get("reason")
                working.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "content": json.dumps(invocation.to_payload()),
                })

            if ended:
                _log_phase(DispatchPhase.FINALIZING, round_no)
                return DispatchResult(
                    text=ended_reply(end_reason),
                    invocations=invocations,
                    has_ended=True,
                    end_reason=end_reason,
                    rounds=round_no,
                )

        log.warning("event=tool_loop_exceeded rounds=%d has_text=%s", self._max_rounds, bool(last_text))
        _log_phase(DispatchPhase.FINALIZING, self._max_rounds)
        return DispatchResult(
            text=last_text or APOLOGY_TEXT,
            invocations=invocations,
            rounds=self._max_rounds,
        )
