"""
operator_desk.py — Text-only conversation with the operator
=============================================================

Same Session + ResponseDispatcher as the live loop, minus audio: one
``converse()`` call is one turn.  Used by the HTTP server.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from apps.pipeline.dispatch import ResponseDispatcher
from apps.pipeline.timeline import Message, Role, Session

log = logging.getLogger("operator_engine.operator_desk")


@dataclass
class ConverseResult:
    response: str
    has_ended: bool


class OperatorDesk:
    def __init__(self, session: Session, dispatcher: ResponseDispatcher):
        self.session = session
        self._dispatcher = dispatcher

    async def converse(self, text: str) -> ConverseResult:
        session = self.session
        if session.has_ended:
            log.info("event=converse_after_end session=%s", session.session_id)
            return ConverseResult(response=session.terminal_message(), has_ended=True)

        session.start()
        session.append(Message(role=Role.USER, content=text))
        result = await self._dispatcher.respond(session)
        session.append(Message(role=Role.ASSISTANT, content=result.text))
        if result.has_ended and not session.has_ended:
            session.end(result.end_reason)
        log.info(
            "event=converse_turn messages=%d tools=%d has_ended=%s",
            len(session.timeline), len(result.invocations), session.has_ended,
        )
        return ConverseResult(response=result.text, has_ended=session.has_ended)

    def reset(self) -> None:
        self.session.reset()
