"""
turn_coordinator.py — Who speaks next, and whose reply gets committed
=======================================================================

Flow per caller utterance:
    on_speech_start  → caller_speaking=True, pause playback (unconditional)
                       (stays True until the utterance is appended or abandoned)
    on_speech_end    → transcribe → append user Message (utterance order)
                     → enrichment.schedule() (fire-and-forget) → turn-check
    turn-check       → caller silent AND last entry is a user Message
                     → stamp pending_generation_token, start _respond(token)
    _respond         → dispatch → synthesize → read blob → commit (+ end-call) + play

Optimistic concurrency
──────────────────────
Several attempts may be in flight at once.  Each one carries the id of the
user Message it answers and re-checks it after every await: if the caller
is speaking again or the timeline's last entry is no longer that Message,
the attempt drops its result.  Nothing is locked and nothing is cancelled;
the commit itself is synchronous, so at most one attempt per user Message
can ever append.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from apps.pipeline.dispatch import ResponseDispatcher
from apps.pipeline.engines import Playback, Synthesizer, Transcriber
from apps.pipeline.enrichment import EnrichmentPipeline
from apps.pipeline.timeline import Message, Role, Session

log = logging.getLogger("operator_engine.turn_coordinator")


class TurnCoordinator:
    def __init__(
        self,
        session: Session,
        transcriber: Transcriber,
        dispatcher: ResponseDispatcher,
        synthesizer: Synthesizer,
        playback: Playback,
        enrichment: Optional[EnrichmentPipeline] = None,
        voice: Optional[str] = None,
    ):
        self.session = session
        self._transcriber = transcriber
        self._dispatcher = dispatcher
        self._synthesizer = synthesizer
        self._playback = playback
        self._enrichment = enrichment
        self._voice = voice

        self._voice_active = False
        # utterances whose speech ended but which are not yet appended (or given up)
        self._unsettled = 0
        self._attempts: set[asyncio.Task] = set()
        # set when the previous utterance has been appended (or given up)
        self._utterance_tail: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Detector callbacks
    # ------------------------------------------------------------------

    @property
    def caller_speaking(self) -> bool:
        """True from voice onset until that utterance is appended or abandoned."""
        return self._voice_active or self._unsettled > 0

    def on_speech_start(self) -> None:
        """Voice onset.  Stops audio output only; attempts in flight keep running."""
        self._voice_active = True
        was_playing = self._playback.is_playing
        self._playback.pause()
        log.info("event=caller_speech_start playback_paused=%s", was_playing)

    async def on_speech_end(self, wav: bytes) -> Optional[Message]:
        """Transcribe one finalized utterance and append it in utterance order."""
        self._voice_active = False
        self._unsettled += 1
        settled = False
        previous = self._utterance_tail
        appended = asyncio.Event()
        self._utterance_tail = appended

        message: Optional[Message] = None
        try:
            try:
                transcript = await self._transcriber.transcribe(wav)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("event=transcription_error error=%s", exc)
                transcript = ""

            if previous is not None:
                await previous.wait()

            if transcript.strip():
                self._unsettled -= 1
                settled = True
                message = self.on_utterance_finalized(transcript.strip(), wav)
            else:
                log.info("event=utterance_abandoned reason=empty_transcript bytes=%d", len(wav))
        finally:
            if not settled:
                self._unsettled -= 1
            appended.set()
            if message is None:
                # an earlier user Message may still be waiting for its reply
                self._turn_check()
        return message

    # ------------------------------------------------------------------
    # Timeline entry point
    # ------------------------------------------------------------------

    def on_utterance_finalized(self, transcript: str, audio: bytes = b"") -> Message:
        """Append a user Message and run a turn-check.

        On an ended call nothing is appended; the returned Message carries the
        terminal text and is flagged as a system notification.
        """
        session = self.session
        if session.has_ended:
            log.info("event=utterance_after_end session=%s", session.session_id)
            return Message(
                role=Role.ASSISTANT,
                content=session.terminal_message(),
                is_system_notification=True,
            )

        session.start()
        message = session.append(Message(role=Role.USER, content=transcript, audio=audio))
        log.info("event=user_message id=%s chars=%d", message.id[:8], len(transcript))

        if self._enrichment is not None:
            self._enrichment.schedule(session, message)
        self._turn_check()
        return message

    # ------------------------------------------------------------------
    # Turn-check and response attempts
    # ------------------------------------------------------------------

    def _turn_check(self) -> Optional[asyncio.Task]:
        session = self.session
        last = session.last_message
        if self.caller_speaking or session.has_ended:
            return None
        if last is None or last.role is not Role.USER:
            return None

        token = last.id
        session.pending_generation_token = token
        task = asyncio.create_task(self._respond(token), name=f"respond_{token[:8]}")
        self._attempts.add(task)
        task.add_done_callback(self._attempts.discard)
        log.info("event=attempt_started token=%s in_flight=%d", token[:8], len(self._attempts))
        return task

    def _stale_reason(self, token: str) -> Optional[str]:
        if self.caller_speaking:
            return "caller_speaking"
        last = self.session.last_message
        if last is None or last.id != token:
            return "timeline_advanced"
        return None

    def _abandon(self, token: str, stage: str) -> bool:
        reason = self._stale_reason(token)
        if reason is None:
            return False
        log.info("event=stale_attempt_dropped token=%s stage=%s reason=%s", token[:8], stage, reason)
        return True

    async def _respond(self, token: str) -> Optional[Message]:
        result = await self._dispatcher.respond(self.session)
        if self._abandon(token, "generation"):
            return None

        audio = b""
        try:
            blob = await self._synthesizer.synthesize(result.text, self._voice)
            if self._abandon(token, "synthesis"):
                return None
            audio = await blob.read()
            if self._abandon(token, "materialization"):
                return None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=tts_error token=%s error=%s", token[:8], exc)
            if self._abandon(token, "synthesis"):
                return None
            audio = b""

        message = self.session.append(Message(role=Role.ASSISTANT, content=result.text, audio=audio))
        if result.has_ended and not self.session.has_ended:
            self.session.end(result.end_reason)
        log.info(
            "event=assistant_committed token=%s id=%s audio_bytes=%d has_ended=%s",
            token[:8], message.id[:8], len(audio), result.has_ended,
        )
        if audio:
            self._playback.pause()
            self._playback.play(audio)
        return message

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._attempts)

    async def wait_idle(self) -> None:
        """Wait until no response attempt is running."""
        while self._attempts:
            await asyncio.gather(*list(self._attempts), return_exceptions=True)

    def reset(self) -> None:
        """Start a fresh call.  Attempts still in flight go stale on their own."""
        self._playback.pause()
        self.session.reset()
        self._voice_active = False
        if self._enrichment is not None:
            self._enrichment.reset()
