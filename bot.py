"""
bot.py — 911 Operator Engine · Live Call Worker
================================================
One live call over the local microphone and speaker.

Usage
-----
    python bot.py [config.json]
    cat config.json | python bot.py

Pipeline
--------
MicrophoneVAD (sounddevice, RMS gate)
    → UtteranceCapture (WAV encode)
    → TurnCoordinator
        ├─ GroqTranscriber   (whisper-large-v3-turbo)
        ├─ ResponseDispatcher → GroqTextGenerator + Toolbox (JigsawStack)
        ├─ GroqSynthesizer   (orpheus, WAV)
        └─ EnrichmentPipeline (sentiment / summary / lookups, fire-and-forget)
    → DevicePlayback (sounddevice)

The worker exits once the call has ended and the last reply has finished
playing, or on Ctrl-C.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from apps.pipeline.capture import UtteranceCapture
from apps.pipeline.devices import DevicePlayback, MicrophoneVAD
from apps.pipeline.dispatch import ResponseDispatcher
from apps.pipeline.engines import (
    GroqStructuredExtractor,
    GroqSynthesizer,
    GroqTextGenerator,
    GroqTranscriber,
    make_groq_client,
)
from apps.pipeline.enrichment import EnrichmentPanels, EnrichmentPipeline
from apps.pipeline.search import JigsawStackSearch
from apps.pipeline.timeline import Session
from apps.pipeline.tools import Toolbox
from apps.pipeline.turn_coordinator import TurnCoordinator
from config import OperatorConfig

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("operator_engine.bot")

DRAIN_POLL_SEC = 0.25


async def _stall_monitor() -> None:
    """Log a warning whenever the event loop blocks for > 150ms."""
    TICK_MS   = 100.0
    WARN_MS   = 150.0
    prev = time.perf_counter() * 1000.0
    while True:
        await asyncio.sleep(TICK_MS / 1000.0)
        now   = time.perf_counter() * 1000.0
        drift = now - prev - TICK_MS
        if drift > WARN_MS:
            log.warning("event=event_loop_stall stall_ms=%.1f", drift)
        prev = now


def _log_panels(panels: EnrichmentPanels) -> None:
    if panels.location:
        log.info("event=panel_location address=%r map=%s", panels.location.get("address"), panels.map_url)
    if panels.person:
        log.info("event=panel_person name=%r age=%s", panels.person.get("name"), panels.person.get("age"))
    if panels.summary:
        log.info("event=panel_summary text=%.120r", panels.summary)


def build_coordinator(config: OperatorConfig, playback: DevicePlayback) -> TurnCoordinator:
    client = make_groq_client()
    extractor = GroqStructuredExtractor(client, config.extraction)
    generator = GroqTextGenerator(client, config.groq)
    toolbox = Toolbox(
        JigsawStackSearch(config.search),
        extractor,
        min_query_chars=config.dispatch.min_query_chars,
        filler_queries=config.dispatch.filler_queries,
    )
    enrichment = EnrichmentPipeline(
        extractor, generator, toolbox, config.enrichment, on_update=_log_panels,
    )
    log.info(
        "event=worker_config llm=%s stt=%s tts=%s/%s rounds=%d",
        config.groq.model, config.transcription.model,
        config.speech.model, config.speech.voice, config.dispatch.max_tool_rounds,
    )
    return TurnCoordinator(
        session=Session(system_prompt=config.system_prompt),
        transcriber=GroqTranscriber(client, config.transcription),
        dispatcher=ResponseDispatcher(generator, toolbox, max_rounds=config.dispatch.max_tool_rounds),
        synthesizer=GroqSynthesizer(client, config.speech),
        playback=playback,
        enrichment=enrichment,
        voice=config.speech.voice,
    )


async def main(config: OperatorConfig) -> None:
    loop = asyncio.get_running_loop()
    playback = DevicePlayback()
    coordinator = build_coordinator(config, playback)
    mic = MicrophoneVAD(config.capture, loop)
    capture = UtteranceCapture(mic, coordinator, config.capture.sample_rate, loop=loop)

    monitor = asyncio.create_task(_stall_monitor())
    capture.start()
    log.info("event=bot_start session=%s status=listening", coordinator.session.session_id)
    try:
        while True:
            await asyncio.sleep(DRAIN_POLL_SEC)
            session = coordinator.session
            if session.has_ended and coordinator.in_flight == 0 and not playback.is_playing:
                log.info("event=call_complete reason=%r messages=%d", session.end_reason, len(session.timeline))
                break
    finally:
        capture.pause()
        mic.close()
        await capture.drain()
        monitor.cancel()
        try:
            await monitor
        except asyncio.CancelledError:
            pass
        playback.close()
        log.info("event=bot_shutdown")


def _read_config(argv: list[str]) -> OperatorConfig:
    """Config from piped stdin JSON, else from the file named on the command line."""
    if not sys.stdin.isatty():
        config_text = sys.stdin.read().strip()
        if config_text:
            try:
                config = OperatorConfig.model_validate_json(config_text)
                log.info("event=config_received_from_stdin")
                return config
            except ValueError as exc:
                log.warning("event=config_parse_error error=%s — using defaults", exc)
                return OperatorConfig()
    path: Optional[str] = argv[1] if len(argv) > 1 else None
    if path:
        return OperatorConfig.load(path)
    log.info("event=no_config — using defaults")
    return OperatorConfig()


if __name__ == "__main__":
    _config = _read_config(sys.argv)
    try:
        asyncio.run(main(_config))
    except KeyboardInterrupt:
        log.info("event=bot_interrupted")
