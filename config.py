"""
config.py — Operator Voice Engine · Runtime Configuration
==========================================================
Pydantic models for every tunable parameter across all services.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, rebuilds services on change
  • bot.py     — reads config from stdin or a file, applies to each adapter
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("operator_engine.config")

# ---------------------------------------------------------------------------
# Default operator prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You're the police operator for the 911 system. You're responsible for taking calls from the public \
and managing the situation. Your goal is to help the caller and decide whether to dispatch the police.
STRICT RULES:
- Try your best to calm the caller down and get them to tell you what's going on.
- Gather information about the emergency and the caller's whereabouts.
- Ask one question at a time. Max 2 sentences, short and quick to speak out.
- Stay on the line with the caller until help arrives.
- Do not reveal your capabilities. Respond as a real 911 operator would.
- You may use the search-location and search-person tools when a specific place or name is mentioned.
- If the emergency has been fully addressed or help is confirmed to be on the way, use the end-call tool.
"""

DEFAULT_FILLER_QUERIES = ["i am", "breathe", "help", "yes", "okay", "hello"]


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class GroqConfig(BaseModel):
    """Groq chat parameters for the operator reply."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling")
    max_tokens: Optional[int] = Field(default=1024, ge=1, description="Max response tokens")
    seed: Optional[int] = Field(default=None, description="Deterministic sampling seed")


class TranscriptionConfig(BaseModel):
    """Groq Whisper parameters."""
    model: str = Field(default="whisper-large-v3-turbo", description="Whisper model ID")
    language: Optional[str] = Field(default=None, description="Force language code (e.g. 'en')")


class SpeechConfig(BaseModel):
    """Groq text-to-speech parameters."""
    model: str = Field(default="canopylabs/orpheus-v1-english", description="TTS model")
    voice: str = Field(default="troy", description="TTS voice")
    response_format: str = Field(default="wav", description="Audio container")
    max_chars: int = Field(default=200, ge=1, le=10000, description="Truncate input to this many chars")


class ExtractionConfig(BaseModel):
    """Structured JSON extraction (coordinates, biography, lookup routing, sentiment)."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: float = Field(default=0.1, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: int = Field(default=512, ge=1, description="Max response tokens")


class EnrichmentConfig(BaseModel):
    """Side-channel analysis toggles."""
    sentiment: bool = Field(default=True, description="Score caller sentiment per utterance")
    summary: bool = Field(default=True, description="Maintain a running call summary")
    lookups: bool = Field(default=True, description="Run location / person lookups")
    min_analysis_messages: int = Field(default=3, ge=0, description="Batch analysis skips shorter conversations")


class SearchConfig(BaseModel):
    """JigsawStack web search parameters."""
    base_url: str = Field(default="https://api.jigsawstack.com/v1", description="API root")
    timeout: float = Field(default=30.0, gt=0.0, le=120.0, description="HTTP timeout (seconds)")
    ai_overview: bool = Field(default=True, description="Request the AI overview summary")


class CaptureConfig(BaseModel):
    """Microphone speech-activity gate."""
    sample_rate: int = Field(default=16000, description="Capture / WAV sample rate (Hz)")
    frame_ms: int = Field(default=32, ge=10, le=100, description="Analysis frame length (ms)")
    rms_threshold: float = Field(default=0.02, gt=0.0, le=1.0, description="Float RMS counted as speech")
    min_speech_frames: int = Field(default=5, ge=1, le=100, description="Consecutive speech frames for onset")
    redemption_frames: int = Field(default=24, ge=1, le=500, description="Consecutive silent frames that end speech")
    pre_speech_pad_frames: int = Field(default=3, ge=0, le=100, description="Frames kept before onset")
    device: Optional[int] = Field(default=None, description="Input device index (None = default)")


class DispatchConfig(BaseModel):
    """Tool-call loop and lookup guard."""
    max_tool_rounds: int = Field(default=4, ge=1, le=16, description="Model invocations per reply")
    min_query_chars: int = Field(default=3, ge=1, le=50, description="Shorter lookup queries are skipped")
    filler_queries: list[str] = Field(default_factory=lambda: list(DEFAULT_FILLER_QUERIES),
                                      description="Lookup queries that are always skipped")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class OperatorConfig(BaseModel):
    """Complete runtime configuration for the operator engine."""
    groq: GroqConfig = Field(default_factory=GroqConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="Operator system prompt")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "OperatorConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "OperatorConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"dispatch": {"max_tool_rounds": 2}}
        only changes dispatch.max_tool_rounds, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return OperatorConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
