"""
engines.py — External model collaborators and their Groq adapters
==================================================================

Contracts (what the core consumes):
    Transcriber          transcribe(wav_bytes) -> text
    TextGenerator        generate(system_prompt, messages, tools?) -> Completion
    StructuredExtractor  generate_structured(prompt, schema) -> schema instance
    Synthesizer          synthesize(text) -> SpeechBlob   (blob.read() -> bytes)
    Playback             play(wav_bytes) / pause() / is_playing

Failure policy
──────────────
Transcriber, TextGenerator and Synthesizer raise on network failure; the
calling component owns the boundary.  StructuredExtractor never raises: a
failed call or unparseable output yields ``schema()`` (all defaults).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, TypeVar

from groq import AsyncGroq
from pydantic import BaseModel, ValidationError

from config import ExtractionConfig, GroqConfig, SpeechConfig, TranscriptionConfig

log = logging.getLogger("operator_engine.engines")

SchemaT = TypeVar("SchemaT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_chat(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class Completion:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_chat(self) -> dict:
        """Assistant entry for a working context (keeps the tool-call ids)."""
        message: dict[str, Any] = {"role": "assistant", "content": self.text}
        if self.tool_calls:
            message["tool_calls"] = [c.to_chat() for c in self.tool_calls]
        return message


def parse_tool_arguments(raw: Optional[str]) -> dict[str, Any]:
    """Tool arguments arrive as a JSON string; anything unusable becomes {}."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        log.warning("event=tool_arguments_malformed raw=%.80r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class Transcriber(Protocol):
    async def transcribe(self, audio: bytes) -> str: ...


class TextGenerator(Protocol):
    async def generate(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
    ) -> Completion: ...


class StructuredExtractor(Protocol):
    async def generate_structured(
        self,
        prompt: str,
        schema: type[SchemaT],
        system: Optional[str] = None,
    ) -> SchemaT: ...


class SpeechBlob(Protocol):
    async def read(self) -> bytes: ...


class Synthesizer(Protocol):
    async def synthesize(self, text: str, voice: Optional[str] = None) -> SpeechBlob: ...


class Playback(Protocol):
    @property
    def is_playing(self) -> bool: ...

    def play(self, audio: bytes) -> None: ...

    def pause(self) -> None: ...


# ---------------------------------------------------------------------------
# Groq adapters
# ---------------------------------------------------------------------------

def make_groq_client(api_key: Optional[str] = None) -> AsyncGroq:
    return AsyncGroq(api_key=api_key or os.environ["GROQ_API_KEY"])


class GroqTranscriber:
    """Whisper on Groq."""

    def __init__(self, client: AsyncGroq, config: TranscriptionConfig):
        self._client = client
        self._config = config

    async def transcribe(self, audio: bytes) -> str:
        kwargs: dict[str, Any] = {
            "file": ("audio.wav", audio),
            "model": self._config.model,
        }
        if self._config.language is not None:
            kwargs["language"] = self._config.language
        response = await self._client.audio.transcriptions.create(**kwargs)
        text = (response.text or "").strip()
        log.info("event=transcribed model=%s chars=%d", self._config.model, len(text))
        return text


class GroqTextGenerator:
    """Chat completions, optionally with function tools."""

    def __init__(self, client: AsyncGroq, config: GroqConfig):
        self._client = client
        self._config = config

    def _params(self) -> dict[str, Any]:
        # Only forward parameters that were explicitly set
        params: dict[str, Any] = {}
        if self._config.temperature is not None:
            params["temperature"] = self._config.temperature
        if self._config.top_p is not None:
            params["top_p"] = self._config.top_p
        if self._config.max_tokens is not None:
            params["max_tokens"] = self._config.max_tokens
        if self._config.seed is not None:
            params["seed"] = self._config.seed
        return params

    async def generate(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
    ) -> Completion:
        kwargs = self._params()
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            stream=False,
            **kwargs,
        )
        message = response.choices[0].message
        calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=parse_tool_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        log.info(
            "event=generation_complete model=%s chars=%d tool_calls=%d",
            self._config.model, len(message.content or ""), len(calls),
        )
        return Completion(text=(message.content or "").strip(), tool_calls=calls)


class GroqStructuredExtractor:
    """JSON-mode completions validated against a pydantic schema."""

    def __init__(self, client: AsyncGroq, config: ExtractionConfig):
        self._client = client
        self._config = config

    async def generate_structured(
        self,
        prompt: str,
        schema: type[SchemaT],
        system: Optional[str] = None,
    ) -> SchemaT:
        instructions = (
            f"{system or 'Extract the requested information.'}\n"
            "Return ONLY a JSON object matching this JSON schema. Use null for unknown values.\n"
            f"{json.dumps(schema.model_json_schema())}"
        )
        try:
            response = await self._client.chat.completions.create(
                model=self._config.model,
                messages=[
                    {"role": "system", "content": instructions},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                stream=False,
            )
            raw = response.choices[0].message.content or ""
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=extraction_error schema=%s error=%s fallback=default", schema.__name__, exc)
            return schema()

        try:
            return schema.model_validate_json(raw)
        except ValidationError as exc:
            log.warning(
                "event=extraction_malformed schema=%s errors=%d raw=%.80r fallback=default",
                schema.__name__, exc.error_count(), raw,
            )
            return schema()


class GroqSynthesizer:
    """Groq TTS.  The returned response is read lazily by the caller."""

    def __init__(self, client: AsyncGroq, config: SpeechConfig):
        self._client = client
        self._config = config

    async def synthesize(self, text: str, voice: Optional[str] = None) -> SpeechBlob:
        log.info("event=tts_request model=%s chars=%d", self._config.model, len(text))
        return await self._client.audio.speech.create(
            model=self._config.model,
            voice=voice or self._config.voice,
            input=text[: self._config.max_chars],
            response_format=self._config.response_format,
        )
