import asyncio
import os
import sys
from typing import Any, Callable, Optional

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from apps.pipeline.dispatch import ResponseDispatcher
from apps.pipeline.engines import Completion, ToolCall
from apps.pipeline.search import SearchResult
from apps.pipeline.timeline import Session
from apps.pipeline.tools import Toolbox
from apps.pipeline.turn_coordinator import TurnCoordinator


def last_user_content(messages: list[dict]) -> str:
    for m in reversed(messages):
        if m["role"] == "user":
            return m["content"]
    return ""


class FakeTranscriber:
    """Maps audio bytes to text.  ``hold(audio)`` blocks that transcription."""

    def __init__(self, texts: Optional[dict[bytes, str]] = None, fail: bool = False):
        self.texts = texts or {}
        self.fail = fail
        self.calls: list[bytes] = []
        self._gates: dict[bytes, asyncio.Event] = {}

    def hold(self, audio: bytes) -> asyncio.Event:
        self._gates[audio] = asyncio.Event()
        return self._gates[audio]

    async def transcribe(self, audio: bytes) -> str:
        self.calls.append(audio)
        gate = self._gates.get(audio)
        if gate is not None:
            await gate.wait()
        if self.fail:
            raise ConnectionError("transcription service unreachable")
        return self.texts.get(audio, audio.decode(errors="ignore"))


class FakeGenerator:
    """Scripted completions first, then ``reply to: <last user content>``.

    ``hold(content)`` blocks any call whose latest user message is ``content``.
    """

    def __init__(self, script: Optional[list] = None, fail: bool = False):
        self.script = list(script or [])
        self.fail = fail
        self.calls: list[dict[str, Any]] = []
        self._gates: dict[str, asyncio.Event] = {}

    def hold(self, content: str) -> asyncio.Event:
        self._gates[content] = asyncio.Event()
        return self._gates[content]

    async def generate(self, system_prompt, messages, tools=None) -> Completion:
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "tools": tools})
        gate = self._gates.get(last_user_content(messages))
        if gate is not None:
            await gate.wait()
        if self.fail:
            raise ConnectionError("model endpoint unreachable")
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        return Completion(text=f"reply to: {last_user_content(messages)}")


class FakeExtractor:
    """Returns the configured instance (or factory result) per schema; ``schema()`` otherwise."""

    def __init__(self, responses: Optional[dict[type, Any]] = None):
        self.responses = responses or {}
        self.calls: list[tuple[str, type]] = []

    async def generate_structured(self, prompt, schema, system=None):
        self.calls.append((prompt, schema))
        response = self.responses.get(schema)
        if response is None:
            return schema()
        if isinstance(response, Exception):
            raise response
        if callable(response) and not isinstance(response, type):
            return response(prompt)
        return response


class FakeBlob:
    def __init__(self, data: bytes, gate: Optional[asyncio.Event] = None):
        self._data = data
        self._gate = gate

    async def read(self) -> bytes:
        if self._gate is not None:
            await self._gate.wait()
        return self._data


class FakeSynthesizer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []
        self._gates: dict[str, asyncio.Event] = {}
        self._read_gates: dict[str, asyncio.Event] = {}

    def hold(self, text: str) -> asyncio.Event:
        self._gates[text] = asyncio.Event()
        return self._gates[text]

    def hold_read(self, text: str) -> asyncio.Event:
        self._read_gates[text] = asyncio.Event()
        return self._read_gates[text]

    async def synthesize(self, text, voice=None):
        self.calls.append(text)
        gate = self._gates.get(text)
        if gate is not None:
            await gate.wait()
        if self.fail:
            raise ConnectionError("tts unavailable")
        return FakeBlob(f"WAV:{text}".encode(), self._read_gates.get(text))


class FakePlayback:
    def __init__(self):
        self.is_playing = False
        self.played: list[bytes] = []
        self.pauses = 0

    def play(self, audio: bytes) -> None:
        self.played.append(audio)
        self.is_playing = True

    def pause(self) -> None:
        self.pauses += 1
        self.is_playing = False


class FakeSearch:
    """``responder(query) -> SearchResult``; records every query."""

    def __init__(self, responder: Optional[Callable[[str], SearchResult]] = None, fail: bool = False):
        self.responder = responder or (lambda query: SearchResult())
        self.fail = fail
        self.queries: list[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def search(self, query: str) -> SearchResult:
        self.queries.append(query)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionError("search unavailable")
        return self.responder(query)


def tool_call(name: str, call_id: str = "call_1", **arguments) -> Completion:
    return Completion(text="", tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


def make_coordinator(generator=None, transcriber=None, synthesizer=None, search=None, extractor=None,
                     enrichment=None):
    session = Session(system_prompt="You are a 911 operator.")
    generator = generator or FakeGenerator()
    toolbox = Toolbox(search or FakeSearch(), extractor or FakeExtractor())
    playback = FakePlayback()
    coordinator = TurnCoordinator(
        session=session,
        transcriber=transcriber or FakeTranscriber(),
        dispatcher=ResponseDispatcher(generator, toolbox),
        synthesizer=synthesizer or FakeSynthesizer(),
        playback=playback,
        enrichment=enrichment,
    )
    return coordinator, playback


@pytest.fixture
def session():
    return Session(system_prompt="You are a 911 operator.")
