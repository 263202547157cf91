"""
server.py — 911 Operator Engine · FastAPI Surface
===================================================
Text and batch surfaces over the same core the live worker (bot.py) uses.

Endpoints
---------
  POST /analyze      conversation → {location, caller, new_message}
  POST /converse     one text turn with the operator
  POST /reset        drop the current call
  GET  /config       current runtime config
  PUT  /config       deep-merge a partial config, persist, rebuild services
  GET  /health       liveness + call state
  WS   /ws/logs      real-time log stream

Services are built lazily through dependency providers, so the app imports
without credentials and tests can swap any of them via
``app.dependency_overrides``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Set

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from apps.pipeline.dispatch import ResponseDispatcher
from apps.pipeline.engines import GroqStructuredExtractor, GroqTextGenerator, make_groq_client
from apps.pipeline.enrichment import ConversationAnalyzer, EnrichmentPipeline
from apps.pipeline.operator_desk import OperatorDesk
from apps.pipeline.search import JigsawStackSearch
from apps.pipeline.timeline import Session
from apps.pipeline.tools import Toolbox
from config import OperatorConfig

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket log broadcaster (defined before the logging handler that uses it)
# ---------------------------------------------------------------------------

HISTORY_LIMIT = 500


class LogBroadcaster:
    """Fan-out hub for real-time log events to all connected WebSocket clients."""
    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-HISTORY_LIMIT:]:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > HISTORY_LIMIT:
            self._history = self._history[-HISTORY_LIMIT:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "source": "server",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop yet during startup
        loop.call_soon(lambda: loop.create_task(broadcaster.broadcast(event)))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("operator_engine.server")

# Attach WS broadcast handler AFTER basicConfig has run
_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
logging.root.addHandler(_ws_handler)

CONFIG_PATH = Path(os.getenv("OPERATOR_CONFIG", "operator_config.json"))


# ---------------------------------------------------------------------------
# Config store + services
# ---------------------------------------------------------------------------

class ConfigStore:
    """Lazily-loaded OperatorConfig backed by a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._config: Optional[OperatorConfig] = None

    @property
    def config(self) -> OperatorConfig:
        if self._config is None:
            self._config = OperatorConfig.load(self.path)
        return self._config

    def update(self, patch: dict) -> OperatorConfig:
        updated = self.config.merge_patch(patch)
        updated.save(self.path)
        self._config = updated
        log.info("event=config_updated keys=%s", sorted(patch))
        return updated


@dataclass
class Services:
    config: OperatorConfig
    desk: OperatorDesk
    analyzer: ConversationAnalyzer


def build_services(config: OperatorConfig, session: Session) -> Services:
    """Wire the Groq and JigsawStack adapters into the core."""
    client = make_groq_client()
    extractor = GroqStructuredExtractor(client, config.extraction)
    generator = GroqTextGenerator(client, config.groq)
    toolbox = Toolbox(
        JigsawStackSearch(config.search),
        extractor,
        min_query_chars=config.dispatch.min_query_chars,
        filler_queries=config.dispatch.filler_queries,
    )
    dispatcher = ResponseDispatcher(generator, toolbox, max_rounds=config.dispatch.max_tool_rounds)
    pipeline = EnrichmentPipeline(extractor, generator, toolbox, config.enrichment)
    session.system_prompt = config.system_prompt
    log.info("event=services_built model=%s", config.groq.model)
    return Services(
        config=config,
        desk=OperatorDesk(session, dispatcher),
        analyzer=ConversationAnalyzer(pipeline, min_messages=config.enrichment.min_analysis_messages),
    )


_store = ConfigStore(CONFIG_PATH)
_session: Optional[Session] = None
_services: Optional[Services] = None


def get_config_store() -> ConfigStore:
    return _store


def get_config(store: ConfigStore = Depends(get_config_store)) -> OperatorConfig:
    return store.config


def get_session(config: OperatorConfig = Depends(get_config)) -> Session:
    global _session
    if _session is None:
        _session = Session(system_prompt=config.system_prompt)
    return _session


def get_services(
    config: OperatorConfig = Depends(get_config),
    session: Session = Depends(get_session),
) -> Services:
    global _services
    if _services is None or _services.config is not config:
        try:
            _services = build_services(config, session)
        except KeyError as exc:
            log.error("event=services_unavailable missing_env=%s", exc)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Missing credential {exc}",
            ) from exc
    return _services


def get_desk(services: Services = Depends(get_services)) -> OperatorDesk:
    return services.desk


def get_analyzer(services: Services = Depends(get_services)) -> ConversationAnalyzer:
    return services.analyzer


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class AnalyzeRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)


class ConverseRequest(BaseModel):
    message: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    log.info("event=server_start config=%s", CONFIG_PATH)
    yield
    log.info("event=server_stopped")


app = FastAPI(
    title="911 Operator Engine",
    version="1.0.0",
    description="Operator dialogue, tool dispatch and conversation analysis",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/analyze")
async def analyze(
    body: AnalyzeRequest,
    analyzer: ConversationAnalyzer = Depends(get_analyzer),
) -> dict:
    """
    Batch enrichment over a whole conversation.

        { "messages": [ {"role": "user", "content": "There's a fire at Main and 5th"}, ... ] }

    Fields of the response are null when nothing was found (or on failure).
    """
    result = await analyzer.analyze([m.model_dump() for m in body.messages])
    return result.to_dict()


@app.post("/converse")
async def converse(body: ConverseRequest, desk: OperatorDesk = Depends(get_desk)) -> dict:
    try:
        result = await desk.converse(body.message)
    except Exception as exc:
        log.error("event=converse_failed error=%s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Operator unavailable.") from exc
    return {"response": result.response, "has_ended": result.has_ended}


@app.post("/reset")
async def reset(desk: OperatorDesk = Depends(get_desk)) -> dict:
    desk.reset()
    return {"status": "reset", "session_id": desk.session.session_id}


@app.get("/config")
async def read_config(config: OperatorConfig = Depends(get_config)) -> dict:
    return config.model_dump()


@app.put("/config")
async def update_config(patch: dict, store: ConfigStore = Depends(get_config_store)) -> dict:
    """Partial update, e.g. ``{"dispatch": {"max_tool_rounds": 2}}``."""
    try:
        updated = store.update(patch)
    except ValidationError as exc:
        log.warning("event=config_rejected errors=%d", exc.error_count())
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=json.loads(exc.json()),
        ) from exc
    return updated.model_dump()


@app.get("/health")
async def health(session: Session = Depends(get_session)) -> dict:
    """Liveness probe."""
    return {
        "status":      "ok",
        "call_active": session.is_active,
        "has_ended":   session.has_ended,
        "messages":    len(session.timeline),
    }


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Real-time log stream.  Every log record is sent as a JSON object:
    {
      "source": "server",
      "level":  "INFO" | "WARNING" | "ERROR" | ...,
      "logger": "<logger name>",
      "msg":    "<formatted line>",
      "ts":     <unix float>
    }
    """
    await broadcaster.connect(ws)
    log.info("event=ws_log_client_connected remote=%s", ws.client)
    try:
        while True:
            # Keep the connection alive; we only send, never receive
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)
        log.info("event=ws_log_client_disconnected remote=%s", ws.client)
