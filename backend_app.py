from __future__ import annotations
import asyncio
import json
import logging
import os
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

import psutil
from fastapi import Depends, FastAPI, Header, HTTPException, Request as FastAPIRequest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from bot.twitch_client import LiveStatusClient
from bot.twitch_monitor import MonitorRegistry, RegistryResult

# =====================================
# Config
# =====================================
# Token guarding every dashboard endpoint except the system probes.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

API_VERSION = "5.0.0"

# Seconds between telemetry pushes on /dashboard/stream.
METRICS_INTERVAL = float(os.getenv("DASHBOARD_METRICS_INTERVAL", "5"))

DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://.*"

# Registry failure codes mapped to HTTP statuses; anything else is a 400.
RESULT_STATUS_CODES: Dict[str, int] = {
    "already_monitored": 409,
    "not_found": 404,
}

STARTED_AT = time.time()

_bot_log_listeners: set[asyncio.Queue[str]] = set()

logger = logging.getLogger(__name__)

app = FastAPI(title="Chiyoko Haruka Dashboard", version=API_VERSION)


def _parse_cors_origins(raw: str) -> list[str]:
    """Split a comma or whitespace separated origin list, dropping trailing slashes."""
    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw or ""):
        origin = part.strip().rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def _cors_settings_from_env(env: Mapping[str, str]) -> tuple[list[str], Optional[str]]:
    """Return ``(allow_origins, allow_origin_regex)`` for the dashboard origins.

    ``*`` inside an origin matches one host label sequence, so
    ``https://*.example.com`` admits subdomains but not the apex.
    """
    explicit: list[str] = []
    patterns: list[str] = []
    for origin in _parse_cors_origins(env.get("CORS_ALLOW_ORIGINS", "")):
        if "*" in origin:
            patterns.append(re.escape(origin).replace(r"\*", r"[^/]+"))
        else:
            explicit.append(origin)
    if env.get("CORS_ALLOW_ORIGIN_REGEX"):
        patterns.append(env["CORS_ALLOW_ORIGIN_REGEX"])
    elif not explicit and not patterns:
        patterns.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)
    if not patterns:
        return explicit, None
    return explicit, f"^(?:{'|'.join(patterns)})$"


allow_origins, allow_origin_regex = _cors_settings_from_env(os.environ)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def attach_runtime(
    target: FastAPI,
    *,
    registry: MonitorRegistry,
    status_client: Optional[LiveStatusClient] = None,
    telemetry: Optional[Callable[[], Dict[str, Any]]] = None,
) -> None:
    """Wire the monitor objects owned by the bot process into the web layer."""
    target.state.registry = registry
    target.state.status_client = status_client
    target.state.telemetry = telemetry


# =====================================
# Console log fan-out
# =====================================
def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Type {type(value)!r} not serializable")


def _broadcast_bot_log(event: Dict[str, Any]) -> None:
    payload = json.dumps(event, default=_json_default)
    stale: list[asyncio.Queue[str]] = []
    for queue in list(_bot_log_listeners):
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            stale.append(queue)
    for queue in stale:
        _bot_log_listeners.discard(queue)


class ConsoleLogHandler(logging.Handler):
    """Forwards log records to dashboard subscribers of ``/bot/logs/stream``."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None, level: int = logging.INFO):
        super().__init__(level)
        self.loop = loop

    def to_event(self, record: logging.LogRecord) -> Dict[str, Any]:
        return {
            "type": "log",
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "source": record.name,
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc),
            "metadata": dict(getattr(record, "console_metadata", None) or {}),
        }

    def emit(self, record: logging.LogRecord) -> None:
        if not _bot_log_listeners:
            return
        try:
            event = self.to_event(record)
        except Exception:
            self.handleError(record)
            return
        loop = self.loop
        if loop is None or loop.is_closed():
            _broadcast_bot_log(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _broadcast_bot_log(event)
        else:
            loop.call_soon_threadsafe(_broadcast_bot_log, event)


def install_console_handler(loop: Optional[asyncio.AbstractEventLoop] = None) -> ConsoleLogHandler:
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, ConsoleLogHandler):
            handler.loop = loop
            return handler
    handler = ConsoleLogHandler(loop)
    root.addHandler(handler)
    return handler


# =====================================
# Schemas
# =====================================
class StreamerAddIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    channel_id: str = Field(min_length=1, max_length=64)
    display_name: Optional[str] = Field(default=None, max_length=64)


class ChannelUpdateIn(BaseModel):
    channel_id: str = Field(min_length=1, max_length=64)


class RegistryResultOut(BaseModel):
    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    code: Optional[str] = None


class BotLogEventIn(BaseModel):
    message: str
    level: str = Field(default="info")
    source: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class BotLogAckOut(BaseModel):
    success: bool


class SystemMetaOut(BaseModel):
    version: str
    uptime_seconds: int
    monitor_attached: bool


class SnapshotOut(BaseModel):
    username: str
    is_live: bool
    title: Optional[str] = None
    game: Optional[str] = None
    viewers: Optional[int] = None
    uptime_minutes: Optional[int] = None
    stream_id: Optional[str] = None
    display_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


# =====================================
# Dependencies
# =====================================
def require_token(
    x_admin_token: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    token = x_admin_token
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1]
    if token and secrets.compare_digest(token, ADMIN_TOKEN):
        return
    raise HTTPException(status_code=401, detail="invalid admin token")


def get_registry(request: FastAPIRequest) -> MonitorRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="twitch monitor not running")
    return registry


def get_status_client(request: FastAPIRequest) -> LiveStatusClient:
    client = getattr(request.app.state, "status_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="twitch status client not running")
    return client


def _result_response(result: RegistryResult) -> JSONResponse:
    status = 200
    if not result.success:
        status = RESULT_STATUS_CODES.get(result.code or "", 400)
    return JSONResponse(result.to_dict(), status_code=status)


# =====================================
# Telemetry
# =====================================
def collect_metrics(target: FastAPI) -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    process = psutil.Process()
    telemetry = getattr(target.state, "telemetry", None)
    bot_info: Dict[str, Any] = {}
    if callable(telemetry):
        try:
            bot_info = dict(telemetry() or {})
        except Exception:
            logger.warning("Bot telemetry provider failed", exc_info=True)
    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": memory.percent,
        "memory_used_mb": round(memory.used / (1024 * 1024), 1),
        "process_rss_mb": round(process.memory_info().rss / (1024 * 1024), 1),
        "uptime_seconds": int(time.time() - STARTED_AT),
        "bot": bot_info,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _metrics_payload(target: FastAPI) -> Dict[str, Any]:
    payload = collect_metrics(target)
    registry = getattr(target.state, "registry", None)
    if registry is not None:
        stats = await registry.stats()
        payload["twitch"] = stats.to_dict().get("data")
    return payload


# =====================================
# Routes: System
# =====================================
@app.get("/system/health")
def health():
    return {"status": "ok"}


@app.get("/system/meta", response_model=SystemMetaOut)
def system_meta(request: FastAPIRequest):
    return {
        "version": API_VERSION,
        "uptime_seconds": int(time.time() - STARTED_AT),
        "monitor_attached": getattr(request.app.state, "registry", None) is not None,
    }


# =====================================
# Routes: Twitch monitor
# =====================================
@app.get("/twitch/stats", response_model=RegistryResultOut, dependencies=[Depends(require_token)])
async def twitch_stats(registry: MonitorRegistry = Depends(get_registry)):
    return _result_response(await registry.stats())


@app.get("/twitch/guilds/{guild_id}", response_model=RegistryResultOut, dependencies=[Depends(require_token)])
async def twitch_guild(guild_id: str, registry: MonitorRegistry = Depends(get_registry)):
    return _result_response(await registry.guild_config(guild_id))


@app.get(
    "/twitch/guilds/{guild_id}/streamers",
    response_model=RegistryResultOut,
    dependencies=[Depends(require_token)],
)
async def list_streamers(guild_id: str, registry: MonitorRegistry = Depends(get_registry)):
    return _result_response(await registry.list_streamers(guild_id))


@app.post(
    "/twitch/guilds/{guild_id}/streamers",
    response_model=RegistryResultOut,
    dependencies=[Depends(require_token)],
)
async def add_streamer(
    guild_id: str,
    payload: StreamerAddIn,
    registry: MonitorRegistry = Depends(get_registry),
):
    result = await registry.add_streamer(
        guild_id,
        payload.channel_id,
        payload.username,
        display_name=payload.display_name,
        added_by="dashboard",
    )
    return _result_response(result)


@app.delete(
    "/twitch/guilds/{guild_id}/streamers/{username}",
    response_model=RegistryResultOut,
    dependencies=[Depends(require_token)],
)
async def remove_streamer(guild_id: str, username: str, registry: MonitorRegistry = Depends(get_registry)):
    return _result_response(await registry.remove_streamer(guild_id, username))


@app.put(
    "/twitch/guilds/{guild_id}/channel",
    response_model=RegistryResultOut,
    dependencies=[Depends(require_token)],
)
async def set_notification_channel(
    guild_id: str,
    payload: ChannelUpdateIn,
    registry: MonitorRegistry = Depends(get_registry),
):
    return _result_response(await registry.set_channel(guild_id, payload.channel_id))


@app.get("/twitch/check/{username}", response_model=SnapshotOut, dependencies=[Depends(require_token)])
async def check_streamer(username: str, client: LiveStatusClient = Depends(get_status_client)):
    snapshot = await client.fetch_status(username)
    return {
        "username": snapshot.login or username.strip().lower(),
        "is_live": snapshot.is_live,
        "title": snapshot.title,
        "game": snapshot.game,
        "viewers": snapshot.viewers,
        "uptime_minutes": snapshot.uptime_minutes,
        "stream_id": snapshot.stream_id,
        "display_name": snapshot.display_name,
        "profile_image_url": snapshot.profile_image_url,
        "thumbnail_url": snapshot.thumbnail_url,
        "error": snapshot.error,
    }


# =====================================
# Routes: Dashboard telemetry
# =====================================
@app.get("/dashboard/metrics", dependencies=[Depends(require_token)])
async def dashboard_metrics(request: FastAPIRequest):
    return await _metrics_payload(request.app)


@app.get("/dashboard/stream", dependencies=[Depends(require_token)])
async def dashboard_stream(request: FastAPIRequest):
    target = request.app

    async def event_stream():
        while True:
            payload = await _metrics_payload(target)
            yield {"event": "metrics", "data": json.dumps(payload, default=_json_default)}
            await asyncio.sleep(METRICS_INTERVAL)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/bot/logs", response_model=BotLogAckOut, dependencies=[Depends(require_token)])
async def push_bot_log(event: BotLogEventIn):
    timestamp = event.timestamp or datetime.now(timezone.utc)
    payload = {
        "type": "log",
        "level": event.level,
        "message": event.message,
        "source": event.source,
        "timestamp": timestamp,
        "metadata": event.metadata or {},
    }
    _broadcast_bot_log(payload)
    return {"success": True}


@app.get("/bot/logs/stream", dependencies=[Depends(require_token)])
async def stream_bot_logs():
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
    _bot_log_listeners.add(queue)

    async def event_stream():
        try:
            yield {"event": "log", "data": json.dumps({"type": "ready"})}
            while True:
                msg = await queue.get()
                yield {"event": "log", "data": msg}
        finally:
            _bot_log_listeners.discard(queue)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )
