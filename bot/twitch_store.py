from __future__ import annotations
import asyncio
import contextlib
import json
import logging
import os
import re
import secrets
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from bot.errors import MonitorValidationError, PersistenceError

logger = logging.getLogger(__name__)

# Keys that must never become guild entries. The JSON document is also read
# by the JavaScript dashboard, where these names collide with Object.prototype.
RESERVED_GUILD_KEYS = frozenset({
    '__proto__',
    'constructor',
    'prototype',
    'hasOwnProperty',
    'isPrototypeOf',
    'propertyIsEnumerable',
    'toLocaleString',
    'toString',
    'valueOf',
})

GUILD_ID_MAX_LENGTH = 64
_WHITESPACE = re.compile(r'\s')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_reserved_key(key: str) -> bool:
    return key in RESERVED_GUILD_KEYS or (key.startswith('__') and key.endswith('__'))


def validate_guild_id(guild_id: object) -> str:
    """Return ``guild_id`` as a store key or raise ``MonitorValidationError``."""
    if isinstance(guild_id, int) and not isinstance(guild_id, bool):
        guild_id = str(guild_id)
    if not isinstance(guild_id, str) or not guild_id:
        raise MonitorValidationError('Invalid guild id', code='invalid_guild')
    if len(guild_id) > GUILD_ID_MAX_LENGTH or _WHITESPACE.search(guild_id):
        raise MonitorValidationError('Invalid guild id', code='invalid_guild')
    if is_reserved_key(guild_id):
        raise MonitorValidationError(f'Guild id "{guild_id}" is reserved', code='invalid_guild')
    return guild_id


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StreamerRecord(_CamelModel):
    id: str = Field(default_factory=lambda: secrets.token_hex(8))
    username: str
    display_name: Optional[str] = None
    added_by: Optional[str] = None
    added_at: datetime = Field(default_factory=utcnow)
    is_live: bool = False
    last_checked: Optional[datetime] = None
    last_stream_title: Optional[str] = None
    last_game_name: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username


class GuildMonitorConfig(_CamelModel):
    streamers: List[StreamerRecord] = Field(default_factory=list)
    notification_channel_id: Optional[str] = None

    @field_validator('notification_channel_id', mode='before')
    @classmethod
    def _coerce_channel_id(cls, value: Any) -> Any:
        # Older files stored Discord snowflakes as numbers.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def find(self, username: str) -> Optional[StreamerRecord]:
        wanted = username.lower()
        for streamer in self.streamers:
            if streamer.username.lower() == wanted:
                return streamer
        return None


class MonitorStore(_CamelModel):
    guilds: Dict[str, GuildMonitorConfig] = Field(default_factory=dict)

    def find_streamer(self, guild_id: str, username: str) -> Optional[StreamerRecord]:
        config = self.guilds.get(guild_id)
        if config is None:
            return None
        return config.find(username)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)


def _strip_reserved(document: Any) -> Any:
    if not isinstance(document, dict):
        return document
    guilds = document.get('guilds')
    if not isinstance(guilds, dict):
        return document
    cleaned = {}
    for key, value in guilds.items():
        if is_reserved_key(str(key)):
            logger.warning("Dropping reserved guild key %r from Twitch monitor data", key)
            continue
        cleaned[str(key)] = value
    return {**document, 'guilds': cleaned}


class PersistentStore:
    """JSON-file backed working copy of the monitor configuration.

    ``data`` is the in-memory store shared by the sweep loop and the registry.
    Every mutation happens while holding ``lock``; ``transaction`` bundles
    reload, mutation and save into one critical section.
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        reload_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path)
        self.reload_interval = reload_interval
        self.data = MonitorStore()
        self.lock = asyncio.Lock()
        self._clock = clock
        self._last_reload: Optional[float] = None
        # Set while the working copy holds changes that are not on disk yet.
        self.dirty = False

    def load(self) -> MonitorStore:
        store = MonitorStore()
        try:
            raw = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            logger.warning("No Twitch monitor data at %s; starting with an empty store", self.path)
        except OSError as exc:
            logger.warning("Could not read Twitch monitor data at %s: %s", self.path, exc)
        else:
            try:
                document = json.loads(raw)
                if not isinstance(document, dict):
                    raise ValueError('top-level JSON value is not an object')
                store = MonitorStore.model_validate(_strip_reserved(document))
            except (ValueError, ValidationError) as exc:
                logger.warning("Twitch monitor data at %s is unparsable (%s); starting empty", self.path, exc)
                store = MonitorStore()
        self.data = store
        self.dirty = False
        self._last_reload = self._clock()
        return store

    def _write_atomic(self, payload: str) -> None:
        tmp_path: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f'.{self.path.name}.',
                suffix='.tmp',
                dir=str(self.path.parent),
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            raise PersistenceError(f'Failed to write {self.path}: {exc}') from exc

    def save(self, store: Optional[MonitorStore] = None) -> bool:
        """Write ``store`` (default: the working copy); returns ``False`` on failure.

        A failed write of the working copy leaves it marked dirty, which holds
        off ``reload_if_stale`` until a later save succeeds.
        """
        working = store is None or store is self.data
        if store is None:
            store = self.data
        payload = json.dumps(store.to_document(), indent=2, ensure_ascii=False)
        try:
            self._write_atomic(payload)
        except PersistenceError as exc:
            logger.error("%s; keeping in-memory state", exc, exc_info=True)
            if working:
                self.dirty = True
            return False
        if working:
            self.dirty = False
        return True

    def reload_if_stale(self, max_age: Optional[float] = None) -> bool:
        if max_age is None:
            max_age = self.reload_interval
        if self._last_reload is not None and self._clock() - self._last_reload < max_age:
            return False
        if self.dirty:
            logger.warning("Skipping reload of %s: unsaved in-memory changes", self.path)
            return False
        if self._last_reload is not None and not self.path.exists():
            # Nothing on disk yet; keep the working copy instead of emptying it.
            self._last_reload = self._clock()
            return False
        self.load()
        return True

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[MonitorStore]:
        """Hold the store lock, yield the fresh working copy and save on success."""
        async with self.lock:
            self.reload_if_stale()
            yield self.data
            self.save()
