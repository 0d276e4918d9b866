from __future__ import annotations
import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from bot.errors import AlreadyMonitored, MonitorError, MonitorValidationError, NotFound, NotifierError
from bot.twitch_client import LiveSnapshot, LiveStatusClient
from bot.twitch_store import (
    GuildMonitorConfig,
    PersistentStore,
    StreamerRecord,
    utcnow,
    validate_guild_id,
)

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r'^[a-z0-9_]{1,25}$')
CHANNEL_ID_PATTERN = re.compile(r'^\S{1,64}$')

Notifier = Callable[[Any, StreamerRecord, LiveSnapshot], Awaitable[None]]
ChannelResolver = Callable[[str, str], Optional[Any]]


def normalize_username(username: object) -> str:
    login = username.strip().lower() if isinstance(username, str) else ''
    if not USERNAME_PATTERN.match(login):
        raise MonitorValidationError('Invalid Twitch username', code='invalid_username')
    return login


def validate_channel_id(channel_id: object) -> str:
    if isinstance(channel_id, int) and not isinstance(channel_id, bool):
        channel_id = str(channel_id)
    if not isinstance(channel_id, str) or not CHANNEL_ID_PATTERN.match(channel_id):
        raise MonitorValidationError('Invalid notification channel id', code='invalid_channel')
    return channel_id


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode='json', by_alias=True)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass
class RegistryResult:
    success: bool
    data: Any = None
    message: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> 'RegistryResult':
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, exc: MonitorError) -> 'RegistryResult':
        return cls(success=False, message=exc.message, code=exc.code)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {'success': True, 'data': _jsonable(self.data)}
        return {'success': False, 'message': self.message, 'code': self.code}


# ---- notification gate ----
class NotificationGate:
    """Decides whether an offline->live observation is trustworthy enough to announce.

    Twitch reports a stream as live before its session metadata is filled in,
    so a rising edge is re-fetched after ``settle_delay`` and only confirmed
    when the settled snapshot passes ``is_sufficient``. With
    ``settle_attempts > 1`` the gate keeps polling until the snapshot is
    sufficient or the attempts run out.
    """

    def __init__(
        self,
        client: LiveStatusClient,
        *,
        settle_delay: float = 3.0,
        settle_attempts: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.settle_delay = settle_delay
        self.settle_attempts = max(1, int(settle_attempts))
        self._sleep = sleep

    @staticmethod
    def is_sufficient(snapshot: LiveSnapshot, username: str) -> bool:
        if not snapshot.is_live or snapshot.error:
            return False
        title = (snapshot.title or '').strip()
        if not title or title.lower() == username.strip().lower():
            return False
        return (
            snapshot.viewers is not None
            or snapshot.uptime_minutes is not None
            or bool(snapshot.stream_id)
        )

    async def confirm(
        self,
        previous_is_live: bool,
        fresh: LiveSnapshot,
        username: str,
    ) -> Optional[LiveSnapshot]:
        """Return the settled snapshot to announce, or ``None`` to stay quiet."""
        if previous_is_live or not fresh.is_live or fresh.error:
            return None
        for attempt in range(1, self.settle_attempts + 1):
            await self._sleep(self.settle_delay)
            settled = await self.client.fetch_status(username)
            if self.is_sufficient(settled, username):
                return settled
            logger.info(
                "Live edge for %s not announced yet: metadata incomplete (attempt %s/%s)",
                username,
                attempt,
                self.settle_attempts,
            )
        return None

    async def should_notify(self, previous_is_live: bool, fresh: LiveSnapshot, username: str) -> bool:
        return await self.confirm(previous_is_live, fresh, username) is not None


# ---- sweep loop ----
@dataclass
class StreamerCheckResult:
    guild_id: str
    username: str
    is_live: bool = False
    changed: bool = False
    notified: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SweepReport:
    started_at: datetime = field(default_factory=utcnow)
    results: List[StreamerCheckResult] = field(default_factory=list)
    skipped_guilds: List[str] = field(default_factory=list)

    @property
    def notified(self) -> int:
        return sum(1 for result in self.results if result.notified)

    @property
    def failures(self) -> List[StreamerCheckResult]:
        return [result for result in self.results if not result.ok]


def apply_snapshot(record: StreamerRecord, snapshot: LiveSnapshot) -> None:
    record.is_live = bool(snapshot.is_live and not snapshot.error)
    record.last_checked = utcnow()
    if snapshot.title:
        record.last_stream_title = snapshot.title
    if snapshot.game:
        record.last_game_name = snapshot.game


class MonitorLoop:
    """Periodically sweeps every guild's streamers, one at a time."""

    def __init__(
        self,
        store: PersistentStore,
        client: LiveStatusClient,
        gate: NotificationGate,
        *,
        initial_delay: float = 5.0,
        streamer_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        task_factory: Optional[Callable[[Awaitable], asyncio.Task]] = None,
    ):
        self.store = store
        self.client = client
        self.gate = gate
        self.initial_delay = initial_delay
        self.streamer_delay = streamer_delay
        self.interval: Optional[float] = None
        self.last_sweep: Optional[SweepReport] = None
        self._sleep = sleep
        self._create_task = task_factory or asyncio.create_task
        self._notifier: Optional[Notifier] = None
        self._resolve_channel: Optional[ChannelResolver] = None
        self._stopping: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and self._stopping is not None
            and not self._stopping.is_set()
        )

    def start(
        self,
        interval: float,
        notifier: Notifier,
        *,
        channel_resolver: Optional[ChannelResolver] = None,
    ) -> None:
        if interval is None or interval <= 0:
            raise ValueError(f'Twitch check interval must be positive, got {interval!r}')
        if self.is_running:
            self.stop()
        self.interval = interval
        self._notifier = notifier
        if channel_resolver is not None:
            self._resolve_channel = channel_resolver
        self._stopping = asyncio.Event()
        self._task = self._create_task(self._run(self._stopping))
        logger.info("Twitch monitor started (interval %ss, first sweep in %ss)", interval, self.initial_delay)

    def stop(self) -> None:
        if self._stopping is None or self._stopping.is_set():
            return
        # An in-flight sweep is left to finish; only future sweeps are cancelled.
        self._stopping.set()
        logger.info("Twitch monitor stopped")

    async def join(self) -> None:
        task = self._task
        if task is None or not isinstance(task, asyncio.Task):
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _wait_or_stop(self, stopping: asyncio.Event, delay: float) -> bool:
        try:
            await asyncio.wait_for(stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run(self, stopping: asyncio.Event) -> None:
        if await self._wait_or_stop(stopping, self.initial_delay):
            return
        while not stopping.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Twitch sweep failed")
            if await self._wait_or_stop(stopping, self.interval):
                return

    def _channel_for(self, guild_id: str, channel_id: str) -> Optional[Any]:
        if self._resolve_channel is None:
            return channel_id
        try:
            return self._resolve_channel(guild_id, channel_id)
        except Exception:
            logger.warning("Could not resolve channel %s for guild %s", channel_id, guild_id, exc_info=True)
            return None

    async def sweep(self, notifier: Optional[Notifier] = None) -> SweepReport:
        notifier = notifier or self._notifier
        report = SweepReport()
        async with self.store.lock:
            self.store.reload_if_stale()
            targets = [
                (guild_id, config.notification_channel_id, [s.username for s in config.streamers])
                for guild_id, config in self.store.data.guilds.items()
                if config.notification_channel_id and config.streamers
            ]

        for guild_id, channel_id, usernames in targets:
            channel = self._channel_for(guild_id, channel_id)
            if channel is None:
                report.skipped_guilds.append(guild_id)
                continue
            for username in usernames:
                if report.results:
                    await self._sleep(self.streamer_delay)
                report.results.append(await self.check_streamer(guild_id, username, channel, notifier))

        if self.store.dirty:
            async with self.store.lock:
                self.store.save()
        self.last_sweep = report
        if report.failures:
            logger.info(
                "Twitch sweep checked %s streamers, %s failed, %s notified",
                len(report.results),
                len(report.failures),
                report.notified,
            )
        return report

    async def check_streamer(
        self,
        guild_id: str,
        username: str,
        channel: Any,
        notifier: Optional[Notifier],
    ) -> StreamerCheckResult:
        result = StreamerCheckResult(guild_id=guild_id, username=username)
        try:
            fresh = await self.client.fetch_status(username)
            async with self.store.lock:
                record = self.store.data.find_streamer(guild_id, username)
                if record is None:
                    result.error = 'removed during sweep'
                    return result
                previous_is_live = record.is_live
                apply_snapshot(record, fresh)
                announced = record.model_copy()
                # Persist before the gate yields, so a reload in between cannot
                # resurrect the previous live state.
                self.store.save()
            result.changed = True
            result.is_live = announced.is_live
            if fresh.error:
                result.error = fresh.error

            confirmed = await self.gate.confirm(previous_is_live, fresh, username)
            if confirmed is None:
                if not previous_is_live and announced.is_live:
                    logger.info("Suppressed live notification for %s in guild %s", username, guild_id)
                return result
            if notifier is None:
                logger.warning("No notifier configured; %s went live unannounced", username)
                return result
            try:
                await notifier(channel, announced, confirmed)
            except Exception as exc:
                error = exc if isinstance(exc, NotifierError) else NotifierError(str(exc))
                logger.error("Failed to announce %s in guild %s: %s", username, guild_id, error, exc_info=True)
                result.error = error.message
            else:
                result.notified = True
        except Exception as exc:
            logger.exception("Error checking Twitch streamer %s in guild %s", username, guild_id)
            result.error = str(exc) or exc.__class__.__name__
        return result


# ---- registry ----
class MonitorRegistry:
    """CRUD surface over the store; never raises, always returns a ``RegistryResult``."""

    def __init__(self, store: PersistentStore, *, monitor_loop: Optional[MonitorLoop] = None):
        self.store = store
        self.monitor_loop = monitor_loop

    async def add_streamer(
        self,
        guild_id: object,
        channel_id: object,
        username: object,
        *,
        display_name: Optional[str] = None,
        added_by: Optional[str] = None,
    ) -> RegistryResult:
        try:
            gid = validate_guild_id(guild_id)
            cid = validate_channel_id(channel_id)
            login = normalize_username(username)
            async with self.store.transaction() as data:
                config = data.guilds.get(gid)
                if config is not None and config.find(login) is not None:
                    raise AlreadyMonitored('Streamer already being monitored')
                if config is None:
                    config = data.guilds[gid] = GuildMonitorConfig()
                record = StreamerRecord(
                    username=login,
                    display_name=(display_name or '').strip() or login,
                    added_by=added_by or 'command',
                )
                config.streamers.append(record)
                config.notification_channel_id = cid
                created = record.model_copy()
        except MonitorError as exc:
            return RegistryResult.failure(exc)
        logger.info("Now monitoring %s in guild %s", login, gid)
        return RegistryResult.ok(created)

    async def remove_streamer(self, guild_id: object, username: object) -> RegistryResult:
        try:
            gid = validate_guild_id(guild_id)
            login = normalize_username(username)
            async with self.store.transaction() as data:
                config = data.guilds.get(gid)
                if config is None or not config.streamers:
                    raise NotFound('No streamers configured for this server')
                record = config.find(login)
                if record is None:
                    raise NotFound('Streamer not found')
                config.streamers.remove(record)
        except MonitorError as exc:
            return RegistryResult.failure(exc)
        logger.info("Stopped monitoring %s in guild %s", login, gid)
        return RegistryResult.ok(record)

    async def list_streamers(self, guild_id: object) -> RegistryResult:
        try:
            gid = validate_guild_id(guild_id)
        except MonitorError as exc:
            return RegistryResult.failure(exc)
        async with self.store.lock:
            config = self.store.data.guilds.get(gid)
            streamers = [s.model_copy() for s in config.streamers] if config else []
        return RegistryResult.ok(streamers)

    async def guild_config(self, guild_id: object) -> RegistryResult:
        try:
            gid = validate_guild_id(guild_id)
        except MonitorError as exc:
            return RegistryResult.failure(exc)
        async with self.store.lock:
            config = self.store.data.guilds.get(gid)
            snapshot = config.model_copy(deep=True) if config else GuildMonitorConfig()
        return RegistryResult.ok(snapshot)

    async def set_channel(self, guild_id: object, channel_id: object) -> RegistryResult:
        try:
            gid = validate_guild_id(guild_id)
            cid = validate_channel_id(channel_id)
            async with self.store.transaction() as data:
                config = data.guilds.setdefault(gid, GuildMonitorConfig())
                config.notification_channel_id = cid
                snapshot = config.model_copy(deep=True)
        except MonitorError as exc:
            return RegistryResult.failure(exc)
        return RegistryResult.ok(snapshot)

    async def stats(self) -> RegistryResult:
        async with self.store.lock:
            guilds = self.store.data.guilds
            total_streamers = sum(len(config.streamers) for config in guilds.values())
            live_streamers = sum(1 for config in guilds.values() for s in config.streamers if s.is_live)
            total_guilds = len(guilds)
        loop = self.monitor_loop
        last_sweep = loop.last_sweep.started_at if loop and loop.last_sweep else None
        return RegistryResult.ok({
            'totalGuilds': total_guilds,
            'totalStreamers': total_streamers,
            'liveStreamers': live_streamers,
            'isMonitoring': bool(loop and loop.is_running and total_streamers > 0),
            'checkInterval': loop.interval if loop else None,
            'lastSweep': last_sweep.isoformat() if last_sweep else None,
            'lastUpdate': utcnow().isoformat(),
        })


# ---- composition ----
class TwitchMonitorService:
    """Explicitly constructed bundle of store, client, gate, loop and registry."""

    def __init__(
        self,
        store: PersistentStore,
        client: LiveStatusClient,
        *,
        interval: float = 5.0,
        gate: Optional[NotificationGate] = None,
        monitor_loop: Optional[MonitorLoop] = None,
    ):
        self.store = store
        self.client = client
        self.interval = interval
        self.gate = gate or NotificationGate(client)
        self.monitor_loop = monitor_loop or MonitorLoop(store, client, self.gate)
        self.registry = MonitorRegistry(store, monitor_loop=self.monitor_loop)

    def start(self, notifier: Notifier, *, channel_resolver: Optional[ChannelResolver] = None) -> None:
        self.monitor_loop.start(self.interval, notifier, channel_resolver=channel_resolver)

    async def close(self) -> None:
        self.monitor_loop.stop()
        await self.monitor_loop.join()
        await self.client.close()
