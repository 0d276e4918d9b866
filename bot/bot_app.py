from __future__ import annotations
import os, asyncio, logging, math, yaml
from typing import Optional, Dict, List, Any
from pathlib import Path
from datetime import datetime, timezone

import discord
import uvicorn
from discord import app_commands
from discord.ext import commands, tasks
from dotenv import load_dotenv

import backend_app
from bot.errors import NotifierError
from bot.twitch_client import (
    DEFAULT_GQL_CLIENT_ID,
    DEFAULT_GQL_URL,
    USER_NOT_FOUND,
    LiveSnapshot,
    LiveStatusClient,
)
from bot.twitch_monitor import MonitorLoop, NotificationGate, TwitchMonitorService
from bot.twitch_store import PersistentStore, StreamerRecord

load_dotenv()

logger = logging.getLogger(__name__)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


# ---- Env ----
DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
# Channel that receives the "bot is active" embed on startup.
LOG_CHANNEL_ID = os.getenv('LOG_CHANNEL_ID') or os.getenv('CHANNEL_ID')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', 'messages.yml'))

TWITCH_DATA_PATH = Path(os.getenv('TWITCH_DATA_PATH', 'data/twitch_data.json'))
TWITCH_GQL_URL = os.getenv('TWITCH_GQL_URL', DEFAULT_GQL_URL)
TWITCH_GQL_CLIENT_ID = os.getenv('TWITCH_GQL_CLIENT_ID', DEFAULT_GQL_CLIENT_ID)
TWITCH_CHECK_INTERVAL = _float_env('TWITCH_CHECK_INTERVAL', 5.0)
TWITCH_INITIAL_DELAY = _float_env('TWITCH_INITIAL_DELAY', 5.0)
TWITCH_STREAMER_DELAY = _float_env('TWITCH_STREAMER_DELAY', 1.0)
TWITCH_SETTLE_DELAY = _float_env('TWITCH_SETTLE_DELAY', 3.0)
TWITCH_SETTLE_ATTEMPTS = int(_float_env('TWITCH_SETTLE_ATTEMPTS', 1))
TWITCH_REQUEST_TIMEOUT = _float_env('TWITCH_REQUEST_TIMEOUT', 5.0)
TWITCH_RELOAD_INTERVAL = _float_env('TWITCH_RELOAD_INTERVAL', 300.0)

WEB_HOST = os.getenv('WEB_HOST', '0.0.0.0')
WEB_PORT = int(_float_env('WEB_PORT', 8080))

BOT_NAME = 'Chiyoko Haruka'
TWITCH_PURPLE = 0x9146FF
COLOR_OK = 0x00FF00
COLOR_REMOVED = 0xFF4444
COLOR_INFO = 0x0099FF
ACTIVE_IMAGE_URL = 'https://64.media.tumblr.com/02dabf2a7299753f442feee1512e326c/tumblr_o2qhk8IoJs1tydz8to1_500.gif'
ERROR_IMAGE_URL = 'https://c.tenor.com/_3mSq0fET5oAAAAC/tenor.gif'
DEFAULT_PROFILE_URL = 'https://static-cdn.jtvnw.net/jtv_user_pictures/{username}-profile_image-70x70.png'

DEFAULT_MESSAGES = {
    'bot_active': f'{BOT_NAME} is now active!',
    'command_error': 'Error! Failed to execute command (╯°□°）╯︵ ┻━┻',
    'missing_permissions': '❌ You need **Manage Channels** or **Administrator** permissions to use this command.',
    'guild_only': '❌ This command can only be used inside a server.',
    'text_channel_only': '❌ Notifications can only be sent to text channels.',
    'failed': '❌ {error}',
    'live_title': '🔴 {name} is now live!',
    'live_footer': f'{BOT_NAME} • Twitch Notifications',
    'no_title': 'No title available',
    'no_game': 'Not specified',
    'unknown_viewers': 'Unknown',
    'added_title': '✅ Twitch Streamer Added',
    'added_description': '**{name}** is now being monitored!',
    'removed_title': '✅ Twitch Streamer Removed',
    'removed_description': '**{name}** is no longer being monitored.',
    'user_not_found': '❌ Twitch user `{username}` not found. Please check the username and try again.',
    'add_error': '❌ An error occurred while adding the streamer. Please try again later.',
    'list_empty': '📭 No Twitch streamers are being monitored in this server.\nUse `/twitch add` to add streamers!',
    'list_title': '📺 Monitored Twitch Streamers',
    'list_footer': 'Notifications sent to: #{channel}',
    'channel_title': '✅ Notification Channel Updated',
    'channel_description': 'Twitch live notifications will now be sent to <#{channel_id}>',
    'check_title': '📺 {username} - Stream Status',
    'check_error': '❌ Error: {error}',
    'check_live': '🔴 **CURRENTLY LIVE!**',
    'check_offline': '⚫ **Currently Offline**',
    'stats_title': '📊 Twitch Monitoring Statistics',
}

_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


def push_console_event(
    level: str,
    message: str,
    *,
    event: Optional[str] = None,
    metadata: Optional[Dict[str, object]] = None,
) -> None:
    meta = dict(metadata or {})
    if event:
        meta.setdefault('event', event)
    logger.log(_LEVELS.get(level, logging.INFO), message, extra={'console_metadata': meta})


# ---- embeds ----
def _format_uptime(minutes: Optional[int]) -> Optional[str]:
    if minutes is None:
        return None
    hours, mins = divmod(int(minutes), 60)
    return f'{hours}h {mins}m' if hours else f'{mins}m'


def build_live_embed(
    streamer: StreamerRecord,
    snapshot: LiveSnapshot,
    messages: Optional[Dict[str, str]] = None,
) -> discord.Embed:
    msgs = messages or DEFAULT_MESSAGES
    name = snapshot.display_name or streamer.name
    embed = discord.Embed(
        title=msgs['live_title'].format(name=name),
        url=f'https://www.twitch.tv/{streamer.username}',
        description=snapshot.title or msgs['no_title'],
        color=TWITCH_PURPLE,
        timestamp=datetime.now(timezone.utc),
    )
    embed.add_field(name='Game/Category', value=snapshot.game or msgs['no_game'], inline=True)
    viewers = f'{snapshot.viewers:,}' if snapshot.viewers is not None else msgs['unknown_viewers']
    embed.add_field(name='Viewers', value=viewers, inline=True)
    uptime = _format_uptime(snapshot.uptime_minutes)
    if uptime:
        embed.add_field(name='Uptime', value=uptime, inline=True)
    embed.set_thumbnail(url=snapshot.profile_image_url or DEFAULT_PROFILE_URL.format(username=streamer.username))
    if snapshot.thumbnail_url:
        embed.set_image(url=snapshot.thumbnail_url)
    embed.set_footer(text=msgs['live_footer'])
    return embed


def build_check_embed(
    username: str,
    snapshot: LiveSnapshot,
    messages: Optional[Dict[str, str]] = None,
) -> discord.Embed:
    msgs = messages or DEFAULT_MESSAGES
    embed = discord.Embed(
        title=msgs['check_title'].format(username=username),
        url=f'https://twitch.tv/{username}',
        color=COLOR_OK if snapshot.is_live else COLOR_REMOVED,
        timestamp=datetime.now(timezone.utc),
    )
    if snapshot.error:
        embed.description = msgs['check_error'].format(error=snapshot.error)
    elif snapshot.is_live:
        embed.description = msgs['check_live']
        if snapshot.title:
            embed.add_field(name='📝 Stream Title', value=snapshot.title, inline=False)
        if snapshot.game:
            embed.add_field(name='🎮 Game/Category', value=snapshot.game, inline=True)
        if snapshot.viewers is not None:
            embed.add_field(name='👥 Viewers', value=f'{snapshot.viewers:,}', inline=True)
        uptime = _format_uptime(snapshot.uptime_minutes)
        if uptime:
            embed.add_field(name='⏱️ Uptime', value=uptime, inline=True)
        if snapshot.thumbnail_url:
            embed.set_image(url=snapshot.thumbnail_url)
    else:
        embed.description = msgs['check_offline']
    if snapshot.profile_image_url:
        embed.set_thumbnail(url=snapshot.profile_image_url)
    return embed


def format_streamer_lines(streamers: List[StreamerRecord]) -> str:
    lines: List[str] = []
    for index, streamer in enumerate(streamers, start=1):
        status = '🔴 **LIVE**' if streamer.is_live else '⚫ Offline'
        if streamer.last_checked:
            last_checked = f'<t:{int(streamer.last_checked.timestamp())}:R>'
        else:
            last_checked = 'Never'
        lines.append(f'**{index}.** [{streamer.name}](https://twitch.tv/{streamer.username}) - {status}')
        lines.append(f'└ Last checked: {last_checked}')
        if streamer.is_live and streamer.last_stream_title:
            lines.append(f'└ **{streamer.last_stream_title}**')
        if streamer.is_live and streamer.last_game_name:
            lines.append(f'└ Playing: {streamer.last_game_name}')
        lines.append('')
    text = '\n'.join(lines).strip()
    # Embed descriptions are capped at 4096 characters.
    if len(text) > 4096:
        text = text[:4093] + '...'
    return text


def build_stats_embed(stats: Dict[str, Any], messages: Optional[Dict[str, str]] = None) -> discord.Embed:
    msgs = messages or DEFAULT_MESSAGES
    interval = stats.get('checkInterval')
    embed = discord.Embed(title=msgs['stats_title'], color=TWITCH_PURPLE, timestamp=datetime.now(timezone.utc))
    embed.add_field(name='🏠 Servers', value=str(stats.get('totalGuilds', 0)), inline=True)
    embed.add_field(name='👥 Total Streamers', value=str(stats.get('totalStreamers', 0)), inline=True)
    embed.add_field(name='🔴 Currently Live', value=str(stats.get('liveStreamers', 0)), inline=True)
    embed.add_field(
        name='⏱️ Check Interval',
        value=f'{interval:g} seconds' if interval is not None else 'Not running',
        inline=True,
    )
    embed.add_field(
        name='🤖 Monitoring Status',
        value='✅ Active' if stats.get('isMonitoring') else '❌ Inactive',
        inline=True,
    )
    return embed


def build_status_embed(description: str, *, image_url: str = ACTIVE_IMAGE_URL) -> discord.Embed:
    embed = discord.Embed(
        title='Beep Boop...',
        description=description,
        color=COLOR_INFO,
        timestamp=datetime.now(timezone.utc),
    )
    embed.set_image(url=image_url)
    embed.set_footer(text=f'{BOT_NAME}: v{backend_app.API_VERSION}')
    return embed


# ---- notifier ----
class DiscordNotifier:
    """Notifier sink for the monitor loop: resolves guild channels and posts embeds."""

    def __init__(self, client: discord.Client, messages: Optional[Dict[str, str]] = None):
        self.client = client
        self.messages = messages or DEFAULT_MESSAGES

    def resolve_channel(self, guild_id: str, channel_id: str) -> Optional[discord.abc.Messageable]:
        try:
            guild = self.client.get_guild(int(guild_id))
            if guild is None:
                return None
            return guild.get_channel(int(channel_id))
        except (TypeError, ValueError):
            return None

    async def __call__(self, channel: discord.abc.Messageable, streamer: StreamerRecord, snapshot: LiveSnapshot) -> None:
        embed = build_live_embed(streamer, snapshot, self.messages)
        try:
            await channel.send(embed=embed)
        except discord.HTTPException as exc:
            raise NotifierError(f'Discord rejected live notification: {exc}') from exc
        push_console_event(
            'info',
            f'Announced {streamer.name} going live',
            event='notification',
            metadata={
                'streamer': streamer.username,
                'channel': str(getattr(channel, 'id', channel)),
                'title': snapshot.title,
                'viewers': snapshot.viewers,
            },
        )


# ---- slash commands ----
async def _reply(interaction: discord.Interaction, **kwargs) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(**kwargs)
    else:
        await interaction.response.send_message(**kwargs)


class TwitchCommands(app_commands.Group):
    def __init__(self, service: TwitchMonitorService, messages: Optional[Dict[str, str]] = None):
        super().__init__(
            name='twitch',
            description='Manage Twitch stream notifications',
            guild_only=True,
            default_permissions=discord.Permissions(manage_channels=True),
        )
        self.service = service
        self.messages = messages or DEFAULT_MESSAGES

    @property
    def registry(self):
        return self.service.registry

    @app_commands.command(name='add', description='Add a Twitch streamer to monitor')
    @app_commands.describe(
        username='Twitch username to monitor',
        channel='Discord channel to send notifications to',
    )
    @app_commands.checks.has_permissions(manage_channels=True)
    async def add(
        self,
        interaction: discord.Interaction,
        username: str,
        channel: Optional[discord.TextChannel] = None,
    ):
        target = channel or interaction.channel
        if not isinstance(target, discord.TextChannel):
            await _reply(interaction, content=self.messages['text_channel_only'], ephemeral=True)
            return
        login = username.strip().lower()
        await interaction.response.defer()
        probe = await self.service.client.fetch_status(login)
        if probe.error == USER_NOT_FOUND:
            await interaction.followup.send(content=self.messages['user_not_found'].format(username=login))
            return
        result = await self.registry.add_streamer(
            interaction.guild_id,
            target.id,
            login,
            display_name=probe.display_name or username.strip(),
            added_by=str(interaction.user.id),
        )
        if not result.success:
            await interaction.followup.send(content=self.messages['failed'].format(error=result.message))
            return
        streamer: StreamerRecord = result.data
        embed = discord.Embed(
            title=self.messages['added_title'],
            description=self.messages['added_description'].format(name=streamer.name),
            color=COLOR_OK,
            timestamp=datetime.now(timezone.utc),
        )
        embed.add_field(name='👤 Streamer', value=streamer.name, inline=True)
        embed.add_field(name='📢 Channel', value=f'<#{target.id}>', inline=True)
        embed.add_field(name='👨‍💼 Added by', value=f'<@{interaction.user.id}>', inline=True)
        embed.set_thumbnail(url=probe.profile_image_url or DEFAULT_PROFILE_URL.format(username='default'))
        await interaction.followup.send(embed=embed)
        push_console_event(
            'info',
            f'{interaction.user} added {streamer.username} in guild {interaction.guild_id}',
            event='twitch_add',
            metadata={'guild': str(interaction.guild_id), 'streamer': streamer.username},
        )

    @app_commands.command(name='remove', description='Remove a Twitch streamer from monitoring')
    @app_commands.describe(username='Twitch username to stop monitoring')
    @app_commands.checks.has_permissions(manage_channels=True)
    async def remove(self, interaction: discord.Interaction, username: str):
        result = await self.registry.remove_streamer(interaction.guild_id, username)
        if not result.success:
            await _reply(interaction, content=self.messages['failed'].format(error=result.message), ephemeral=True)
            return
        embed = discord.Embed(
            title=self.messages['removed_title'],
            description=self.messages['removed_description'].format(name=result.data.name),
            color=COLOR_REMOVED,
            timestamp=datetime.now(timezone.utc),
        )
        await _reply(interaction, embed=embed)

    @app_commands.command(name='list', description='List all monitored Twitch streamers')
    async def list_streamers(self, interaction: discord.Interaction):
        result = await self.registry.guild_config(interaction.guild_id)
        if not result.success:
            await _reply(interaction, content=self.messages['failed'].format(error=result.message), ephemeral=True)
            return
        config = result.data
        if not config.streamers:
            await _reply(interaction, content=self.messages['list_empty'], ephemeral=True)
            return
        embed = discord.Embed(
            title=self.messages['list_title'],
            description=format_streamer_lines(config.streamers),
            color=TWITCH_PURPLE,
            timestamp=datetime.now(timezone.utc),
        )
        if config.notification_channel_id and interaction.guild:
            # Dashboard edits may store ids that are not Discord snowflakes.
            channel_id = config.notification_channel_id
            channel = interaction.guild.get_channel(int(channel_id)) if channel_id.isdigit() else None
            embed.set_footer(text=self.messages['list_footer'].format(channel=channel.name if channel else 'Unknown'))
        await _reply(interaction, embed=embed)

    @app_commands.command(name='channel', description='Set the notification channel for this server')
    @app_commands.describe(channel='Discord channel to send notifications to')
    @app_commands.checks.has_permissions(manage_channels=True)
    async def channel(self, interaction: discord.Interaction, channel: discord.TextChannel):
        result = await self.registry.set_channel(interaction.guild_id, channel.id)
        if not result.success:
            await _reply(interaction, content=self.messages['failed'].format(error=result.message), ephemeral=True)
            return
        embed = discord.Embed(
            title=self.messages['channel_title'],
            description=self.messages['channel_description'].format(channel_id=channel.id),
            color=COLOR_OK,
            timestamp=datetime.now(timezone.utc),
        )
        await _reply(interaction, embed=embed)

    @app_commands.command(name='check', description='Manually check if a streamer is live')
    @app_commands.describe(username='Twitch username to check')
    @app_commands.checks.has_permissions(manage_channels=True)
    async def check(self, interaction: discord.Interaction, username: str):
        login = username.strip().lower()
        await interaction.response.defer()
        snapshot = await self.service.client.fetch_status(login)
        await interaction.followup.send(embed=build_check_embed(login, snapshot, self.messages))

    @app_commands.command(name='stats', description='Show Twitch monitoring statistics')
    async def stats(self, interaction: discord.Interaction):
        result = await self.registry.stats()
        await _reply(interaction, embed=build_stats_embed(result.data, self.messages))

    async def on_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
        if isinstance(error, app_commands.MissingPermissions):
            await _reply(interaction, content=self.messages['missing_permissions'], ephemeral=True)
            return
        if isinstance(error, app_commands.NoPrivateMessage):
            await _reply(interaction, content=self.messages['guild_only'], ephemeral=True)
            return
        command = interaction.command.qualified_name if interaction.command else 'twitch'
        logger.error("Slash command /%s failed: %s", command, error, exc_info=error)
        try:
            await _reply(
                interaction,
                embed=build_status_embed(self.messages['command_error'], image_url=ERROR_IMAGE_URL),
            )
        except discord.HTTPException:
            logger.warning("Could not report failure of /%s to the user", command, exc_info=True)


# ---- bot ----
class HarukaBot(commands.Bot):
    def __init__(
        self,
        service: TwitchMonitorService,
        *,
        messages: Optional[Dict[str, str]] = None,
        log_channel_id: Optional[str] = None,
    ):
        intents = discord.Intents.default()
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.service = service
        self.messages = messages or load_messages(MESSAGES_PATH)
        self.log_channel_id = log_channel_id
        self.notifier = DiscordNotifier(self, self.messages)
        self.started_at = datetime.now(timezone.utc)

    async def setup_hook(self) -> None:
        self.tree.add_command(TwitchCommands(self.service, self.messages))
        synced = await self.tree.sync()
        logger.info("Synced %s application commands", len(synced))
        self.service.start(self.notifier, channel_resolver=self.notifier.resolve_channel)
        self.heartbeat.start()

    async def on_ready(self) -> None:
        push_console_event('info', f'{self.user} >> is now loaded and ready for use :>', event='startup')
        await self.change_presence(
            activity=discord.Activity(type=discord.ActivityType.listening, name=f'{len(self.guilds)} Servers')
        )
        await self._announce_active()

    async def _announce_active(self) -> None:
        if not self.log_channel_id:
            return
        try:
            channel = self.get_channel(int(self.log_channel_id))
        except ValueError:
            logger.warning("LOG_CHANNEL_ID %r is not a channel id", self.log_channel_id)
            return
        if channel is None:
            logger.warning("Log channel %s is not visible to the bot", self.log_channel_id)
            return
        try:
            await channel.send(embed=build_status_embed(self.messages['bot_active']))
        except discord.HTTPException as exc:
            logger.warning("Could not post startup embed: %s", exc)

    @tasks.loop(seconds=30)
    async def heartbeat(self) -> None:
        logger.info("[PING] %s Heartbeat acknowledged", self.ping_ms())

    @heartbeat.before_loop
    async def _before_heartbeat(self) -> None:
        await self.wait_until_ready()

    def ping_ms(self) -> Optional[int]:
        latency = self.latency
        if latency is None or math.isnan(latency) or math.isinf(latency):
            return None
        return round(latency * 1000)

    def telemetry(self) -> Dict[str, Any]:
        return {
            'ping_ms': self.ping_ms(),
            'guilds': len(self.guilds),
            'users': sum(guild.member_count or 0 for guild in self.guilds),
            'started_at': self.started_at.isoformat(),
            'ready': self.is_ready(),
        }

    async def close(self) -> None:
        self.heartbeat.cancel()
        await self.service.close()
        await super().close()


def build_monitor_service() -> TwitchMonitorService:
    store = PersistentStore(TWITCH_DATA_PATH, reload_interval=TWITCH_RELOAD_INTERVAL)
    store.load()
    client = LiveStatusClient(
        url=TWITCH_GQL_URL,
        client_id=TWITCH_GQL_CLIENT_ID,
        timeout=TWITCH_REQUEST_TIMEOUT,
    )
    gate = NotificationGate(
        client,
        settle_delay=TWITCH_SETTLE_DELAY,
        settle_attempts=TWITCH_SETTLE_ATTEMPTS,
    )
    monitor_loop = MonitorLoop(
        store,
        client,
        gate,
        initial_delay=TWITCH_INITIAL_DELAY,
        streamer_delay=TWITCH_STREAMER_DELAY,
    )
    return TwitchMonitorService(
        store,
        client,
        interval=TWITCH_CHECK_INTERVAL,
        gate=gate,
        monitor_loop=monitor_loop,
    )


# ---- entry ----
async def main():
    logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    if not DISCORD_TOKEN:
        raise RuntimeError('DISCORD_TOKEN is required')
    backend_app.install_console_handler(asyncio.get_running_loop())
    service = build_monitor_service()
    bot = HarukaBot(service, log_channel_id=LOG_CHANNEL_ID)
    backend_app.attach_runtime(
        backend_app.app,
        registry=service.registry,
        status_client=service.client,
        telemetry=bot.telemetry,
    )
    server = uvicorn.Server(uvicorn.Config(backend_app.app, host=WEB_HOST, port=WEB_PORT, log_level=LOG_LEVEL.lower()))
    web_task = asyncio.create_task(server.serve())
    try:
        async with bot:
            await bot.start(DISCORD_TOKEN)
    finally:
        server.should_exit = True
        await web_task


def run():
    asyncio.run(main())


if __name__ == '__main__':
    run()
