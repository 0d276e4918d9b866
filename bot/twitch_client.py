from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp

from bot.errors import TransientFetchError

logger = logging.getLogger(__name__)

DEFAULT_GQL_URL = 'https://gql.twitch.tv/gql'
# Public client id used by the twitch.tv web player.
DEFAULT_GQL_CLIENT_ID = 'kimne78kx3ncx6brgo4mv6wki5h1ko'
USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36'

USER_NOT_FOUND = 'User not found'

STREAM_STATUS_QUERY = """
query ChannelLiveStatus($login: String!) {
  user(login: $login) {
    id
    login
    displayName
    profileImageURL(width: 300)
    stream {
      id
      title
      viewersCount
      createdAt
      previewImageURL(width: 1280, height: 720)
      game {
        name
        displayName
      }
    }
  }
}
"""


@dataclass
class LiveSnapshot:
    is_live: bool = False
    title: Optional[str] = None
    game: Optional[str] = None
    viewers: Optional[int] = None
    uptime_minutes: Optional[int] = None
    stream_id: Optional[str] = None
    profile_image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    display_name: Optional[str] = None
    login: Optional[str] = None
    started_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str, *, login: Optional[str] = None) -> 'LiveSnapshot':
        return cls(is_live=False, error=error, login=login)


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    text = _clean_text(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_viewers(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_stream_payload(login: str, payload: Any, *, now: Optional[datetime] = None) -> LiveSnapshot:
    """Normalise a GQL response into a ``LiveSnapshot``.

    Raises ``TransientFetchError`` for payloads that carry GQL errors or do not
    have the expected shape. A missing user yields an error snapshot.
    """
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        raise TransientFetchError('Malformed payload')
    errors = payload.get('errors')
    if errors:
        first = errors[0] if isinstance(errors, list) and errors else errors
        message = first.get('message') if isinstance(first, dict) else str(first)
        raise TransientFetchError(f'GQL error: {message}')
    data = payload.get('data')
    if not isinstance(data, dict):
        raise TransientFetchError('Malformed payload')

    user = data.get('user')
    if not user:
        return LiveSnapshot.failed(USER_NOT_FOUND, login=login)
    if not isinstance(user, dict):
        raise TransientFetchError('Malformed payload')

    base = {
        'login': _clean_text(user.get('login')) or login,
        'display_name': _clean_text(user.get('displayName')),
        'profile_image_url': _clean_text(user.get('profileImageURL')),
    }
    stream = user.get('stream')
    if not isinstance(stream, dict):
        return LiveSnapshot(**base)

    title = _clean_text(stream.get('title'))
    viewers = _parse_viewers(stream.get('viewersCount'))
    game_info = stream.get('game')
    game = None
    if isinstance(game_info, dict):
        game = _clean_text(game_info.get('displayName')) or _clean_text(game_info.get('name'))
    started_at = _parse_timestamp(stream.get('createdAt'))

    # An empty stream object is a placeholder Twitch returns around stream
    # start/end; it only counts as live once some session metadata exists.
    if title is None and viewers is None and game is None and started_at is None:
        return LiveSnapshot(**base)

    uptime_minutes = None
    if started_at is not None:
        current = now or datetime.now(timezone.utc)
        uptime_minutes = max(0, int((current - started_at).total_seconds() // 60))

    stream_id = stream.get('id')
    return LiveSnapshot(
        is_live=True,
        title=title,
        game=game,
        viewers=viewers,
        uptime_minutes=uptime_minutes,
        stream_id=str(stream_id) if stream_id else None,
        thumbnail_url=_clean_text(stream.get('previewImageURL')),
        started_at=started_at,
        **base,
    )


class LiveStatusClient:
    """One GQL query per call; nothing is cached between calls."""

    def __init__(
        self,
        *,
        url: str = DEFAULT_GQL_URL,
        client_id: str = DEFAULT_GQL_CLIENT_ID,
        timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = {
            'Client-ID': client_id,
            'Content-Type': 'application/json',
            'User-Agent': USER_AGENT,
        }
        self.session = session

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _query(self, login: str) -> Dict[str, Any]:
        if not self.session:
            await self.start()
        body = {
            'operationName': 'ChannelLiveStatus',
            'query': STREAM_STATUS_QUERY,
            'variables': {'login': login},
        }
        async with self.session.post(
            self.url,
            json=body,
            headers=self.headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as r:
            if r.status < 200 or r.status >= 300:
                try:
                    detail = (await r.text())[:200]
                except Exception:
                    detail = ''
                raise TransientFetchError(f'HTTP {r.status} from status API {detail}'.strip())
            try:
                return await r.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError) as exc:
                raise TransientFetchError('Malformed payload') from exc

    async def fetch_status(self, username: str) -> LiveSnapshot:
        login = username.strip().lower()
        try:
            payload = await self._query(login)
            return parse_stream_payload(login, payload)
        except asyncio.TimeoutError:
            logger.warning("Twitch status request for %s timed out after %ss", login, self.timeout)
            return LiveSnapshot.failed('Request timed out', login=login)
        except TransientFetchError as exc:
            logger.warning("Twitch status request for %s failed: %s", login, exc)
            return LiveSnapshot.failed(str(exc), login=login)
        except aiohttp.ClientError as exc:
            logger.warning("Twitch status request for %s failed: %s", login, exc)
            return LiveSnapshot.failed(f'Network error: {exc}', login=login)
