"""
Collaborator interfaces consumed by the scheduler.

The scheduler only needs two things from the outside world: fresh EPG entries
for a channel and a playable stream URL for a channel. Xtream-style adapters
are provided; anything implementing the protocols can be injected instead.
"""
import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from recorder.entities import EpgEntry

logger = logging.getLogger(__name__)


class EpgProvider(Protocol):
    async def fetch_epg(self, channel_id: str) -> list[EpgEntry]:
        """Return upcoming programs for a channel."""
        ...


class StreamResolver(Protocol):
    def resolve_stream_url(self, channel_id: str) -> Optional[str]:
        """Return the stream URL for a channel, or None if unknown."""
        ...


def _decode_text(value: Optional[str]) -> str:
    """Xtream EPG text fields are base64 encoded; fall back to the raw value."""
    if not value:
        return ""
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        # Includes UnicodeDecodeError: plain text that happens to be valid base64
        return value.strip()
    if any(not ch.isprintable() and not ch.isspace() for ch in decoded):
        return value.strip()
    return decoded.strip()


class XtreamAccount:
    """Connection details for an Xtream Codes style account."""

    def __init__(self, host: str, port: int, username: str, password: str, use_ssl: bool = False):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl

    @property
    def base_url(self) -> str:
        return f"{'https' if self.use_ssl else 'http'}://{self.host}:{self.port}"


class XtreamEpgProvider:
    """Fetches short EPG listings from an Xtream player API."""

    def __init__(self, account: XtreamAccount, limit: int = 50, timeout: float = 30.0):
        self.account = account
        self.limit = limit
        self._client = httpx.AsyncClient(timeout=timeout)

    async def fetch_epg(self, channel_id: str) -> list[EpgEntry]:
        params = {
            "username": self.account.username,
            "password": self.account.password,
            "action": "get_short_epg",
            "stream_id": channel_id,
            "limit": self.limit,
        }
        response = await self._client.get(f"{self.account.base_url}/player_api.php", params=params)
        response.raise_for_status()
        listings = response.json().get("epg_listings", []) or []

        entries = []
        for item in listings:
            try:
                start = datetime.fromtimestamp(int(item["start_timestamp"]), timezone.utc).replace(tzinfo=None)
                end = datetime.fromtimestamp(int(item["stop_timestamp"]), timezone.utc).replace(tzinfo=None)
            except (KeyError, TypeError, ValueError):
                logger.debug(f"[EPG] Skipping listing without timestamps for channel {channel_id}")
                continue
            entries.append(EpgEntry(
                channel_id=str(channel_id),
                title=_decode_text(item.get("title")),
                description=_decode_text(item.get("description")),
                start_time=start,
                end_time=end,
                program_id=str(item["id"]) if item.get("id") is not None else None,
            ))
        logger.debug(f"[EPG] Fetched {len(entries)} listings for channel {channel_id}")
        return entries

    async def close(self) -> None:
        await self._client.aclose()


class XtreamStreamResolver:
    """Builds live stream URLs for an Xtream account."""

    def __init__(self, account: XtreamAccount, extension: str = "ts"):
        self.account = account
        self.extension = extension

    def resolve_stream_url(self, channel_id: str) -> Optional[str]:
        if not channel_id:
            return None
        return (
            f"{self.account.base_url}/live/{quote(self.account.username, safe='')}/"
            f"{quote(self.account.password, safe='')}/{channel_id}.{self.extension}"
        )


def build_sources(settings) -> tuple[Optional[XtreamEpgProvider], Optional[XtreamStreamResolver]]:
    """EPG provider and stream resolver for the configured Xtream account, if any."""
    if not settings.is_xtream_configured():
        return None, None
    account = XtreamAccount(
        settings.xtream_host,
        settings.xtream_port,
        settings.xtream_username,
        settings.xtream_password,
        settings.xtream_use_ssl,
    )
    provider = XtreamEpgProvider(account, timeout=settings.epg_fetch_timeout_seconds)
    return provider, XtreamStreamResolver(account)
