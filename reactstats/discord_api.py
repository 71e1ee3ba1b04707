"""Discord REST client used to deliver reports and fetch message content."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from reactstats.errors import DeliveryError
from reactstats.paginator import UNAVAILABLE_PREVIEW, truncate_preview

_LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://discord.com/api/v10"
MAX_THREAD_NAME_LENGTH = 100

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [1, 5, 15]


def parse_permalink(url: str) -> tuple[int, int, int] | None:
    """Split a message permalink into (guild_id, channel_id, message_id)."""

    segments = [segment for segment in urlparse(url).path.split("/") if segment]
    if len(segments) < 4 or segments[0] != "channels":
        return None
    try:
        return int(segments[1]), int(segments[2]), int(segments[3])
    except ValueError:
        return None


class DiscordClient:
    """Thin async wrapper over the Discord HTTP API."""

    def __init__(self, token: str, base_url: str = DEFAULT_BASE_URL, timeout_seconds: float = 30.0) -> None:
        self._token = token
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds

    async def send_message(
        self,
        channel_id: int,
        content: str | None = None,
        embeds: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        return await self._request("POST", f"/channels/{channel_id}/messages", _message_payload(content, embeds))

    async def create_forum_thread(
        self,
        forum_id: int,
        name: str,
        content: str | None = None,
        embeds: list[dict[str, Any]] | None = None,
    ) -> int:
        """Create a forum post and return the new thread's channel id."""

        data = await self._request(
            "POST",
            f"/channels/{forum_id}/threads",
            {"name": name[:MAX_THREAD_NAME_LENGTH], "message": _message_payload(content, embeds)},
        )
        return int(data["id"])

    async def get_message(self, channel_id: int, message_id: int) -> dict[str, Any]:
        return await self._request("GET", f"/channels/{channel_id}/messages/{message_id}")

    async def fetch_preview(self, permalink: str, max_length: int = 100) -> str:
        """Return the (truncated) text of the linked message, or a placeholder."""

        parsed = parse_permalink(permalink)
        if parsed is None:
            return UNAVAILABLE_PREVIEW
        _, channel_id, message_id = parsed
        try:
            message = await self.get_message(channel_id, message_id)
        except (DeliveryError, httpx.HTTPError):
            _LOGGER.warning("Failed to get message preview for %s", permalink, exc_info=True)
            return UNAVAILABLE_PREVIEW
        return truncate_preview(message.get("content") or "", max_length)

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        timeout = httpx.Timeout(self._timeout_seconds)
        async with httpx.AsyncClient(base_url=self._base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.request(
                    method,
                    path,
                    headers={
                        "Authorization": f"Bot {self._token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "Discord rate limited (429) on %s %s, retrying in %ds (attempt %d/%d)",
                        method,
                        path,
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    continue
                break

        if response.status_code >= 400:
            raise DeliveryError(
                f"Discord API {method} {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code == 204:
            return None
        return response.json()


def _message_payload(content: str | None, embeds: list[dict[str, Any]] | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"allowed_mentions": {"parse": []}}
    if content:
        payload["content"] = content
    if embeds:
        payload["embeds"] = embeds
    return payload
