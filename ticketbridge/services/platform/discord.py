"""Discord REST client for ticket channels."""

import json
from datetime import datetime
from typing import Any
from urllib.parse import quote, urlsplit

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ticketbridge.core.config import settings
from ticketbridge.core.exceptions import ChannelNotFound, PlatformError, PlatformUnavailable
from ticketbridge.models import ChannelMessage, MediaAttachment, PermissionOverwrite
from ticketbridge.services.platform.base import CollaborationClient

logger = structlog.get_logger()

GUILD_TEXT = 0
MAX_CONTENT_LENGTH = 2000
PAGE_SIZE = 100
# Attachments are only fetched from Discord's own CDN
CDN_HOSTS = frozenset({"cdn.discordapp.com", "media.discordapp.net"})


def split_content(content: str, limit: int = MAX_CONTENT_LENGTH) -> list[str]:
    """Split text into chunks Discord accepts, preferring line breaks."""
    if len(content) <= limit:
        return [content]
    chunks = []
    remaining = content
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks


class DiscordClient(CollaborationClient):
    """Discord API v10 client scoped to one guild."""

    def __init__(
        self,
        guild_id: str,
        token: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        cdn_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.guild_id = guild_id
        self.token = token if token is not None else settings.discord_bot_token
        self.api_url = (api_url or settings.discord_api_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds

        self._client = http_client
        self._owns_client = http_client is None
        # Attachment downloads never carry the bot token
        self._cdn_client = cdn_client
        self._owns_cdn_client = cdn_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "Authorization": f"Bot {self.token}",
                    "User-Agent": "DiscordBot (ticketbridge, 0.1.0)",
                },
                timeout=self.timeout,
            )
        return self._client

    def _get_cdn_client(self) -> httpx.AsyncClient:
        if self._cdn_client is None:
            self._cdn_client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=False)
        return self._cdn_client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        if self._cdn_client is not None and self._owns_cdn_client:
            await self._cdn_client.aclose()
            self._cdn_client = None

    # ==================== HTTP ====================

    @retry(
        retry=retry_if_exception_type(PlatformUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Discord request failed", path=path, error=str(e))
            raise PlatformUnavailable(f"Discord unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Discord transient error", path=path, status=response.status_code)
            raise PlatformUnavailable(
                f"Discord API error: {response.status_code}",
                status=response.status_code,
            )
        return response

    @staticmethod
    def _check(response: httpx.Response, channel_id: str | None = None) -> None:
        if response.status_code == 404 and channel_id is not None:
            raise ChannelNotFound(channel_id)
        if response.status_code >= 400:
            raise PlatformError(
                f"Discord API error: {response.status_code}",
                status=response.status_code,
                details={"body": response.text[:500]},
            )

    # ==================== Channels ====================

    async def create_channel(
        self,
        category_id: str,
        name: str,
        permissions: list[PermissionOverwrite],
        topic: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "name": name,
            "type": GUILD_TEXT,
            "parent_id": category_id,
            "permission_overwrites": [p.to_payload() for p in permissions],
        }
        if topic:
            payload["topic"] = topic

        response = await self._request("POST", f"/guilds/{self.guild_id}/channels", json=payload)
        self._check(response)
        channel_id = response.json()["id"]

        logger.info("Created channel", guild_id=self.guild_id, channel_id=channel_id, name=name)
        return channel_id

    async def delete_channel(self, channel_id: str, reason: str) -> None:
        response = await self._request(
            "DELETE",
            f"/channels/{channel_id}",
            headers={"X-Audit-Log-Reason": quote(reason)},
        )
        self._check(response, channel_id)
        logger.info("Deleted channel", guild_id=self.guild_id, channel_id=channel_id, reason=reason)

    async def rename_channel(self, channel_id: str, name: str, reason: str) -> None:
        response = await self._request(
            "PATCH",
            f"/channels/{channel_id}",
            json={"name": name},
            headers={"X-Audit-Log-Reason": quote(reason)},
        )
        self._check(response, channel_id)
        logger.info("Renamed channel", guild_id=self.guild_id, channel_id=channel_id, name=name)

    async def fetch_channel(self, channel_id: str) -> bool:
        response = await self._request("GET", f"/channels/{channel_id}")
        if response.status_code == 404:
            return False
        self._check(response, channel_id)
        return True

    # ==================== Messages ====================

    async def send_message(
        self,
        channel_id: str,
        content: str,
        files: list[MediaAttachment] | None = None,
    ) -> str:
        chunks = split_content(content) if content else [""]
        message_id = ""
        for index, chunk in enumerate(chunks):
            is_last = index == len(chunks) - 1
            if is_last and files:
                response = await self._post_with_files(channel_id, chunk, files)
            else:
                response = await self._request(
                    "POST",
                    f"/channels/{channel_id}/messages",
                    json={"content": chunk},
                )
            self._check(response, channel_id)
            message_id = response.json()["id"]
        return message_id

    async def _post_with_files(
        self,
        channel_id: str,
        content: str,
        files: list[MediaAttachment],
    ) -> httpx.Response:
        payload = {
            "content": content,
            "attachments": [{"id": i, "filename": f.filename} for i, f in enumerate(files)],
        }
        multipart = [
            (f"files[{i}]", (f.filename, f.data, f.content_type))
            for i, f in enumerate(files)
        ]
        return await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            data={"payload_json": json.dumps(payload)},
            files=multipart,
        )

    async def fetch_messages(self, channel_id: str, limit: int = 500) -> list[ChannelMessage]:
        messages: list[ChannelMessage] = []
        before: str | None = None
        while len(messages) < limit:
            params: dict[str, Any] = {"limit": min(PAGE_SIZE, limit - len(messages))}
            if before:
                params["before"] = before
            response = await self._request("GET", f"/channels/{channel_id}/messages", params=params)
            self._check(response, channel_id)
            page = response.json()
            if not page:
                break
            messages.extend(self._parse_message(item) for item in page)
            before = page[-1]["id"]
            if len(page) < params["limit"]:
                break
        # Discord returns newest first
        messages.reverse()
        return messages

    async def download_attachment(self, url: str) -> bytes:
        """Fetch an attachment from the Discord CDN without credentials.

        Raises:
            PlatformError: If the URL is not a Discord CDN URL or the
                download fails
        """
        parts = urlsplit(url)
        if parts.scheme != "https" or parts.hostname not in CDN_HOSTS:
            raise PlatformError("Attachment URL is not on the Discord CDN", details={"url": url})

        try:
            response = await self._get_cdn_client().get(url)
        except httpx.TransportError as e:
            logger.warning("Attachment download failed", url=url, error=str(e))
            raise PlatformUnavailable(f"Discord CDN unreachable: {e}") from e
        self._check(response)
        return response.content

    @staticmethod
    def _parse_message(item: dict[str, Any]) -> ChannelMessage:
        author = item.get("author") or {}
        return ChannelMessage(
            id=item["id"],
            author_id=author.get("id", ""),
            author_name=author.get("global_name") or author.get("username") or "unknown",
            content=item.get("content") or "",
            timestamp=datetime.fromisoformat(item["timestamp"]),
            attachment_urls=[a["url"] for a in item.get("attachments") or [] if a.get("url")],
            is_bot=bool(author.get("bot")),
        )
