"""WhatsApp connection adapter backed by an Evolution API server."""

import base64
from datetime import datetime
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ticketbridge.core.config import settings
from ticketbridge.core.exceptions import ChannelError
from ticketbridge.models import (
    ConnectionEvent,
    ConnectionEventType,
    InboundMessage,
    MediaReference,
    QrPayload,
)
from ticketbridge.services.channels.base import ConnectionAdapter

logger = structlog.get_logger()

WEBHOOK_EVENTS = ["QRCODE_UPDATED", "CONNECTION_UPDATE", "MESSAGES_UPSERT", "LOGOUT_INSTANCE"]

# Evolution message types carrying media, mapped to a media kind
MEDIA_TYPES = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "documentWithCaptionMessage": "document",
    "stickerMessage": "sticker",
}


def parse_message(data: dict[str, Any]) -> InboundMessage | None:
    """Parse one ``messages.upsert`` record.

    Evolution API message format:
    {
        "key": {"id": "...", "remoteJid": "5511...@s.whatsapp.net", "fromMe": false},
        "pushName": "Maria",
        "message": {"conversation": "hi"} | {"imageMessage": {...}},
        "messageType": "conversation",
        "messageTimestamp": 1234567890,
    }
    """
    key = data.get("key") or {}
    remote_jid = key.get("remoteJid")
    message_id = key.get("id")
    if not remote_jid or not message_id:
        return None

    message = data.get("message") or {}
    message_type = data.get("messageType") or next(iter(message), "")

    text = message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text") or ""

    media = None
    kind = MEDIA_TYPES.get(message_type)
    if kind:
        media_obj = message.get(message_type) or {}
        if message_type == "documentWithCaptionMessage":
            media_obj = (media_obj.get("message") or {}).get("documentMessage") or {}
        caption = media_obj.get("caption")
        media = MediaReference(
            message_id=message_id,
            kind=kind,
            mime_type=media_obj.get("mimetype") or "application/octet-stream",
            filename=media_obj.get("fileName"),
            caption=caption,
        )
        text = caption or text

    timestamp = datetime.utcnow()
    if data.get("messageTimestamp"):
        try:
            timestamp = datetime.utcfromtimestamp(int(data["messageTimestamp"]))
        except (ValueError, TypeError, OverflowError):
            pass

    return InboundMessage(
        message_id=message_id,
        remote_jid=remote_jid,
        from_me=bool(key.get("fromMe")),
        push_name=data.get("pushName"),
        text=text,
        media=media,
        timestamp=timestamp,
    )


def media_kind(mime_type: str) -> str:
    """Evolution ``mediatype`` for a MIME type."""
    for kind in ("image", "video", "audio"):
        if mime_type.startswith(f"{kind}/"):
            return kind
    return "document"


class EvolutionConnectionAdapter(ConnectionAdapter):
    """Evolution API adapter for one tenant instance.

    Handles:
    - Instance creation, resume and QR bootstrap over the REST API
    - Translating pushed webhook events into connection events
    - Sending text/media and downloading inbound media
    """

    def __init__(
        self,
        instance_name: str,
        base_url: str | None = None,
        api_key: str | None = None,
        webhook_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__()
        self.instance_name = instance_name
        self.base_url = (base_url or settings.evolution_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.evolution_api_key
        self.webhook_url = webhook_url
        self.timeout = timeout or settings.http_timeout_seconds

        self._client = http_client
        self._owns_client = http_client is None
        self._closed = False

    @property
    def channel_name(self) -> str:
        return "whatsapp"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"apikey": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        self._closed = True
        self.unsubscribe()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ==================== HTTP ====================

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _send(self, method: str, endpoint: str, payload: dict[str, Any] | None) -> httpx.Response:
        return await self._get_client().request(method, endpoint, json=payload)

    async def _request(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        try:
            response = await self._send(method, endpoint, payload)
        except httpx.HTTPError as e:
            logger.error("Evolution API request failed", endpoint=endpoint, error=str(e))
            raise ChannelError(
                f"Evolution API unreachable: {e}",
                channel=self.channel_name,
                details={"endpoint": endpoint},
            ) from e

        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code >= 400:
            logger.error(
                "Evolution API error",
                endpoint=endpoint,
                status=response.status_code,
                body=response.text[:500],
            )
            raise ChannelError(
                f"Evolution API error: {response.status_code}",
                channel=self.channel_name,
                details={"endpoint": endpoint, "status": response.status_code},
            )
        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {"data": data}

    # ==================== Lifecycle ====================

    async def initialize(self, bootstrap_credentials: bool) -> bool:
        """Create or resume the instance.

        An instance already ``open`` on the server resumes straight to READY.
        Otherwise the server is asked to connect; with ``bootstrap_credentials``
        the returned QR is emitted, and later QR refreshes arrive by webhook.
        """
        state = await self._connection_state()

        if state is None:
            if not bootstrap_credentials:
                logger.warning("Instance missing on server", instance=self.instance_name)
                self.emit(ConnectionEvent.auth_failure("instance_missing"))
                return True
            await self._create_instance()

        if state == "open":
            self.emit(ConnectionEvent(ConnectionEventType.AUTHENTICATED))
            self.emit(ConnectionEvent(ConnectionEventType.READY))
            return True

        data = await self._request("GET", f"/instance/connect/{self.instance_name}") or {}
        if bootstrap_credentials:
            qr = self._extract_qr(data)
            if qr is not None:
                self.emit(ConnectionEvent(ConnectionEventType.QR, qr=qr))

        logger.info(
            "Evolution instance connecting",
            instance=self.instance_name,
            bootstrap=bootstrap_credentials,
        )
        return True

    async def disconnect(self, log_out: bool) -> None:
        if log_out:
            await self._request("DELETE", f"/instance/logout/{self.instance_name}", allow_missing=True)
            logger.info("Logged out Evolution instance", instance=self.instance_name)
        await self.close()

    async def _connection_state(self) -> str | None:
        data = await self._request(
            "GET",
            f"/instance/connectionState/{self.instance_name}",
            allow_missing=True,
        )
        if data is None:
            return None
        instance = data.get("instance") or data
        return instance.get("state")

    async def _create_instance(self) -> None:
        payload: dict[str, Any] = {
            "instanceName": self.instance_name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if self.webhook_url:
            payload["webhook"] = {
                "url": self.webhook_url,
                "byEvents": False,
                "base64": False,
                "events": WEBHOOK_EVENTS,
            }
        await self._request("POST", "/instance/create", payload)
        logger.info("Created Evolution instance", instance=self.instance_name)

    @staticmethod
    def _extract_qr(data: dict[str, Any]) -> QrPayload | None:
        qr = data.get("qrcode") if isinstance(data.get("qrcode"), dict) else data
        code = qr.get("code")
        if not code:
            return None
        return QrPayload(code=code, image=qr.get("base64"))

    # ==================== Webhooks ====================

    async def handle_webhook(self, payload: dict[str, Any]) -> None:
        """Translate an Evolution webhook payload into connection events."""
        if self._closed:
            logger.debug("Webhook for closed adapter", instance=self.instance_name)
            return

        event = str(payload.get("event", "")).lower().replace("_", ".")
        data = payload.get("data") or {}

        if event == "qrcode.updated":
            qr = self._extract_qr(data)
            if qr is not None:
                self.emit(ConnectionEvent(ConnectionEventType.QR, qr=qr))

        elif event == "connection.update":
            self._handle_connection_update(data)

        elif event == "logout.instance":
            self.emit(ConnectionEvent.auth_failure("logged_out"))

        elif event == "messages.upsert":
            records = data if isinstance(data, list) else [data]
            for record in records:
                message = parse_message(record)
                if message is not None:
                    self.emit(ConnectionEvent(ConnectionEventType.MESSAGE, message=message))

        else:
            logger.debug("Ignoring Evolution event", event=event, instance=self.instance_name)

    def _handle_connection_update(self, data: dict[str, Any]) -> None:
        state = data.get("state")
        status = data.get("statusReason")
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None

        if state == "open":
            self.emit(ConnectionEvent(ConnectionEventType.AUTHENTICATED))
            self.emit(ConnectionEvent(ConnectionEventType.READY))
        elif state == "close":
            if status == 401:
                self.emit(ConnectionEvent.auth_failure("logged_out", status))
            elif status == 403:
                self.emit(ConnectionEvent.auth_failure("forbidden", status))
            else:
                self.emit(ConnectionEvent.disconnected("connection_closed", status))
        else:
            logger.debug("Connection update", state=state, instance=self.instance_name)

    # ==================== Messaging ====================

    async def send_text(self, conversation_id: str, text: str) -> str | None:
        response = await self._request(
            "POST",
            f"/message/sendText/{self.instance_name}",
            {"number": conversation_id, "text": text},
        ) or {}
        message_id = (response.get("key") or {}).get("id")
        logger.info("Sent WhatsApp text", instance=self.instance_name, to=conversation_id, message_id=message_id)
        return message_id

    async def send_media(
        self,
        conversation_id: str,
        data: bytes,
        mime_type: str,
        caption: str | None = None,
        filename: str | None = None,
    ) -> str | None:
        payload: dict[str, Any] = {
            "number": conversation_id,
            "mediatype": media_kind(mime_type),
            "mimetype": mime_type,
            "media": base64.b64encode(data).decode("ascii"),
        }
        if caption:
            payload["caption"] = caption
        if filename:
            payload["fileName"] = filename

        response = await self._request("POST", f"/message/sendMedia/{self.instance_name}", payload) or {}
        message_id = (response.get("key") or {}).get("id")
        logger.info(
            "Sent WhatsApp media",
            instance=self.instance_name,
            to=conversation_id,
            mediatype=payload["mediatype"],
            message_id=message_id,
        )
        return message_id

    async def download_media(self, media: MediaReference) -> bytes:
        response = await self._request(
            "POST",
            f"/chat/getBase64FromMediaMessage/{self.instance_name}",
            {"message": {"key": {"id": media.message_id}}, "convertToMp4": False},
        ) or {}
        encoded = response.get("base64")
        if not encoded:
            raise ChannelError(
                "Media not available",
                channel=self.channel_name,
                details={"message_id": media.message_id},
            )
        return base64.b64decode(encoded)
