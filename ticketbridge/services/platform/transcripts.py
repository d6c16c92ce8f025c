"""Plain-text ticket transcripts."""

from datetime import datetime

import structlog

from ticketbridge.core.exceptions import PlatformError
from ticketbridge.models import ChannelMessage, MediaAttachment, Tenant
from ticketbridge.services.platform.base import CollaborationClient, TranscriptService

logger = structlog.get_logger()


def render_transcript(channel_id: str, messages: list[ChannelMessage], closed_by: str) -> str:
    """Render channel history as a plain-text log."""
    lines = [
        f"Transcript for channel {channel_id}",
        f"Closed by {closed_by} at {datetime.utcnow().isoformat(timespec='seconds')}Z",
        "",
    ]
    for message in messages:
        stamp = message.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"[{stamp}] {message.author_name}: {message.content}")
        lines.extend(f"    attachment: {url}" for url in message.attachment_urls)
    return "\n".join(lines) + "\n"


class PlainTextTranscriptService(TranscriptService):
    """Uploads a text transcript to the tenant's transcript channel.

    The destination is read from the tenant on every call so that a changed
    transcript channel takes effect without a restart.
    """

    def __init__(self, client: CollaborationClient, tenant: Tenant) -> None:
        self.client = client
        self.tenant = tenant

    async def generate(self, channel_id: str, closed_by: str) -> None:
        destination = self.tenant.transcript_channel_id
        if not destination:
            logger.info("No transcript channel configured", tenant_id=self.tenant.tenant_id)
            return

        try:
            messages = await self.client.fetch_messages(channel_id)
            body = render_transcript(channel_id, messages, closed_by)
            await self.client.send_message(
                destination,
                f"📄 Transcript of ticket `{channel_id}` closed by {closed_by}",
                files=[
                    MediaAttachment(
                        filename=f"transcript-{channel_id}.txt",
                        content_type="text/plain",
                        data=body.encode("utf-8"),
                    )
                ],
            )
        except PlatformError as e:
            logger.error(
                "Failed to generate transcript",
                tenant_id=self.tenant.tenant_id,
                channel_id=channel_id,
                error=e.message,
            )
            return

        logger.info(
            "Saved transcript",
            tenant_id=self.tenant.tenant_id,
            channel_id=channel_id,
            messages=len(messages),
        )
