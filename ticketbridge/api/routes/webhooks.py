"""Webhook endpoints for the messaging gateway and the platform worker."""

from typing import Any

import structlog
from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ticketbridge.api.dependencies import RegistryDep, TenantDep, WebhookAuthDep
from ticketbridge.core.exceptions import AppException, PlatformError, TenantNotFound
from ticketbridge.models import MediaAttachment

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class AttachmentIn(BaseModel):
    """An attachment posted in a ticket channel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    filename: str
    content_type: str = "application/octet-stream"


class PlatformMessageIn(BaseModel):
    """A message posted by an agent in a ticket channel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    channel_id: str
    author_id: str | None = None
    author_name: str
    content: str = ""
    attachments: list[AttachmentIn] = Field(default_factory=list)
    mentions: dict[str, str] = Field(default_factory=dict)
    channel_mentions: dict[str, str] = Field(default_factory=dict)


@router.post("/evolution/{tenant_id}")
async def evolution_webhook(
    tenant_id: str,
    request: Request,
    registry: RegistryDep,
    _: WebhookAuthDep,
) -> Response:
    """Handle connection and message events pushed by Evolution API.

    Always answers 200 so the gateway does not retry on our errors.
    """
    payload: dict[str, Any] = await request.json()

    try:
        session = registry.get(tenant_id)
    except TenantNotFound:
        logger.error("Tenant not found for webhook", tenant_id=tenant_id, event=payload.get("event"))
        return Response(status_code=status.HTTP_200_OK)

    adapter = session.adapter
    if adapter is None:
        logger.debug(
            "Webhook without active adapter",
            tenant_id=tenant_id,
            event=payload.get("event"),
            state=session.state.value,
        )
        return Response(status_code=status.HTTP_200_OK)

    try:
        await adapter.handle_webhook(payload)
    except AppException as e:
        logger.error("Error processing Evolution webhook", tenant_id=tenant_id, code=e.code, error=e.message)

    return Response(status_code=status.HTTP_200_OK)


@router.post("/platform/{tenant_id}/messages")
async def platform_message(
    data: PlatformMessageIn,
    services: TenantDep,
    _: WebhookAuthDep,
) -> dict[str, Any]:
    """Relay an agent message from a ticket channel to its conversation."""
    if services.relay.accepts_outbound(data.channel_id, data.author_id) is None:
        return {"relayed": False}

    attachments: list[MediaAttachment] = []
    for item in data.attachments:
        try:
            content = await services.platform.download_attachment(item.url)
        except PlatformError as e:
            logger.warning(
                "Failed to download attachment",
                tenant_id=services.tenant.tenant_id,
                channel_id=data.channel_id,
                filename=item.filename,
                error=e.message,
            )
            continue
        attachments.append(
            MediaAttachment(filename=item.filename, content_type=item.content_type, data=content)
        )

    relayed = await services.relay.handle_outbound(
        channel_id=data.channel_id,
        author_name=data.author_name,
        content=data.content,
        attachments=attachments,
        author_id=data.author_id,
        mentions=data.mentions,
        channel_mentions=data.channel_mentions,
    )
    return {"relayed": relayed}
