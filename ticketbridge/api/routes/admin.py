"""Admin endpoints for tenant and session management."""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from ticketbridge.api.dependencies import RegistryDep, TenantDep
from ticketbridge.models import ConnectionState, QrChallenge, SessionStatus, TicketState
from ticketbridge.services.registry import TenantServices
from ticketbridge.services.routing.table import normalize_conversation_id

logger = structlog.get_logger()

router = APIRouter(prefix="/admin", tags=["Admin"])


# ==================== Pydantic Schemas ====================


class TenantCreate(BaseModel):
    """Schema for creating a tenant."""

    workspace_id: str
    ticket_category_id: str
    transcript_channel_id: str | None = None
    feedback_channel_id: str | None = None
    settings: dict[str, Any] | None = None


class TenantUpdate(BaseModel):
    """Schema for updating a tenant."""

    ticket_category_id: str | None = None
    transcript_channel_id: str | None = None
    feedback_channel_id: str | None = None


class TenantResponse(BaseModel):
    """Response schema for tenant."""

    tenant_id: str
    workspace_id: str
    ticket_category_id: str
    transcript_channel_id: str | None
    feedback_channel_id: str | None
    settings: dict[str, Any]
    state: ConnectionState
    created_at: datetime


class TicketResponse(BaseModel):
    """Response schema for an open ticket."""

    conversation_id: str
    channel_id: str
    display_name: str | None
    last_activity_at: datetime
    state: TicketState


class TicketClose(BaseModel):
    """Schema for closing a ticket."""

    closed_by: str = "admin"
    send_notification: bool = True


class ContactRename(BaseModel):
    """Schema for renaming a contact."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=80)


class QrResponse(BaseModel):
    """Response schema for a QR challenge."""

    tenant_id: str
    qr: QrChallenge


def _tenant_response(services: TenantServices) -> TenantResponse:
    tenant = services.tenant
    return TenantResponse(
        tenant_id=tenant.tenant_id,
        workspace_id=tenant.workspace_id,
        ticket_category_id=tenant.ticket_category_id,
        transcript_channel_id=tenant.transcript_channel_id,
        feedback_channel_id=tenant.feedback_channel_id,
        settings=tenant.settings.model_dump(by_alias=True),
        state=services.session.state,
        created_at=tenant.created_at,
    )


# ==================== Tenant Endpoints ====================


@router.post("/tenants", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def create_tenant(data: TenantCreate, registry: RegistryDep) -> TenantResponse:
    """Register a new tenant."""
    tenant = await registry.create_tenant(
        workspace_id=data.workspace_id,
        ticket_category_id=data.ticket_category_id,
        transcript_channel_id=data.transcript_channel_id,
        feedback_channel_id=data.feedback_channel_id,
        settings=data.settings,
    )
    return _tenant_response(registry.services(tenant.tenant_id))


@router.get("/tenants", response_model=list[TenantResponse])
async def list_tenants(registry: RegistryDep) -> list[TenantResponse]:
    """List all tenants."""
    return [_tenant_response(registry.services(t.tenant_id)) for t in registry.tenants()]


@router.post("/tenants/connect-all")
async def connect_all(registry: RegistryDep) -> dict[str, Any]:
    """Connect every tenant holding stored credentials."""
    return {"results": await registry.connect_all()}


@router.get("/tenants/{tenant_id}", response_model=TenantResponse)
async def get_tenant(services: TenantDep) -> TenantResponse:
    """Get a specific tenant."""
    return _tenant_response(services)


@router.patch("/tenants/{tenant_id}", response_model=TenantResponse)
async def update_tenant(tenant_id: str, data: TenantUpdate, registry: RegistryDep) -> TenantResponse:
    """Update a tenant's channel configuration."""
    await registry.update_tenant(tenant_id, **data.model_dump(exclude_none=True))
    return _tenant_response(registry.services(tenant_id))


@router.delete("/tenants/{tenant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tenant(tenant_id: str, registry: RegistryDep) -> None:
    """Log a tenant out and delete all of its data."""
    await registry.remove_tenant(tenant_id)


# ==================== Settings Endpoints ====================


@router.get("/tenants/{tenant_id}/settings")
async def get_settings(services: TenantDep) -> dict[str, Any]:
    """Get tenant message templates and toggles."""
    return services.tenant.settings.model_dump(by_alias=True)


@router.patch("/tenants/{tenant_id}/settings")
async def update_settings(tenant_id: str, patch: dict[str, Any], registry: RegistryDep) -> dict[str, Any]:
    """Merge settings; changes apply to the next message without reconnecting."""
    new_settings = await registry.update_settings(tenant_id, patch)
    logger.info("Updated tenant settings", tenant_id=tenant_id, keys=sorted(patch))
    return new_settings.model_dump(by_alias=True)


# ==================== Session Endpoints ====================


@router.post("/tenants/{tenant_id}/connect")
async def connect_tenant(services: TenantDep, force: bool = False) -> dict[str, Any]:
    """Connect a tenant session, optionally forcing a new QR challenge."""
    state = await services.session.connect(force_credential_bootstrap=force)
    return {"tenant_id": services.tenant.tenant_id, "state": state}


@router.post("/tenants/{tenant_id}/disconnect")
async def disconnect_tenant(services: TenantDep, log_out: bool = False) -> dict[str, Any]:
    """Disconnect a tenant session; ``log_out`` also discards credentials."""
    await services.session.disconnect(log_out=log_out)
    return {"tenant_id": services.tenant.tenant_id, "state": services.session.state}


@router.get("/tenants/{tenant_id}/qr", response_model=QrResponse)
async def get_qr_code(tenant_id: str, registry: RegistryDep, timeout: float | None = None) -> QrResponse:
    """Start a credential bootstrap and return its QR challenge."""
    qr = await registry.request_qr(tenant_id, timeout=timeout)
    return QrResponse(tenant_id=tenant_id, qr=qr)


@router.get("/tenants/{tenant_id}/status", response_model=SessionStatus)
async def get_status(services: TenantDep) -> SessionStatus:
    """Get connection state, live QR and last error."""
    return services.session.status()


# ==================== Ticket Endpoints ====================


@router.get("/tenants/{tenant_id}/tickets", response_model=list[TicketResponse])
async def list_tickets(services: TenantDep) -> list[TicketResponse]:
    """List open tickets."""
    return [
        TicketResponse(
            conversation_id=entry.conversation_id,
            channel_id=entry.channel_id,
            display_name=entry.display_name or services.contacts.name_for(entry.conversation_id),
            last_activity_at=entry.last_activity_at,
            state=services.tickets.state(entry.conversation_id),
        )
        for entry in services.routing.entries()
    ]


@router.post("/tenants/{tenant_id}/tickets/{conversation_id}/close")
async def close_ticket(
    conversation_id: str,
    services: TenantDep,
    data: TicketClose | None = None,
) -> dict[str, Any]:
    """Close a ticket: notify, save transcript, delete channel, drop route."""
    data = data or TicketClose()
    await services.tickets.close(
        conversation_id,
        closed_by=data.closed_by,
        send_notification=data.send_notification,
    )
    return {"status": "closed", "conversation_id": conversation_id}


# ==================== Contact Endpoints ====================


@router.patch("/tenants/{tenant_id}/contacts/{conversation_id}")
async def rename_contact(
    tenant_id: str,
    conversation_id: str,
    data: ContactRename,
    registry: RegistryDep,
) -> dict[str, Any]:
    """Rename a contact and the channel of its open ticket."""
    handle = await registry.rename_contact(tenant_id, conversation_id, data.name)
    return {
        "conversation_id": normalize_conversation_id(conversation_id),
        "name": data.name,
        "channel_id": handle.channel_id if handle else None,
    }
