"""Tenant registry: owns every tenant's session and services."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx
import structlog

from ticketbridge.core.config import Settings
from ticketbridge.core.exceptions import (
    ConfigurationError,
    ConnectError,
    DisconnectError,
    StorageError,
    TenantAlreadyExists,
    TenantNotFound,
)
from ticketbridge.models import ChannelHandle, ConnectionState, QrChallenge, SessionStatus, Tenant, TenantSettings
from ticketbridge.services.channels.base import ConnectionAdapter
from ticketbridge.services.channels.evolution import EvolutionConnectionAdapter
from ticketbridge.services.platform.base import CollaborationClient, TranscriptService
from ticketbridge.services.platform.discord import DiscordClient
from ticketbridge.services.platform.transcripts import PlainTextTranscriptService
from ticketbridge.services.relay import MessageRelay
from ticketbridge.services.routing.contacts import ContactDirectory
from ticketbridge.services.routing.table import RoutingTable
from ticketbridge.services.session.manager import SessionManager
from ticketbridge.services.session.reconnection import ReconnectPolicy, SleepFn
from ticketbridge.services.tickets.lifecycle import TicketLifecycle
from ticketbridge.storage.base import REGISTRY_DOCUMENT, DocumentStore, tenant_document
from ticketbridge.storage.credentials import CredentialStore

logger = structlog.get_logger()

AdapterFactory = Callable[[Tenant], ConnectionAdapter]
PlatformFactory = Callable[[Tenant], CollaborationClient]
TranscriptFactory = Callable[[CollaborationClient, Tenant], TranscriptService]

SETTINGS_DOCUMENT = "settings"


@dataclass
class TenantServices:
    """Everything the registry builds for one tenant."""

    tenant: Tenant
    session: SessionManager
    routing: RoutingTable
    contacts: ContactDirectory
    tickets: TicketLifecycle
    relay: MessageRelay
    platform: CollaborationClient


class TenantRegistry:
    """Directory of tenant sessions.

    Constructed explicitly and driven through ``init()``/``shutdown()``.
    Tenant configuration lives in the registry document; routing, contacts
    and settings live in per-tenant documents.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Settings,
        adapter_factory: AdapterFactory,
        platform_factory: PlatformFactory,
        transcript_factory: TranscriptFactory = PlainTextTranscriptService,
        sleep: SleepFn = asyncio.sleep,
        http_clients: list[httpx.AsyncClient] | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self._adapter_factory = adapter_factory
        self._platform_factory = platform_factory
        self._transcript_factory = transcript_factory
        self._sleep = sleep
        self._http_clients = http_clients or []
        self._tenants: dict[str, TenantServices] = {}
        self._initialized = False

    @property
    def data_dir(self) -> Path:
        return Path(self.config.data_dir)

    # ==================== Lifecycle ====================

    async def init(self) -> None:
        """Load every registered tenant and build its services."""
        if self._initialized:
            return
        data = await self.store.load(REGISTRY_DOCUMENT) or {}
        for tenant_id, record in data.items():
            tenant = Tenant.model_validate({**record, "tenantId": tenant_id})
            stored_settings = await self.store.load(tenant_document(tenant_id, SETTINGS_DOCUMENT))
            if stored_settings is not None:
                tenant.settings = TenantSettings.model_validate(stored_settings)
            self._tenants[tenant_id] = await self._build(tenant)
        self._initialized = True
        logger.info("Tenant registry initialized", tenants=len(self._tenants))

    async def shutdown(self) -> None:
        """Release every session and client; stored credentials are kept."""
        for services in self._tenants.values():
            await services.session.close()
            await services.platform.close()
        self._tenants.clear()
        for client in self._http_clients:
            await client.aclose()
        self._initialized = False
        logger.info("Tenant registry shut down")

    async def _build(self, tenant: Tenant) -> TenantServices:
        tenant_id = tenant.tenant_id
        routing = RoutingTable(tenant_id, self.store)
        await routing.load()
        contacts = ContactDirectory(tenant_id, self.store)
        await contacts.load()

        session = SessionManager(
            tenant=tenant,
            adapter_factory=lambda: self._adapter_factory(tenant),
            routing=routing,
            credentials=CredentialStore(self.data_dir / "tenants" / tenant_id / "auth", tenant_id),
            qr_ttl_seconds=self.config.qr_ttl_seconds,
            connect_timeout_seconds=self.config.connect_timeout_seconds,
            reconnect_policy=ReconnectPolicy(
                base_ms=self.config.reconnect_base_ms,
                cap_ms=self.config.reconnect_cap_ms,
                max_attempts=self.config.reconnect_max_attempts,
            ),
            sleep=self._sleep,
        )
        platform = self._platform_factory(tenant)
        bot_user_id = self.config.discord_bot_user_id or None
        tickets = TicketLifecycle(
            tenant=tenant,
            routing=routing,
            platform=platform,
            transcripts=self._transcript_factory(platform, tenant),
            session=session,
            bot_user_id=bot_user_id,
            transcript_timeout_seconds=self.config.transcript_timeout_seconds,
        )
        relay = MessageRelay(
            session=session,
            tickets=tickets,
            routing=routing,
            contacts=contacts,
            platform=platform,
            bot_user_id=bot_user_id,
        )
        session.on_message(relay.handle_inbound)

        return TenantServices(
            tenant=tenant,
            session=session,
            routing=routing,
            contacts=contacts,
            tickets=tickets,
            relay=relay,
            platform=platform,
        )

    # ==================== Lookups ====================

    def tenants(self) -> list[Tenant]:
        return [services.tenant for services in self._tenants.values()]

    def services(self, tenant_id: str) -> TenantServices:
        services = self._tenants.get(tenant_id)
        if services is None:
            raise TenantNotFound(tenant_id)
        return services

    def get(self, tenant_id: str) -> SessionManager:
        return self.services(tenant_id).session

    def tickets(self, tenant_id: str) -> TicketLifecycle:
        return self.services(tenant_id).tickets

    def relay(self, tenant_id: str) -> MessageRelay:
        return self.services(tenant_id).relay

    def status(self, tenant_id: str) -> SessionStatus:
        return self.get(tenant_id).status()

    # ==================== Tenant Management ====================

    async def create_tenant(
        self,
        workspace_id: str,
        ticket_category_id: str,
        transcript_channel_id: str | None = None,
        feedback_channel_id: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Tenant:
        """Register a workspace as a new tenant.

        Raises:
            TenantAlreadyExists: If the workspace is already registered
        """
        tenant_id = workspace_id
        if tenant_id in self._tenants:
            raise TenantAlreadyExists(tenant_id)

        tenant = Tenant(
            tenant_id=tenant_id,
            workspace_id=workspace_id,
            ticket_category_id=ticket_category_id,
            transcript_channel_id=transcript_channel_id,
            feedback_channel_id=feedback_channel_id,
            settings=TenantSettings.model_validate(settings or {}),
        )
        return await self.add_tenant(tenant)

    async def add_tenant(self, tenant: Tenant) -> Tenant:
        """Register a fully built tenant (used by imports)."""
        if tenant.tenant_id in self._tenants:
            raise TenantAlreadyExists(tenant.tenant_id)
        self._tenants[tenant.tenant_id] = await self._build(tenant)
        await self._persist()
        await self._persist_settings(tenant)
        logger.info("Created tenant", tenant_id=tenant.tenant_id)
        return tenant

    async def remove_tenant(self, tenant_id: str) -> None:
        """Log the tenant out and delete all of its documents."""
        services = self.services(tenant_id)
        try:
            await services.session.disconnect(log_out=True)
        except DisconnectError as e:
            logger.warning("Logout failed while removing tenant", tenant_id=tenant_id, error=e.message)
        await services.session.close()
        await services.platform.close()
        del self._tenants[tenant_id]
        await self._persist()
        await self.store.delete_prefix(f"tenants/{tenant_id}/")
        logger.info("Removed tenant", tenant_id=tenant_id)

    async def update_tenant(self, tenant_id: str, **fields: Any) -> Tenant:
        """Update channel configuration in place; live services see it at once."""
        tenant = self.services(tenant_id).tenant
        for name in ("ticket_category_id", "transcript_channel_id", "feedback_channel_id"):
            if name in fields and fields[name] is not None:
                setattr(tenant, name, fields[name])
        await self._persist()
        logger.info("Updated tenant", tenant_id=tenant_id, fields=sorted(fields))
        return tenant

    async def update_settings(self, tenant_id: str, patch: dict[str, Any]) -> TenantSettings:
        """Merge ``patch`` into the tenant settings and hot-reload them."""
        services = self.services(tenant_id)
        new_settings = services.tenant.settings.merged(patch)
        services.session.apply_settings(new_settings)
        await self._persist()
        await self._persist_settings(services.tenant)
        return new_settings

    async def rename_contact(self, tenant_id: str, conversation_id: str, name: str) -> ChannelHandle | None:
        """Rename a contact and its open ticket channel, if any."""
        services = self.services(tenant_id)
        await services.contacts.set_name(conversation_id, name)
        return await services.tickets.rename(conversation_id, name)

    # ==================== Connections ====================

    async def connect_all(self) -> dict[str, str]:
        """Connect every tenant that holds stored credentials.

        Tenants without credentials wait for an operator QR request. One
        tenant failing does not affect the others.

        Returns:
            Map of tenant id to resulting state or error message
        """
        outcome: dict[str, str] = {}
        targets = []
        for tenant_id, services in self._tenants.items():
            if services.session.credentials.has_credentials():
                targets.append(tenant_id)
            else:
                outcome[tenant_id] = services.session.state.value

        results = await asyncio.gather(
            *(self._tenants[tenant_id].session.connect() for tenant_id in targets),
            return_exceptions=True,
        )
        for tenant_id, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Tenant failed to connect", tenant_id=tenant_id, error=str(result))
                outcome[tenant_id] = f"error: {result}"
            else:
                outcome[tenant_id] = result.value
        logger.info("Connected tenants", attempted=len(targets), total=len(self._tenants))
        return outcome

    async def disconnect_all(self, log_out: bool = False) -> None:
        results = await asyncio.gather(
            *(services.session.disconnect(log_out) for services in self._tenants.values()),
            return_exceptions=True,
        )
        for tenant_id, result in zip(list(self._tenants), results):
            if isinstance(result, Exception):
                logger.warning("Tenant failed to disconnect", tenant_id=tenant_id, error=str(result))

    async def request_qr(self, tenant_id: str, timeout: float | None = None) -> QrChallenge:
        """Start a credential bootstrap and wait for its QR challenge.

        Raises:
            ConnectError: If the session connected without a QR or none
                arrived in time
        """
        session = self.get(tenant_id)
        if session.state is ConnectionState.READY:
            raise ConnectError("Tenant is already connected", tenant_id, {"state": "ready"})

        loop = asyncio.get_running_loop()
        received: asyncio.Future = loop.create_future()

        def deliver(challenge: QrChallenge) -> None:
            if not received.done():
                received.set_result(challenge)

        subscription = session.on_qr_code(deliver)
        try:
            if not received.done():
                state = await session.connect(force_credential_bootstrap=True)
                if state is ConnectionState.READY:
                    raise ConnectError("Tenant connected without a QR code", tenant_id, {"state": "ready"})
            return await asyncio.wait_for(received, timeout or self.config.connect_timeout_seconds)
        except asyncio.TimeoutError:
            raise ConnectError("Timed out waiting for a QR code", tenant_id)
        finally:
            subscription.cancel()

    # ==================== Persistence ====================

    async def _persist(self) -> None:
        data = {
            tenant_id: services.tenant.model_dump(mode="json", by_alias=True, exclude={"tenant_id"})
            for tenant_id, services in self._tenants.items()
        }
        try:
            await self.store.save(REGISTRY_DOCUMENT, data)
        except StorageError as e:
            logger.error("Failed to persist tenant registry", error=e.message)

    async def _persist_settings(self, tenant: Tenant) -> None:
        try:
            await self.store.save(
                tenant_document(tenant.tenant_id, SETTINGS_DOCUMENT),
                tenant.settings.model_dump(mode="json", by_alias=True),
            )
        except StorageError as e:
            logger.error("Failed to persist tenant settings", tenant_id=tenant.tenant_id, error=e.message)


# ==================== Default Wiring ====================


def build_registry(store: DocumentStore, config: Settings) -> TenantRegistry:
    """Registry wired to Evolution API and Discord from settings."""
    if config.is_production:
        missing = [
            name
            for name in ("evolution_api_key", "discord_bot_token", "webhook_api_key")
            if not getattr(config, name)
        ]
        if missing:
            raise ConfigurationError("Missing required settings", {"settings": missing})

    discord_http = httpx.AsyncClient(
        base_url=config.discord_api_url.rstrip("/"),
        headers={
            "Authorization": f"Bot {config.discord_bot_token}",
            "User-Agent": "DiscordBot (ticketbridge, 0.1.0)",
        },
        timeout=config.http_timeout_seconds,
    )

    def adapter_factory(tenant: Tenant) -> ConnectionAdapter:
        webhook_url = None
        if config.evolution_webhook_url:
            webhook_url = config.evolution_webhook_url.format(tenant_id=tenant.tenant_id)
        return EvolutionConnectionAdapter(
            instance_name=tenant.tenant_id,
            base_url=config.evolution_api_url,
            api_key=config.evolution_api_key,
            webhook_url=webhook_url,
            timeout=config.http_timeout_seconds,
        )

    def platform_factory(tenant: Tenant) -> CollaborationClient:
        return DiscordClient(guild_id=tenant.workspace_id, http_client=discord_http)

    return TenantRegistry(
        store=store,
        config=config,
        adapter_factory=adapter_factory,
        platform_factory=platform_factory,
        http_clients=[discord_http],
    )
