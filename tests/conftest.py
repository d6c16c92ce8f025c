"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime
from itertools import count

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from ticketbridge.api.main import create_app
from ticketbridge.core.config import Settings
from ticketbridge.core.exceptions import ChannelError, ChannelNotFound, PlatformError
from ticketbridge.models import (
    ChannelMessage,
    ConnectionEvent,
    ConnectionEventType,
    MediaAttachment,
    MediaReference,
    PermissionOverwrite,
    QrPayload,
    Tenant,
)
from ticketbridge.services.channels.base import ConnectionAdapter
from ticketbridge.services.platform.base import CollaborationClient, TranscriptService
from ticketbridge.services.registry import TenantRegistry
from ticketbridge.services.relay import MessageRelay
from ticketbridge.services.routing.contacts import ContactDirectory
from ticketbridge.services.routing.table import RoutingTable
from ticketbridge.services.session.manager import SessionManager
from ticketbridge.services.session.reconnection import ReconnectPolicy
from ticketbridge.services.tickets.lifecycle import TicketLifecycle
from ticketbridge.storage.credentials import CredentialStore
from ticketbridge.storage.memory import InMemoryDocumentStore


# ==================== Fakes ====================


class FakeConnectionAdapter(ConnectionAdapter):
    """Scriptable adapter.

    Behaviors on ``initialize``:
    - "ready": emit authenticated and ready
    - "qr": emit a QR code when bootstrapping, otherwise nothing
    - "idle": emit nothing
    - "fail": return False
    - "raise": raise ChannelError
    - "flap": emit ready, then drop the connection at once
    """

    _serial = count(1)

    def __init__(self, behavior: str = "ready") -> None:
        super().__init__()
        self.behavior = behavior
        self.serial = next(self._serial)
        self.bootstrap: bool | None = None
        self.sent: list[tuple[str, str]] = []
        self.sent_media: list[tuple[str, bytes, str, str | None]] = []
        self.disconnect_calls: list[bool] = []
        self.closed = False
        self.fail_disconnect = False
        self.fail_download = False
        self.fail_close = False
        self.webhooks: list[dict] = []

    @property
    def channel_name(self) -> str:
        return "fake"

    async def initialize(self, bootstrap_credentials: bool) -> bool:
        self.bootstrap = bootstrap_credentials
        if self.behavior == "fail":
            return False
        if self.behavior == "raise":
            raise ChannelError("Server unreachable", channel=self.channel_name)
        if self.behavior == "ready":
            self.emit(ConnectionEvent(ConnectionEventType.AUTHENTICATED))
            self.emit(ConnectionEvent(ConnectionEventType.READY))
        elif self.behavior == "flap":
            self.emit_ready()
            self.emit(ConnectionEvent.disconnected("connection_closed"))
        elif self.behavior == "qr" and bootstrap_credentials:
            self.emit_qr()
        return True

    def emit_qr(self, code: str | None = None) -> None:
        self.emit(ConnectionEvent(ConnectionEventType.QR, qr=QrPayload(code=code or f"qr-{self.serial}")))

    def emit_ready(self) -> None:
        self.emit(ConnectionEvent(ConnectionEventType.AUTHENTICATED))
        self.emit(ConnectionEvent(ConnectionEventType.READY))

    async def handle_webhook(self, payload: dict) -> None:
        self.webhooks.append(payload)
        if payload.get("event") == "ready":
            self.emit_ready()
        elif payload.get("event") == "broken":
            raise ChannelError("Malformed payload", channel=self.channel_name)

    async def disconnect(self, log_out: bool) -> None:
        self.disconnect_calls.append(log_out)
        if self.fail_disconnect:
            raise ChannelError("Logout failed", channel=self.channel_name)

    async def close(self) -> None:
        self.closed = True
        self.unsubscribe()
        if self.fail_close:
            raise ChannelError("Close failed", channel=self.channel_name)

    async def send_text(self, conversation_id: str, text: str) -> str | None:
        self.sent.append((conversation_id, text))
        return f"msg-{len(self.sent)}"

    async def send_media(
        self,
        conversation_id: str,
        data: bytes,
        mime_type: str,
        caption: str | None = None,
        filename: str | None = None,
    ) -> str | None:
        self.sent_media.append((conversation_id, data, mime_type, filename))
        return f"media-{len(self.sent_media)}"

    async def download_media(self, media: MediaReference) -> bytes:
        if self.fail_download:
            raise ChannelError("Media not available", channel=self.channel_name)
        return b"media:" + media.message_id.encode()


class FakeAdapterFactory:
    """Builds fake adapters; queued behaviors are used first."""

    def __init__(self, behavior: str = "ready") -> None:
        self.behavior = behavior
        self.queue: list[str] = []
        self.created: list[FakeConnectionAdapter] = []

    def __call__(self, *_) -> FakeConnectionAdapter:
        behavior = self.queue.pop(0) if self.queue else self.behavior
        adapter = FakeConnectionAdapter(behavior)
        self.created.append(adapter)
        return adapter

    @property
    def current(self) -> FakeConnectionAdapter:
        return self.created[-1]


class FakeCollaborationClient(CollaborationClient):
    """In-memory collaboration workspace."""

    def __init__(self) -> None:
        self._ids = count(1000)
        self.channels: dict[str, dict] = {}
        self.messages: dict[str, list[tuple[str, list[MediaAttachment] | None]]] = {}
        self.deleted: list[str] = []
        self.renamed: list[tuple[str, str]] = []
        self.downloads: list[str] = []
        self.unavailable: set[str] = set()
        self.create_calls = 0
        self.fail_delete = False

    async def create_channel(
        self,
        category_id: str,
        name: str,
        permissions: list[PermissionOverwrite],
        topic: str | None = None,
    ) -> str:
        self.create_calls += 1
        # Yield so that concurrent callers interleave
        await asyncio.sleep(0)
        channel_id = str(next(self._ids))
        self.channels[channel_id] = {
            "category_id": category_id,
            "name": name,
            "permissions": permissions,
            "topic": topic,
        }
        self.messages[channel_id] = []
        return channel_id

    async def delete_channel(self, channel_id: str, reason: str) -> None:
        if self.fail_delete:
            raise PlatformError("Missing permissions", status=403)
        if channel_id not in self.channels:
            raise ChannelNotFound(channel_id)
        del self.channels[channel_id]
        self.deleted.append(channel_id)

    async def rename_channel(self, channel_id: str, name: str, reason: str) -> None:
        if channel_id not in self.channels:
            raise ChannelNotFound(channel_id)
        self.channels[channel_id]["name"] = name
        self.renamed.append((channel_id, name))

    async def send_message(
        self,
        channel_id: str,
        content: str,
        files: list[MediaAttachment] | None = None,
    ) -> str:
        self.messages.setdefault(channel_id, []).append((content, files))
        return f"{channel_id}-{len(self.messages[channel_id])}"

    async def fetch_channel(self, channel_id: str) -> bool:
        return channel_id in self.channels

    async def fetch_messages(self, channel_id: str, limit: int = 500) -> list[ChannelMessage]:
        if channel_id not in self.channels:
            raise ChannelNotFound(channel_id)
        return [
            ChannelMessage(
                id=str(i),
                author_id="agent",
                author_name="Agent",
                content=content,
                timestamp=datetime(2024, 1, 1, 12, 0, i % 60),
            )
            for i, (content, _) in enumerate(self.messages[channel_id][:limit])
        ]

    async def download_attachment(self, url: str) -> bytes:
        self.downloads.append(url)
        if url in self.unavailable:
            raise PlatformError("Attachment unavailable", status=404)
        return b"attachment:" + url.encode()

    def contents(self, channel_id: str) -> list[str]:
        return [content for content, _ in self.messages.get(channel_id, [])]


class FakeTranscriptService(TranscriptService):
    """Records transcript requests and whether the channel still existed."""

    def __init__(self, client: FakeCollaborationClient, delay: float = 0.0) -> None:
        self.client = client
        self.delay = delay
        self.calls: list[tuple[str, str, bool]] = []
        self.error: Exception | None = None

    async def generate(self, channel_id: str, closed_by: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.calls.append((channel_id, closed_by, channel_id in self.client.channels))
        if self.error is not None:
            raise self.error


async def drain_tasks(session: SessionManager) -> None:
    """Wait for the session's background tasks to finish."""
    while session._tasks:
        await asyncio.wait(list(session._tasks))


# ==================== Core Fixtures ====================


@pytest.fixture
def store():
    """Create in-memory document store for tests."""
    return InMemoryDocumentStore()


@pytest.fixture
def tenant():
    """Create a test tenant."""
    return Tenant(
        tenant_id="guild-1",
        workspace_id="guild-1",
        ticket_category_id="category-1",
        transcript_channel_id="transcripts-1",
    )


@pytest.fixture
def credentials(tmp_path, tenant):
    return CredentialStore(tmp_path / "auth", tenant.tenant_id)


@pytest_asyncio.fixture
async def routing(store, tenant):
    table = RoutingTable(tenant.tenant_id, store)
    await table.load()
    return table


@pytest_asyncio.fixture
async def contacts(store, tenant):
    directory = ContactDirectory(tenant.tenant_id, store)
    await directory.load()
    return directory


@pytest.fixture
def adapter_factory():
    return FakeAdapterFactory()


@pytest.fixture
def sleeps():
    """Delays requested by reconnection sequences."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


@pytest.fixture
def make_session(tenant, adapter_factory, routing, credentials, fake_sleep):
    """Factory for session managers wired to fakes."""

    def make(**overrides) -> SessionManager:
        options = {
            "tenant": tenant,
            "adapter_factory": adapter_factory,
            "routing": routing,
            "credentials": credentials,
            "qr_ttl_seconds": 45.0,
            "connect_timeout_seconds": 1.0,
            "reconnect_policy": ReconnectPolicy(base_ms=1000, cap_ms=30000, max_attempts=5),
            "sleep": fake_sleep,
        }
        options.update(overrides)
        return SessionManager(**options)

    return make


@pytest_asyncio.fixture
async def session(make_session):
    manager = make_session()
    yield manager
    await manager.close()


@pytest.fixture
def platform():
    return FakeCollaborationClient()


@pytest.fixture
def transcripts(platform):
    return FakeTranscriptService(platform)


@pytest.fixture
def tickets(tenant, routing, platform, transcripts, session):
    return TicketLifecycle(
        tenant=tenant,
        routing=routing,
        platform=platform,
        transcripts=transcripts,
        session=session,
        bot_user_id="bot-1",
        transcript_timeout_seconds=0.5,
    )


@pytest.fixture
def relay(session, tickets, routing, contacts, platform):
    return MessageRelay(
        session=session,
        tickets=tickets,
        routing=routing,
        contacts=contacts,
        platform=platform,
        bot_user_id="bot-1",
    )


# ==================== Registry and API Fixtures ====================


@pytest.fixture
def config(tmp_path):
    """Settings pointing at a temporary data directory."""
    return Settings(
        data_dir=tmp_path / "data",
        auto_connect=False,
        connect_timeout_seconds=1.0,
        reconnect_max_attempts=2,
        transcript_timeout_seconds=0.5,
        discord_bot_user_id="bot-1",
    )


@pytest_asyncio.fixture
async def registry(store, config, adapter_factory, platform, fake_sleep):
    """Create an initialized tenant registry backed by fakes."""
    registry = TenantRegistry(
        store=store,
        config=config,
        adapter_factory=adapter_factory,
        platform_factory=lambda tenant: platform,
        transcript_factory=lambda client, tenant: FakeTranscriptService(client),
        sleep=fake_sleep,
    )
    await registry.init()
    yield registry
    await registry.shutdown()


@pytest.fixture
def app(registry):
    """Create test application."""
    return create_app(registry)


@pytest_asyncio.fixture
async def client(app):
    """Create test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def drain():
    """Awaitable that waits for a session's background tasks."""
    return drain_tasks
