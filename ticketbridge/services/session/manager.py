"""Per-tenant messaging session manager."""

import asyncio
import inspect
from functools import partial
from typing import Any, Awaitable, Callable

import structlog

from ticketbridge.core.exceptions import AppException, ConnectError, DisconnectError, NotConnected
from ticketbridge.models import (
    ConnectionEvent,
    ConnectionEventType,
    ConnectionState,
    InboundMessage,
    MediaReference,
    QrChallenge,
    QrPayload,
    SessionStatus,
    Tenant,
    TenantSettings,
)
from ticketbridge.services.channels.base import ConnectionAdapter
from ticketbridge.services.routing.table import RoutingTable
from ticketbridge.services.session.reconnection import (
    ReconnectionController,
    ReconnectPolicy,
    SleepFn,
)
from ticketbridge.storage.credentials import CredentialStore

logger = structlog.get_logger()

AdapterFactory = Callable[[], ConnectionAdapter]

# Disconnect reasons that end the session instead of reconnecting
LOGOUT_REASONS = frozenset({"logout", "logged_out"})
USER_DISCONNECT_REASON = "user_disconnected"


class Subscription:
    """Handle returned by the ``on_*`` methods."""

    def __init__(self, listeners: list[Callable[..., Any]], callback: Callable[..., Any]) -> None:
        self._listeners = listeners
        self._callback = callback

    @property
    def active(self) -> bool:
        return self._callback in self._listeners

    def cancel(self) -> None:
        if self._callback in self._listeners:
            self._listeners.remove(self._callback)


class SessionManager:
    """Drives one tenant's connection state machine.

    The manager owns at most one adapter at a time. Every connect or
    reconnect builds a fresh adapter from the factory and subscribes to it
    once; events from any earlier adapter are ignored. State transitions run
    synchronously inside the event handler, so they never interleave.
    """

    def __init__(
        self,
        tenant: Tenant,
        adapter_factory: AdapterFactory,
        routing: RoutingTable,
        credentials: CredentialStore,
        qr_ttl_seconds: float = 45.0,
        connect_timeout_seconds: float = 30.0,
        reconnect_policy: ReconnectPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.tenant = tenant
        self.routing = routing
        self.credentials = credentials
        self.qr_ttl_seconds = qr_ttl_seconds
        self.connect_timeout_seconds = connect_timeout_seconds

        self._adapter_factory = adapter_factory
        self._adapter: ConnectionAdapter | None = None
        self._bootstrap = False
        self._state = ConnectionState.DISCONNECTED
        self._last_error: str | None = None
        self._settle: asyncio.Future | None = None

        self._qr: QrChallenge | None = None
        self._qr_timer: asyncio.TimerHandle | None = None

        self._qr_listeners: list[Callable[..., Any]] = []
        self._ready_listeners: list[Callable[..., Any]] = []
        self._disconnect_listeners: list[Callable[..., Any]] = []
        self._message_listeners: list[Callable[..., Any]] = []
        self._message_tail: asyncio.Future | None = None
        self._tasks: set[asyncio.Future] = set()

        self.reconnection = ReconnectionController(
            tenant_id=tenant.tenant_id,
            attempt=self._reconnect_once,
            on_exhausted=self._on_reconnect_exhausted,
            policy=reconnect_policy,
            sleep=sleep,
        )

    # ==================== Properties ====================

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def adapter(self) -> ConnectionAdapter | None:
        return self._adapter

    @property
    def settings(self) -> TenantSettings:
        return self.tenant.settings

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def qr(self) -> QrChallenge | None:
        """The live QR challenge, if one has been issued and not expired."""
        if self._qr is not None and self._qr.is_expired():
            return None
        return self._qr

    def status(self) -> SessionStatus:
        return SessionStatus(
            tenant_id=self.tenant_id,
            state=self._state,
            qr=self.qr,
            reconnect=self.reconnection.state.model_copy(),
            last_error=self._last_error,
            open_tickets=len(self.routing),
        )

    def apply_settings(self, settings: TenantSettings) -> None:
        """Swap in new tenant settings; takes effect on the next message."""
        self.tenant.settings = settings
        logger.info("Applied tenant settings", tenant_id=self.tenant_id)

    # ==================== Subscriptions ====================

    def on_qr_code(self, callback: Callable[[QrChallenge], Any]) -> Subscription:
        """Subscribe to QR challenges.

        A live challenge is delivered to the new subscriber immediately.
        """
        self._qr_listeners.append(callback)
        live = self.qr
        if live is not None:
            self._invoke(callback, live)
        return Subscription(self._qr_listeners, callback)

    def on_ready(self, callback: Callable[[], Any]) -> Subscription:
        self._ready_listeners.append(callback)
        return Subscription(self._ready_listeners, callback)

    def on_disconnect(self, callback: Callable[[str], Any]) -> Subscription:
        """Subscribe to connection loss; the callback receives the reason."""
        self._disconnect_listeners.append(callback)
        return Subscription(self._disconnect_listeners, callback)

    def on_message(self, callback: Callable[[InboundMessage], Any]) -> Subscription:
        """Subscribe to inbound messages, delivered strictly in order."""
        self._message_listeners.append(callback)
        return Subscription(self._message_listeners, callback)

    # ==================== Connect / Disconnect ====================

    async def connect(self, force_credential_bootstrap: bool = False) -> ConnectionState:
        """Bring the session up.

        Args:
            force_credential_bootstrap: Request a new QR challenge even if
                stored credentials exist

        Returns:
            READY, or QR_PENDING when a QR challenge awaits scanning

        Raises:
            ConnectError: If the session is logged out, the adapter failed to
                start, or neither state was reached in time
        """
        state = self._state
        if state is ConnectionState.READY:
            return state

        if state is ConnectionState.LOGGED_OUT and not force_credential_bootstrap:
            raise ConnectError(
                "Session is logged out; re-authenticate with a new QR code",
                self.tenant_id,
                {"state": state.value},
            )

        if state in (ConnectionState.INITIALIZING, ConnectionState.AUTHENTICATED) and self._settle_pending():
            return await self._await_settle()

        if state is ConnectionState.QR_PENDING and self.qr is not None:
            return state

        if state is ConnectionState.FAILED:
            self.reconnection.reset()
        self.reconnection.cancel()

        bootstrap = force_credential_bootstrap or not self.credentials.has_credentials()
        self._last_error = None
        try:
            started = await self._start_adapter(bootstrap, ConnectionState.INITIALIZING)
        except Exception as e:
            logger.warning("Connection adapter failed to start", tenant_id=self.tenant_id, error=str(e))
            self._last_error = e.message if isinstance(e, AppException) else str(e)
            started = False

        if not started:
            self._last_error = self._last_error or "Adapter failed to initialize"
            if self._state is ConnectionState.INITIALIZING:
                self._set_state(ConnectionState.RECONNECTING)
                self._resolve_settle(ConnectionState.RECONNECTING)
                self.reconnection.schedule()
            raise ConnectError(
                f"Failed to initialize connection: {self._last_error}",
                self.tenant_id,
                {"state": self._state.value},
            )

        return await self._await_settle()

    async def disconnect(self, log_out: bool = False) -> None:
        """Take the session down.

        Args:
            log_out: Also log out of the network and purge stored credentials

        Raises:
            DisconnectError: If the adapter failed to disconnect; local state
                is cleaned up regardless
        """
        self.reconnection.cancel()
        self._clear_qr()

        adapter = self._adapter
        self._adapter = None
        if adapter is not None:
            adapter.unsubscribe()

        if log_out:
            target = ConnectionState.LOGGED_OUT
        elif self._state is ConnectionState.LOGGED_OUT:
            target = ConnectionState.LOGGED_OUT
        else:
            target = ConnectionState.DISCONNECTED
        self._set_state(target)
        self._resolve_settle(target)

        error: Exception | None = None
        if adapter is not None:
            try:
                await adapter.disconnect(log_out)
            except Exception as e:
                logger.error("Adapter disconnect failed", tenant_id=self.tenant_id, error=str(e))
                error = e
            try:
                await adapter.close()
            except Exception as e:
                logger.error("Adapter close failed", tenant_id=self.tenant_id, error=str(e))

        if log_out:
            await self.credentials.purge()

        self._notify(self._disconnect_listeners, "logout" if log_out else USER_DISCONNECT_REASON)
        logger.info("Session disconnected", tenant_id=self.tenant_id, log_out=log_out)

        if error is not None:
            raise DisconnectError(f"Failed to disconnect cleanly: {error}", self.tenant_id) from error

    async def close(self) -> None:
        """Release the adapter and pending work without changing credentials."""
        self.reconnection.cancel()
        self._clear_qr()
        adapter = self._adapter
        self._adapter = None
        if adapter is not None:
            adapter.unsubscribe()
            await adapter.close()
        self._resolve_settle(self._state)
        for task in list(self._tasks):
            task.cancel()

    # ==================== Messaging ====================

    def _require_ready(self) -> ConnectionAdapter:
        if self._state is not ConnectionState.READY or self._adapter is None:
            raise NotConnected(self.tenant_id, self._state.value)
        return self._adapter

    async def send_text(self, conversation_id: str, text: str) -> str | None:
        return await self._require_ready().send_text(conversation_id, text)

    async def send_media(
        self,
        conversation_id: str,
        data: bytes,
        mime_type: str,
        caption: str | None = None,
        filename: str | None = None,
    ) -> str | None:
        return await self._require_ready().send_media(conversation_id, data, mime_type, caption, filename)

    async def download_media(self, media: MediaReference) -> bytes:
        return await self._require_ready().download_media(media)

    # ==================== Adapter Management ====================

    async def _start_adapter(self, bootstrap: bool, state: ConnectionState) -> bool:
        self._detach_adapter()
        adapter = self._adapter_factory()
        self._adapter = adapter
        self._bootstrap = bootstrap
        self._settle = asyncio.get_running_loop().create_future()
        adapter.subscribe(partial(self._on_event, adapter))
        self._set_state(state)

        logger.info(
            "Initializing connection",
            tenant_id=self.tenant_id,
            bootstrap=bootstrap,
            state=state.value,
        )
        return await adapter.initialize(bootstrap)

    def _detach_adapter(self) -> None:
        adapter = self._adapter
        self._adapter = None
        if adapter is not None:
            adapter.unsubscribe()
            self._spawn(adapter.close())

    def _settle_pending(self) -> bool:
        return self._settle is not None and not self._settle.done()

    def _resolve_settle(self, state: ConnectionState) -> None:
        if self._settle_pending():
            self._settle.set_result(state)

    async def _await_settle(self) -> ConnectionState:
        settle = self._settle
        try:
            result = await asyncio.wait_for(asyncio.shield(settle), self.connect_timeout_seconds)
        except asyncio.TimeoutError:
            raise ConnectError(
                "Timed out waiting for the connection to become ready",
                self.tenant_id,
                {"state": self._state.value},
            )
        if result in (ConnectionState.READY, ConnectionState.QR_PENDING):
            return result
        raise ConnectError(
            f"Connection ended in state {result.value}",
            self.tenant_id,
            {"state": result.value, "last_error": self._last_error},
        )

    async def _reconnect_once(self) -> bool:
        if self._state is not ConnectionState.RECONNECTING:
            return True
        try:
            started = await self._start_adapter(False, ConnectionState.RECONNECTING)
        except Exception as e:
            self._last_error = e.message if isinstance(e, AppException) else str(e)
            logger.warning("Reconnection attempt failed", tenant_id=self.tenant_id, error=self._last_error)
            return False
        if not started:
            self._last_error = "Adapter failed to initialize"
            return False
        try:
            result = await asyncio.wait_for(asyncio.shield(self._settle), self.connect_timeout_seconds)
        except asyncio.TimeoutError:
            self._last_error = "Timed out waiting for reconnection"
            return False
        # The adapter may have dropped again after settling READY
        return result is ConnectionState.READY and self._state is ConnectionState.READY

    def _on_reconnect_exhausted(self) -> None:
        self._last_error = (
            f"Reconnection failed after {self.reconnection.policy.max_attempts} attempts"
        )
        self._detach_adapter()
        self._set_state(ConnectionState.FAILED)
        self._resolve_settle(ConnectionState.FAILED)
        self._notify(self._disconnect_listeners, "reconnect_exhausted")

    # ==================== Event Handling ====================

    def _on_event(self, adapter: ConnectionAdapter, event: ConnectionEvent) -> None:
        if adapter is not self._adapter:
            logger.debug(
                "Ignoring event from stale adapter",
                tenant_id=self.tenant_id,
                event=event.type.value,
            )
            return

        if event.type is ConnectionEventType.QR:
            self._handle_qr(event.qr)
        elif event.type is ConnectionEventType.AUTHENTICATED:
            self._handle_authenticated()
        elif event.type is ConnectionEventType.READY:
            self._handle_ready()
        elif event.type is ConnectionEventType.AUTH_FAILURE:
            self._enter_logged_out(event.reason or "auth_failure")
        elif event.type is ConnectionEventType.DISCONNECTED:
            self._handle_disconnected(event)
        elif event.type is ConnectionEventType.MESSAGE and event.message is not None:
            self._dispatch_message(event.message)

    def _handle_qr(self, payload: QrPayload | None) -> None:
        if payload is None:
            return
        if not self._bootstrap:
            logger.warning("Ignoring QR code; credential bootstrap not requested", tenant_id=self.tenant_id)
            return
        if self._state not in (ConnectionState.INITIALIZING, ConnectionState.QR_PENDING):
            logger.debug("Ignoring QR code", tenant_id=self.tenant_id, state=self._state.value)
            return

        self._clear_qr()
        challenge = QrChallenge.issue(payload.code, self.qr_ttl_seconds, payload.image)
        self._qr = challenge
        self._qr_timer = asyncio.get_running_loop().call_later(
            self.qr_ttl_seconds,
            self._expire_qr,
            challenge,
        )
        self._set_state(ConnectionState.QR_PENDING)
        self._resolve_settle(ConnectionState.QR_PENDING)
        logger.info("QR code issued", tenant_id=self.tenant_id, expires_at=challenge.expires_at.isoformat())
        self._notify(self._qr_listeners, challenge)

    def _expire_qr(self, challenge: QrChallenge) -> None:
        if self._qr is challenge:
            self._qr = None
            self._qr_timer = None
            logger.info("QR code expired", tenant_id=self.tenant_id)

    def _clear_qr(self) -> None:
        if self._qr_timer is not None:
            self._qr_timer.cancel()
            self._qr_timer = None
        self._qr = None

    def _handle_authenticated(self) -> None:
        if self._state in (ConnectionState.INITIALIZING, ConnectionState.QR_PENDING):
            self._set_state(ConnectionState.AUTHENTICATED)

    def _handle_ready(self) -> None:
        self._clear_qr()
        self.reconnection.reset()
        self._last_error = None
        self._set_state(ConnectionState.READY)
        self._spawn(self.credentials.mark_authenticated())
        self._resolve_settle(ConnectionState.READY)
        self._notify(self._ready_listeners)

    def _enter_logged_out(self, reason: str) -> None:
        self.reconnection.cancel()
        self._clear_qr()
        self._last_error = f"Authentication failed: {reason}"
        self._detach_adapter()
        self._set_state(ConnectionState.LOGGED_OUT)
        self._spawn(self.credentials.purge())
        self._resolve_settle(ConnectionState.LOGGED_OUT)
        self._notify(self._disconnect_listeners, reason)

    def _handle_disconnected(self, event: ConnectionEvent) -> None:
        reason = event.reason or "unknown"
        if reason in LOGOUT_REASONS or event.status_code == 401:
            self._enter_logged_out(reason)
            return

        if self._state in (
            ConnectionState.DISCONNECTED,
            ConnectionState.LOGGED_OUT,
            ConnectionState.FAILED,
        ):
            return

        if reason == USER_DISCONNECT_REASON or self._state is ConnectionState.QR_PENDING:
            self._clear_qr()
            self._detach_adapter()
            self._set_state(ConnectionState.DISCONNECTED)
            self._resolve_settle(ConnectionState.DISCONNECTED)
            self._notify(self._disconnect_listeners, reason)
            return

        self._last_error = f"Disconnected: {reason}"
        was_reconnecting = self._state is ConnectionState.RECONNECTING
        self._set_state(ConnectionState.RECONNECTING)
        self._resolve_settle(ConnectionState.RECONNECTING)
        if not was_reconnecting:
            self._notify(self._disconnect_listeners, reason)
        self.reconnection.schedule()

    def _dispatch_message(self, message: InboundMessage) -> None:
        previous = self._message_tail
        self._message_tail = self._spawn(self._deliver_message(previous, message))

    async def _deliver_message(self, previous: asyncio.Future | None, message: InboundMessage) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        for callback in list(self._message_listeners):
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Message handler failed",
                    tenant_id=self.tenant_id,
                    message_id=message.message_id,
                )

    # ==================== Helpers ====================

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info(
            "Connection state changed",
            tenant_id=self.tenant_id,
            previous=self._state.value,
            state=state.value,
        )
        self._state = state

    def _notify(self, listeners: list[Callable[..., Any]], *args: Any) -> None:
        for callback in list(listeners):
            self._invoke(callback, *args)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Session listener failed", tenant_id=self.tenant_id)
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background task failed",
                tenant_id=self.tenant_id,
                error=str(task.exception()),
            )
