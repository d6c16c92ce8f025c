"""Custom exceptions for the application."""

from typing import Any


class AppException(Exception):
    """Base exception for application errors."""

    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationError(AppException):
    """Raised when there's a configuration problem."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class StorageError(AppException):
    """Raised when a persisted document cannot be read or written."""

    status_code = 500

    def __init__(self, message: str, document: str | None = None) -> None:
        super().__init__(
            message,
            code="STORAGE_ERROR",
            details={"document": document} if document else {},
        )


# ==================== Tenants ====================


class TenantNotFound(AppException):
    """Raised when a tenant is not found."""

    status_code = 404

    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            f"Tenant not found: {tenant_id}",
            code="TENANT_NOT_FOUND",
            details={"tenant_id": tenant_id},
        )


class TenantAlreadyExists(AppException):
    """Raised when creating a tenant whose workspace is already registered."""

    status_code = 409

    def __init__(self, tenant_id: str) -> None:
        super().__init__(
            f"Tenant already exists: {tenant_id}",
            code="TENANT_ALREADY_EXISTS",
            details={"tenant_id": tenant_id},
        )


# ==================== Routing ====================


class InvalidConversationId(AppException):
    """Raised when an address cannot be normalized to a conversation id."""

    def __init__(self, raw: str) -> None:
        super().__init__(
            f"Invalid conversation id: {raw!r}",
            code="INVALID_CONVERSATION_ID",
            details={"raw": raw},
        )


class RoutingConflict(AppException):
    """Raised when a channel is already routed to another conversation."""

    status_code = 409

    def __init__(self, channel_id: str, owner: str, conversation_id: str) -> None:
        super().__init__(
            f"Channel {channel_id} is already routed to conversation {owner}",
            code="ROUTING_CONFLICT",
            details={
                "channel_id": channel_id,
                "owner": owner,
                "conversation_id": conversation_id,
            },
        )


# ==================== Session ====================


class ConnectError(AppException):
    """Raised when a tenant session cannot reach READY or QR_PENDING."""

    status_code = 409

    def __init__(self, message: str, tenant_id: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            code="CONNECT_ERROR",
            details={"tenant_id": tenant_id, **(details or {})},
        )


class DisconnectError(AppException):
    """Raised when the messaging client failed to shut down cleanly."""

    status_code = 502

    def __init__(self, message: str, tenant_id: str) -> None:
        super().__init__(
            message,
            code="DISCONNECT_ERROR",
            details={"tenant_id": tenant_id},
        )


class NotConnected(AppException):
    """Raised when sending through a session that is not READY."""

    status_code = 409

    def __init__(self, tenant_id: str, state: str) -> None:
        super().__init__(
            f"Tenant {tenant_id} is not connected (state: {state})",
            code="NOT_CONNECTED",
            details={"tenant_id": tenant_id, "state": state},
        )


class ChannelError(AppException):
    """Raised when messaging network operations fail."""

    status_code = 502

    def __init__(self, message: str, channel: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            code="CHANNEL_ERROR",
            details={"channel": channel, **(details or {})},
        )


# ==================== Tickets ====================


class TicketNotFound(AppException):
    """Raised when no ticket is open for a conversation or channel."""

    status_code = 404

    def __init__(self, reference: str) -> None:
        super().__init__(
            f"No open ticket for {reference}",
            code="TICKET_NOT_FOUND",
            details={"reference": reference},
        )


class CloseError(AppException):
    """Raised when a ticket could not be closed; the routing entry is kept."""

    status_code = 409

    def __init__(self, message: str, conversation_id: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            code="CLOSE_ERROR",
            details={"conversation_id": conversation_id, **(details or {})},
        )


# ==================== Collaboration platform ====================


class PlatformError(AppException):
    """Raised when the collaboration platform rejects a request."""

    status_code = 502

    def __init__(
        self,
        message: str,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="PLATFORM_ERROR",
            details={"status": status, **(details or {})},
        )
        self.status = status


class PlatformUnavailable(PlatformError):
    """Transient platform failure (rate limit, 5xx, transport); retried."""


class ChannelNotFound(PlatformError):
    """Raised when a channel no longer exists on the platform."""

    def __init__(self, channel_id: str) -> None:
        super().__init__(
            f"Channel not found: {channel_id}",
            status=404,
            details={"channel_id": channel_id},
        )
        self.code = "CHANNEL_NOT_FOUND"
