"""FastAPI dependencies for dependency injection."""

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from ticketbridge.core.config import Settings, settings
from ticketbridge.services.registry import TenantRegistry, TenantServices


def get_registry(request: Request) -> TenantRegistry:
    """Get the tenant registry attached to the running application."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tenant registry is not initialized",
        )
    return registry


# Type aliases for cleaner dependency injection
RegistryDep = Annotated[TenantRegistry, Depends(get_registry)]
SettingsDep = Annotated[Settings, Depends(lambda: settings)]


def get_tenant_services(tenant_id: str, registry: RegistryDep) -> TenantServices:
    """Get a tenant's services from the path parameter."""
    return registry.services(tenant_id)


TenantDep = Annotated[TenantServices, Depends(get_tenant_services)]


async def verify_webhook_key(
    apikey: str | None = Header(None),
    authorization: str | None = Header(None),
) -> bool:
    """Verify the shared webhook key.

    Accepts the key in the ``apikey`` header or as a Bearer token. When no
    key is configured, webhooks are accepted in development only.
    """
    expected = settings.webhook_api_key
    if not expected:
        if settings.is_development:
            return True
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook key not configured",
        )

    provided = apikey
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]

    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook key",
        )
    return True


WebhookAuthDep = Annotated[bool, Depends(verify_webhook_key)]
