"""Per-tenant messaging credential state on disk."""

import asyncio
import json
import shutil
from datetime import datetime
from pathlib import Path

import structlog

logger = structlog.get_logger()

MARKER_FILE = "session.json"


class CredentialStore:
    """Tracks whether a tenant holds reusable messaging credentials.

    The messaging server keeps the actual session keys; this directory records
    that a session was authenticated so the next connect can resume silently.
    Purging it forces the next connect through a fresh QR challenge.
    """

    def __init__(self, auth_dir: Path | str, tenant_id: str) -> None:
        self.auth_dir = Path(auth_dir)
        self.tenant_id = tenant_id

    @property
    def marker(self) -> Path:
        return self.auth_dir / MARKER_FILE

    def has_credentials(self) -> bool:
        return self.marker.exists()

    async def mark_authenticated(self) -> None:
        """Record that the current session reached READY."""
        payload = json.dumps({"tenantId": self.tenant_id, "authenticatedAt": datetime.utcnow().isoformat()})

        def write() -> None:
            self.auth_dir.mkdir(parents=True, exist_ok=True)
            self.marker.write_text(payload, encoding="utf-8")

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            logger.warning("Failed to record credentials", tenant_id=self.tenant_id, error=str(e))

    async def purge(self) -> None:
        """Delete stored credentials."""
        if not self.auth_dir.exists():
            return
        await asyncio.to_thread(shutil.rmtree, self.auth_dir, True)
        logger.info("Purged stored credentials", tenant_id=self.tenant_id)
