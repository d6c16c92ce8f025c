#!/usr/bin/env python3
"""Script to import tenants from a legacy instance_configs.json file."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ticketbridge.core.config import settings
from ticketbridge.core.exceptions import TenantAlreadyExists
from ticketbridge.models import Tenant
from ticketbridge.services.registry import build_registry
from ticketbridge.storage.json_file import JsonFileStore


def load_legacy_tenants(path: Path) -> list[Tenant]:
    """Parse every usable entry of a legacy config file."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    tenants = []
    for guild_id, entry in raw.items():
        if not isinstance(entry, dict) or not entry.get("categoryId"):
            print(f"  Skipping {guild_id}: no ticket category configured")
            continue
        tenants.append(Tenant.from_legacy(guild_id, entry))
    return tenants


async def import_configs(path: Path, data_dir: Path, dry_run: bool = False) -> int:
    """Import legacy configs into the tenant registry.

    Returns:
        Number of tenants imported
    """
    tenants = load_legacy_tenants(path)
    print(f"Found {len(tenants)} tenant(s) in {path}")
    if dry_run:
        for tenant in tenants:
            print(f"  Would import {tenant.tenant_id} (category {tenant.ticket_category_id})")
        return 0

    config = settings.model_copy(update={"data_dir": data_dir})
    registry = build_registry(JsonFileStore(data_dir), config)
    await registry.init()

    imported = 0
    try:
        for tenant in tenants:
            try:
                await registry.add_tenant(tenant)
            except TenantAlreadyExists:
                print(f"  {tenant.tenant_id} already registered, skipping")
                continue
            imported += 1
            print(f"  Imported {tenant.tenant_id}")
    finally:
        await registry.shutdown()

    return imported


def main():
    parser = argparse.ArgumentParser(description="Import tenants from instance_configs.json")
    parser.add_argument("config_file", type=Path, help="Path to instance_configs.json")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=settings.data_dir,
        help=f"Data directory (default: {settings.data_dir})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only list what would be imported")
    args = parser.parse_args()

    if not args.config_file.exists():
        print(f"Error: {args.config_file} not found")
        sys.exit(1)

    imported = asyncio.run(import_configs(args.config_file, args.data_dir, args.dry_run))
    print(f"Done: {imported} tenant(s) imported")


if __name__ == "__main__":
    main()
