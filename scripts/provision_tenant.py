#!/usr/bin/env python3
"""CLI script to provision a new tenant.

Usage:
    python scripts/provision_tenant.py --slug acme --name "Acme Corp" --owner-email ops@acme.com
    python scripts/provision_tenant.py --slug acme --name "Acme Corp" --owner-email ops@acme.com \
        --plan STARTER --domain kb.acme.com

Connects directly to the database using DATABASE_URL from environment or .env file.
Creates the tables if needed, inserts the tenant and its OWNER membership,
and prints a short-lived access token for the owner.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.threadbase
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def provision(
    slug: str,
    name: str,
    owner_email: str,
    owner_name: str | None,
    plan: str,
    domain: str | None,
) -> None:
    """Provision a tenant by calling the provisioning service directly."""
    from src.threadbase.core.database import close_db, get_session_factory, init_db
    from src.threadbase.core.scoped import TenantScopedAccessor
    from src.threadbase.core.security import create_access_token
    from src.threadbase.schemas.tenant import MemberRole, PlanTier
    from src.threadbase.services.audit import AuditRecorder
    from src.threadbase.services.tenant_provisioning import provision_tenant

    await init_db()
    session_factory = get_session_factory()

    print(f"Provisioning tenant: slug={slug}, name={name}, plan={plan}")
    try:
        tenant = await provision_tenant(
            session_factory,
            name=name,
            slug=slug,
            owner_email=owner_email,
            owner_name=owner_name,
            plan=PlanTier(plan),
            domain=domain,
            audit=AuditRecorder(session_factory),
        )
        owners = [
            m
            for m in await TenantScopedAccessor(session_factory, tenant.id).list_memberships()
            if m.role == MemberRole.OWNER
        ]
    finally:
        await close_db()

    print("Tenant provisioned successfully:")
    print(f"  ID:        {tenant.id}")
    print(f"  Slug:      {tenant.slug}")
    print(f"  Subdomain: {tenant.subdomain}")
    print(f"  Domain:    {tenant.domain or '-'}")
    print(f"  Plan:      {tenant.plan.value}")
    if owners:
        print(f"  Owner:     {owner_email} ({owners[0].user_id})")
        print(f"  Token:     {create_access_token({'sub': owners[0].user_id})}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a new tenant")
    parser.add_argument("--slug", required=True, help="Tenant slug, also the subdomain (e.g., acme)")
    parser.add_argument("--name", required=True, help="Tenant display name (e.g., 'Acme Corp')")
    parser.add_argument("--owner-email", required=True, help="Email of the tenant OWNER")
    parser.add_argument("--owner-name", default=None, help="Display name of the OWNER")
    parser.add_argument(
        "--plan",
        default="FREE",
        choices=["FREE", "STARTER", "BUSINESS", "ENTERPRISE"],
        help="Subscription plan",
    )
    parser.add_argument("--domain", default=None, help="Custom domain (e.g., kb.acme.com)")
    args = parser.parse_args()

    asyncio.run(
        provision(args.slug, args.name, args.owner_email, args.owner_name, args.plan, args.domain)
    )


if __name__ == "__main__":
    main()
