#!/usr/bin/env python3
"""
Seed script: creates an active, verified demo tenant and prints its credentials.
Run after migrations: python scripts/seed.py
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from affgate.config import settings
from affgate.database import async_session_maker
from affgate.engine.credentials import CredentialStore
from affgate.errors import DuplicateTenant
from affgate.models.enums import TenantStatus, VerificationMethod

DEMO_DOMAIN = "https://demo.affiliate-client.test"


async def seed():
    store = CredentialStore(async_session_maker, settings.api_key_hash_salt)
    try:
        tenant, api_secret = await store.create_tenant(
            DEMO_DOMAIN,
            domain_name="Demo Affiliate Site",
            verification_method=VerificationMethod.API,
            rate_limit_per_minute=60,
        )
    except DuplicateTenant:
        existing = await store.find_by_domain(DEMO_DOMAIN)
        print("Tenant already exists, regenerating credentials.")
        api_key, api_secret = await store.regenerate_credentials(existing.id)
        tenant = await store.require(existing.id)
    else:
        api_key = tenant.api_key

    # Skip the ownership proof for the demo domain
    await store.record_verification_attempt(tenant.id, success=True)
    await store.update_status(tenant.id, TenantStatus.ACTIVE, actor="seed")

    print("Seed complete!")
    print(f"Tenant ID: {tenant.id}")
    print(f"API Key: {api_key}")
    print(f"API Secret: {api_secret}")
    print("Example: curl -X POST http://localhost:8000/v1/authorize \\")
    print('  -H "Content-Type: application/json" \\')
    print(
        f'  -d \'{{"api_key":"{api_key}","api_secret":"{api_secret}",'
        '"endpoint":"/v1/codes/validate","scheme":"https"}\''
    )


if __name__ == "__main__":
    asyncio.run(seed())
