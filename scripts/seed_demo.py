from __future__ import annotations

import asyncio
from uuid import uuid4

from sqlalchemy import select

from mailshield.domain.models import DomainUser, DomainWideConfig, IntegrationConnection
from mailshield.persistence.db import SessionLocal


DEMO_TENANT_ID = "t-demo"
DEMO_MAILBOX = "demo@example.com"
DEMO_DOMAIN_USERS = ("alice@example.com", "bob@example.com")


async def seed() -> None:
    # Pairs with MAILBOX_PROVIDER_MODE=fake for local end-to-end runs.
    async with SessionLocal() as session:
        existing = await session.execute(
            select(IntegrationConnection).where(IntegrationConnection.tenant_id == DEMO_TENANT_ID)
        )
        if existing.scalars().first() is not None:
            print("demo tenant already seeded")
            return
        session.add(
            IntegrationConnection(
                id=uuid4().hex,
                tenant_id=DEMO_TENANT_ID,
                provider="gmail",
                status="connected",
                connected_email=DEMO_MAILBOX,
                refresh_token="demo-refresh",
                sync_cursor="100",
            )
        )
        config = DomainWideConfig(
            id=uuid4().hex,
            tenant_id=DEMO_TENANT_ID,
            provider="google_workspace",
            status="active",
            domain="example.com",
            service_account_key_json="{}",
        )
        session.add(config)
        for email in DEMO_DOMAIN_USERS:
            session.add(
                DomainUser(
                    id=uuid4().hex,
                    domain_config_id=config.id,
                    tenant_id=DEMO_TENANT_ID,
                    email=email,
                    sync_cursor="100",
                )
            )
        await session.commit()
        print(f"seeded tenant_id={DEMO_TENANT_ID} mailbox={DEMO_MAILBOX}")


if __name__ == "__main__":
    asyncio.run(seed())
