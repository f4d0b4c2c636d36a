from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import IntegrationConnection
from mailshield.domain.types import utc_now


async def get_connection(
    session: AsyncSession, integration_id: str, *, fresh: bool = False
) -> IntegrationConnection | None:
    stmt = select(IntegrationConnection).where(IntegrationConnection.id == integration_id)
    if fresh:
        # Overwrite identity-map state so concurrent credential writes are visible.
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_connected_by_email(
    session: AsyncSession, *, provider: str, email: str
) -> IntegrationConnection | None:
    # Route push notifications only through the mailbox address verified at OAuth time.
    result = await session.execute(
        select(IntegrationConnection).where(
            IntegrationConnection.provider == provider,
            IntegrationConnection.connected_email == email.lower(),
            IntegrationConnection.status == "connected",
        )
    )
    return result.scalars().first()


async def find_connected_by_subscription(
    session: AsyncSession, *, provider: str, subscription_id: str
) -> IntegrationConnection | None:
    result = await session.execute(
        select(IntegrationConnection).where(
            IntegrationConnection.provider == provider,
            IntegrationConnection.subscription_id == subscription_id,
            IntegrationConnection.status == "connected",
        )
    )
    return result.scalars().first()


async def find_connected_by_tenant(
    session: AsyncSession, *, provider: str, tenant_id: str
) -> IntegrationConnection | None:
    result = await session.execute(
        select(IntegrationConnection).where(
            IntegrationConnection.provider == provider,
            IntegrationConnection.tenant_id == tenant_id,
            IntegrationConnection.status == "connected",
        )
    )
    return result.scalars().first()


async def store_credentials(
    session: AsyncSession,
    integration_id: str,
    *,
    access_token: str,
    refresh_token: str,
    expires_at: datetime,
    scopes: str | None = None,
) -> None:
    # Persist the refreshed credential and its expiry in one statement.
    values = {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_expires_at": expires_at,
        "updated_at": utc_now(),
    }
    if scopes is not None:
        values["scopes"] = scopes
    await session.execute(
        update(IntegrationConnection).where(IntegrationConnection.id == integration_id).values(**values)
    )


async def mark_error(session: AsyncSession, integration_id: str, *, error_message: str) -> None:
    await session.execute(
        update(IntegrationConnection)
        .where(IntegrationConnection.id == integration_id)
        .values(status="error", error_message=error_message, updated_at=utc_now())
    )


async def advance_sync_cursor(
    session: AsyncSession, integration_id: str, *, cursor: str, observed: str | None
) -> bool:
    # Compare-and-set on the cursor the caller read; False means another worker moved it first.
    now = utc_now()
    matches_observed = (
        IntegrationConnection.sync_cursor.is_(None)
        if observed is None
        else IntegrationConnection.sync_cursor == observed
    )
    result = await session.execute(
        update(IntegrationConnection)
        .where(IntegrationConnection.id == integration_id, matches_observed)
        .values(sync_cursor=cursor, last_sync_at=now, updated_at=now)
    )
    return bool(result.rowcount)


async def list_expiring_subscriptions(
    session: AsyncSession, *, before: datetime
) -> list[IntegrationConnection]:
    # Rows that never had a watch keep a NULL expiry and are left to the connect flow.
    result = await session.execute(
        select(IntegrationConnection)
        .where(
            IntegrationConnection.status == "connected",
            IntegrationConnection.subscription_expires_at.is_not(None),
            IntegrationConnection.subscription_expires_at < before,
        )
        .order_by(IntegrationConnection.subscription_expires_at.asc())
    )
    return list(result.scalars().all())


async def record_subscription(
    session: AsyncSession,
    integration_id: str,
    *,
    subscription_id: str | None,
    expires_at: datetime,
) -> None:
    values = {"subscription_expires_at": expires_at, "updated_at": utc_now()}
    if subscription_id is not None:
        values["subscription_id"] = subscription_id
    await session.execute(
        update(IntegrationConnection).where(IntegrationConnection.id == integration_id).values(**values)
    )


async def list_due_for_poll(
    session: AsyncSession, *, synced_before: datetime, limit: int
) -> list[IntegrationConnection]:
    """Connected mailboxes whose last sync is older than `synced_before`.

    Never-synced rows come first, then the stalest.
    """
    result = await session.execute(
        select(IntegrationConnection)
        .where(
            IntegrationConnection.status == "connected",
            or_(
                IntegrationConnection.last_sync_at.is_(None),
                IntegrationConnection.last_sync_at < synced_before,
            ),
        )
        .order_by(IntegrationConnection.last_sync_at.asc().nulls_first())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_polled(session: AsyncSession, integration_id: str, *, error_message: str | None = None) -> None:
    # Failed polls still stamp last_sync_at so one broken mailbox cannot starve the batch.
    now = utc_now()
    await session.execute(
        update(IntegrationConnection)
        .where(IntegrationConnection.id == integration_id)
        .values(last_sync_at=now, error_message=error_message, updated_at=now)
    )
