from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailshield.domain.models import DomainUser, DomainWideConfig
from mailshield.domain.types import utc_now


async def get_config(session: AsyncSession, config_id: str) -> DomainWideConfig | None:
    result = await session.execute(select(DomainWideConfig).where(DomainWideConfig.id == config_id))
    return result.scalar_one_or_none()


async def find_monitored_user(
    session: AsyncSession, *, provider: str, email: str
) -> tuple[DomainWideConfig, DomainUser] | None:
    # Resolve a monitored mailbox under any active directory config for the provider.
    result = await session.execute(
        select(DomainWideConfig, DomainUser)
        .join(DomainUser, DomainUser.domain_config_id == DomainWideConfig.id)
        .where(
            DomainWideConfig.provider == provider,
            DomainWideConfig.status == "active",
            DomainUser.email == email.lower(),
            DomainUser.is_monitored.is_(True),
            DomainUser.status == "active",
        )
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def find_monitored_user_by_subscription(
    session: AsyncSession, *, subscription_id: str
) -> tuple[DomainWideConfig, DomainUser] | None:
    result = await session.execute(
        select(DomainWideConfig, DomainUser)
        .join(DomainUser, DomainUser.domain_config_id == DomainWideConfig.id)
        .where(
            DomainWideConfig.status == "active",
            DomainUser.subscription_id == subscription_id,
            DomainUser.is_monitored.is_(True),
            DomainUser.status == "active",
        )
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def get_user(session: AsyncSession, user_id: str, *, fresh: bool = False) -> DomainUser | None:
    stmt = select(DomainUser).where(DomainUser.id == user_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def advance_sync_cursor(session: AsyncSession, user_id: str, *, cursor: str, observed: str | None) -> bool:
    matches_observed = DomainUser.sync_cursor.is_(None) if observed is None else DomainUser.sync_cursor == observed
    result = await session.execute(
        update(DomainUser)
        .where(DomainUser.id == user_id, matches_observed)
        .values(sync_cursor=cursor, last_sync_at=utc_now())
    )
    return bool(result.rowcount)


async def increment_stats(
    session: AsyncSession,
    user_id: str,
    *,
    emails_scanned: int = 0,
    threats_detected: int = 0,
) -> None:
    # Counter increments are single UPDATEs so concurrent workers never lose counts.
    user = await get_user(session, user_id)
    if user is None:
        return
    await session.execute(
        update(DomainUser)
        .where(DomainUser.id == user_id)
        .values(
            emails_scanned=DomainUser.emails_scanned + emails_scanned,
            threats_detected=DomainUser.threats_detected + threats_detected,
        )
    )
    await session.execute(
        update(DomainWideConfig)
        .where(DomainWideConfig.id == user.domain_config_id)
        .values(
            emails_scanned=DomainWideConfig.emails_scanned + emails_scanned,
            threats_detected=DomainWideConfig.threats_detected + threats_detected,
        )
    )


async def find_user_by_email(session: AsyncSession, *, config_id: str, email: str) -> DomainUser | None:
    result = await session.execute(
        select(DomainUser).where(
            DomainUser.domain_config_id == config_id,
            DomainUser.email == email.lower(),
        )
    )
    return result.scalar_one_or_none()


async def list_expiring_subscriptions(
    session: AsyncSession, *, before: datetime
) -> list[tuple[DomainWideConfig, DomainUser]]:
    result = await session.execute(
        select(DomainWideConfig, DomainUser)
        .join(DomainUser, DomainUser.domain_config_id == DomainWideConfig.id)
        .where(
            DomainWideConfig.status == "active",
            DomainUser.is_monitored.is_(True),
            DomainUser.status == "active",
            DomainUser.subscription_expires_at.is_not(None),
            DomainUser.subscription_expires_at < before,
        )
        .order_by(DomainUser.subscription_expires_at.asc())
    )
    return [(config, user) for config, user in result.all()]


async def record_subscription(
    session: AsyncSession, user_id: str, *, subscription_id: str | None, expires_at: datetime
) -> None:
    values: dict[str, object] = {"subscription_expires_at": expires_at}
    if subscription_id is not None:
        values["subscription_id"] = subscription_id
    await session.execute(update(DomainUser).where(DomainUser.id == user_id).values(**values))
