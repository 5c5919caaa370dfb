"""Repository functions for tenants and usage events."""

from datetime import datetime

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from affgate.models import Tenant, UsageEvent
from affgate.models.enums import (
    SecurityLevel,
    TenantStatus,
    VerificationMethod,
    VerificationStatus,
)


async def get_tenant(db: AsyncSession, tenant_id: int) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_by_api_key(db: AsyncSession, api_key: str) -> Tenant | None:
    """Find tenant by API key, whatever its status."""
    result = await db.execute(select(Tenant).where(Tenant.api_key == api_key))
    return result.scalar_one_or_none()


async def get_tenant_by_domain(db: AsyncSession, domain_url: str) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.domain_url == domain_url))
    return result.scalar_one_or_none()


async def list_tenants(
    db: AsyncSession, status: TenantStatus | None = None, limit: int = 100, offset: int = 0
) -> list[Tenant]:
    query = select(Tenant).order_by(Tenant.id).limit(limit).offset(offset)
    if status is not None:
        query = query.where(Tenant.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_tenant(db: AsyncSession, **fields) -> Tenant:
    tenant = Tenant(**fields)
    db.add(tenant)
    await db.flush()
    return tenant


async def set_status(
    db: AsyncSession,
    tenant_id: int,
    status: TenantStatus,
    reason: str | None,
    actor: str | None,
    now: datetime,
) -> bool:
    """Conditional status transition; returns False when already in ``status``."""
    values: dict = {"status": status, "updated_at": now}
    if status == TenantStatus.SUSPENDED:
        values.update(
            security_level=SecurityLevel.STRICT,
            suspended_at=now,
            suspended_reason=reason,
            suspended_by=actor,
        )
    elif status == TenantStatus.ACTIVE:
        values.update(suspended_at=None, suspended_reason=None, suspended_by=None)
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.status != status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def replace_credentials(
    db: AsyncSession, tenant_id: int, api_key: str, api_secret_hash: str, now: datetime
) -> bool:
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(api_key=api_key, api_secret_hash=api_secret_hash, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def start_verification(
    db: AsyncSession,
    tenant_id: int,
    method: VerificationMethod,
    token: str,
    now: datetime,
) -> bool:
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            verification_method=method,
            verification_token=token,
            verification_status=VerificationStatus.PENDING,
            verification_attempts=0,
            verification_requested_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_verification_success(db: AsyncSession, tenant_id: int, now: datetime) -> bool:
    """Mark verified, reset attempts and promote pending tenants to active."""
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            verification_status=VerificationStatus.VERIFIED,
            verification_attempts=0,
            last_verification_attempt=now,
            last_successful_verification=now,
            last_error_at=None,
            last_error_message=None,
            status=case(
                (Tenant.status == TenantStatus.PENDING, TenantStatus.ACTIVE.value),
                else_=Tenant.status,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_verification_failure(
    db: AsyncSession,
    tenant_id: int,
    error: str | None,
    max_attempts: int,
    now: datetime,
) -> bool:
    """Count a failed attempt; at ``max_attempts`` the tenant becomes failed."""
    next_attempts = Tenant.verification_attempts + 1
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            verification_attempts=case(
                (next_attempts >= max_attempts, max_attempts), else_=next_attempts
            ),
            verification_status=case(
                (next_attempts >= max_attempts, VerificationStatus.FAILED.value),
                else_=Tenant.verification_status,
            ),
            last_verification_attempt=now,
            last_error_at=now,
            last_error_message=error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def purge_verification_tokens(db: AsyncSession, before: datetime, now: datetime) -> int:
    """Null out unverified tokens whose last activity predates ``before``."""
    last_activity = case(
        (Tenant.last_verification_attempt.is_not(None), Tenant.last_verification_attempt),
        else_=Tenant.verification_requested_at,
    )
    result = await db.execute(
        update(Tenant)
        .where(
            Tenant.verification_token.is_not(None),
            Tenant.verification_status != VerificationStatus.VERIFIED,
            last_activity < before,
        )
        .values(verification_token=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def tenants_due_for_verification(
    db: AsyncSession, max_attempts: int, retry_before: datetime, limit: int
) -> list[Tenant]:
    result = await db.execute(
        select(Tenant)
        .where(
            Tenant.verification_status.in_(
                [VerificationStatus.PENDING, VerificationStatus.FAILED]
            ),
            Tenant.status != TenantStatus.SUSPENDED,
            Tenant.verification_token.is_not(None),
            Tenant.verification_attempts < max_attempts,
            (Tenant.last_verification_attempt.is_(None))
            | (Tenant.last_verification_attempt < retry_before),
        )
        .order_by(Tenant.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def configure_webhook(
    db: AsyncSession,
    tenant_id: int,
    url: str | None,
    secret: str | None,
    events: list[str],
    now: datetime,
) -> bool:
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            webhook_url=url,
            webhook_secret=secret,
            webhook_events=events,
            webhook_failures=0,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_webhook_success(db: AsyncSession, tenant_id: int, now: datetime) -> None:
    await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            webhook_failures=0,
            webhook_last_sent=now,
            last_error_at=None,
            last_error_message=None,
        )
        .execution_options(synchronize_session=False)
    )


async def increment_webhook_failures(
    db: AsyncSession, tenant_id: int, error: str, now: datetime
) -> int:
    """Count one failed delivery; returns the new consecutive failure count."""
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(
            webhook_failures=Tenant.webhook_failures + 1,
            last_error_at=now,
            last_error_message=error,
        )
        .returning(Tenant.webhook_failures)
        .execution_options(synchronize_session=False)
    )
    failures = result.scalar_one_or_none()
    return int(failures or 0)


async def disable_webhook(db: AsyncSession, tenant_id: int, note: str, now: datetime) -> bool:
    result = await db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.webhook_url.is_not(None))
        .values(
            webhook_url=None,
            webhook_events=[],
            notes=case(
                (Tenant.notes.is_(None), note),
                else_=Tenant.notes + "\n" + note,
            ),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def add_usage_event(db: AsyncSession, **fields) -> UsageEvent:
    event = UsageEvent(**fields)
    db.add(event)
    await db.flush()
    return event


async def delete_usage_before(db: AsyncSession, before: datetime) -> int:
    result = await db.execute(
        delete(UsageEvent)
        .where(UsageEvent.timestamp < before)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
