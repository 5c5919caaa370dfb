"""Credential store - authoritative lookup and mutation of tenant records."""

import hmac
import logging
import secrets

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affgate.errors import DuplicateTenant, TenantNotFound
from affgate.models import Tenant
from affgate.models.enums import SecurityLevel, TenantStatus, VerificationMethod
from affgate.storage import repositories as repo
from affgate.utils.canonical import salted_hash
from affgate.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "affcd_"


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(24)}"


def generate_api_secret() -> str:
    return secrets.token_urlsafe(48)


class CredentialStore:
    """Tenant lookups plus every tenant-row mutation, each in its own transaction."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        secret_salt: str,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self._secret_salt = secret_salt
        self._clock = clock

    def hash_secret(self, secret: str) -> str:
        return salted_hash(self._secret_salt, secret)

    def verify_secret(self, tenant: Tenant, secret: str | None) -> bool:
        if not secret:
            return False
        return hmac.compare_digest(self.hash_secret(secret), tenant.api_secret_hash)

    async def find_by_api_key(self, api_key: str) -> Tenant | None:
        """Tenant for ``api_key`` regardless of status; callers decide on denial."""
        if not api_key:
            return None
        async with self._session_maker() as db:
            return await repo.get_tenant_by_api_key(db, api_key)

    async def find_by_domain(self, domain_url: str) -> Tenant | None:
        async with self._session_maker() as db:
            return await repo.get_tenant_by_domain(db, domain_url.rstrip("/"))

    async def get(self, tenant_id: int) -> Tenant | None:
        async with self._session_maker() as db:
            return await repo.get_tenant(db, tenant_id)

    async def require(self, tenant_id: int) -> Tenant:
        tenant = await self.get(tenant_id)
        if tenant is None:
            raise TenantNotFound(f"Tenant {tenant_id} not found")
        return tenant

    async def list_tenants(
        self, status: TenantStatus | None = None, limit: int = 100, offset: int = 0
    ) -> list[Tenant]:
        async with self._session_maker() as db:
            return await repo.list_tenants(db, status=status, limit=limit, offset=offset)

    async def create_tenant(
        self,
        domain_url: str,
        domain_name: str | None = None,
        verification_method: VerificationMethod = VerificationMethod.API,
        security_level: SecurityLevel = SecurityLevel.MEDIUM,
        **policy,
    ) -> tuple[Tenant, str]:
        """Register a pending tenant; returns it with the one-time plaintext secret."""
        now = self._clock()
        api_secret = generate_api_secret()
        try:
            async with self._session_maker() as db, db.begin():
                tenant = await repo.create_tenant(
                    db,
                    domain_url=domain_url.rstrip("/"),
                    domain_name=domain_name,
                    api_key=generate_api_key(),
                    api_secret_hash=self.hash_secret(api_secret),
                    status=TenantStatus.PENDING,
                    verification_method=verification_method,
                    security_level=security_level,
                    created_at=now,
                    updated_at=now,
                    **policy,
                )
        except IntegrityError as exc:
            raise DuplicateTenant(f"Domain already registered: {domain_url}") from exc
        logger.info("Tenant %s created for %s", tenant.id, tenant.domain_url)
        return tenant, api_secret

    async def update_status(
        self,
        tenant_id: int,
        status: TenantStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> bool:
        """Transition tenant status atomically with its side fields.

        Returns True only for the caller whose update performed the transition.
        """
        now = self._clock()
        async with self._session_maker() as db, db.begin():
            changed = await repo.set_status(db, tenant_id, status, reason, actor, now)
            if not changed and await repo.get_tenant(db, tenant_id) is None:
                raise TenantNotFound(f"Tenant {tenant_id} not found")
        if changed:
            logger.warning(
                "Tenant %s status -> %s (reason=%s, actor=%s)", tenant_id, status.value, reason, actor
            )
        return changed

    async def record_verification_attempt(
        self,
        tenant_id: int,
        success: bool,
        error: str | None = None,
        max_attempts: int = 5,
    ) -> Tenant:
        now = self._clock()
        async with self._session_maker() as db, db.begin():
            if success:
                updated = await repo.record_verification_success(db, tenant_id, now)
            else:
                updated = await repo.record_verification_failure(
                    db, tenant_id, error, max_attempts, now
                )
            if not updated:
                raise TenantNotFound(f"Tenant {tenant_id} not found")
        return await self.require(tenant_id)

    async def start_verification(
        self, tenant_id: int, method: VerificationMethod, token: str
    ) -> None:
        async with self._session_maker() as db, db.begin():
            if not await repo.start_verification(db, tenant_id, method, token, self._clock()):
                raise TenantNotFound(f"Tenant {tenant_id} not found")

    async def purge_stale_tokens(self, older_than) -> int:
        now = self._clock()
        async with self._session_maker() as db, db.begin():
            return await repo.purge_verification_tokens(db, now - older_than, now)

    async def tenants_due_for_verification(
        self, max_attempts: int, retry_interval, limit: int
    ) -> list[Tenant]:
        async with self._session_maker() as db:
            return await repo.tenants_due_for_verification(
                db, max_attempts, self._clock() - retry_interval, limit
            )

    async def regenerate_credentials(self, tenant_id: int) -> tuple[str, str]:
        """Issue a new key/secret pair; the old pair stops working on commit."""
        api_key = generate_api_key()
        api_secret = generate_api_secret()
        async with self._session_maker() as db, db.begin():
            replaced = await repo.replace_credentials(
                db, tenant_id, api_key, self.hash_secret(api_secret), self._clock()
            )
            if not replaced:
                raise TenantNotFound(f"Tenant {tenant_id} not found")
        logger.info("API credentials regenerated for tenant %s", tenant_id)
        return api_key, api_secret

    async def configure_webhook(
        self,
        tenant_id: int,
        url: str | None,
        secret: str | None = None,
        events: list[str] | None = None,
    ) -> str | None:
        """Set (or clear with ``url=None``) the webhook; returns the signing secret."""
        if url and not secret:
            secret = secrets.token_hex(32)
        async with self._session_maker() as db, db.begin():
            updated = await repo.configure_webhook(
                db, tenant_id, url, secret if url else None, list(events or []), self._clock()
            )
            if not updated:
                raise TenantNotFound(f"Tenant {tenant_id} not found")
        return secret if url else None

    async def record_webhook_success(self, tenant_id: int) -> None:
        async with self._session_maker() as db, db.begin():
            await repo.record_webhook_success(db, tenant_id, self._clock())

    async def record_webhook_failure(
        self, tenant_id: int, error: str, max_failures: int
    ) -> tuple[int, bool]:
        """Count a failed delivery and trip the breaker at ``max_failures``.

        Returns ``(consecutive_failures, disabled_now)``.
        """
        now = self._clock()
        disabled = False
        async with self._session_maker() as db, db.begin():
            failures = await repo.increment_webhook_failures(db, tenant_id, error[:1000], now)
            if failures >= max_failures:
                note = f"[{now.isoformat(timespec='seconds')}] Webhook disabled due to repeated failures."
                disabled = await repo.disable_webhook(db, tenant_id, note, now)
        if disabled:
            logger.warning(
                "Webhook disabled for tenant %s after %d consecutive failures", tenant_id, failures
            )
        return failures, disabled
