"""Domain-ownership verification.

State machine: pending -> verified | failed. A failed tenant only returns to
pending through ``begin_verification`` (new token). Each method has a probe
that answers "is the token published where we expect it".
"""

import hmac
import logging
import re
import secrets
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import urlsplit

import httpx

from affgate.config import Settings
from affgate.engine.credentials import CredentialStore
from affgate.engine.webhooks import Notifier
from affgate.errors import TenantNotFound, VerificationFailure
from affgate.models import Tenant
from affgate.models.enums import VerificationMethod, VerificationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProofResult:
    ok: bool
    error: str | None = None


ProofProbe = Callable[[Tenant], Awaitable[ProofResult]]


@dataclass(frozen=True)
class VerificationConfig:
    max_attempts: int = 5
    token_ttl: timedelta = timedelta(days=7)
    retry_interval: timedelta = timedelta(hours=1)
    batch_size: int = 50
    timeout: float = 15.0
    dns_over_https_url: str = "https://cloudflare-dns.com/dns-query"
    dns_prefix: str = "_affcd-verification"
    file_path: str = "/.well-known/affcd-verification.txt"
    meta_name: str = "affcd-verification"
    api_path: str = "/wp-json/affiliate-client/v1/verify"

    @classmethod
    def from_settings(cls, settings: Settings) -> "VerificationConfig":
        return cls(
            max_attempts=settings.verification_max_attempts,
            token_ttl=timedelta(days=settings.verification_token_ttl_days),
            retry_interval=timedelta(minutes=settings.verification_retry_minutes),
            batch_size=settings.verification_batch_size,
            timeout=settings.verification_timeout_seconds,
            dns_over_https_url=settings.dns_over_https_url,
            dns_prefix=settings.verification_dns_prefix,
            file_path=settings.verification_file_path,
            meta_name=settings.verification_meta_name,
            api_path=settings.verification_api_path,
        )


@dataclass(frozen=True)
class VerificationOutcome:
    status: VerificationStatus
    attempts: int
    probed: bool
    error: str | None = None


def _tokens_match(expected: str, candidate) -> bool:
    if not isinstance(candidate, str) or not candidate.strip():
        return False
    return hmac.compare_digest(expected.encode(), candidate.strip().encode())


class HttpProofProbes:
    """Probes for the dns, file, meta and api methods, all over HTTP(S)."""

    def __init__(self, client: httpx.AsyncClient, config: VerificationConfig):
        self._client = client
        self._config = config

    def as_mapping(self) -> dict[VerificationMethod, ProofProbe]:
        return {
            VerificationMethod.DNS: self.dns,
            VerificationMethod.FILE: self.file,
            VerificationMethod.META: self.meta,
            VerificationMethod.API: self.api,
        }

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        response = await self._client.get(
            url, timeout=self._config.timeout, follow_redirects=True, **kwargs
        )
        response.raise_for_status()
        return response

    async def dns(self, tenant: Tenant) -> ProofResult:
        """TXT record ``<prefix>.<host>`` resolved over DNS-over-HTTPS."""
        host = urlsplit(tenant.domain_url).hostname or tenant.domain_url
        name = f"{self._config.dns_prefix}.{host}"
        try:
            response = await self._get(
                self._config.dns_over_https_url,
                params={"name": name, "type": "TXT"},
                headers={"Accept": "application/dns-json"},
            )
            answers = response.json().get("Answer") or []
        except (httpx.HTTPError, ValueError) as exc:
            return ProofResult(False, f"DNS lookup failed: {exc}")
        for answer in answers:
            if _tokens_match(tenant.verification_token, str(answer.get("data", "")).strip('"')):
                return ProofResult(True)
        return ProofResult(False, f"TXT record not found at {name}")

    async def file(self, tenant: Tenant) -> ProofResult:
        url = tenant.domain_url.rstrip("/") + self._config.file_path
        try:
            response = await self._get(url)
        except httpx.HTTPError as exc:
            return ProofResult(False, f"Verification file fetch failed: {exc}")
        if _tokens_match(tenant.verification_token, response.text):
            return ProofResult(True)
        return ProofResult(False, "Verification file does not contain the token")

    async def meta(self, tenant: Tenant) -> ProofResult:
        try:
            response = await self._get(tenant.domain_url)
        except httpx.HTTPError as exc:
            return ProofResult(False, f"Homepage fetch failed: {exc}")
        name = re.escape(self._config.meta_name)
        patterns = (
            rf"<meta[^>]+name=[\"']{name}[\"'][^>]+content=[\"']([^\"']+)[\"']",
            rf"<meta[^>]+content=[\"']([^\"']+)[\"'][^>]+name=[\"']{name}[\"']",
        )
        for pattern in patterns:
            for match in re.finditer(pattern, response.text, re.IGNORECASE):
                if _tokens_match(tenant.verification_token, match.group(1)):
                    return ProofResult(True)
        return ProofResult(False, "Verification meta tag not found")

    async def api(self, tenant: Tenant) -> ProofResult:
        url = tenant.domain_url.rstrip("/") + self._config.api_path
        try:
            response = await self._get(url, params={"token": tenant.verification_token})
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return ProofResult(False, f"Verification endpoint failed: {exc}")
        if isinstance(data, dict) and _tokens_match(tenant.verification_token, data.get("token")):
            return ProofResult(True)
        return ProofResult(False, "Verification endpoint returned a different token")


class VerificationEngine:
    def __init__(
        self,
        credentials: CredentialStore,
        probes: Mapping[VerificationMethod, ProofProbe],
        notifier: Notifier | None = None,
        config: VerificationConfig | None = None,
    ):
        self._credentials = credentials
        self._probes = dict(probes)
        self._notifier = notifier
        self.config = config or VerificationConfig()

    async def begin_verification(self, tenant_id: int, method: VerificationMethod) -> str:
        """Issue a fresh token and reset the attempt counter."""
        token = secrets.token_urlsafe(24)
        await self._credentials.start_verification(tenant_id, VerificationMethod(method), token)
        logger.info("Verification started for tenant %s via %s", tenant_id, method)
        return token

    async def attempt_verification(self, tenant_id: int) -> VerificationOutcome:
        """Run the method probe once, unless the attempt cap is reached."""
        tenant = await self._credentials.require(tenant_id)
        if tenant.verification_status == VerificationStatus.VERIFIED:
            return VerificationOutcome(tenant.verification_status, tenant.verification_attempts, False)
        if tenant.verification_attempts >= self.config.max_attempts:
            return VerificationOutcome(
                VerificationStatus.FAILED, tenant.verification_attempts, False,
                "Maximum verification attempts reached",
            )
        if not tenant.verification_token:
            raise VerificationFailure("no_token")

        probe = self._probes.get(tenant.verification_method)
        if probe is None:
            raise VerificationFailure(f"unsupported_method:{tenant.verification_method.value}")

        try:
            result = await probe(tenant)
        except Exception as exc:
            logger.exception("Verification probe crashed for tenant %s", tenant_id)
            result = ProofResult(False, f"Probe error: {exc}")

        updated = await self._credentials.record_verification_attempt(
            tenant_id, result.ok, result.error, self.config.max_attempts
        )
        self._notify_transition(tenant, updated)
        return VerificationOutcome(
            updated.verification_status, updated.verification_attempts, True, result.error
        )

    async def confirm_callback(self, domain_url: str, token: str) -> bool:
        """Inbound proof for the api method: the tenant echoes its token back.

        The callback is unauthenticated, so a mismatching token is logged and
        ignored; only probes run by ``attempt_verification`` count against the cap.
        """
        tenant = await self._credentials.find_by_domain(domain_url)
        if tenant is None or not tenant.verification_token:
            return False
        if tenant.verification_status == VerificationStatus.VERIFIED:
            return True
        if tenant.verification_attempts >= self.config.max_attempts:
            return False
        if not _tokens_match(tenant.verification_token, token):
            logger.info("Ignoring verification callback with wrong token for %s", tenant.domain_url)
            return False
        updated = await self._credentials.record_verification_attempt(
            tenant.id, True, None, self.config.max_attempts
        )
        self._notify_transition(tenant, updated)
        return True

    async def run_pending(self, limit: int | None = None) -> int:
        """Attempt verification for tenants due another try. Returns attempts made."""
        due = await self._credentials.tenants_due_for_verification(
            self.config.max_attempts, self.config.retry_interval, limit or self.config.batch_size
        )
        attempted = 0
        for tenant in due:
            try:
                await self.attempt_verification(tenant.id)
                attempted += 1
            except (VerificationFailure, TenantNotFound) as exc:
                logger.info("Skipping verification for tenant %s: %s", tenant.id, exc)
        return attempted

    async def purge_stale_tokens(self) -> int:
        purged = await self._credentials.purge_stale_tokens(self.config.token_ttl)
        if purged:
            logger.info("Purged %d stale verification tokens", purged)
        return purged

    def _notify_transition(self, before: Tenant, after: Tenant) -> None:
        if self._notifier is None or before.verification_status == after.verification_status:
            return
        if after.verification_status == VerificationStatus.VERIFIED:
            event = "verification.verified"
        elif after.verification_status == VerificationStatus.FAILED:
            event = "verification.failed"
        else:
            return
        self._notifier.enqueue(
            after.id,
            event,
            {
                "domain": after.domain_url,
                "method": after.verification_method.value,
                "attempts": after.verification_attempts,
                "error": after.last_error_message,
            },
        )
