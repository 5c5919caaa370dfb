"""Per-tenant request policy: IP lists, HTTPS and endpoint lists."""

import ipaddress
import logging
from collections.abc import Iterable
from fnmatch import fnmatchcase

from affgate.errors import PolicyViolation
from affgate.models import Tenant

logger = logging.getLogger(__name__)


def ip_in_list(ip: ipaddress.IPv4Address | ipaddress.IPv6Address, entries: Iterable[str]) -> bool:
    """True if ``ip`` matches any IP or CIDR entry. Malformed entries are skipped."""
    for entry in entries:
        try:
            network = ipaddress.ip_network(entry.strip(), strict=False)
        except ValueError:
            logger.warning("Ignoring malformed IP rule %r", entry)
            continue
        if ip.version == network.version and ip in network:
            return True
    return False


def endpoint_in_list(endpoint: str, patterns: Iterable[str]) -> bool:
    """Shell-style match: ``/v1/codes/*`` covers ``/v1/codes/validate``."""
    return any(fnmatchcase(endpoint, pattern) for pattern in patterns)


def check_ip(tenant: Tenant, client_ip: str | None) -> None:
    blocked = tenant.blocked_ips or []
    allowed = tenant.allowed_ips or []
    if not blocked and not allowed:
        return
    try:
        ip = ipaddress.ip_address((client_ip or "").strip())
    except ValueError:
        raise PolicyViolation("invalid_client_ip")
    if ip_in_list(ip, blocked):
        raise PolicyViolation("ip_blocked")
    if allowed and not ip_in_list(ip, allowed):
        raise PolicyViolation("ip_not_allowed")


def check_scheme(tenant: Tenant, scheme: str | None) -> None:
    if tenant.https_required and (scheme or "").lower() != "https":
        raise PolicyViolation("https_required")


def check_endpoint(tenant: Tenant, endpoint: str, unverified_endpoints: Iterable[str]) -> None:
    if endpoint_in_list(endpoint, tenant.blocked_endpoints or []):
        raise PolicyViolation("endpoint_blocked")
    allowed = tenant.allowed_endpoints or []
    if allowed and not endpoint_in_list(endpoint, allowed):
        raise PolicyViolation("endpoint_not_allowed")
    if not tenant.is_verified and not endpoint_in_list(endpoint, unverified_endpoints):
        raise PolicyViolation("unverified_domain")


def check_policy(
    tenant: Tenant,
    endpoint: str,
    client_ip: str | None,
    scheme: str | None,
    unverified_endpoints: Iterable[str] = (),
) -> None:
    """Raise PolicyViolation for the first failing rule."""
    check_ip(tenant, client_ip)
    check_scheme(tenant, scheme)
    check_endpoint(tenant, endpoint, unverified_endpoints)
