"""Unit tests for per-tenant request policy."""

import ipaddress

import pytest

from affgate.engine.policy import check_policy, endpoint_in_list, ip_in_list
from affgate.errors import PolicyViolation
from affgate.models import Tenant
from affgate.models.enums import SecurityLevel, VerificationStatus

UNVERIFIED = ("/v1/verification/*",)


def _tenant(**overrides) -> Tenant:
    fields = dict(
        domain_url="https://shop.example.com",
        verification_status=VerificationStatus.VERIFIED,
        security_level=SecurityLevel.MEDIUM,
        require_https=True,
        allowed_endpoints=[],
        blocked_endpoints=[],
        allowed_ips=[],
        blocked_ips=[],
    )
    fields.update(overrides)
    return Tenant(**fields)


def _reason(tenant, endpoint="/v1/codes/validate", client_ip="203.0.113.5", scheme="https"):
    with pytest.raises(PolicyViolation) as exc_info:
        check_policy(tenant, endpoint, client_ip, scheme, UNVERIFIED)
    return exc_info.value.reason


def test_ip_in_list_supports_cidr_and_skips_garbage():
    ip = ipaddress.ip_address("10.1.2.3")
    assert ip_in_list(ip, ["not-an-ip", "10.0.0.0/8"])
    assert not ip_in_list(ip, ["192.168.0.0/16", "::1"])


def test_endpoint_patterns():
    assert endpoint_in_list("/v1/codes/validate", ["/v1/codes/*"])
    assert not endpoint_in_list("/v1/admin", ["/v1/codes/*"])


def test_default_tenant_passes():
    check_policy(_tenant(), "/v1/codes/validate", "203.0.113.5", "https", UNVERIFIED)


def test_blocked_ip_wins_over_allowed():
    tenant = _tenant(allowed_ips=["203.0.113.0/24"], blocked_ips=["203.0.113.5"])
    assert _reason(tenant) == "ip_blocked"


def test_ip_not_in_allow_list():
    assert _reason(_tenant(allowed_ips=["198.51.100.0/24"])) == "ip_not_allowed"


def test_missing_client_ip_with_ip_rules():
    assert _reason(_tenant(allowed_ips=["198.51.100.0/24"]), client_ip=None) == "invalid_client_ip"


def test_https_required():
    assert _reason(_tenant(), scheme="http") == "https_required"
    check_policy(_tenant(require_https=False), "/v1/codes/validate", None, "http", UNVERIFIED)


def test_strict_security_level_forces_https():
    tenant = _tenant(require_https=False, security_level=SecurityLevel.STRICT)
    assert _reason(tenant, scheme="http") == "https_required"


def test_endpoint_lists():
    assert _reason(_tenant(blocked_endpoints=["/v1/codes/*"])) == "endpoint_blocked"
    assert _reason(_tenant(allowed_endpoints=["/v1/reports/*"])) == "endpoint_not_allowed"


def test_unverified_domain_limited_to_allow_list():
    tenant = _tenant(verification_status=VerificationStatus.PENDING)
    assert _reason(tenant) == "unverified_domain"
    check_policy(tenant, "/v1/verification/status", None, "https", UNVERIFIED)
