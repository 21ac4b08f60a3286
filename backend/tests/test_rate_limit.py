"""Tests for rate-limit keys."""

from fastapi import Request

from app.auth import create_access_token
from app.config import get_settings
from app.rate_limit import client_address, rate_limit_key, trusted_proxy_networks


def _request(peer, headers=None):
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw_headers, "client": (peer, 50000)})


class TestClientAddress:
    def test_direct_peer(self):
        assert client_address(_request("203.0.113.7")) == "203.0.113.7"

    def test_forwarded_for_ignored_from_untrusted_peer(self):
        request = _request("203.0.113.7", {"X-Forwarded-For": "198.51.100.1"})
        assert client_address(request) == "203.0.113.7"

    def test_forwarded_for_honoured_behind_trusted_proxy(self):
        request = _request("10.1.2.3", {"X-Forwarded-For": "198.51.100.1, 10.1.2.3"})
        assert client_address(request) == "198.51.100.1"

    def test_trusted_proxy_without_header(self):
        assert client_address(_request("127.0.0.1")) == "127.0.0.1"

    def test_invalid_cidrs_are_skipped(self):
        networks = trusted_proxy_networks(("not-a-cidr", "10.0.0.0/8"))
        assert [str(n) for n in networks] == ["10.0.0.0/8"]


class TestRateLimitKey:
    def test_authenticated_requests_keyed_by_org(self):
        token = create_access_token("usr_x", "org-buyer", "buyer", get_settings())
        request = _request("203.0.113.7", {"Authorization": f"Bearer {token}"})

        assert rate_limit_key(request) == "org:org-buyer"

    def test_same_org_shares_bucket_across_addresses(self):
        token = create_access_token("usr_x", "org-buyer", "buyer", get_settings())
        first = _request("203.0.113.7", {"Authorization": f"Bearer {token}"})
        second = _request("198.51.100.9", {"Authorization": f"Bearer {token}"})

        assert rate_limit_key(first) == rate_limit_key(second)

    def test_bad_token_falls_back_to_address(self):
        request = _request("203.0.113.7", {"Authorization": "Bearer not-a-jwt"})
        assert rate_limit_key(request) == "ip:203.0.113.7"

    def test_anonymous_request(self):
        assert rate_limit_key(_request("203.0.113.7")) == "ip:203.0.113.7"
