"""Tests for origin and identity admission."""

import pytest

from chat_relay.config import ServerSpec
from chat_relay.server.admission import (
    AdmissionError,
    Identity,
    check_origin,
    effective_origin,
    require_identity,
    resolve_identity,
)


@pytest.fixture
def dev() -> ServerSpec:
    return ServerSpec(allowed_origins=["https://chat.example.com"])


@pytest.fixture
def prod() -> ServerSpec:
    return ServerSpec(environment="production", allowed_origins=["https://chat.example.com"])


class TestOrigin:
    def test_allowed_origin_is_echoed(self, dev):
        assert check_origin("http://localhost:3001", dev) == "http://localhost:3001"

    def test_missing_origin_admitted(self, dev):
        assert check_origin(None, dev) == "https://chat.example.com"
        assert check_origin("", dev) == "https://chat.example.com"

    def test_unknown_origin(self, dev):
        with pytest.raises(AdmissionError) as exc_info:
            check_origin("https://evil.example", dev)
        assert exc_info.value.status_code == 403

    def test_dev_origins_not_allowed_in_production(self, prod):
        with pytest.raises(AdmissionError):
            check_origin("http://localhost:3000", prod)
        assert check_origin("https://chat.example.com", prod) == "https://chat.example.com"

    def test_effective_origin_without_allow_list(self):
        assert effective_origin("http://x", []) == ""


class TestIdentity:
    def test_dev_defaults(self, dev):
        assert resolve_identity({}, dev) == Identity("dev-user", "dev-tenant")

    def test_headers_win_over_defaults(self, dev):
        headers = {"x-internal-user-id": "u-1"}
        assert resolve_identity(headers, dev) == Identity("u-1", "dev-tenant")

    def test_production_has_no_defaults(self, prod):
        assert resolve_identity({"x-internal-user-id": "u-1"}, prod) is None
        with pytest.raises(AdmissionError) as exc_info:
            require_identity({}, prod)
        assert exc_info.value.status_code == 401

    def test_production_with_headers(self, prod):
        headers = {"x-internal-user-id": "u-1", "x-tenant-id": "t-1"}
        assert require_identity(headers, prod) == Identity("u-1", "t-1")
