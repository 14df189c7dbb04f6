"""Tests for bootstrap request and response signing."""

import pytest

from fleetctl.utils.signing import (
    canonical_json,
    canonical_request,
    derive_device_secret,
    hmac_hex,
    is_hex_signature,
    sign_request,
    sign_response,
    verify_request_signature,
)


class TestCanonicalJson:
    """Tests for deterministic serialization."""

    def test_key_order_does_not_matter(self):
        assert canonical_json({"b": 1, "a": {"y": 2, "x": 1}}) == canonical_json(
            {"a": {"x": 1, "y": 2}, "b": 1}
        )

    def test_compact_separators(self):
        assert canonical_json({"a": [1, 2]}) == '{"a":[1,2]}'

    def test_non_ascii_is_kept(self):
        assert canonical_json({"name": "Zürich"}) == '{"name":"Zürich"}'

    def test_request_excludes_signature(self):
        assert canonical_request({"a": 1, "signature": "ff"}) == '{"a":1}'


class TestDeviceSecret:
    """Tests for per-device secret derivation."""

    def test_derived_from_tenant_and_device(self):
        assert derive_device_secret("global", "acme", "d1") == hmac_hex("global", "acme:d1")
        assert derive_device_secret("global", "acme", "d1") != derive_device_secret("global", "acme", "d2")

    @pytest.mark.parametrize(
        "args", [("", "acme", "d1"), ("global", "", "d1"), ("global", "acme", "")]
    )
    def test_missing_input_raises(self, args):
        with pytest.raises(ValueError):
            derive_device_secret(*args)


class TestRequestSignature:
    """Tests for request signature verification."""

    def test_valid_signature_verifies(self):
        payload = {"deviceId": "d1", "timestamp": 1}
        signature = sign_request(payload, "secret")

        assert verify_request_signature({**payload, "signature": signature}, signature, "secret")

    def test_upper_case_hex_accepted(self):
        payload = {"deviceId": "d1"}
        signature = sign_request(payload, "secret").upper()

        assert verify_request_signature(payload, signature, "secret")

    def test_modified_payload_rejected(self):
        signature = sign_request({"deviceId": "d1"}, "secret")
        assert not verify_request_signature({"deviceId": "d2"}, signature, "secret")

    @pytest.mark.parametrize("value,expected", [("abcd", True), ("abc", False), ("zz", False), ("", False)])
    def test_hex_signature_format(self, value, expected):
        assert is_hex_signature(value) is expected


class TestResponseSignature:
    """Tests for response signing."""

    def test_bound_to_device_and_tenant(self):
        data = {"cfg": {"ver": "1.0.0"}}
        signature = sign_response(data, "acme", "d1", "secret")

        assert signature == hmac_hex("secret", 'd1:acme:{"cfg":{"ver":"1.0.0"}}')
        assert signature != sign_response(data, "acme", "d2", "secret")
        assert signature != sign_response(data, "other", "d1", "secret")
