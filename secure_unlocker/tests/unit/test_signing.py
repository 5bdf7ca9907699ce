"""
Tests for Ed25519 request signing.

Covers:
- Canonical message construction and body hashing
- Verifier checks (exempt paths, fail-closed, headers, membership, freshness, signature)
- Which failures count against the auth rate limit
- Key serialization and the trusted key store
"""

import hashlib
import os

import pytest
import yaml

from secure_unlocker.core.signing.keys import (
    generate_keypair,
    hex_to_public_key,
    load_private_key,
    load_public_key,
    normalize_public_key_hex,
    public_key_to_hex,
    save_keypair,
)
from secure_unlocker.core.signing.registry import TrustedKeyStore, load_keys_from_yaml, load_trusted_keys
from secure_unlocker.core.signing.verify import (
    HEADER_PUBLIC_KEY,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    SignatureVerifier,
    VerificationError,
    create_canonical_message,
    hash_body,
    is_exempt_path,
    sign_request,
)

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@pytest.fixture
def verifier(trusted_keys, clock):
    return SignatureVerifier(trusted_keys, freshness_window=300, clock=clock)


class TestCanonicalMessage:
    """Tests for canonical message construction."""

    def test_empty_body_hashes_empty_bytes(self):
        assert hash_body(b"") == EMPTY_SHA256
        assert hash_body(None) == EMPTY_SHA256

    def test_message_format(self):
        body = b'{"password":"P"}'
        message = create_canonical_message("POST", "/mount/vault", "1700000000", body)
        assert message == f"POST:/mount/vault:1700000000:{hashlib.sha256(body).hexdigest()}"

    def test_query_string_is_part_of_path(self):
        message = create_canonical_message("GET", "/list?verbose=1", "1", b"")
        assert message.startswith("GET:/list?verbose=1:1:")


class TestExemptPaths:
    @pytest.mark.parametrize("path", ["/", "/health", "/manifest.json", "/sw.js", "/icon-192.png"])
    def test_exempt(self, path):
        assert is_exempt_path(path)

    @pytest.mark.parametrize("path", ["/list", "/mount/vault", "/health/extra", "/status/vault"])
    def test_not_exempt(self, path):
        assert not is_exempt_path(path)


class TestSignatureVerifier:
    """Tests for SignatureVerifier.verify()."""

    def test_valid_request(self, verifier, keypair, clock):
        private_key, public_hex = keypair
        body = b'{"password":"P"}'
        headers = sign_request(private_key, "POST", "/mount/vault", body, timestamp=int(clock()))

        result = verifier.verify("POST", "/mount/vault", headers, body)

        assert result.success
        assert result.public_key == public_hex
        assert result.timestamp == int(clock())

    def test_exempt_path_skips_verification(self, verifier):
        result = verifier.verify("GET", "/health", {}, b"")
        assert result.success
        assert result.exempt

    def test_empty_allow_list_fails_closed(self, keypair, clock):
        verifier = SignatureVerifier(TrustedKeyStore([]), clock=clock)
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))

        result = verifier.verify("GET", "/list", headers, b"")

        assert not result.success
        assert result.error is VerificationError.NOT_CONFIGURED
        assert not result.counts_as_failure

    def test_missing_headers_not_counted(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))
        del headers[HEADER_SIGNATURE]

        result = verifier.verify("GET", "/list", headers, b"")

        assert result.error is VerificationError.MISSING_HEADERS
        assert not result.counts_as_failure

    def test_untrusted_key_rejected(self, verifier, clock):
        other_private, _ = generate_keypair()
        headers = sign_request(other_private, "GET", "/list", timestamp=int(clock()))

        result = verifier.verify("GET", "/list", headers, b"")

        assert result.error is VerificationError.UNTRUSTED_KEY
        assert result.counts_as_failure

    def test_key_match_is_case_insensitive(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))
        headers[HEADER_PUBLIC_KEY] = headers[HEADER_PUBLIC_KEY].upper()

        assert verifier.verify("GET", "/list", headers, b"").success

    def test_timestamp_at_window_edge_accepted(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()) - 300)
        assert verifier.verify("GET", "/list", headers, b"").success

    @pytest.mark.parametrize("offset", [-301, 301])
    def test_timestamp_outside_window_rejected(self, verifier, keypair, clock, offset):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()) + offset)

        result = verifier.verify("GET", "/list", headers, b"")

        assert result.error is VerificationError.TIMESTAMP_OUT_OF_WINDOW
        assert result.counts_as_failure

    def test_non_numeric_timestamp_rejected(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))
        headers[HEADER_TIMESTAMP] = "yesterday"

        result = verifier.verify("GET", "/list", headers, b"")

        assert result.error is VerificationError.INVALID_TIMESTAMP_FORMAT
        assert result.counts_as_failure

    def test_mutated_body_rejected(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "POST", "/mount/vault", b'{"password":"P"}', timestamp=int(clock()))

        result = verifier.verify("POST", "/mount/vault", headers, b'{"password":"Q"}')

        assert result.error is VerificationError.SIGNATURE_VERIFICATION_FAILED
        assert result.counts_as_failure

    def test_path_must_match_exactly(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))
        assert not verifier.verify("GET", "/list/", headers, b"").success

    def test_non_hex_signature_rejected(self, verifier, keypair, clock):
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))
        headers[HEADER_SIGNATURE] = "not-hex"

        result = verifier.verify("GET", "/list", headers, b"")

        assert result.error is VerificationError.INVALID_SIGNATURE_FORMAT
        assert result.counts_as_failure

    def test_replay_within_window_accepted_then_expires(self, verifier, keypair, clock):
        """No nonce cache: a captured request is valid until the window closes."""
        headers = sign_request(keypair[0], "GET", "/list", timestamp=int(clock()))

        assert verifier.verify("GET", "/list", headers, b"").success
        assert verifier.verify("GET", "/list", headers, b"").success

        clock.advance(301)
        assert not verifier.verify("GET", "/list", headers, b"").success


class TestKeys:
    """Tests for key serialization."""

    def test_public_key_hex_round_trip(self):
        _, public_key = generate_keypair()
        hex_key = public_key_to_hex(public_key)

        assert len(hex_key) == 64
        assert public_key_to_hex(hex_to_public_key(hex_key)) == hex_key

    @pytest.mark.parametrize("value", ["", "abc", "zz" * 32, "00" * 33])
    def test_invalid_hex_rejected(self, value):
        with pytest.raises(ValueError):
            normalize_public_key_hex(value)

    def test_save_and_load_keypair(self, tmp_path):
        private_key, public_key = generate_keypair()
        private_path, public_path = save_keypair(private_key, public_key, tmp_path, name="laptop")

        assert private_path.name == "laptop.key"
        assert oct(os.stat(private_path).st_mode & 0o777) == "0o600"
        assert public_key_to_hex(load_private_key(private_path).public_key()) == public_key_to_hex(public_key)
        assert public_key_to_hex(load_public_key(public_path)) == public_key_to_hex(public_key)


class TestTrustedKeyStore:
    """Tests for the allow-list and its loaders."""

    def test_membership_is_case_insensitive(self, keypair):
        store = TrustedKeyStore([keypair[1].upper()])
        assert store.contains(keypair[1])
        assert store.is_configured
        assert len(store) == 1

    def test_empty_store_not_configured(self):
        assert not TrustedKeyStore([]).is_configured

    def test_load_from_yaml_skips_disabled(self, tmp_path, keypair):
        _, other_hex = keypair
        disabled_hex = public_key_to_hex(generate_keypair()[1])
        path = tmp_path / "trusted_keys.yaml"
        path.write_text(yaml.safe_dump({"keys": [
            {"name": "laptop", "public_key": other_hex},
            {"name": "old-phone", "public_key": disabled_hex, "enabled": False},
        ]}))

        assert load_keys_from_yaml(path) == [other_hex]

    def test_malformed_yaml_key_raises(self, tmp_path):
        path = tmp_path / "trusted_keys.yaml"
        path.write_text(yaml.safe_dump({"keys": [{"name": "bad", "public_key": "1234"}]}))

        with pytest.raises(ValueError, match="bad"):
            load_keys_from_yaml(path)

    def test_load_trusted_keys_merges_env_and_yaml(self, settings, tmp_path):
        env_hex = public_key_to_hex(generate_keypair()[1])
        yaml_hex = public_key_to_hex(generate_keypair()[1])
        (tmp_path / "trusted_keys.yaml").write_text(
            yaml.safe_dump({"keys": [{"name": "phone", "public_key": yaml_hex}]})
        )
        settings.allowed_public_keys = f"{env_hex}, "

        store = load_trusted_keys(settings)

        assert store.contains(env_hex)
        assert store.contains(yaml_hex)
        assert len(store) == 2
