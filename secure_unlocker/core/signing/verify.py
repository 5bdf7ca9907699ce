"""
Signature Verification

Verifies Ed25519 signatures on incoming requests.
Implements the canonical message format, trusted-key membership and
timestamp freshness.

Canonical Message Format:
    {METHOD}:{PATH_WITH_QUERY}:{TIMESTAMP}:{BODY_HASH}

Where:
    - METHOD: HTTP method exactly as sent (GET, POST, ...)
    - PATH_WITH_QUERY: Request path including query string, byte-for-byte
    - TIMESTAMP: Unix timestamp in seconds, as sent in X-Timestamp
    - BODY_HASH: SHA-256 hex digest of the raw body (digest of b"" when empty)

There is no nonce cache: a captured request can be replayed unchanged until
its timestamp leaves the freshness window.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from cryptography.exceptions import InvalidSignature

from secure_unlocker.core.signing.keys import hex_to_public_key
from secure_unlocker.core.signing.registry import TrustedKeyStore

logger = logging.getLogger(__name__)


# Header names
HEADER_SIGNATURE = "X-Signature"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_PUBLIC_KEY = "X-Public-Key"

# Timestamp tolerance: ±5 minutes
TIMESTAMP_TOLERANCE_SECONDS = 300

# Paths served without authentication (health check and static web client)
EXEMPT_PATHS = frozenset({"/", "/health", "/manifest.json", "/sw.js"})
EXEMPT_PREFIXES = ("/icon",)


class VerificationError(Enum):
    """Enumeration of possible verification failures."""
    NOT_CONFIGURED = "not_configured"
    MISSING_HEADERS = "missing_headers"
    UNTRUSTED_KEY = "untrusted_key"
    INVALID_TIMESTAMP_FORMAT = "invalid_timestamp_format"
    TIMESTAMP_OUT_OF_WINDOW = "timestamp_out_of_window"
    INVALID_SIGNATURE_FORMAT = "invalid_signature_format"
    SIGNATURE_VERIFICATION_FAILED = "signature_verification_failed"


# Failures that are malformed rather than hostile, or a server-side problem
_UNCOUNTED_ERRORS = frozenset({VerificationError.NOT_CONFIGURED, VerificationError.MISSING_HEADERS})


@dataclass
class VerificationResult:
    """
    Result of signature verification.

    Attributes:
        success: Whether verification succeeded (or the path is exempt)
        error: Error type if verification failed
        error_message: Internal description, for logs only
        public_key: Normalized hex public key that signed the request
        timestamp: Parsed timestamp (if valid)
        exempt: True when the path bypasses verification
    """
    success: bool
    error: Optional[VerificationError] = None
    error_message: Optional[str] = None
    public_key: Optional[str] = None
    timestamp: Optional[int] = None
    exempt: bool = False

    @property
    def counts_as_failure(self) -> bool:
        """Whether this outcome is charged against the authentication rate limit."""
        return not self.success and self.error not in _UNCOUNTED_ERRORS

    @classmethod
    def ok(cls, public_key: str, timestamp: int) -> "VerificationResult":
        """Create a successful result."""
        return cls(success=True, public_key=public_key, timestamp=timestamp)

    @classmethod
    def fail(cls, error: VerificationError, message: str) -> "VerificationResult":
        """Create a failed result."""
        return cls(success=False, error=error, error_message=message)


def hash_body(body: Optional[bytes]) -> str:
    """
    Compute SHA-256 hash of request body.

    Args:
        body: Request body bytes (None or b"" for no body)

    Returns:
        Hex-encoded SHA-256 digest
    """
    return hashlib.sha256(body or b"").hexdigest()


def create_canonical_message(method: str, path: str, timestamp: str, body: Optional[bytes] = b"") -> str:
    """
    Create the canonical message string for signing/verification.

    The path is used exactly as received; no normalization of trailing
    slashes or query parameter order takes place.

    Example:
        >>> create_canonical_message("GET", "/list", "1703001234", b"")
        'GET:/list:1703001234:e3b0c442...'
    """
    return f"{method}:{path}:{timestamp}:{hash_body(body)}"


def is_exempt_path(path: str) -> bool:
    """Check whether a request path bypasses signature verification."""
    return path in EXEMPT_PATHS or path.startswith(EXEMPT_PREFIXES)


class SignatureVerifier:
    """
    Validates signed requests against a trusted-key allow-list.

    Checks, in order:
    1. Exempt paths pass through untouched
    2. An empty allow-list rejects everything (fail closed)
    3. Signature, timestamp and public key headers are present
    4. Public key is in the allow-list (case-insensitive hex)
    5. Timestamp is numeric and within the freshness window
    6. Ed25519 signature over the canonical message is valid
    """

    def __init__(
        self,
        trusted_keys: TrustedKeyStore,
        freshness_window: int = TIMESTAMP_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.trusted_keys = trusted_keys
        self.freshness_window = freshness_window
        self._clock = clock

    def verify(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Optional[bytes] = b"",
    ) -> VerificationResult:
        """
        Verify a request.

        Args:
            method: HTTP method
            path: Request path including query string
            headers: Request headers (case-insensitive mapping)
            body: Raw request body bytes

        Returns:
            VerificationResult; callers must not reveal which check failed
        """
        route_path = path.split("?", 1)[0]
        if is_exempt_path(route_path):
            return VerificationResult(success=True, exempt=True)

        if not self.trusted_keys.is_configured:
            return VerificationResult.fail(
                VerificationError.NOT_CONFIGURED,
                "No trusted public keys configured"
            )

        signature = headers.get(HEADER_SIGNATURE)
        timestamp_str = headers.get(HEADER_TIMESTAMP)
        public_key_hex = headers.get(HEADER_PUBLIC_KEY)

        if not signature or not timestamp_str or not public_key_hex:
            missing = [
                name for name, value in (
                    (HEADER_SIGNATURE, signature),
                    (HEADER_TIMESTAMP, timestamp_str),
                    (HEADER_PUBLIC_KEY, public_key_hex),
                ) if not value
            ]
            return VerificationResult.fail(
                VerificationError.MISSING_HEADERS,
                f"Missing required headers: {', '.join(missing)}"
            )

        # 1. Membership
        public_key_norm = public_key_hex.strip().lower()
        if not self.trusted_keys.contains(public_key_norm):
            return VerificationResult.fail(
                VerificationError.UNTRUSTED_KEY,
                f"Public key not trusted: {public_key_norm[:16]}..."
            )

        # 2. Freshness
        try:
            timestamp = int(timestamp_str)
        except (ValueError, TypeError):
            return VerificationResult.fail(
                VerificationError.INVALID_TIMESTAMP_FORMAT,
                f"Invalid timestamp format: '{timestamp_str}'"
            )

        now = int(self._clock())
        if abs(now - timestamp) > self.freshness_window:
            return VerificationResult.fail(
                VerificationError.TIMESTAMP_OUT_OF_WINDOW,
                f"Timestamp outside window: {timestamp} (now: {now})"
            )

        # 3. Signature
        try:
            signature_bytes = bytes.fromhex(signature)
        except ValueError:
            return VerificationResult.fail(
                VerificationError.INVALID_SIGNATURE_FORMAT,
                "Signature is not valid hex"
            )

        canonical = create_canonical_message(method, path, timestamp_str, body)

        try:
            public_key = hex_to_public_key(public_key_norm)
            public_key.verify(signature_bytes, canonical.encode("utf-8"))
        except InvalidSignature:
            return VerificationResult.fail(
                VerificationError.SIGNATURE_VERIFICATION_FAILED,
                "Signature did not match message"
            )
        except ValueError as e:
            return VerificationResult.fail(
                VerificationError.SIGNATURE_VERIFICATION_FAILED,
                f"Signature verification error: {e}"
            )

        return VerificationResult.ok(public_key=public_key_norm, timestamp=timestamp)


def sign_request(
    private_key,  # Ed25519PrivateKey
    method: str,
    path: str,
    body: bytes = b"",
    timestamp: Optional[int] = None,
) -> dict:
    """
    Sign a request (for the client and for tests).

    Args:
        private_key: Ed25519 private key
        method: HTTP method
        path: Request path including query string
        body: Exact request body bytes
        timestamp: Override the signing time (defaults to now)

    Returns:
        Dict with headers to add to the request
    """
    from secure_unlocker.core.signing.keys import public_key_to_hex

    ts = str(int(time.time()) if timestamp is None else timestamp)
    canonical = create_canonical_message(method, path, ts, body)
    signature = private_key.sign(canonical.encode("utf-8"))

    return {
        HEADER_SIGNATURE: signature.hex(),
        HEADER_TIMESTAMP: ts,
        HEADER_PUBLIC_KEY: public_key_to_hex(private_key.public_key()),
    }
