"""
Asymmetric Request Signing Module

Ed25519-based request signing for remote unlock clients. A request is
accepted when its public key is trusted, its timestamp is fresh and its
signature covers the canonical message.
"""

from secure_unlocker.core.signing.keys import (
    generate_keypair,
    hex_to_public_key,
    load_private_key,
    load_public_key,
    public_key_to_hex,
    save_keypair,
)
from secure_unlocker.core.signing.registry import (
    TrustedKeyStore,
    load_trusted_keys,
)
from secure_unlocker.core.signing.verify import (
    HEADER_PUBLIC_KEY,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    SignatureVerifier,
    VerificationError,
    VerificationResult,
    create_canonical_message,
    hash_body,
    sign_request,
)

__all__ = [
    # Keys
    "generate_keypair",
    "hex_to_public_key",
    "load_private_key",
    "load_public_key",
    "public_key_to_hex",
    "save_keypair",
    # Registry
    "TrustedKeyStore",
    "load_trusted_keys",
    # Verification
    "HEADER_PUBLIC_KEY",
    "HEADER_SIGNATURE",
    "HEADER_TIMESTAMP",
    "SignatureVerifier",
    "VerificationError",
    "VerificationResult",
    "create_canonical_message",
    "hash_body",
    "sign_request",
]
