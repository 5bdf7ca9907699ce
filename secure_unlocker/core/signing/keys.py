"""
Ed25519 Key Management

Provides key generation, loading, and serialization for Ed25519 keypairs.
Public keys travel as 64-character hex strings (raw 32 bytes); private keys
are stored as PKCS#8 PEM files.
Uses the cryptography library for all cryptographic operations.
"""

import os
from pathlib import Path
from typing import Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

PUBLIC_KEY_BYTES = 32
PUBLIC_KEY_HEX_LENGTH = PUBLIC_KEY_BYTES * 2


def generate_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate a new Ed25519 keypair.

    Returns:
        Tuple of (private_key, public_key)

    Example:
        >>> private_key, public_key = generate_keypair()
        >>> pub_hex = public_key_to_hex(public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def public_key_to_hex(public_key: Ed25519PublicKey) -> str:
    """
    Serialize a public key to a lowercase hex string.

    Args:
        public_key: Ed25519 public key object

    Returns:
        Hex-encoded public key (64 characters)
    """
    raw_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return raw_bytes.hex()


def normalize_public_key_hex(hex_key: str) -> str:
    """
    Validate and lowercase a hex-encoded public key.

    Raises:
        ValueError: If the key is not 64 hex characters
    """
    key = hex_key.strip().lower()
    if len(key) != PUBLIC_KEY_HEX_LENGTH:
        raise ValueError(
            f"Invalid public key length: {len(key)} hex characters (expected {PUBLIC_KEY_HEX_LENGTH})"
        )
    try:
        bytes.fromhex(key)
    except ValueError as e:
        raise ValueError(f"Invalid public key: not hex ({e})") from e
    return key


def hex_to_public_key(hex_key: str) -> Ed25519PublicKey:
    """
    Deserialize a hex-encoded public key string.

    Args:
        hex_key: Hex-encoded public key (64 characters, any case)

    Returns:
        Ed25519 public key object

    Raises:
        ValueError: If the key is invalid or wrong length
    """
    key = normalize_public_key_hex(hex_key)
    try:
        return Ed25519PublicKey.from_public_bytes(bytes.fromhex(key))
    except Exception as e:
        raise ValueError(f"Invalid public key: {e}") from e


def save_keypair(
    private_key: Ed25519PrivateKey,
    public_key: Ed25519PublicKey,
    directory: Path,
    name: str = "signing",
) -> Tuple[Path, Path]:
    """
    Save a keypair to files.

    Creates two files:
    - {name}.key (private key, PEM format, mode 0600)
    - {name}.pub (public key, hex)

    Args:
        private_key: Ed25519 private key
        public_key: Ed25519 public key
        directory: Directory to save keys in
        name: Base name for key files

    Returns:
        Tuple of (private_key_path, public_key_path)
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    private_path = directory / f"{name}.key"
    public_path = directory / f"{name}.pub"

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    private_path.write_bytes(private_pem)
    os.chmod(private_path, 0o600)  # Owner read/write only

    public_path.write_text(public_key_to_hex(public_key) + "\n")

    return private_path, public_path


def load_private_key(path: Path) -> Ed25519PrivateKey:
    """
    Load a private key from a PEM file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If key is invalid
    """
    path = Path(path).expanduser()
    pem_data = path.read_bytes()

    try:
        private_key = serialization.load_pem_private_key(pem_data, password=None)
    except Exception as e:
        raise ValueError(f"Failed to load private key from {path}: {e}") from e
    if not isinstance(private_key, Ed25519PrivateKey):
        raise ValueError(f"Not an Ed25519 key: {type(private_key)}")
    return private_key


def load_public_key(path: Path) -> Ed25519PublicKey:
    """Load a public key from a hex file."""
    return hex_to_public_key(Path(path).expanduser().read_text().strip())
