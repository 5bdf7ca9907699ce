"""
Trusted Key Registry

Holds the allow-list of Ed25519 public keys permitted to sign requests.
Keys come from the ALLOWED_PUBLIC_KEYS setting and, optionally, a YAML file.
The store is immutable after construction.

Configuration format (config/trusted_keys.yaml):
```yaml
keys:
  - name: "phone"
    public_key: "64-hex-character-public-key"
    enabled: true
  - name: "old-laptop"
    public_key: "..."
    enabled: false
```
"""

import logging
from pathlib import Path
from typing import FrozenSet, Iterable, Optional

import yaml

from secure_unlocker.core.signing.keys import normalize_public_key_hex

logger = logging.getLogger(__name__)


class TrustedKeyStore:
    """
    Immutable set of trusted public keys (normalized lowercase hex).

    Thread-safe for reads (never mutated after construction).
    """

    def __init__(self, keys: Iterable[str] = ()):
        normalized = set()
        for key in keys:
            normalized.add(normalize_public_key_hex(key))
        self._keys: FrozenSet[str] = frozenset(normalized)

    def contains(self, public_key_hex: str) -> bool:
        """Check membership, ignoring hex case."""
        return public_key_hex.strip().lower() in self._keys

    @property
    def is_configured(self) -> bool:
        """False when the allow-list is empty (every request is rejected)."""
        return bool(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self):
        return iter(sorted(self._keys))


def load_keys_from_yaml(config_path: Path) -> list:
    """
    Read enabled public keys from a YAML allow-list.

    Raises:
        ValueError: If an entry is malformed
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"Trusted keys file not found: {config_path}")
        return []

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    keys = []
    for index, entry in enumerate(config.get("keys") or []):
        if not isinstance(entry, dict):
            raise ValueError(f"Invalid trusted key entry #{index}: expected a mapping")
        name = entry.get("name", f"key-{index}")
        if not entry.get("enabled", True):
            logger.info(f"Trusted key '{name}' is disabled, skipping")
            continue
        try:
            keys.append(normalize_public_key_hex(str(entry.get("public_key", ""))))
        except ValueError as e:
            raise ValueError(f"Invalid trusted key '{name}': {e}") from e

    logger.info(f"Loaded {len(keys)} trusted keys from {config_path}")
    return keys


def load_trusted_keys(settings, config_path: Optional[Path] = None) -> TrustedKeyStore:
    """
    Build the trusted key store from settings and the optional YAML file.

    Args:
        settings: Settings instance (uses allowed_public_keys_list / trusted_keys_file)
        config_path: Explicit YAML path, overrides settings

    Returns:
        TrustedKeyStore (may be empty; the verifier then fails closed)
    """
    from secure_unlocker.core.paths import resolve_config_file

    keys = list(settings.allowed_public_keys_list)

    path = config_path or resolve_config_file(settings.trusted_keys_file, "trusted_keys.yaml")
    if path is not None and path.name != "trusted_keys.example.yaml":
        keys.extend(load_keys_from_yaml(path))

    store = TrustedKeyStore(keys)
    if not store.is_configured:
        logger.warning("No trusted public keys configured - all authenticated requests will be refused")
    return store
