"""
Centralized path configuration for secure-unlocker.

Supports:
- Local config: ./config/*.yaml
- External overlay: CONFIG_DIR=/etc/secure-unlocker
- Fallback to .example.yaml when .yaml missing

Usage:
    from secure_unlocker.core.paths import get_config_path

    volumes_path = get_config_path("volumes.yaml", required=True)
"""
import os
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# From secure_unlocker/core/paths.py -> secure_unlocker/core -> secure_unlocker -> repo root
_REPO_ROOT = Path(__file__).parent.parent.parent
_DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


def get_config_dir() -> Path:
    """Configured config directory (read at call time so tests can override it)."""
    return Path(os.getenv("CONFIG_DIR", str(_DEFAULT_CONFIG_DIR)))


def get_config_path(filename: str, required: bool = False) -> Optional[Path]:
    """
    Resolve config file path with fallback logic.

    Resolution order:
    1. CONFIG_DIR / filename
    2. CONFIG_DIR / filename.example.yaml (if .yaml)
    3. Default config dir / filename
    4. Default config dir / filename.example.yaml

    Args:
        filename: Config filename (e.g., "volumes.yaml")
        required: If True, raise FileNotFoundError when not found

    Returns:
        Path to config file, or None if not found and not required

    Raises:
        FileNotFoundError: If required=True and file not found
    """
    config_dir = get_config_dir()
    candidates = [config_dir / filename]
    if filename.endswith('.yaml'):
        candidates.append(config_dir / filename.replace('.yaml', '.example.yaml'))

    if config_dir != _DEFAULT_CONFIG_DIR:
        candidates.append(_DEFAULT_CONFIG_DIR / filename)
        if filename.endswith('.yaml'):
            candidates.append(_DEFAULT_CONFIG_DIR / filename.replace('.yaml', '.example.yaml'))

    for path in candidates:
        if path.exists():
            logger.debug(f"Config '{filename}' resolved to: {path}")
            return path

    if required:
        searched = [str(c) for c in candidates]
        raise FileNotFoundError(
            f"Required config file '{filename}' not found.\n"
            f"Searched: {searched}\n"
            f"Set CONFIG_DIR or create the file."
        )

    return None


def resolve_config_file(explicit: Optional[str], filename: str, required: bool = False) -> Optional[Path]:
    """Use an explicitly configured path if given, otherwise fall back to get_config_path()."""
    if explicit:
        path = Path(explicit).expanduser()
        if required and not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path
    return get_config_path(filename, required=required)
