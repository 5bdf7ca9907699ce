"""
Volume Registry

Static configuration of the encrypted volumes this host manages, loaded
from YAML at startup and read-only afterwards (no locking needed).

Configuration format (config/volumes.yaml):
```yaml
volumes:
  vault:
    type: loop
    source: /var/encrypted/vault.img
    mount_point: /mnt/vault
  archive:
    type: block
    source: /dev/sdb1,/dev/sdc1
    mount_point: /mnt/archive
    fs_type: btrfs
```
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

from secure_unlocker.core.volumes.models import DEFAULT_MAPPER_PREFIX, Volume

logger = logging.getLogger(__name__)


class VolumeRegistry:
    """Registry of configured volumes keyed by name."""

    def __init__(self, volumes: Iterable[Volume] = ()):
        self._volumes: Dict[str, Volume] = {}
        for volume in volumes:
            if volume.name in self._volumes:
                raise ValueError(f"Duplicate volume name '{volume.name}'")
            self._volumes[volume.name] = volume

    @classmethod
    def from_yaml(cls, config_path: Path, mapper_prefix: str = DEFAULT_MAPPER_PREFIX) -> "VolumeRegistry":
        """
        Load volumes from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If any volume is invalid
        """
        config_path = Path(config_path)
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}

        volumes = []
        for name, data in (config.get("volumes") or {}).items():
            try:
                volumes.append(Volume.from_dict(str(name), data or {}, mapper_prefix=mapper_prefix))
            except ValueError as e:
                logger.error(f"Failed to load volume '{name}': {e}")
                raise ValueError(f"Invalid volume config for '{name}': {e}") from e

        registry = cls(volumes)
        logger.info(f"Loaded {len(registry)} volumes from {config_path}")
        return registry

    def get(self, name: str) -> Optional[Volume]:
        return self._volumes.get(name)

    def names(self) -> List[str]:
        return sorted(self._volumes)

    def __contains__(self, name: str) -> bool:
        return name in self._volumes

    def __iter__(self):
        return iter(self._volumes[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._volumes)


def load_volume_registry(settings, config_path: Optional[Path] = None) -> VolumeRegistry:
    """
    Load the volume registry named by settings.

    An absent configuration yields an empty registry (the API still serves
    /health and reports an empty list).
    """
    from secure_unlocker.core.paths import resolve_config_file

    path = config_path or resolve_config_file(settings.volumes_file, "volumes.yaml")
    if path is None or path.name == "volumes.example.yaml":
        logger.warning("No volumes.yaml found - no volumes are managed")
        return VolumeRegistry()
    return VolumeRegistry.from_yaml(path, mapper_prefix=settings.unit_prefix)
