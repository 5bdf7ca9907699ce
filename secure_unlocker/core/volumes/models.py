"""
Volume Models

Static description of an encrypted volume and the lifecycle states a
volume's worker moves through.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

from secure_unlocker.core.errors import ValidationError

# Enforced identically by clients
VOLUME_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")

DEFAULT_MAPPER_PREFIX = "secure-unlocker"


class BackingKind(str, Enum):
    """How the encrypted container is stored."""
    BLOCK = "block"  # block device(s)
    LOOP = "loop"    # file(s) attached through loop devices


class FilesystemKind(str, Enum):
    """Filesystem inside the encrypted mapping."""
    EXT4 = "ext4"
    BTRFS = "btrfs"

    @property
    def supports_multiple_devices(self) -> bool:
        return self is FilesystemKind.BTRFS


class VolumeState(str, Enum):
    """
    Observed lifecycle state of a volume.

    unmounted -> starting -> awaiting-secret -> unlocking -> mounted
    unlocking -> awaiting-secret (wrong secret)
    mounted -> stopping -> unmounted
    failed: the worker died unexpectedly; cleared by the next mount
    """
    UNMOUNTED = "unmounted"
    STARTING = "starting"
    AWAITING_SECRET = "awaiting-secret"
    UNLOCKING = "unlocking"
    MOUNTED = "mounted"
    STOPPING = "stopping"
    FAILED = "failed"

    @property
    def is_running(self) -> bool:
        """A worker instance exists for the volume."""
        return self in (
            VolumeState.STARTING,
            VolumeState.AWAITING_SECRET,
            VolumeState.UNLOCKING,
            VolumeState.MOUNTED,
        )

    @property
    def list_status(self) -> str:
        """Two-valued status reported by the list endpoint."""
        return "mounted" if self is VolumeState.MOUNTED else "unmounted"


def is_valid_volume_name(name: str) -> bool:
    return bool(name) and VOLUME_NAME_PATTERN.match(name) is not None


def validate_volume_name(name: str) -> str:
    """
    Check a volume name against the naming pattern.

    Raises:
        ValidationError: If the name contains anything but [a-zA-Z0-9._-]
    """
    if not is_valid_volume_name(name):
        raise ValidationError(
            "Invalid name format. Only alphanumeric characters, dots, hyphens, "
            "and underscores are allowed."
        )
    return name


def split_sources(source) -> List[str]:
    """Accept a list or a comma-separated string of sources."""
    if isinstance(source, str):
        return [s.strip() for s in source.split(",") if s.strip()]
    return [str(s).strip() for s in source or [] if str(s).strip()]


@dataclass(frozen=True)
class Volume:
    """
    A named encrypted volume.

    Attributes:
        name: Volume name (matches VOLUME_NAME_PATTERN)
        kind: Backing kind (block devices or loop-backed files)
        sources: One or more absolute source paths sharing one secret
        mount_point: Absolute path where the filesystem is mounted
        fs_type: Filesystem inside the mapping
        mapper_prefix: Prefix for device-mapper names
    """
    name: str
    kind: BackingKind
    sources: Tuple[str, ...]
    mount_point: str
    fs_type: FilesystemKind = FilesystemKind.EXT4
    mapper_prefix: str = field(default=DEFAULT_MAPPER_PREFIX)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not is_valid_volume_name(self.name):
            raise ValueError(f"Invalid volume name '{self.name}'")
        if not self.sources:
            raise ValueError(f"Volume '{self.name}': at least one source is required")
        for source in self.sources:
            if not source.startswith("/"):
                raise ValueError(f"Volume '{self.name}': source must be an absolute path ({source})")
        if not self.mount_point.startswith("/"):
            raise ValueError(f"Volume '{self.name}': mount_point must be an absolute path")
        if len(self.sources) > 1 and not self.fs_type.supports_multiple_devices:
            raise ValueError(
                f"Volume '{self.name}': multiple sources are only supported with btrfs "
                f"(got {self.fs_type.value})"
            )

    @property
    def is_multi_device(self) -> bool:
        return len(self.sources) > 1

    @property
    def mapper_names(self) -> List[str]:
        """Device-mapper names, one per source."""
        base = f"{self.mapper_prefix}-{self.name}"
        if not self.is_multi_device:
            return [base]
        return [f"{base}-{index}" for index in range(len(self.sources))]

    @property
    def mapper_paths(self) -> List[str]:
        return [f"/dev/mapper/{mapper}" for mapper in self.mapper_names]

    @classmethod
    def from_dict(cls, name: str, data: dict, mapper_prefix: str = DEFAULT_MAPPER_PREFIX) -> "Volume":
        """
        Build a volume from a configuration mapping.

        Raises:
            ValueError: If the mapping is invalid
        """
        try:
            kind = BackingKind(data.get("type", ""))
        except ValueError:
            raise ValueError(f"Volume '{name}': type must be 'loop' or 'block'")
        try:
            fs_type = FilesystemKind(data.get("fs_type", data.get("fsType", "ext4")))
        except ValueError:
            raise ValueError(f"Volume '{name}': fs_type must be 'ext4' or 'btrfs'")

        mount_point = data.get("mount_point", data.get("mountPoint"))
        if not mount_point:
            raise ValueError(f"Volume '{name}': mount_point is required")

        return cls(
            name=name,
            kind=kind,
            sources=tuple(split_sources(data.get("source", data.get("sources")))),
            mount_point=str(mount_point),
            fs_type=fs_type,
            mapper_prefix=mapper_prefix,
        )
