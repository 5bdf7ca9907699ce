"""
Device Initializer

One-time provisioning of encrypted volumes: format one or more sources with
LUKS2 under a single shared secret and create the filesystem across them,
or add a credential to sources that are already encrypted.

Sequential and interactive by nature; the CLI in cli/init_encrypted.py
handles prompting and this module does the work.
"""

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from secure_unlocker.core.errors import CommandError
from secure_unlocker.core.volumes.models import BackingKind, FilesystemKind, split_sources
from secure_unlocker.core.volumes.tools import VolumeTools, parse_size

logger = logging.getLogger(__name__)

BTRFS_PROFILES = ("single", "raid0", "raid1", "raid10")
DEFAULT_MULTI_DEVICE_PROFILE = "raid1"


class ProvisioningError(Exception):
    """Provisioning cannot proceed or failed part way."""


class InitAction(str, Enum):
    """What the initializer will do with the surveyed sources."""
    ADD_CREDENTIAL = "add-credential"   # sources already LUKS
    FORMAT = "format"                   # fresh sources
    FORMAT_DESTRUCTIVE = "format-destructive"  # existing non-LUKS block devices


@dataclass
class InitPlan:
    """
    Validated provisioning request.

    Attributes:
        sources: Block devices or files (one per LUKS container)
        kind: block or loop
        fs_type: ext4 (single source) or btrfs (one or more sources)
        size: Size of each file for loop sources, e.g. "10G"
        data_profile: btrfs data profile for multi-device filesystems
        metadata_profile: btrfs metadata profile for multi-device filesystems
    """
    sources: List[str]
    kind: BackingKind
    fs_type: FilesystemKind = FilesystemKind.EXT4
    size: Optional[str] = None
    data_profile: Optional[str] = None
    metadata_profile: Optional[str] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.sources = split_sources(self.sources)
        if not self.sources:
            raise ValueError("--source is required")
        if self.kind is BackingKind.LOOP:
            if not self.size:
                raise ValueError("--size is required when --type is 'loop'")
            parse_size(self.size)
        elif self.size:
            raise ValueError("--size should not be specified when --type is 'block'")

        if self.is_multi_device:
            if not self.fs_type.supports_multiple_devices:
                raise ValueError("Multiple devices (comma-separated) are only supported with btrfs filesystem")
            self.data_profile = self.data_profile or DEFAULT_MULTI_DEVICE_PROFILE
            self.metadata_profile = self.metadata_profile or DEFAULT_MULTI_DEVICE_PROFILE

        for profile in (self.data_profile, self.metadata_profile):
            if profile is not None and profile not in BTRFS_PROFILES:
                raise ValueError(f"Invalid btrfs profile '{profile}' (expected one of {', '.join(BTRFS_PROFILES)})")

    @classmethod
    def from_options(cls, source: str, kind: str, fs_type: str = "ext4", size: Optional[str] = None,
                     data_profile: Optional[str] = None, metadata_profile: Optional[str] = None) -> "InitPlan":
        """
        Build a plan from raw command-line values.

        Raises:
            ValueError: If any option is invalid
        """
        try:
            backing = BackingKind(kind)
        except ValueError:
            raise ValueError("--type must be 'block' or 'loop'")
        try:
            filesystem = FilesystemKind(fs_type)
        except ValueError:
            raise ValueError("--fsType must be 'ext4' or 'btrfs'")
        return cls(
            sources=split_sources(source),
            kind=backing,
            fs_type=filesystem,
            size=size or None,
            data_profile=data_profile or None,
            metadata_profile=metadata_profile or None,
        )

    @property
    def is_multi_device(self) -> bool:
        return len(self.sources) > 1

    @property
    def temp_mapper_names(self) -> List[str]:
        """Temporary mapper names used while creating the filesystem."""
        return [
            f"temp-init-{re.sub(r'[^a-zA-Z0-9]', '-', os.path.basename(source))}-{index}"
            for index, source in enumerate(self.sources)
        ]


@dataclass
class SourceSurvey:
    """What currently exists at each source path."""
    existing: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    luks: List[str] = field(default_factory=list)

    @property
    def some_exist(self) -> bool:
        return bool(self.existing)

    @property
    def all_exist(self) -> bool:
        return not self.missing


class DeviceInitializer:
    """Formats new encrypted volumes or adds credentials to existing ones."""

    def __init__(self, tools: Optional[VolumeTools] = None):
        self.tools = tools or VolumeTools()

    @staticmethod
    def is_block_device(path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def survey(self, plan: InitPlan) -> SourceSurvey:
        """
        Inspect every source.

        Raises:
            ProvisioningError: If a block source exists but is not a block device
        """
        survey = SourceSurvey()
        for source in plan.sources:
            if not os.path.exists(source):
                survey.missing.append(source)
                continue
            survey.existing.append(source)
            if plan.kind is BackingKind.BLOCK and not self.is_block_device(source):
                raise ProvisioningError(f"{source} exists but is not a block device")
            if self.tools.is_luks(source):
                survey.luks.append(source)
        return survey

    def decide(self, plan: InitPlan, survey: SourceSurvey) -> InitAction:
        """
        Choose what to do with the surveyed sources.

        Raises:
            ProvisioningError: Mixed existing/missing sources, existing non-LUKS
                files, or missing block devices
        """
        if survey.luks:
            return InitAction.ADD_CREDENTIAL

        if survey.some_exist and not survey.all_exist:
            listing = "; ".join(
                [f"EXISTS: {s}" for s in survey.existing] + [f"MISSING: {s}" for s in survey.missing]
            )
            raise ProvisioningError(
                f"Some sources exist and some don't. All sources must either exist or not exist. ({listing})"
            )

        if plan.kind is BackingKind.BLOCK:
            if survey.missing:
                raise ProvisioningError(f"Block device {survey.missing[0]} does not exist")
            return InitAction.FORMAT_DESTRUCTIVE

        if survey.some_exist:
            raise ProvisioningError(
                "File(s) exist but are not LUKS devices. Please remove them first or choose different paths."
            )
        return InitAction.FORMAT

    def describe_luks(self, survey: SourceSurvey, max_lines: int = 20) -> str:
        """Header summary of the first LUKS source."""
        if not survey.luks:
            return ""
        return "\n".join(self.tools.dump_header(survey.luks[0]).splitlines()[:max_lines])

    def add_credential(self, survey: SourceSurvey) -> None:
        """Interactively add a passphrase to every LUKS source."""
        for source in survey.luks:
            logger.info(f"Adding new password to {source}")
            self.tools.add_key(source)

    def format(self, plan: InitPlan, secret: bytes) -> None:
        """
        Encrypt every source with secret and create the filesystem.

        On failure, files created by this call are removed and temporary
        mappings closed.

        Raises:
            ProvisioningError: If any step failed
        """
        if not secret:
            raise ProvisioningError("Password must not be empty")

        created: List[Path] = []
        opened: List[str] = []
        try:
            if plan.kind is BackingKind.LOOP:
                size = parse_size(plan.size)
                for source in plan.sources:
                    created.append(self._create_sparse_file(Path(source), size))

            for index, source in enumerate(plan.sources, start=1):
                logger.info(f"Formatting {index}/{len(plan.sources)}: {source}")
                self.tools.format_luks(source, secret)

            for source, mapper in zip(plan.sources, plan.temp_mapper_names):
                self.tools.open_mapping(source, mapper, secret)
                opened.append(mapper)

            devices = [f"/dev/mapper/{mapper}" for mapper in opened]
            logger.info(f"Creating {plan.fs_type.value} filesystem on {', '.join(devices)}")
            self.tools.make_filesystem(
                plan.fs_type.value,
                devices,
                data_profile=plan.data_profile if plan.is_multi_device else None,
                metadata_profile=plan.metadata_profile if plan.is_multi_device else None,
            )
        except (CommandError, OSError) as e:
            logger.error(f"❌ Initialization failed: {e}")
            self._close_quietly(opened)
            for path in created:
                try:
                    path.unlink()
                except OSError as cleanup_error:
                    logger.warning(f"Could not remove {path}: {cleanup_error}")
            raise ProvisioningError(f"Initialization failed: {e}") from e

        for mapper in reversed(opened):
            self.tools.close_mapping(mapper)
        logger.info("✅ Initialization complete")

    def _create_sparse_file(self, path: Path, size: int) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "xb") as f:
            f.truncate(size)
        logger.info(f"Created sparse file {path} ({size} bytes)")
        return path

    def _close_quietly(self, mappers: List[str]) -> None:
        for mapper in reversed(mappers):
            try:
                self.tools.close_mapping(mapper)
            except CommandError as e:
                logger.warning(f"Could not close {mapper}: {e}")
