"""
Tests for volume configuration.

Covers:
- Volume name validation
- Volume dataclass validation and mapper naming
- Loading the registry from YAML
"""

import pytest
import yaml

from secure_unlocker.core.errors import ValidationError
from secure_unlocker.core.volumes.models import (
    BackingKind,
    FilesystemKind,
    Volume,
    VolumeState,
    is_valid_volume_name,
    split_sources,
    validate_volume_name,
)
from secure_unlocker.core.volumes.registry import VolumeRegistry, load_volume_registry


class TestVolumeNames:
    @pytest.mark.parametrize("name", ["vault", "my.vault", "backup_2024", "a-b-c", "X"])
    def test_valid(self, name):
        assert is_valid_volume_name(name)
        assert validate_volume_name(name) == name

    @pytest.mark.parametrize("name", ["", "bad name", "../etc", "vault;rm", "a/b", "café"])
    def test_invalid(self, name):
        assert not is_valid_volume_name(name)
        with pytest.raises(ValidationError, match="Invalid name format"):
            validate_volume_name(name)


class TestVolume:
    """Tests for Volume dataclass."""

    def test_single_source_mapper(self, vault_volume):
        assert vault_volume.mapper_names == ["secure-unlocker-vault"]
        assert vault_volume.mapper_paths == ["/dev/mapper/secure-unlocker-vault"]
        assert not vault_volume.is_multi_device

    def test_multi_device_mappers(self, archive_volume):
        assert archive_volume.is_multi_device
        assert archive_volume.mapper_names == ["secure-unlocker-archive-0", "secure-unlocker-archive-1"]

    def test_multiple_sources_require_btrfs(self):
        with pytest.raises(ValueError, match="only supported with btrfs"):
            Volume(
                name="data",
                kind=BackingKind.BLOCK,
                sources=("/dev/sdb1", "/dev/sdc1"),
                mount_point="/mnt/data",
                fs_type=FilesystemKind.EXT4,
            )

    def test_relative_paths_rejected(self):
        with pytest.raises(ValueError, match="absolute"):
            Volume(name="data", kind=BackingKind.LOOP, sources=("data.img",), mount_point="/mnt/data")
        with pytest.raises(ValueError, match="absolute"):
            Volume(name="data", kind=BackingKind.LOOP, sources=("/data.img",), mount_point="mnt/data")

    def test_from_dict_accepts_comma_separated_sources(self):
        volume = Volume.from_dict("archive", {
            "type": "block",
            "source": "/dev/sdb1, /dev/sdc1",
            "mountPoint": "/mnt/archive",
            "fsType": "btrfs",
        })
        assert volume.sources == ("/dev/sdb1", "/dev/sdc1")
        assert volume.fs_type is FilesystemKind.BTRFS

    def test_from_dict_invalid_type(self):
        with pytest.raises(ValueError, match="type must be"):
            Volume.from_dict("vault", {"type": "nfs", "source": "/x", "mount_point": "/mnt/x"})

    def test_split_sources(self):
        assert split_sources("/a,,/b ") == ["/a", "/b"]
        assert split_sources(["/a", " /b"]) == ["/a", "/b"]


class TestVolumeState:
    def test_list_status(self):
        assert VolumeState.MOUNTED.list_status == "mounted"
        for state in VolumeState:
            if state is not VolumeState.MOUNTED:
                assert state.list_status == "unmounted"

    def test_running_states(self):
        assert VolumeState.AWAITING_SECRET.is_running
        assert VolumeState.MOUNTED.is_running
        assert not VolumeState.UNMOUNTED.is_running
        assert not VolumeState.FAILED.is_running
        assert not VolumeState.STOPPING.is_running


class TestVolumeRegistry:
    """Tests for loading volumes from YAML."""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "volumes.yaml"
        path.write_text(yaml.safe_dump({"volumes": {
            "vault": {"type": "loop", "source": "/var/encrypted/vault.img", "mount_point": "/mnt/vault"},
            "archive": {"type": "block", "source": "/dev/sdb1,/dev/sdc1",
                        "mount_point": "/mnt/archive", "fs_type": "btrfs"},
        }}))

        registry = VolumeRegistry.from_yaml(path)

        assert registry.names() == ["archive", "vault"]
        assert "vault" in registry
        assert registry.get("vault").kind is BackingKind.LOOP
        assert registry.get("missing") is None

    def test_invalid_volume_aborts_load(self, tmp_path):
        path = tmp_path / "volumes.yaml"
        path.write_text(yaml.safe_dump({"volumes": {
            "data": {"type": "block", "source": "/dev/sdb1,/dev/sdc1", "mount_point": "/mnt/data"},
        }}))

        with pytest.raises(ValueError, match="Invalid volume config for 'data'"):
            VolumeRegistry.from_yaml(path)

    def test_duplicate_names_rejected(self, vault_volume):
        with pytest.raises(ValueError, match="Duplicate"):
            VolumeRegistry([vault_volume, vault_volume])

    def test_mapper_prefix_from_settings(self, settings, tmp_path):
        (tmp_path / "volumes.yaml").write_text(yaml.safe_dump({"volumes": {
            "vault": {"type": "loop", "source": "/v.img", "mount_point": "/mnt/vault"},
        }}))
        settings.unit_prefix = "unlocker"

        registry = load_volume_registry(settings)

        assert registry.get("vault").mapper_names == ["unlocker-vault"]

    def test_missing_file_without_explicit_path_yields_empty_registry(self, settings, tmp_path, monkeypatch):
        monkeypatch.setenv("CONFIG_DIR", str(tmp_path / "nowhere"))
        settings.volumes_file = None

        registry = load_volume_registry(settings)

        # Falls back to the bundled example, which is never loaded as real config
        assert len(registry) == 0
