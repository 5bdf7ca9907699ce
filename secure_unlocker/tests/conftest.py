"""
Shared fixtures for the secure-unlocker test suite.

Privileged tooling is replaced by FakeVolumeTools, which keeps an in-memory
picture of loop devices, LUKS mappings and mounts and records every call.
"""
import threading
import time

import pytest

from secure_unlocker.core.config import Settings
from secure_unlocker.core.errors import CommandError
from secure_unlocker.core.signing.keys import generate_keypair, public_key_to_hex
from secure_unlocker.core.signing.registry import TrustedKeyStore
from secure_unlocker.core.volumes.models import BackingKind, FilesystemKind, Volume
from secure_unlocker.core.volumes.registry import VolumeRegistry
from secure_unlocker.core.volumes.tools import VolumeTools

VAULT_SECRET = b"P"


class FakeVolumeTools(VolumeTools):
    """In-memory stand-in for cryptsetup/losetup/mount."""

    def __init__(self, secret: bytes = VAULT_SECRET):
        super().__init__()
        self.secret = secret
        self.calls = []
        self.loops = {}        # loop device -> source
        self.mappings = {}     # mapper name -> device
        self.mounts = {}       # mount point -> (device, options)
        self.luks_devices = set()
        self.fail_mount = False
        self.fail_unmount = False
        self.fail_format = False
        self._lock = threading.Lock()

    def run(self, args, input=None, check=True):
        raise AssertionError(f"Unexpected command: {args}")

    def attach_loop(self, source):
        with self._lock:
            loop = f"/dev/loop{len(self.calls)}"
            self.loops[loop] = source
            self.calls.append(("attach_loop", source))
            return loop

    def find_loops(self, source):
        return [loop for loop, backing in self.loops.items() if backing == source]

    def detach_loop(self, loop_device):
        self.calls.append(("detach_loop", loop_device))
        self.loops.pop(loop_device, None)

    def is_luks(self, device):
        return device in self.luks_devices

    def open_mapping(self, device, mapper_name, secret):
        self.calls.append(("open_mapping", device, mapper_name))
        if secret != self.secret:
            raise CommandError(["cryptsetup", "luksOpen", device, mapper_name], 2,
                               "No key available with this passphrase.")
        self.mappings[mapper_name] = device

    def close_mapping(self, mapper_name):
        self.calls.append(("close_mapping", mapper_name))
        self.mappings.pop(mapper_name, None)

    def mapping_exists(self, mapper_name):
        return mapper_name in self.mappings

    def format_luks(self, device, secret):
        self.calls.append(("format_luks", device))
        if self.fail_format:
            raise CommandError(["cryptsetup", "luksFormat", device], 1, "Device is busy")
        self.luks_devices.add(device)
        self.secret = secret

    def add_key(self, device):
        self.calls.append(("add_key", device))

    def dump_header(self, device):
        return "LUKS header information\nVersion:       \t2\n"

    def mount(self, device, mount_point, options=()):
        self.calls.append(("mount", device, mount_point, tuple(options)))
        if self.fail_mount:
            raise CommandError(["mount", device, mount_point], 32, "wrong fs type")
        self.mounts[mount_point] = (device, tuple(options))

    def unmount(self, mount_point):
        self.calls.append(("unmount", mount_point))
        if self.fail_unmount:
            raise CommandError(["umount", mount_point], 32, "target is busy")
        self.mounts.pop(mount_point, None)

    def is_mountpoint(self, path):
        return path in self.mounts

    def make_filesystem(self, fs_type, devices, data_profile=None, metadata_profile=None):
        self.calls.append(("make_filesystem", fs_type, tuple(devices), data_profile, metadata_profile))

    def call_names(self):
        return [call[0] for call in self.calls]


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fake_tools():
    return FakeVolumeTools()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keypair():
    """Trusted client key pair: (private_key, public_hex)."""
    private_key, public_key = generate_keypair()
    return private_key, public_key_to_hex(public_key)


@pytest.fixture
def trusted_keys(keypair):
    return TrustedKeyStore([keypair[1]])


@pytest.fixture
def vault_volume():
    return Volume(
        name="vault",
        kind=BackingKind.LOOP,
        sources=("/var/encrypted/vault.img",),
        mount_point="/mnt/vault",
    )


@pytest.fixture
def archive_volume():
    return Volume(
        name="archive",
        kind=BackingKind.BLOCK,
        sources=("/dev/sdb1", "/dev/sdc1"),
        mount_point="/mnt/archive",
        fs_type=FilesystemKind.BTRFS,
    )


@pytest.fixture
def registry(vault_volume, archive_volume):
    return VolumeRegistry([vault_volume, archive_volume])


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: no .env, no config files, no settle delay."""
    return Settings(
        _env_file=None,
        allowed_public_keys="",
        volumes_file=str(tmp_path / "volumes.yaml"),
        trusted_keys_file=str(tmp_path / "trusted_keys.yaml"),
        pipes_dir=str(tmp_path / "pipes"),
        supervisor="thread",
        settle_delay_seconds=0,
        channel_write_timeout_seconds=1.0,
        worker_poll_interval_seconds=0.02,
        worker_stop_timeout_seconds=2.0,
    )


@pytest.fixture
def wait_until():
    return wait_for
