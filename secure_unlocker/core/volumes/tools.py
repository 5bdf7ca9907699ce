"""
Disk Tooling

Thin wrappers around the external commands that open, mount and tear down
encrypted volumes (cryptsetup, losetup, mount, umount, mountpoint, mkfs).
Secrets are passed on stdin, never on the command line, and never logged.
"""

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from secure_unlocker.core.errors import CommandError

logger = logging.getLogger(__name__)

# losetup -j output: "/dev/loop0: [2049]:1234 (/var/encrypted/vault.img)"
_LOSETUP_LINE = re.compile(r"^(/dev/loop\d+):")

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}


def parse_size(size: str) -> int:
    """
    Parse a size such as "500M" or "10G" into bytes.

    Raises:
        ValueError: If the size is malformed or not positive
    """
    match = re.fullmatch(r"\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*", size or "", flags=re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size: '{size}' (expected e.g. 500M or 10G)")
    value = int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]
    if value <= 0:
        raise ValueError(f"Size must be positive: '{size}'")
    return value


class VolumeTools:
    """
    Runs disk tooling commands.

    Each method raises CommandError when the underlying command fails.
    Binary names can be overridden for hosts where the tools are not on PATH.
    """

    def __init__(
        self,
        cryptsetup: str = "cryptsetup",
        losetup: str = "losetup",
        mount: str = "mount",
        umount: str = "umount",
        mountpoint: str = "mountpoint",
        timeout: Optional[float] = 120,
    ):
        self.cryptsetup_bin = cryptsetup
        self.losetup_bin = losetup
        self.mount_bin = mount
        self.umount_bin = umount
        self.mountpoint_bin = mountpoint
        self.timeout = timeout

    def run(self, args: Sequence[str], input: Optional[bytes] = None,
            check: bool = True) -> subprocess.CompletedProcess:
        """Run a command, capturing output."""
        logger.debug(f"Running: {' '.join(args)}")
        try:
            process = subprocess.run(
                list(args),
                input=input,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(args, None, f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise CommandError(args, None, str(e)) from e

        if check and process.returncode != 0:
            stderr = process.stderr.decode(errors="replace") if process.stderr else ""
            raise CommandError(args, process.returncode, stderr)
        return process

    # ------------------------------------------------------------------
    # Loop devices
    # ------------------------------------------------------------------

    def attach_loop(self, source: str) -> str:
        """Attach a file to the first free loop device and return its path."""
        process = self.run([self.losetup_bin, "--find", "--show", source])
        return process.stdout.decode().strip()

    def find_loops(self, source: str) -> List[str]:
        """Loop devices currently backed by source."""
        process = self.run([self.losetup_bin, "-j", source])
        loops = []
        for line in process.stdout.decode().splitlines():
            match = _LOSETUP_LINE.match(line.strip())
            if match:
                loops.append(match.group(1))
        return loops

    def detach_loop(self, loop_device: str) -> None:
        self.run([self.losetup_bin, "-d", loop_device])

    # ------------------------------------------------------------------
    # LUKS
    # ------------------------------------------------------------------

    def is_luks(self, device: str) -> bool:
        return self.run([self.cryptsetup_bin, "isLuks", device], check=False).returncode == 0

    def open_mapping(self, device: str, mapper_name: str, secret: bytes) -> None:
        """Open a LUKS container, reading the passphrase from stdin."""
        self.run([self.cryptsetup_bin, "luksOpen", device, mapper_name, "--key-file", "-"], input=secret)

    def close_mapping(self, mapper_name: str) -> None:
        self.run([self.cryptsetup_bin, "luksClose", mapper_name])

    def mapping_exists(self, mapper_name: str) -> bool:
        return os.path.exists(f"/dev/mapper/{mapper_name}")

    def format_luks(self, device: str, secret: bytes) -> None:
        """Format a device with LUKS2 (destroys its contents)."""
        self.run(
            [self.cryptsetup_bin, "luksFormat", "--type", "luks2", "--batch-mode", device, "--key-file", "-"],
            input=secret,
        )

    def add_key(self, device: str) -> None:
        """Add a passphrase slot interactively (inherits the terminal)."""
        args = [self.cryptsetup_bin, "luksAddKey", device]
        returncode = subprocess.call(args)
        if returncode != 0:
            raise CommandError(args, returncode)

    def dump_header(self, device: str) -> str:
        return self.run([self.cryptsetup_bin, "luksDump", device]).stdout.decode(errors="replace")

    # ------------------------------------------------------------------
    # Filesystems
    # ------------------------------------------------------------------

    def mount(self, device: str, mount_point: str, options: Sequence[str] = ()) -> None:
        Path(mount_point).mkdir(parents=True, exist_ok=True)
        args = [self.mount_bin]
        if options:
            args += ["-o", ",".join(options)]
        self.run(args + [device, mount_point])

    def unmount(self, mount_point: str) -> None:
        self.run([self.umount_bin, mount_point])

    def is_mountpoint(self, path: str) -> bool:
        return self.run([self.mountpoint_bin, "-q", path], check=False).returncode == 0

    def make_filesystem(self, fs_type: str, devices: Sequence[str],
                        data_profile: Optional[str] = None,
                        metadata_profile: Optional[str] = None) -> None:
        """Create ext4 on a single device or btrfs across one or more devices."""
        if fs_type == "ext4":
            self.run(["mkfs.ext4", "-F", devices[0]])
            return
        args = ["mkfs.btrfs", "-f"]
        if data_profile:
            args += ["-d", data_profile]
        if metadata_profile:
            args += ["-m", metadata_profile]
        self.run(args + list(devices))
