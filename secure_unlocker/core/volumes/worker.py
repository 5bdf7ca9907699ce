"""
Unlock Worker

Privileged per-volume routine: wait for a secret on the volume's channel,
open every source with it, mount the filesystem and then stay resident
until asked to stop. A wrong secret rolls back whatever was opened and
the worker goes back to waiting.

The same class backs both supervisors: ThreadSupervisor runs it in a
daemon thread, SystemdSupervisor runs it as `secure-unlocker-worker run`.
"""

import logging
import threading
from typing import List, Optional

from secure_unlocker.core.errors import CommandError
from secure_unlocker.core.volumes.channel import SecretChannel
from secure_unlocker.core.volumes.models import BackingKind, FilesystemKind, Volume, VolumeState
from secure_unlocker.core.volumes.tools import VolumeTools

logger = logging.getLogger(__name__)


class UnlockWorker:
    """
    Drives one volume from awaiting-secret to mounted.

    Attributes:
        state: Current lifecycle state as seen by the worker
        attempts: Number of unlock attempts made so far
    """

    def __init__(
        self,
        volume: Volume,
        channel: SecretChannel,
        tools: VolumeTools,
        poll_interval: float = 0.5,
    ):
        self.volume = volume
        self.channel = channel
        self.tools = tools
        self.poll_interval = poll_interval
        self.state = VolumeState.STARTING
        self.attempts = 0

    def run(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Wait for secrets until the volume is mounted or stop_event is set.

        Empty secrets are ignored. Returns True once the volume is mounted,
        False if stopped before that.
        """
        stop_event = stop_event or threading.Event()
        self.state = VolumeState.AWAITING_SECRET
        logger.info(f"Waiting for secret for volume '{self.volume.name}'")

        while not stop_event.is_set():
            secret = self.channel.receive(timeout=self.poll_interval)
            if secret is None:
                continue
            try:
                if not secret:
                    continue
                if stop_event.is_set():
                    break
                if self.attempt_unlock(secret):
                    return True
            finally:
                self.channel.task_done()

        logger.info(f"Worker for '{self.volume.name}' stopped before mounting")
        return False

    def attempt_unlock(self, secret: bytes) -> bool:
        """
        Open all sources with secret and mount the filesystem.

        On any failure the mappings and loop devices opened by this attempt
        are released and the worker returns to awaiting-secret.
        """
        self.attempts += 1
        self.state = VolumeState.UNLOCKING
        volume = self.volume
        attached_loops: List[str] = []
        opened_mappers: List[str] = []

        try:
            for source, mapper in zip(volume.sources, volume.mapper_names):
                device = source
                if volume.kind is BackingKind.LOOP:
                    device = self.tools.attach_loop(source)
                    attached_loops.append(device)
                self.tools.open_mapping(device, mapper, secret)
                opened_mappers.append(mapper)

            self.tools.mount(volume.mapper_paths[0], volume.mount_point, self._mount_options())
        except CommandError as e:
            logger.warning(
                f"Unlock attempt {self.attempts} for '{volume.name}' failed: {e}"
            )
            self._rollback(opened_mappers, attached_loops)
            self.state = VolumeState.AWAITING_SECRET
            return False

        self.state = VolumeState.MOUNTED
        logger.info(f"✅ Volume '{volume.name}' mounted at {volume.mount_point}")
        return True

    def _mount_options(self) -> List[str]:
        # btrfs needs every member device named when the module scan has not seen them yet
        if self.volume.fs_type is FilesystemKind.BTRFS and self.volume.is_multi_device:
            return [f"device={path}" for path in self.volume.mapper_paths]
        return []

    def _rollback(self, mappers: List[str], loops: List[str]) -> None:
        for mapper in reversed(mappers):
            try:
                self.tools.close_mapping(mapper)
            except CommandError as e:
                logger.warning(f"Rollback: could not close {mapper}: {e}")
        for loop in reversed(loops):
            try:
                self.tools.detach_loop(loop)
            except CommandError as e:
                logger.warning(f"Rollback: could not detach {loop}: {e}")

    def cleanup(self) -> List[str]:
        """
        Tear the volume down: unmount, close mappings, detach loop devices.

        Every step runs even if an earlier one failed. Returns the list of
        steps that failed (empty on a clean teardown).
        """
        return cleanup_volume(self.volume, self.tools)


def cleanup_volume(volume: Volume, tools: VolumeTools) -> List[str]:
    """Best-effort teardown of a volume's mount, mappings and loop devices."""
    failures: List[str] = []

    try:
        if tools.is_mountpoint(volume.mount_point):
            tools.unmount(volume.mount_point)
            logger.info(f"Unmounted {volume.mount_point}")
    except CommandError as e:
        logger.warning(f"Cleanup: unmount of {volume.mount_point} failed: {e}")
        failures.append(f"umount {volume.mount_point}")

    for mapper in reversed(volume.mapper_names):
        try:
            if tools.mapping_exists(mapper):
                tools.close_mapping(mapper)
                logger.info(f"Closed mapping {mapper}")
        except CommandError as e:
            logger.warning(f"Cleanup: luksClose {mapper} failed: {e}")
            failures.append(f"luksClose {mapper}")

    if volume.kind is BackingKind.LOOP:
        for source in volume.sources:
            try:
                for loop in tools.find_loops(source):
                    tools.detach_loop(loop)
                    logger.info(f"Detached {loop} ({source})")
            except CommandError as e:
                logger.warning(f"Cleanup: detaching loops for {source} failed: {e}")
                failures.append(f"losetup -d {source}")

    return failures
