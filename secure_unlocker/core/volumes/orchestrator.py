"""
Mount Orchestrator

Validates mount/unmount requests, drives a volume through its lifecycle via
the worker supervisor and relays the unlock secret into the volume's
channel. Requests for the same volume are serialized by a per-volume lock;
different volumes never contend.

A successful mount means "secret delivered", not "volume unlocked". A wrong
secret is retried by the worker on the next delivery and only shows up in
status()/list_volumes() and the logs.
"""

import logging
import threading
import time
from typing import Callable, Dict

from secure_unlocker.core.errors import ChannelError, OperationalFault, ValidationError
from secure_unlocker.core.volumes.channel import SecretChannel
from secure_unlocker.core.volumes.models import VolumeState, validate_volume_name
from secure_unlocker.core.volumes.registry import VolumeRegistry
from secure_unlocker.core.volumes.supervisor import SupervisorError, WorkerSupervisor

logger = logging.getLogger(__name__)


class MountOrchestrator:
    """Per-volume mount lifecycle driven on behalf of authenticated callers."""

    def __init__(
        self,
        registry: VolumeRegistry,
        supervisor: WorkerSupervisor,
        channels: Dict[str, SecretChannel],
        settle_delay: float = 0.5,
        write_timeout: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.channels = channels
        self.settle_delay = settle_delay
        self.write_timeout = write_timeout
        self._sleep = sleep
        self._locks = {name: threading.Lock() for name in registry.names()}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_volumes(self) -> Dict[str, str]:
        """Map every configured volume to "mounted" or "unmounted"."""
        return {name: self._state(name).list_status for name in self.registry.names()}

    def status(self, name: str) -> VolumeState:
        """Detailed lifecycle state of one volume."""
        self._resolve(name)
        return self._state(name)

    def _state(self, name: str) -> VolumeState:
        try:
            return self.supervisor.state(name)
        except SupervisorError as e:
            logger.error(f"Failed to query state of '{name}': {e}")
            raise OperationalFault("Failed to query volume state")

    def _resolve(self, name: str) -> str:
        validate_volume_name(name)
        if name not in self.registry:
            raise ValidationError(f"Unknown volume '{name}'")
        return name

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def mount(self, name: str, password: str) -> None:
        """
        Start the volume's worker and deliver the secret to it.

        Raises:
            ValidationError: Invalid/unknown name, missing password, already mounted
                or a previous secret is still being processed
            OperationalFault: Worker could not be started or the secret not delivered
        """
        self._resolve(name)
        if not password:
            raise ValidationError("Password is required in request body")

        with self._exclusive(name):
            state = self._state(name)
            if state is VolumeState.MOUNTED:
                raise ValidationError("Already mounted")
            if state is VolumeState.STOPPING:
                raise ValidationError("Volume is being unmounted")
            # Only a worker idle in awaiting-secret takes another secret
            if state in (VolumeState.STARTING, VolumeState.UNLOCKING) or (
                state.is_running and self.channels[name].pending
            ):
                raise ValidationError("Already mounted")

            if not state.is_running:
                try:
                    self.supervisor.reset_failed(name)
                    self.supervisor.start(name)
                except SupervisorError as e:
                    logger.error(f"Failed to start worker for '{name}': {e}")
                    raise OperationalFault("Failed to start mount service")
                if self.settle_delay > 0:
                    self._sleep(self.settle_delay)

            try:
                self.channels[name].send(password.encode("utf-8"), timeout=self.write_timeout)
            except ChannelError as e:
                logger.error(f"Failed to deliver secret for '{name}': {e}")
                raise OperationalFault("Failed to write to pipe")

        logger.info(f"Secret delivered for volume '{name}'")

    def unmount(self, name: str) -> None:
        """
        Stop the volume's worker, which unmounts and closes the volume.

        Raises:
            ValidationError: Invalid/unknown name or volume not active
            OperationalFault: The worker could not be stopped cleanly
        """
        self._resolve(name)

        with self._exclusive(name):
            state = self._state(name)
            if state is VolumeState.STOPPING:
                raise ValidationError("Volume is already being unmounted")
            if not state.is_running:
                raise ValidationError("Mount is not active")

            try:
                self.supervisor.stop(name)
            except SupervisorError as e:
                logger.error(f"Failed to unmount '{name}': {e}")
                raise OperationalFault("Failed to unmount")

        logger.info(f"Volume '{name}' unmounted")

    def _exclusive(self, name: str) -> "_VolumeLock":
        return _VolumeLock(self._locks[name], name)


class _VolumeLock:
    """Non-blocking per-volume guard; a concurrent request is rejected, not queued."""

    def __init__(self, lock: threading.Lock, name: str):
        self.lock = lock
        self.name = name

    def __enter__(self):
        if not self.lock.acquire(blocking=False):
            raise ValidationError(f"Operation already in progress for '{self.name}'")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.lock.release()
        return False
