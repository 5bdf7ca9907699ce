"""
Worker Supervisors

A supervisor owns the per-volume unlock workers: it starts and stops them
and is the single source of truth for each volume's lifecycle state.

- ThreadSupervisor: workers run as daemon threads inside the API process
  and their state is tracked explicitly.
- SystemdSupervisor: workers run as `<prefix>-<name>.service` units; state
  is derived from the unit's ActiveState/SubState.
"""

import logging
import subprocess
import threading
from typing import Dict, List, Optional

from secure_unlocker.core.errors import CommandError
from secure_unlocker.core.volumes.channel import SecretChannel
from secure_unlocker.core.volumes.models import Volume, VolumeState
from secure_unlocker.core.volumes.registry import VolumeRegistry
from secure_unlocker.core.volumes.tools import VolumeTools
from secure_unlocker.core.volumes.worker import UnlockWorker, cleanup_volume

logger = logging.getLogger(__name__)


class SupervisorError(Exception):
    """A worker could not be started, stopped or queried."""


class WorkerSupervisor:
    """Interface shared by supervisor backends."""

    def state(self, name: str) -> VolumeState:
        raise NotImplementedError

    def reset_failed(self, name: str) -> None:
        """Clear a terminal failure so the worker can be started again."""
        raise NotImplementedError

    def start(self, name: str) -> None:
        raise NotImplementedError

    def stop(self, name: str) -> None:
        """Stop the worker and tear the volume down."""
        raise NotImplementedError

    def shutdown(self) -> None:
        """Release supervisor resources when the service exits."""


# ============================================================================
# In-process supervisor
# ============================================================================

class _WorkerHandle:
    """Bookkeeping for one volume's worker thread."""

    def __init__(self, volume: Volume):
        self.volume = volume
        self.lock = threading.Lock()
        # Explicit state; None means "whatever the live worker reports"
        self.override: Optional[VolumeState] = VolumeState.UNMOUNTED
        self.worker: Optional[UnlockWorker] = None
        self.thread: Optional[threading.Thread] = None
        self.stop_event: Optional[threading.Event] = None


class ThreadSupervisor(WorkerSupervisor):
    """
    Runs one UnlockWorker thread per volume.

    A mounted worker's thread exits while the volume stays recorded as
    mounted until stop() tears it down. Handles are created for every
    configured volume up front, so volumes never share a lock.

    If a worker is still inside an unlock attempt when stop_timeout runs
    out, stop() raises SupervisorError and leaves the volume alone; the
    state keeps following the worker, which tears down on its own once the
    attempt fails or ends up mounted.
    """

    def __init__(
        self,
        registry: VolumeRegistry,
        channels: Dict[str, SecretChannel],
        tools: VolumeTools,
        poll_interval: float = 0.5,
        stop_timeout: float = 30.0,
        adopt_existing: bool = True,
    ):
        self.registry = registry
        self.channels = channels
        self.tools = tools
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout
        self._handles = {volume.name: _WorkerHandle(volume) for volume in registry}

        if adopt_existing:
            self._adopt_existing_mounts()

    def _adopt_existing_mounts(self) -> None:
        for handle in self._handles.values():
            try:
                if self.tools.is_mountpoint(handle.volume.mount_point):
                    handle.override = VolumeState.MOUNTED
                    logger.info(
                        f"Volume '{handle.volume.name}' already mounted at "
                        f"{handle.volume.mount_point}, adopting it"
                    )
            except CommandError as e:
                logger.warning(f"Could not check mount state of '{handle.volume.name}': {e}")

    def _handle(self, name: str) -> _WorkerHandle:
        try:
            return self._handles[name]
        except KeyError:
            raise SupervisorError(f"Unknown volume '{name}'")

    def state(self, name: str) -> VolumeState:
        handle = self._handle(name)
        override, worker = handle.override, handle.worker
        if override is None and worker is not None:
            return worker.state
        return override or VolumeState.UNMOUNTED

    def reset_failed(self, name: str) -> None:
        handle = self._handle(name)
        with handle.lock:
            if handle.override is VolumeState.FAILED:
                logger.info(f"Clearing failed state of '{name}'")
                handle.override = VolumeState.UNMOUNTED
                handle.worker = None
                handle.thread = None

    def start(self, name: str) -> None:
        handle = self._handle(name)
        with handle.lock:
            if self.state(name).is_running:
                logger.debug(f"Worker for '{name}' already running")
                return

            channel = self.channels[name]
            channel.drain()
            worker = UnlockWorker(handle.volume, channel, self.tools, poll_interval=self.poll_interval)
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run_worker,
                args=(handle, worker, stop_event),
                name=f"unlock-{name}",
                daemon=True,
            )
            handle.worker = worker
            handle.stop_event = stop_event
            handle.thread = thread
            handle.override = None
            thread.start()
            logger.info(f"Started worker for '{name}'")

    def _run_worker(self, handle: _WorkerHandle, worker: UnlockWorker, stop_event: threading.Event) -> None:
        try:
            mounted = worker.run(stop_event)
        except Exception as e:
            logger.error(f"❌ Worker for '{handle.volume.name}' crashed: {e}", exc_info=True)
            cleanup_volume(handle.volume, self.tools)
            if handle.worker is worker:
                handle.override = VolumeState.FAILED
            return

        # A stop() that gave up on this worker left the teardown to it
        if not mounted and handle.worker is worker and handle.override is None:
            cleanup_volume(handle.volume, self.tools)
            handle.override = VolumeState.UNMOUNTED
            logger.info(f"Worker for '{handle.volume.name}' stopped late, volume torn down")

    def stop(self, name: str) -> None:
        handle = self._handle(name)
        with handle.lock:
            previous = handle.override
            handle.override = VolumeState.STOPPING
            if handle.stop_event is not None:
                handle.stop_event.set()
            if handle.thread is not None and handle.thread.is_alive():
                handle.thread.join(self.stop_timeout)
                if handle.thread.is_alive():
                    # Still inside an unlock attempt; tearing down now would race it
                    handle.override = previous
                    raise SupervisorError(
                        f"Worker for '{name}' did not stop within {self.stop_timeout}s"
                    )

            failures = cleanup_volume(handle.volume, self.tools)
            self.channels[name].drain()
            handle.worker = None
            handle.thread = None
            handle.stop_event = None

            if failures and self._still_mounted(handle.volume):
                handle.override = VolumeState.MOUNTED
            else:
                handle.override = VolumeState.UNMOUNTED

            if failures:
                raise SupervisorError(f"Cleanup of '{name}' incomplete: {', '.join(failures)}")
            logger.info(f"Stopped worker for '{name}'")

    def _still_mounted(self, volume: Volume) -> bool:
        try:
            return self.tools.is_mountpoint(volume.mount_point)
        except CommandError:
            return False

    def shutdown(self) -> None:
        """Stop workers still waiting for a secret. Mounted volumes stay mounted."""
        for handle in self._handles.values():
            if handle.stop_event is not None and handle.thread is not None and handle.thread.is_alive():
                handle.stop_event.set()
                handle.thread.join(self.poll_interval * 4)


# ============================================================================
# systemd supervisor
# ============================================================================

# (ActiveState, SubState) -> VolumeState; SubState None matches any
_UNIT_STATES = [
    ("active", "exited", VolumeState.MOUNTED),
    ("active", None, VolumeState.AWAITING_SECRET),
    ("reloading", None, VolumeState.AWAITING_SECRET),
    ("activating", None, VolumeState.STARTING),
    ("deactivating", None, VolumeState.STOPPING),
    ("failed", None, VolumeState.FAILED),
]


def unit_state_to_volume_state(active_state: str, sub_state: str) -> VolumeState:
    for active, sub, state in _UNIT_STATES:
        if active == active_state and (sub is None or sub == sub_state):
            return state
    return VolumeState.UNMOUNTED


class SystemdSupervisor(WorkerSupervisor):
    """
    Drives one systemd unit per volume through sudo.

    The unit runs `secure-unlocker-worker run <name>` with RemainAfterExit,
    so a worker that mounted its volume and exited stays "active (exited)".
    """

    def __init__(
        self,
        unit_prefix: str = "secure-unlocker",
        sudo_path: Optional[str] = "/run/wrappers/bin/sudo",
        systemctl_path: str = "/run/current-system/sw/bin/systemctl",
        timeout: float = 60,
    ):
        self.unit_prefix = unit_prefix
        self.sudo_path = sudo_path
        self.systemctl_path = systemctl_path
        self.timeout = timeout

    def unit_name(self, name: str) -> str:
        return f"{self.unit_prefix}-{name}.service"

    def _systemctl(self, *args: str) -> str:
        command: List[str] = [self.systemctl_path, *args]
        if self.sudo_path:
            command = [self.sudo_path, *command]
        try:
            process = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SupervisorError(f"systemctl {args[0]} failed: {e}") from e
        if process.returncode != 0:
            raise SupervisorError(
                f"systemctl {' '.join(args)} exited with {process.returncode}: {process.stderr.strip()}"
            )
        return process.stdout

    def state(self, name: str) -> VolumeState:
        output = self._systemctl(
            "show", "--property=ActiveState", "--property=SubState", self.unit_name(name)
        )
        properties = {}
        for line in output.splitlines():
            key, _, value = line.partition("=")
            properties[key.strip()] = value.strip()
        return unit_state_to_volume_state(
            properties.get("ActiveState", ""), properties.get("SubState", "")
        )

    def reset_failed(self, name: str) -> None:
        try:
            self._systemctl("reset-failed", self.unit_name(name))
        except SupervisorError as e:
            # Fails when the unit has nothing to reset
            logger.debug(f"reset-failed for '{name}': {e}")

    def start(self, name: str) -> None:
        self._systemctl("start", self.unit_name(name))
        logger.info(f"Started {self.unit_name(name)}")

    def stop(self, name: str) -> None:
        self._systemctl("stop", self.unit_name(name))
        logger.info(f"Stopped {self.unit_name(name)}")
