"""
Encrypted volume management: configuration, secret channels, unlock
workers, supervisors and the mount orchestrator.
"""

from secure_unlocker.core.volumes.channel import (
    FifoSecretChannel,
    SecretChannel,
    SlotSecretChannel,
    build_fifo_channels,
    build_slot_channels,
    ensure_fifo,
)
from secure_unlocker.core.volumes.models import (
    BackingKind,
    FilesystemKind,
    Volume,
    VolumeState,
    validate_volume_name,
)
from secure_unlocker.core.volumes.orchestrator import MountOrchestrator
from secure_unlocker.core.volumes.registry import VolumeRegistry, load_volume_registry
from secure_unlocker.core.volumes.supervisor import (
    SupervisorError,
    SystemdSupervisor,
    ThreadSupervisor,
    WorkerSupervisor,
)
from secure_unlocker.core.volumes.tools import VolumeTools
from secure_unlocker.core.volumes.worker import UnlockWorker, cleanup_volume

__all__ = [
    "BackingKind",
    "FilesystemKind",
    "FifoSecretChannel",
    "MountOrchestrator",
    "SecretChannel",
    "SlotSecretChannel",
    "SupervisorError",
    "SystemdSupervisor",
    "ThreadSupervisor",
    "UnlockWorker",
    "Volume",
    "VolumeRegistry",
    "VolumeState",
    "VolumeTools",
    "WorkerSupervisor",
    "build_fifo_channels",
    "build_slot_channels",
    "cleanup_volume",
    "ensure_fifo",
    "load_volume_registry",
    "validate_volume_name",
]
