"""
Secret Channels

One-directional, single-slot channels that carry an unlock secret from the
control API (single writer) to a volume's worker (single reader). At most
one secret is ever buffered; a reader consumes it exactly once.

Two implementations:
- SlotSecretChannel: in-memory, used with in-process worker threads
- FifoSecretChannel: a named pipe, used when workers are separate
  privileged processes managed by systemd
"""

import errno
import logging
import os
import select
import shutil
import stat
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from secure_unlocker.core.errors import ChannelError

logger = logging.getLogger(__name__)


class SecretChannel:
    """Interface shared by all secret channels."""

    def send(self, secret: bytes, timeout: float) -> None:
        """
        Deliver one secret.

        Raises:
            ChannelError: If the secret could not be delivered within timeout
        """
        raise NotImplementedError

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Wait for one secret.

        Returns:
            The secret bytes (possibly empty), or None if timeout elapsed
        """
        raise NotImplementedError

    def task_done(self) -> None:
        """Tell the channel the last received secret has been acted on."""

    @property
    def pending(self) -> bool:
        """True while a secret is buffered or still being acted on, if the channel can tell."""
        return False

    def drain(self) -> None:
        """Discard any undelivered secret."""

    def close(self) -> None:
        """Release any OS resources held by the reader side."""


class SlotSecretChannel(SecretChannel):
    """
    Bounded single-slot channel guarded by a condition variable.

    send() waits for the slot to free up (bounded by timeout) so a second
    secret never overwrites one that has not been consumed. A received
    secret counts as pending until the reader calls task_done().
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._condition = threading.Condition()
        self._slot: Optional[bytes] = None
        self._in_flight = False

    def send(self, secret: bytes, timeout: float) -> None:
        with self._condition:
            if not self._condition.wait_for(lambda: self._slot is None, timeout=timeout):
                raise ChannelError(f"Channel '{self.name}' still holds an undelivered secret")
            self._slot = bytes(secret)
            self._condition.notify_all()

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        with self._condition:
            if not self._condition.wait_for(lambda: self._slot is not None, timeout=timeout):
                return None
            secret, self._slot = self._slot, None
            self._in_flight = True
            self._condition.notify_all()
            return secret

    def task_done(self) -> None:
        with self._condition:
            self._in_flight = False

    def drain(self) -> None:
        with self._condition:
            if self._slot is not None:
                logger.debug(f"Discarding undelivered secret on channel '{self.name}'")
            self._slot = None
            self._in_flight = False
            self._condition.notify_all()

    @property
    def pending(self) -> bool:
        with self._condition:
            return self._slot is not None or self._in_flight


class FifoSecretChannel(SecretChannel):
    """
    Named-pipe channel.

    The writer opens the pipe non-blocking and retries while no reader is
    attached (ENXIO) until the timeout expires. The reader keeps its end
    open across receive() calls until the writer's EOF, so a secret written
    between two polls stays in the pipe. One trailing newline is stripped.
    """

    RETRY_INTERVAL = 0.05

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: Optional[int] = None
        self._chunks: List[bytes] = []

    def send(self, secret: bytes, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
                break
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise ChannelError(f"Cannot open pipe {self.path}: {e.strerror}") from e
                if time.monotonic() >= deadline:
                    raise ChannelError(f"No worker is listening on {self.path}") from e
                time.sleep(self.RETRY_INTERVAL)

        try:
            os.write(fd, bytes(secret) + b"\n")
        except OSError as e:
            raise ChannelError(f"Failed to write to pipe {self.path}: {e.strerror}") from e
        finally:
            os.close(fd)

    def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        if self._fd is None:
            try:
                self._fd = os.open(self.path, os.O_RDONLY | os.O_NONBLOCK)
            except OSError as e:
                raise ChannelError(f"Cannot open pipe {self.path}: {e.strerror}") from e
            self._chunks = []

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            ready, _, _ = select.select([self._fd], [], [], remaining)
            if not ready:
                # Partial data stays buffered for the next call
                return None
            try:
                chunk = os.read(self._fd, 4096)
            except BlockingIOError:
                continue
            if not chunk:
                break
            self._chunks.append(chunk)

        data = b"".join(self._chunks)
        self.close()
        if data.endswith(b"\n"):
            data = data[:-1]
        return data

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        self._chunks = []


def ensure_fifo(path: Path, mode: int = 0o660, group: Optional[str] = None) -> Path:
    """
    Create a named pipe if it does not exist yet.

    Raises:
        ValueError: If something other than a FIFO already exists at path
    """
    path = Path(path)
    if path.exists():
        if not stat.S_ISFIFO(path.stat().st_mode):
            raise ValueError(f"{path} exists and is not a named pipe")
    else:
        os.mkfifo(path, mode)
        logger.info(f"Created secret pipe {path}")
    os.chmod(path, mode)
    if group:
        shutil.chown(path, group=group)
    return path


def build_slot_channels(names: Iterable[str]) -> Dict[str, SecretChannel]:
    """One in-memory channel per volume."""
    return {name: SlotSecretChannel(name) for name in names}


def build_fifo_channels(pipes_dir: Path, names: Iterable[str]) -> Dict[str, SecretChannel]:
    """One named-pipe channel per volume under pipes_dir."""
    pipes_dir = Path(pipes_dir)
    return {name: FifoSecretChannel(pipes_dir / name) for name in names}
