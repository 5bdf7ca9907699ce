"""
Privileged unlock worker for the systemd supervisor.

Each volume gets a unit like:

    [Service]
    Type=exec
    RemainAfterExit=yes
    ExecStart=secure-unlocker-worker run vault
    ExecStopPost=secure-unlocker-worker cleanup vault

`run` waits on the volume's named pipe for a password and keeps retrying
until the volume is mounted, then exits (the unit stays active). `cleanup`
unmounts, closes the mappings and detaches loop devices. `prepare` creates
the pipes directory and one pipe per configured volume.
"""
import argparse
import logging
import os
import shutil
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from secure_unlocker.core.config import configure_logging, get_settings
from secure_unlocker.core.volumes.channel import FifoSecretChannel, ensure_fifo
from secure_unlocker.core.volumes.registry import load_volume_registry
from secure_unlocker.core.volumes.tools import VolumeTools
from secure_unlocker.core.volumes.worker import UnlockWorker, cleanup_volume

logger = logging.getLogger(__name__)


def _load_volume(settings, name: str):
    registry = load_volume_registry(settings)
    volume = registry.get(name)
    if volume is None:
        print(f"Error: Unknown volume '{name}'", file=sys.stderr)
        sys.exit(1)
    return volume


def cmd_run(args, settings) -> int:
    volume = _load_volume(settings, args.name)
    channel = FifoSecretChannel(Path(settings.pipes_dir) / volume.name)
    if not channel.path.exists():
        print(f"Error: Pipe {channel.path} does not exist (run 'prepare' first)", file=sys.stderr)
        return 1

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    worker = UnlockWorker(volume, channel, VolumeTools(), poll_interval=settings.worker_poll_interval_seconds)
    try:
        mounted = worker.run(stop_event)
    finally:
        channel.close()
    return 0 if mounted else 1


def cmd_cleanup(args, settings) -> int:
    volume = _load_volume(settings, args.name)
    failures = cleanup_volume(volume, VolumeTools())
    for failure in failures:
        logger.warning(f"Cleanup step failed: {failure}")
    # ExecStopPost must not fail the unit on a partial cleanup
    return 0


def cmd_prepare(args, settings) -> int:
    registry = load_volume_registry(settings)
    pipes_dir = Path(settings.pipes_dir)
    pipes_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(pipes_dir, 0o770)
    if args.group:
        shutil.chown(pipes_dir, group=args.group)

    for name in registry.names():
        ensure_fifo(pipes_dir / name, mode=0o660, group=args.group)
    print(f"Prepared {len(registry)} pipe(s) in {pipes_dir}")
    return 0


def main(argv=None):
    load_dotenv()

    parser = argparse.ArgumentParser(description="secure-unlocker privileged worker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Wait for a password and mount the volume")
    run_parser.add_argument("name", help="Volume name")
    run_parser.set_defaults(func=cmd_run)

    cleanup_parser = subparsers.add_parser("cleanup", help="Unmount, close and detach the volume")
    cleanup_parser.add_argument("name", help="Volume name")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    prepare_parser = subparsers.add_parser("prepare", help="Create the pipes directory and pipes")
    prepare_parser.add_argument("--group", help="Group owning the pipes (the API service's group)")
    prepare_parser.set_defaults(func=cmd_prepare)

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    sys.exit(args.func(args, settings))


if __name__ == "__main__":
    main()
