"""
Initialize encrypted storage for secure-unlocker.

Usage:
    secure-unlocker-init --source /dev/sdb1 --type block
    secure-unlocker-init --source /dev/sdb1,/dev/sdc1 --type block --fsType btrfs
    secure-unlocker-init --source /var/encrypted/storage.img --type loop --size 10G

If the sources are already LUKS containers, offers to add another password
instead of formatting.
"""
import argparse
import getpass
import logging
import os
import sys

from secure_unlocker.core.errors import CommandError
from secure_unlocker.core.provisioning.initializer import (
    DeviceInitializer,
    InitAction,
    InitPlan,
    ProvisioningError,
)
from secure_unlocker.core.volumes.tools import VolumeTools

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Initialize LUKS2-encrypted storage for secure-unlocker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--source", required=True,
                        help="Block device or file path (comma-separated for multiple devices)")
    parser.add_argument("--type", dest="kind", required=True, choices=["block", "loop"],
                        help="Source type")
    parser.add_argument("--size", help="Size of each file (required for loop type, e.g. 10G, 500M)")
    parser.add_argument("--fsType", "--fs-type", dest="fs_type", default="ext4", choices=["ext4", "btrfs"],
                        help="Filesystem type (default: ext4)")
    parser.add_argument("--data-profile", help="btrfs data profile (default: raid1 for multi-device)")
    parser.add_argument("--metadata-profile", help="btrfs metadata profile (default: raid1 for multi-device)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def confirm(prompt: str) -> bool:
    return input(f"{prompt} (type 'yes' to confirm): ").strip() == "yes"


def read_new_password() -> bytes:
    """
    Prompt for the new password twice.

    Raises:
        ProvisioningError: If the entries differ or are empty
    """
    password = getpass.getpass("Enter new LUKS password (will be used for all devices): ")
    confirmation = getpass.getpass("Confirm LUKS password: ")
    if password != confirmation:
        raise ProvisioningError("Passwords do not match")
    if not password:
        raise ProvisioningError("Password must not be empty")
    return password.encode("utf-8")


def print_plan(plan: InitPlan) -> None:
    print(f"Source(s): {', '.join(plan.sources)}")
    print(f"Number of devices: {len(plan.sources)}")
    print(f"Type: {plan.kind.value}")
    if plan.size:
        print(f"Size: {plan.size}")
    print(f"Filesystem Type: {plan.fs_type.value}")
    if plan.is_multi_device:
        print(f"Data Profile: {plan.data_profile}")
        print(f"Metadata Profile: {plan.metadata_profile}")
    print()


def run(plan: InitPlan, initializer: DeviceInitializer) -> int:
    """Interactive provisioning flow. Returns the process exit code."""
    print_plan(plan)
    survey = initializer.survey(plan)
    action = initializer.decide(plan, survey)

    if action is InitAction.ADD_CREDENTIAL:
        print("Found existing LUKS device(s).\n")
        print(f"Current LUKS information for {survey.luks[0]}:")
        print(initializer.describe_luks(survey))
        print()
        if not confirm("Do you want to add a new password to all devices?"):
            print("No changes made.")
            return 0
        initializer.add_credential(survey)
        print("Password(s) added successfully!")
        return 0

    if action is InitAction.FORMAT_DESTRUCTIVE:
        print("Initializing block device(s) with LUKS2 encryption:")
        for source in plan.sources:
            print(f"  - {source}")
        print("\nWARNING: This will DESTROY all data on these devices!\n")
    else:
        print(f"This will create {len(plan.sources)} file(s) of size {plan.size}:")
        for source in plan.sources:
            print(f"  - {source}")
        print()

    if not confirm("Are you sure you want to continue?"):
        print("Aborted.")
        return 0

    secret = read_new_password()
    initializer.format(plan, secret)

    print("\nInitialization complete!\n")
    print_plan(plan)
    print("To open and mount the device(s) manually:")
    for index, source in enumerate(plan.sources):
        suffix = f"-{index}" if plan.is_multi_device else ""
        print(f"  cryptsetup luksOpen {source} <name>{suffix}")
    print(f"  mount /dev/mapper/<name>{'-0' if plan.is_multi_device else ''} /mount/point")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        plan = InitPlan.from_options(
            source=args.source,
            kind=args.kind,
            fs_type=args.fs_type,
            size=args.size,
            data_profile=args.data_profile,
            metadata_profile=args.metadata_profile,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if os.geteuid() != 0:
        print("Error: This command must be run as root (use sudo)", file=sys.stderr)
        sys.exit(1)

    try:
        exit_code = run(plan, DeviceInitializer(VolumeTools()))
    except (ProvisioningError, CommandError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        sys.exit(130)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
