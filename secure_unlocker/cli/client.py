"""
Command-line client for the Secure Unlocker API.

Usage:
    secure-unlocker-client keygen --output ~/.config/secure-unlocker
    secure-unlocker-client --key ~/.config/secure-unlocker/signing.key list
    secure-unlocker-client --key ... status vault
    secure-unlocker-client --key ... mount vault       # prompts for the password
    secure-unlocker-client --key ... unmount vault

The public key printed by `keygen` goes into ALLOWED_PUBLIC_KEYS on the
server.
"""
import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from secure_unlocker.client import UnlockerClient, UnlockerClientError
from secure_unlocker.core.errors import ValidationError
from secure_unlocker.core.signing.keys import generate_keypair, public_key_to_hex, save_keypair

logger = logging.getLogger(__name__)

DEFAULT_KEY_DIR = "~/.config/secure-unlocker"


def cmd_keygen(args) -> int:
    directory = Path(args.output).expanduser()
    private_path = directory / f"{args.name}.key"
    if private_path.exists() and not args.force:
        print(f"Error: {private_path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    private_key, public_key = generate_keypair()
    private_path, public_path = save_keypair(private_key, public_key, directory, name=args.name)
    print(f"Private key: {private_path}")
    print(f"Public key:  {public_path}")
    print()
    print("Add this key to ALLOWED_PUBLIC_KEYS on the server:")
    print(f"  {public_key_to_hex(public_key)}")
    return 0


def _client(args) -> UnlockerClient:
    key_path = args.key or os.getenv("SECURE_UNLOCKER_KEY") or str(Path(DEFAULT_KEY_DIR) / "signing.key")
    return UnlockerClient.from_key_file(key_path, base_url=args.url, verify_tls=not args.insecure)


def cmd_list(args) -> int:
    with _client(args) as client:
        volumes = client.list_volumes()
    if not volumes:
        print("No volumes configured")
    for name, status in sorted(volumes.items()):
        print(f"{name}: {status}")
    return 0


def cmd_status(args) -> int:
    with _client(args) as client:
        print(json.dumps(client.status(args.name), indent=2))
    return 0


def cmd_mount(args) -> int:
    password = os.getenv("SECURE_UNLOCKER_PASSWORD") if args.password_from_env else None
    if password is None:
        password = getpass.getpass(f"Password for {args.name}: ")
    with _client(args) as client:
        client.mount(args.name, password)
    print(f"Password delivered to '{args.name}'. Check 'status {args.name}' to confirm it mounted.")
    return 0


def cmd_unmount(args) -> int:
    with _client(args) as client:
        client.unmount(args.name)
    print(f"'{args.name}' unmounted")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Secure Unlocker client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--url", help="Server URL (default: SECURE_UNLOCKER_URL or http://127.0.0.1:3456)")
    parser.add_argument("--key", help=f"Private key file (default: SECURE_UNLOCKER_KEY or {DEFAULT_KEY_DIR}/signing.key)")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    keygen = subparsers.add_parser("keygen", help="Generate an Ed25519 key pair")
    keygen.add_argument("--output", default=DEFAULT_KEY_DIR, help="Directory for the key files")
    keygen.add_argument("--name", default="signing", help="Base file name (default: signing)")
    keygen.add_argument("--force", action="store_true", help="Overwrite existing keys")
    keygen.set_defaults(func=cmd_keygen)

    subparsers.add_parser("list", help="List volumes").set_defaults(func=cmd_list)

    status = subparsers.add_parser("status", help="Detailed state of a volume")
    status.add_argument("name")
    status.set_defaults(func=cmd_status)

    mount = subparsers.add_parser("mount", help="Unlock and mount a volume")
    mount.add_argument("name")
    mount.add_argument("--password-from-env", action="store_true",
                       help="Read the password from SECURE_UNLOCKER_PASSWORD instead of prompting")
    mount.set_defaults(func=cmd_mount)

    unmount = subparsers.add_parser("unmount", help="Unmount a volume")
    unmount.add_argument("name")
    unmount.set_defaults(func=cmd_unmount)

    return parser


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        exit_code = args.func(args)
    except (UnlockerClientError, ValidationError) as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
