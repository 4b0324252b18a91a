#!/usr/bin/env python3
"""Manage identities on a biometric terminal from the command line.

Every command runs through the same EnrollmentService used by the
application: one device worker, face-merge retries and rollback included.

Usage:
    python scripts/manage_identity.py test --device-key KEY --secret SECRET
    python scripts/manage_identity.py enroll --id E1001 --name "Ada Lovelace" --image ada.jpg
    python scripts/manage_identity.py update --id E1001 --name "Ada King"
    python scripts/manage_identity.py delete --id E1001
    python scripts/manage_identity.py get --id E1001
    python scripts/manage_identity.py list

Credentials default to the DEVICE_KEY and DEVICE_SECRET environment
variables (a .env file is honored).

Exit codes:
    0  success
    1  device or validation error
    2  bad arguments
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from enrollment_engine.backends import create_service
from enrollment_engine.config import Config
from enrollment_engine.interfaces import Credentials, EnrollmentRequest
from enrollment_engine.logging_config import mask_key, setup_logging

logger = setup_logging(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Enroll, update, delete and inspect identities on a terminal",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--device-key",
        type=str,
        default=os.getenv("DEVICE_KEY"),
        help="Terminal device key (env DEVICE_KEY)",
    )

    parser.add_argument(
        "--secret",
        type=str,
        default=os.getenv("DEVICE_SECRET"),
        help="Terminal secret (env DEVICE_SECRET)",
    )

    parser.add_argument(
        "--prescan",
        type=str,
        choices=["haar", "insightface", "none"],
        default=None,
        help="Face prescan backend (overrides .env PRESCAN_BACKEND)",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the device (overrides .env QUEUE_TIMEOUT)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("test", help="Test the device connection")

    for name, help_text in (("enroll", "Enroll a new identity"), ("update", "Update an identity")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--id", required=True, help="Employee id (device sn)")
        cmd.add_argument("--name", required=True, help="Display name")
        cmd.add_argument("--image", type=str, default=None, help="Face image file (JPEG preferred)")
        cmd.add_argument(
            "--style",
            type=int,
            default=None,
            help="Verification style (1=face, 2=fingerprint, 3=face+fingerprint)",
        )
        cmd.add_argument(
            "--allow-indeterminate",
            action="store_true",
            help="Proceed even if the device cannot report whether the id exists",
        )
        if name == "enroll":
            cmd.add_argument(
                "--force",
                action="store_true",
                help="Update the identity if it already exists",
            )

    for name, help_text in (("delete", "Delete an identity"), ("get", "Show one identity")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--id", required=True, help="Employee id (device sn)")

    sub.add_parser("list", help="List all identities on the device")

    return parser.parse_args()


def print_section(title: str) -> None:
    """Print a section divider."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)


def print_record(record) -> None:
    print(f"  Employee id:  {record.employee_id}")
    print(f"  Name:         {record.display_name}")
    print(f"  Face enrolled: {'yes' if record.has_biometric else 'no'}")
    print(f"  Style:        {record.verification_style}")
    print(f"  Updated:      {record.last_updated.isoformat() if record.last_updated else '-'}")


def build_request(args: argparse.Namespace, credentials: Credentials) -> EnrollmentRequest:
    face_image = None
    if args.image:
        image_path = Path(args.image)
        if not image_path.exists():
            logger.error(f"Image not found: {image_path}")
            sys.exit(2)
        face_image = image_path.read_bytes()

    return EnrollmentRequest(
        employee_id=args.id,
        display_name=args.name,
        credentials=credentials,
        face_image=face_image,
        verification_style=args.style,
        force_update=getattr(args, "force", False),
        allow_indeterminate=True if args.allow_indeterminate else None,
    )


def main() -> None:
    """Main entry point."""
    args = parse_args()

    if not args.device_key or not args.secret:
        logger.error("Device key and secret are required (--device-key/--secret or .env)")
        sys.exit(2)

    try:
        config = Config.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    credentials = Credentials(device_key=args.device_key, secret=args.secret)

    print_section(f"{args.command.upper()} on device {mask_key(credentials.device_key)}")
    print(f"  Gateway: {config.device_gateway_url}")

    prescan = args.prescan if args.command in ("enroll", "update") else "none"
    service = create_service(config, prescan_backend=prescan)

    with service:
        if args.command == "test":
            result = service.test_connection(credentials, timeout=args.timeout)
            if result.ok:
                print(f"  Connected: {'yes' if result.value else 'no'}")
                if not result.value:
                    sys.exit(1)

        elif args.command in ("enroll", "update"):
            request = build_request(args, credentials)
            if args.command == "enroll":
                result = service.enroll(request, timeout=args.timeout)
            else:
                result = service.update(request, timeout=args.timeout)
            if result.ok:
                print_section("Enrolled" if args.command == "enroll" else "Updated")
                print_record(result.value)

        elif args.command == "delete":
            result = service.delete(args.id, credentials, timeout=args.timeout)
            if result.ok:
                print(f"  Deleted '{args.id}'")

        elif args.command == "get":
            result = service.get(args.id, credentials, timeout=args.timeout)
            if result.ok:
                if result.value is None:
                    print(f"  '{args.id}' not found on device")
                else:
                    print_record(result.value)

        else:
            result = service.list(credentials, timeout=args.timeout)
            if result.ok:
                print(f"  {len(result.value)} identities")
                for record in result.value:
                    face = "face" if record.has_biometric else "no face"
                    print(f"  - {record.employee_id:<16} {record.display_name or '':<30} {face}")

        stats = service.queue_stats()

    if not result.ok:
        print_section("FAILED")
        print(f"  [{result.error.code}] {result.error.message}")
        sys.exit(1)

    logger.info(f"Done ({stats.processed} device tasks, avg {stats.average_processing_seconds:.1f}s)")


if __name__ == "__main__":
    main()
