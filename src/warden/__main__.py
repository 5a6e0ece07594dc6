"""
Command line entry point.

    python -m warden serve --config warden.yaml
    python -m warden create-admin --email admin@example.com --name Admin
    python -m warden detect-threats --report
"""

import argparse
import getpass
import sys
from typing import List, Optional

from loguru import logger

from .config import WardenConfig
from .errors import StoreUnavailable, ValidationError
from .gateway import AuthGateway
from .logging_setup import setup_logging
from .server import run


def load_config(path: Optional[str]) -> WardenConfig:
    if path:
        return WardenConfig.from_yaml(path)
    return WardenConfig.from_mapping({})


def cmd_serve(gateway: AuthGateway, args: argparse.Namespace) -> int:
    run(gateway)
    return 0


def cmd_create_admin(gateway: AuthGateway, args: argparse.Namespace) -> int:
    password = getpass.getpass("Admin password: ")
    if password != getpass.getpass("Confirm password: "):
        print("Passwords do not match", file=sys.stderr)
        return 1

    try:
        user = gateway.directory.create_first_admin(args.email, args.name, password)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Created admin {user.email} ({user.user_id})")
    return 0


def cmd_detect_threats(gateway: AuthGateway, args: argparse.Namespace) -> int:
    threats = gateway.monitor.detect_threats(report=args.report)
    if not threats:
        print("No threats detected")
        return 0

    for threat in threats:
        print(f"[{threat.severity.value}] {threat.incident_type}: {threat.description}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="warden", description="Session, rate limit and audit service")
    parser.add_argument(
        "--config",
        help="Path to YAML configuration file"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.set_defaults(func=cmd_serve)

    admin = subparsers.add_parser("create-admin", help="Create the first admin account")
    admin.add_argument("--email", required=True, help="Admin email address")
    admin.add_argument("--name", default="Administrator", help="Display name")
    admin.set_defaults(func=cmd_create_admin)

    detect = subparsers.add_parser("detect-threats", help="Scan the last hour of activity")
    detect.add_argument(
        "--report",
        action="store_true",
        help="File each threat as a security incident"
    )
    detect.set_defaults(func=cmd_detect_threats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(config.log_level, config.log_file)

    try:
        gateway = AuthGateway.from_config(config)
        return args.func(gateway, args)
    except StoreUnavailable as e:
        logger.error(f"Database unavailable: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
