#!/usr/bin/env python3
"""
LicensePortal admin CLI -- provision the credentials the web flows only read.

License keys and API keys are never created through the web UI. Operators use
this tool against the same database the server uses (DATABASE_URL).

Usage:
  python main.py create-api-key --description "desktop client"
  python main.py set-api-key-active 3 off
  python main.py create-license --username alice
  python main.py create-license --username alice --key ACME-0001
  python main.py set-license-active ACME-0001 off
  python main.py list-licenses --username alice

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: auth/licenseportal.db)
  SECRET_KEY    Required unless DEBUG=true (Settings validates it on load)
"""

import argparse
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import ApiKey, LicenseKey
from auth.store import CredentialStore
from auth.tokens import generate_api_key, generate_license_key
from core.config import get_settings

logger = logging.getLogger("licenseportal.cli")


def _on_off(value: str) -> bool:
    return value == "on"


def _cmd_create_api_key(store: CredentialStore, args: argparse.Namespace) -> int:
    raw_key = generate_api_key()
    key_id = store.create_api_key(ApiKey(api_key=raw_key, description=args.description))
    logger.info("Created API key id=%s", key_id)
    print(f"API key {key_id} created. Store it now; it is not shown again.")
    print(raw_key)
    return 0


def _cmd_set_api_key_active(store: CredentialStore, args: argparse.Namespace) -> int:
    if not store.set_api_key_active(args.key_id, _on_off(args.state)):
        print(f"  [!] No API key with id {args.key_id}.")
        return 1
    print(f"API key {args.key_id} is now {args.state}.")
    return 0


def _cmd_create_license(store: CredentialStore, args: argparse.Namespace) -> int:
    owner = store.get_by_username_or_email(args.username)
    if owner is None:
        print(f"  [!] No user '{args.username}'.")
        return 1
    key = args.key or generate_license_key()
    try:
        store.create_license_key(LicenseKey(user_id=owner.id, license_key=key))
    except IntegrityError:
        print(f"  [!] License key '{key}' already exists.")
        return 1
    logger.info("Issued license key to user_id=%s", owner.id)
    print(key)
    return 0


def _cmd_set_license_active(store: CredentialStore, args: argparse.Namespace) -> int:
    if not store.set_license_active(args.license_key, _on_off(args.state)):
        print(f"  [!] No license key '{args.license_key}'.")
        return 1
    print(f"License key {args.license_key} is now {args.state}.")
    return 0


def _cmd_list_licenses(store: CredentialStore, args: argparse.Namespace) -> int:
    owner = store.get_by_username_or_email(args.username)
    if owner is None:
        print(f"  [!] No user '{args.username}'.")
        return 1
    keys = store.list_license_keys(owner.id)
    if not keys:
        print(f"  {owner.username} owns no license keys.")
    for k in keys:
        state = "active" if k.is_active else "inactive"
        print(f"  {k.license_key:<32} {state:<9} {k.created_at}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="licenseportal",
        description="Provision API keys and license keys for LicensePortal.",
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("create-api-key", help="Create an API key for a validation client")
    p.add_argument("--description", default=None, help="Free-text label shown to operators")
    p.set_defaults(handler=_cmd_create_api_key)

    p = sub.add_parser("set-api-key-active", help="Activate or revoke an API key")
    p.add_argument("key_id", type=int, metavar="ID")
    p.add_argument("state", choices=["on", "off"])
    p.set_defaults(handler=_cmd_set_api_key_active)

    p = sub.add_parser("create-license", help="Issue a license key to a user")
    p.add_argument("--username", required=True, help="Username or email of the owner")
    p.add_argument("--key", default=None, help="Explicit key value (default: generated)")
    p.set_defaults(handler=_cmd_create_license)

    p = sub.add_parser("set-license-active", help="Activate or deactivate a license key")
    p.add_argument("license_key", metavar="KEY")
    p.add_argument("state", choices=["on", "off"])
    p.set_defaults(handler=_cmd_set_license_active)

    p = sub.add_parser("list-licenses", help="List the license keys a user owns")
    p.add_argument("--username", required=True, help="Username or email of the owner")
    p.set_defaults(handler=_cmd_list_licenses)

    return parser


def main(argv: Optional[list[str]] = None, store: Optional[CredentialStore] = None) -> int:
    args = build_parser().parse_args(argv)
    owns_store = store is None
    if store is None:
        store = CredentialStore(get_settings().database_url)
    try:
        return args.handler(store, args)
    finally:
        if owns_store:
            store.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")
    sys.exit(main())
