#!/usr/bin/env python3
"""
TripAuth -- operator CLI for the authentication store.

Usage:
  python main.py create-account ops@example.com --role operator
  python main.py create-account ops@example.com --role operator --verified
  python main.py link-profile 42 prof_8f3a
  python main.py sweep
  python main.py sweep --challenge-max-age 3600

create-account prompts for the password (never pass it on the command line).
The account is created unverified unless --verified is given; no OTP email
is sent from the CLI.

link-profile records the booking-profile reference for an account and marks
its profile complete, so the next login returns a full session.

Environment variables:
  DATABASE_URL  SQLAlchemy URL. Defaults to the SQLite file beside auth/store.py.
  SECRET_KEY    Required unless DEBUG=true (see core/config.py).
"""

import argparse
import getpass
import logging
import sys

from auth.ceremony import WebAuthnCeremony
from auth.errors import AuthError
from auth.mailer import SmtpMailer
from auth.models import Role
from auth.service import build_service, sweep_once
from auth.store import AuthStore
from core.config import get_settings

logger = logging.getLogger("tripauth.cli")


def _read_password() -> str:
    password = getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        sys.exit(2)
    if getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        sys.exit(2)
    return password


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tripauth",
        description="TripAuth operator commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level.")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-account", help="Create an account (prompts for the password).")
    create.add_argument("email", help="Account email; normalized to lower case.")
    create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.customer.value,
        help="Account role (default: customer).",
    )
    create.add_argument("--verified", action="store_true", help="Mark the account verified immediately.")

    link = sub.add_parser("link-profile", help="Attach a profile reference and mark the profile complete.")
    link.add_argument("account_id", type=int, help="Account id.")
    link.add_argument("profile_ref", help="Profile reference from the booking backend.")

    sweep = sub.add_parser("sweep", help="Delete expired OTPs and stale passkey challenges.")
    sweep.add_argument(
        "--challenge-max-age",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Challenges older than this are deleted (default: CHALLENGE_SWEEP_SECONDS).",
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = get_settings()
    store = AuthStore(db_url=settings.database_url) if settings.database_url else AuthStore()
    service = build_service(store, SmtpMailer(settings), WebAuthnCeremony(), settings)
    try:
        if args.command == "create-account":
            password = _read_password()
            account = service.accounts.create_account(args.email, password, args.role)
            if args.verified:
                service.accounts.mark_verified(account.id)
            print(f"  Created account id={account.id} email={account.email} role={account.role}")
        elif args.command == "link-profile":
            service.accounts.mark_profile_complete(args.account_id, args.profile_ref)
            print(f"  Linked profile {args.profile_ref} to account id={args.account_id}")
        elif args.command == "sweep":
            max_age = args.challenge_max_age or settings.challenge_sweep_seconds
            otps, challenges = sweep_once(service, max_age)
            print(f"  Removed {otps} expired OTP(s) and {challenges} stale challenge(s).")
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
