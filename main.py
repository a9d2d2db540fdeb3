#!/usr/bin/env python3
"""
OpsDesk auth -- command-line tools for the authentication service.

Usage:
  python main.py init-db
  python main.py device-login
  python main.py totp-code JBSWY3DPEHPK3PXP
  python main.py serve --port 8000

Environment variables (or .env):
  SECRET_KEY            Required unless DEBUG=true.
  DATABASE_URL          SQLAlchemy URL of the credential store.
  MICROSOFT_CLIENT_ID   Needed for device-login.
"""

import argparse
import sys
import threading

from auth import totp
from auth.device_flow import Completed, DeviceCodeFlowCoordinator, poll_until_done
from auth.errors import AuthError
from auth.local import bootstrap_accounts
from auth.store import CredentialStore
from core.config import get_settings


def _open_store() -> CredentialStore:
    return CredentialStore(get_settings().database_url)


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the schema and seed the two bootstrap accounts if the store is empty."""
    settings = get_settings()
    store = _open_store()
    try:
        if bootstrap_accounts(store, settings.bootstrap_admin_password, settings.bootstrap_user_password):
            print("  Created accounts 'admin' and 'user'. Change their passwords now.")
        else:
            print("  Accounts already exist; nothing seeded.")
    finally:
        store.close()
    return 0


def cmd_device_login(args: argparse.Namespace) -> int:
    """Run the device code flow in the terminal. Ctrl-C cancels."""
    store = _open_store()
    coordinator = DeviceCodeFlowCoordinator(store, get_settings())
    cancel = threading.Event()
    try:
        try:
            flow = coordinator.start()
        except AuthError as exc:
            print(f"  [!] {exc.message}")
            return 1

        print(f"\n  To sign in, open {flow.verification_uri}")
        print(f"  and enter the code: {flow.user_code}\n")
        print(f"  Waiting for approval (expires in {flow.expires_in_seconds // 60} min, Ctrl-C to cancel)...")

        try:
            outcome = poll_until_done(coordinator, flow, cancel)
        except KeyboardInterrupt:
            cancel.set()
            outcome = None
        except AuthError as exc:
            print(f"  [!] {exc.message}")
            return 1

        if outcome is None:
            print("  Cancelled.")
            return 130
        if isinstance(outcome, Completed):
            principal = outcome.principal
            print(f"  Signed in as {principal.label} ({principal.email or 'no email'}).")
            return 0
        print(f"  [!] {outcome.message}")
        return 1
    finally:
        store.close()


def cmd_totp_code(args: argparse.Namespace) -> int:
    """Print the current code for a base32 secret. Handy for scripted logins and checks."""
    try:
        print(totp.generate(args.secret))
    except (TypeError, ValueError):
        print("  [!] Not a valid base32 TOTP secret.")
        return 1
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="opsdesk-auth",
        description="Administration tools for the OpsDesk authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  MICROSOFT_CLIENT_ID=... python main.py device-login
  python main.py totp-code JBSWY3DPEHPK3PXP
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_init = sub.add_parser("init-db", help="Create tables and seed the bootstrap accounts")
    p_init.set_defaults(func=cmd_init_db)

    p_device = sub.add_parser("device-login", help="Sign in with a Microsoft account using a device code")
    p_device.set_defaults(func=cmd_device_login)

    p_totp = sub.add_parser("totp-code", help="Print the current TOTP code for a secret")
    p_totp.add_argument("secret", metavar="SECRET", help="Base32 TOTP secret")
    p_totp.set_defaults(func=cmd_totp_code)

    p_serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    p_serve.add_argument("--reload", action="store_true", help="Restart on code changes")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
