#!/usr/bin/env python3
"""
SchoolGate -- command-line access to sign-in, role resolution and admin tasks.

The signed-in session is kept in the local session cache (cache/store.py), so
it survives between invocations. Every command that needs a role resolves it
fresh; the role stored in the cache is only shown, never trusted.

Usage:
  python main.py login alice
  python main.py login admin@school.local --password secret
  python main.py whoami
  python main.py logout
  python main.py grant-role 3f2a... admin
  python main.py delete-date 2024-05-01
  python main.py serve --port 8000

Exit status:
  0  success
  1  failure (bad login, partial cascade deletion, unknown account)
  2  not signed in, or not authorized
"""

import argparse
import asyncio
import getpass
import sys
from typing import Optional

from auth.guard import AccessGuard, GuardState
from auth.login import LoginError, LoginService
from auth.models import AuthMode, Role, SessionRecord, normalize_role
from auth.provider import AccountNotFoundError, LocalIdentityProvider, TokenBearer
from auth.resolver import RoleResolver, build_identity
from auth.store import AccountStore
from cache.store import SessionCache
from docstore.cascade import CascadeDeleter
from docstore.store import DocumentStore


class _Context:
    """Stores and services for one CLI invocation."""

    def __init__(self) -> None:
        self.docstore = DocumentStore()
        self.accounts = AccountStore()
        self.provider = LocalIdentityProvider(self.accounts)
        self.resolver = RoleResolver.default(self.docstore)
        self.cache = SessionCache()

    def bearer_for(self, session: SessionRecord) -> Optional[TokenBearer]:
        return self.provider.bearer(session.uid) if session.mode is AuthMode.PROVIDER else None

    def close(self) -> None:
        self.cache.close()
        self.docstore.close()
        self.accounts.close()


def _cmd_login(ctx: _Context, args: argparse.Namespace) -> int:
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    service = LoginService(ctx.provider, ctx.docstore, ctx.resolver, session_cache=ctx.cache)
    try:
        result = asyncio.run(service.login(args.identifier, password))
    except LoginError as e:
        print(f"  [!] {e}")
        return 1
    print(f"  Signed in as {result.session.display_name} ({result.role.value}).")
    print(f"  Dashboard: {result.destination}")
    return 0


def _cmd_whoami(ctx: _Context, args: argparse.Namespace) -> int:
    session = ctx.cache.load()
    if session is None:
        print("  Not signed in.")
        return 2
    identity = build_identity(None, session)
    resolution = asyncio.run(ctx.resolver.resolve(identity, ctx.bearer_for(session)))
    role = resolution.role.value if resolution.role else "none"
    print(f"  {session.display_name} (uid {session.uid}, {session.mode.value} sign-in)")
    print(f"  Role: {role}")
    return 0


def _cmd_logout(ctx: _Context, args: argparse.Namespace) -> int:
    ctx.cache.clear()
    print("  Signed out.")
    return 0


def _cmd_grant_role(ctx: _Context, args: argparse.Namespace) -> int:
    """Operator command: set the role claim directly on a provider account."""
    role = normalize_role(args.role)
    if role is None:
        print(f"  [!] Unknown role '{args.role}'. Choose from: {', '.join(r.value for r in Role)}")
        return 1
    account = ctx.accounts.get_by_uid(args.uid)
    if account is None:
        print(f"  [!] No account with uid {args.uid}.")
        return 1
    claims = dict(account.custom_claims)
    claims["role"] = role.value
    try:
        ctx.provider.set_custom_claims(args.uid, claims)
    except AccountNotFoundError:
        print(f"  [!] No account with uid {args.uid}.")
        return 1
    print(f"  Role claim for {account.email} set to {role.value}.")
    return 0


def _cmd_delete_date(ctx: _Context, args: argparse.Namespace) -> int:
    session = ctx.cache.load()
    guard = AccessGuard(ctx.resolver, [Role.ADMIN])
    identity = build_identity(None, session)
    decision = asyncio.run(guard.evaluate(identity, ctx.bearer_for(session) if session else None))
    if decision is None or decision.state is GuardState.NO_IDENTITY:
        print("  Not signed in. Run: python main.py login <username>")
        return 2
    if decision.state is not GuardState.ALLOWED:
        print("  Unauthorized.")
        return 2

    outcome = CascadeDeleter(ctx.docstore).delete(args.date_id)
    print(
        f"  {outcome.dependents_deleted} subject(s), {outcome.nested_items_deleted} note(s) deleted "
        f"in {outcome.batches_committed} batch(es)."
    )
    if not outcome.ok:
        print(f"  [!] Stopped after stage '{outcome.stage.value}': {outcome.error}")
        print("  Run the same command again to finish.")
        return 1
    print(f"  Date {args.date_id} deleted.")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


_COMMANDS = {
    "login": _cmd_login,
    "whoami": _cmd_whoami,
    "logout": _cmd_logout,
    "grant-role": _cmd_grant_role,
    "delete-date": _cmd_delete_date,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schoolgate",
        description="Sign in, check your role, and run admin tasks against the SchoolGate stores.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py login alice
  python main.py login admin@school.local --password secret
  python main.py whoami
  python main.py delete-date 2024-05-01
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("login", help="Sign in with a username or an email address")
    p.add_argument("identifier", metavar="IDENTIFIER", help="Username (managed account) or email (provider account)")
    p.add_argument("--password", default=None, help="Password (prompted for when omitted)")

    sub.add_parser("whoami", help="Show the signed-in user and their current role")
    sub.add_parser("logout", help="Forget the signed-in session")

    p = sub.add_parser("grant-role", help="Set the role claim on a provider account (operator use)")
    p.add_argument("uid", metavar="UID")
    p.add_argument("role", metavar="ROLE", help="admin, teacher, student or kiosk")

    p = sub.add_parser("delete-date", help="Delete a parliament date with its subjects and notes (admin)")
    p.add_argument("date_id", metavar="DATE_ID")

    p = sub.add_parser("serve", help="Run the web UI and API with uvicorn")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "serve":
        return _cmd_serve(args)

    ctx = _Context()
    try:
        return _COMMANDS[args.command](ctx, args)
    finally:
        ctx.close()


if __name__ == "__main__":
    sys.exit(main())
