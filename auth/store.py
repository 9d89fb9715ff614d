"""
auth/store.py -- SQLAlchemy Core persistence for identity-provider accounts.

Pattern: Repository + Data Mapper (same as docstore/store.py).
AccountStore is the repository; _row_to_account is the mapper. Provider and
route code never touch SQL directly.

This is the credential side of identity only: email, password hash and the
provider's custom claims. Profiles (role, username, ...) live in the document
store and are read by the role resolver.

Security:
  SQL is built with SQLAlchemy Core expressions only, never string formatting.
  Emails are stored lower-cased; lookups lower-case their input, so the
  UNIQUE constraint is effectively case-insensitive.

Layer rule: no imports from api/, web/, docstore/, or cache/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import Account
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("uid", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("custom_claims", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

# Fields update_account() accepts. Anything else is a programming error.
_UPDATABLE = {"email", "display_name", "hashed_password", "is_active"}


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AccountStore:
    """Repository for identity-provider Account records.

    Usage:
        store = AccountStore()
        uid = store.create_account(Account(uid="", email="a@school.local", hashed_password=hash_password("x")))
        account = store.get_by_email("A@school.local")
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().accounts_db_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def create_account(self, account: Account) -> str:
        """Insert a new account and return its uid (generated when account.uid is empty).

        Raises sqlalchemy.exc.IntegrityError if the email is already registered.
        """
        uid = account.uid or uuid.uuid4().hex
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.insert().values(
                    uid=uid,
                    email=account.email.strip().lower(),
                    display_name=account.display_name or "",
                    hashed_password=account.hashed_password,
                    custom_claims=json.dumps(account.custom_claims or {}),
                    created_at=_now_iso(),
                    is_active=1 if account.is_active else 0,
                )
            )
            conn.commit()
        return uid

    def get_by_uid(self, uid: str) -> Optional[Account]:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.uid == uid)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Optional[Account]:
        """Case-insensitive email lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.strip().lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.email)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, uid: str, **fields) -> bool:
        """Update mutable fields. Returns False if uid was not found.

        Unknown field names raise ValueError rather than being ignored.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if not fields:
            return self.get_by_uid(uid) is not None
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.uid == uid).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_custom_claims(self, uid: str, claims: dict[str, Any]) -> bool:
        """Replace the account's custom claims. Takes effect on the next token refresh."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.uid == uid).values(custom_claims=json.dumps(claims))
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, uid: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_accounts.update().where(_accounts.c.uid == uid).values(last_login=_now_iso()))
            conn.commit()

    def delete_account(self, uid: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.delete().where(_accounts.c.uid == uid))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    try:
        claims = json.loads(row.custom_claims or "{}")
    except ValueError:
        claims = {}
    return Account(
        uid=row.uid,
        email=row.email,
        display_name=row.display_name or "",
        hashed_password=row.hashed_password,
        custom_claims=claims if isinstance(claims, dict) else {},
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )
