"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Managers and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Single-live-row invariants:
  otp_challenges, registration_challenges and login_challenges each carry
  UNIQUE(account_id). Issuing is a single-statement upsert
  (INSERT ... ON CONFLICT (account_id) DO UPDATE) on SQLite and PostgreSQL, and
  a delete-then-insert inside one transaction elsewhere. Two concurrent issues
  for the same account therefore end with exactly one row -- the later write.

Consumption:
  Every consume is a compare-and-delete keyed by (account_id, stored value).
  rowcount == 1 means this caller won; 0 means the row was already consumed or
  superseded by a newer value. No read-then-delete window exists.

DB path: auth/tripauth.db unless a URL is passed (or DATABASE_URL is set and
forwarded by the caller).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine

from auth.models import Account, CeremonyChallenge, Device, OtpChallenge, Passkey

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tripauth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized
    Column("hashed_password", Text, nullable=False),
    Column("salt", String(64), nullable=False),
    Column("role", String(30), nullable=False, server_default="customer"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("is_profile_completed", Integer, nullable=False, server_default="0"),
    Column("biometric_enabled", Integer, nullable=False, server_default="0"),
    Column("profile_id", String(64)),
    Column("created_at", String(32), nullable=False),
)

_otp_challenges = Table(
    "otp_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, unique=True),
    Column("purpose", String(30), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_registration_challenges = Table(
    "registration_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, unique=True),
    Column("challenge", String(255), nullable=False),  # base64url
    Column("created_at", String(32), nullable=False),
)

_login_challenges = Table(
    "login_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, unique=True),
    Column("challenge", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_passkeys = Table(
    "passkeys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("credential_id", String(1024), nullable=False, unique=True),  # base64url
    Column("public_key", LargeBinary, nullable=False),  # COSE key bytes
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("transports", Text),  # JSON array serialized as text
    Column("name", String(100), nullable=False, server_default="Passkey"),
    Column("device_type", String(50), nullable=False, server_default="Unknown"),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_devices = Table(
    "devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_token", String(255), nullable=False, unique=True),
    Column("account_id", Integer, nullable=False),
    Column("device_type", String(20), nullable=False, server_default="other"),
    Column("device_name", String(255), nullable=False, server_default="unknown"),
    Column("auth_method", String(20), nullable=False, server_default="password"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login_at", String(32)),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _upsert(conn: Connection, table: Table, key: str, values: dict) -> None:
    """Insert values, or overwrite the existing row that shares values[key].

    The ON CONFLICT form is one statement, so the database serializes two
    concurrent upserts for the same key instead of letting both insert.
    """
    dialect = conn.dialect.name
    if dialect in ("sqlite", "postgresql"):
        insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c[key]],
            set_={col: stmt.excluded[col] for col in values if col != key},
        )
        conn.execute(stmt)
        return
    conn.execute(table.delete().where(table.c[key] == values[key]))
    conn.execute(table.insert().values(**values))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for accounts, OTPs, ceremony challenges, passkeys and devices.

    Usage:
        store = AuthStore()
        account_id = store.create_account(Account(email="a@x.com", hashed_password=h, salt=s))
        store.upsert_otp(OtpChallenge(account_id=account_id, purpose="registration", ...))
        store.close()
    """

    # Columns update_account() will write. Validated before any SQL is built.
    _ACCOUNT_FIELDS: set = {
        "hashed_password",
        "salt",
        "role",
        "is_verified",
        "is_profile_completed",
        "biometric_enabled",
        "profile_id",
    }
    _BOOL_FIELDS: set = {"is_verified", "is_profile_completed", "biometric_enabled"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Writers wait for the lock instead of failing immediately.
            connect_args["timeout"] = 15
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a concurrent signup that won the race.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    hashed_password=account.hashed_password,
                    salt=account.salt,
                    role=account.role,
                    is_verified=1 if account.is_verified else 0,
                    is_profile_completed=1 if account.is_profile_completed else 0,
                    biometric_enabled=0,
                    profile_id=account.profile_id,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_account(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        """Look up an account by normalized email. Callers normalize first."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable account columns. Returns False if account_id was not found.

        Only keys in _ACCOUNT_FIELDS are accepted; unknown keys raise ValueError.
        Boolean flags are converted to 0/1.
        """
        unknown = set(fields) - self._ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        for name in self._BOOL_FIELDS & set(fields):
            fields[name] = 1 if fields[name] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTP challenges
    # ------------------------------------------------------------------

    def upsert_otp(self, otp: OtpChallenge) -> None:
        """Make otp the account's only live OTP, replacing any previous one."""
        with self.engine.begin() as conn:
            _upsert(
                conn,
                _otp_challenges,
                "account_id",
                {
                    "account_id": otp.account_id,
                    "purpose": otp.purpose,
                    "code_hash": otp.code_hash,
                    "expires_at": otp.expires_at,
                    "created_at": _now_iso(),
                },
            )

    def get_otp(self, account_id: int) -> OtpChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _otp_challenges.select().where(_otp_challenges.c.account_id == account_id)
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def delete_otp(self, account_id: int, code_hash: str) -> bool:
        """Compare-and-delete: remove the OTP only if it still holds code_hash.

        Returns True for exactly one caller per issued code.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_challenges.delete().where(
                    (_otp_challenges.c.account_id == account_id) & (_otp_challenges.c.code_hash == code_hash)
                )
            )
        return result.rowcount == 1

    def purge_expired_otps(self, now_iso: str) -> int:
        """Delete OTPs whose expiry is before now_iso. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_otp_challenges.delete().where(_otp_challenges.c.expires_at < now_iso))
        return result.rowcount

    # ------------------------------------------------------------------
    # Ceremony challenges
    # ------------------------------------------------------------------

    def upsert_registration_challenge(self, account_id: int, challenge: str) -> None:
        self._upsert_challenge(_registration_challenges, account_id, challenge)

    def get_registration_challenge(self, account_id: int) -> CeremonyChallenge | None:
        return self._get_challenge(_registration_challenges, account_id)

    def upsert_login_challenge(self, account_id: int, challenge: str) -> None:
        self._upsert_challenge(_login_challenges, account_id, challenge)

    def get_login_challenge(self, account_id: int) -> CeremonyChallenge | None:
        return self._get_challenge(_login_challenges, account_id)

    def purge_stale_challenges(self, cutoff_iso: str) -> int:
        """Delete registration and login challenges created before cutoff_iso."""
        removed = 0
        with self.engine.begin() as conn:
            for table in (_registration_challenges, _login_challenges):
                removed += conn.execute(table.delete().where(table.c.created_at < cutoff_iso)).rowcount
        return removed

    def _upsert_challenge(self, table: Table, account_id: int, challenge: str) -> None:
        with self.engine.begin() as conn:
            _upsert(
                conn,
                table,
                "account_id",
                {"account_id": account_id, "challenge": challenge, "created_at": _now_iso()},
            )

    def _get_challenge(self, table: Table, account_id: int) -> CeremonyChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(table.select().where(table.c.account_id == account_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    # ------------------------------------------------------------------
    # Passkeys
    # ------------------------------------------------------------------

    def create_passkey(self, challenge: CeremonyChallenge, passkey: Passkey) -> int | None:
        """Consume the registration challenge and insert passkey in one transaction.

        Returns the new passkey ID, or None if the challenge was already
        consumed or superseded (nothing is written in that case).

        Raises sqlalchemy.exc.IntegrityError if credential_id already exists;
        the transaction rolls back and the challenge stays live.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _registration_challenges.delete().where(
                    (_registration_challenges.c.account_id == challenge.account_id)
                    & (_registration_challenges.c.challenge == challenge.challenge)
                )
            ).rowcount
            if consumed != 1:
                return None
            result = conn.execute(
                _passkeys.insert().values(
                    account_id=passkey.account_id,
                    credential_id=passkey.credential_id,
                    public_key=passkey.public_key,
                    sign_count=passkey.sign_count,
                    transports=json.dumps(passkey.transports) if passkey.transports is not None else None,
                    name=passkey.name,
                    device_type=passkey.device_type,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def record_passkey_use(self, challenge: CeremonyChallenge, passkey_id: int, sign_count: int) -> bool:
        """Consume the login challenge and stamp the passkey in one transaction.

        Returns False (and writes nothing) if the challenge was already
        consumed or superseded.
        """
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _login_challenges.delete().where(
                    (_login_challenges.c.account_id == challenge.account_id)
                    & (_login_challenges.c.challenge == challenge.challenge)
                )
            ).rowcount
            if consumed != 1:
                return False
            conn.execute(
                update(_passkeys)
                .where(_passkeys.c.id == passkey_id)
                .values(last_used_at=_now_iso(), sign_count=sign_count)
            )
        return True

    def get_passkeys(self, account_id: int) -> list[Passkey]:
        """Return all passkeys for an account, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _passkeys.select()
                .where(_passkeys.c.account_id == account_id)
                .order_by(_passkeys.c.created_at.desc(), _passkeys.c.id.desc())
            ).fetchall()
        return [_row_to_passkey(r) for r in rows]

    def get_passkey_by_credential(self, account_id: int, credential_id: str) -> Passkey | None:
        """Look up a credential owned by account_id. Another account's credential is None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _passkeys.select().where(
                    (_passkeys.c.account_id == account_id) & (_passkeys.c.credential_id == credential_id)
                )
            ).fetchone()
        return _row_to_passkey(row) if row is not None else None

    def count_passkeys(self, account_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_passkeys).where(_passkeys.c.account_id == account_id)
            ).scalar()
        return result or 0

    def rename_passkey(self, account_id: int, passkey_id: int, name: str) -> bool:
        """Rename a passkey. account_id is checked to prevent IDOR."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _passkeys.update()
                .where((_passkeys.c.id == passkey_id) & (_passkeys.c.account_id == account_id))
                .values(name=name)
            )
        return result.rowcount > 0

    def delete_passkey(self, account_id: int, passkey_id: int) -> bool:
        """Delete a passkey. Returns False if not found or owned by another account."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _passkeys.delete().where((_passkeys.c.id == passkey_id) & (_passkeys.c.account_id == account_id))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def upsert_device(self, device: Device) -> None:
        """Bind device_token to the account that most recently authenticated on it."""
        with self.engine.begin() as conn:
            _upsert(
                conn,
                _devices,
                "device_token",
                {
                    "device_token": device.device_token,
                    "account_id": device.account_id,
                    "device_type": device.device_type,
                    "device_name": device.device_name,
                    "auth_method": device.auth_method,
                    "is_active": 1 if device.is_active else 0,
                    "last_login_at": _now_iso(),
                },
            )

    def get_device(self, device_token: str) -> Device | None:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.device_token == device_token)).fetchone()
        return _row_to_device(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        salt=row.salt,
        role=row.role,
        is_verified=bool(row.is_verified),
        is_profile_completed=bool(row.is_profile_completed),
        biometric_enabled=bool(row.biometric_enabled),
        profile_id=row.profile_id,
        created_at=row.created_at,
    )


def _row_to_otp(row) -> OtpChallenge:
    return OtpChallenge(
        id=row.id,
        account_id=row.account_id,
        purpose=row.purpose,
        code_hash=row.code_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_challenge(row) -> CeremonyChallenge:
    return CeremonyChallenge(
        id=row.id,
        account_id=row.account_id,
        challenge=row.challenge,
        created_at=row.created_at,
    )


def _row_to_passkey(row) -> Passkey:
    return Passkey(
        id=row.id,
        account_id=row.account_id,
        credential_id=row.credential_id,
        public_key=row.public_key,
        sign_count=row.sign_count,
        transports=json.loads(row.transports) if row.transports else None,
        name=row.name,
        device_type=row.device_type,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        device_token=row.device_token,
        account_id=row.account_id,
        device_type=row.device_type,
        device_name=row.device_name,
        auth_method=row.auth_method,
        is_active=bool(row.is_active),
        last_login_at=row.last_login_at,
    )
