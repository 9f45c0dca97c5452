"""
auth/accounts.py -- Account Directory: credential records and account flags.

Owns signup, password authentication and the idempotent state mutators
(verified, profile-completed, password, biometric flag). Emails are normalized
(strip + lower-case) on every entry point so lookups and the UNIQUE(email)
constraint agree.

Security:
  [C1] authenticate_password() always runs one bcrypt comparison, even for an
       unknown email, so response time does not reveal whether the email is
       registered. The distinct NotFound / InvalidCredentials outcomes are
       still reported to the caller, which decides what the client sees.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import AlreadyExists, InvalidCredentials, NotFound, SamePassword, WrongCurrentPassword
from auth.models import Account, Role
from auth.store import AuthStore
from auth.tokens import burn_password_check, generate_salt, hash_password, verify_password

logger = logging.getLogger("tripauth.accounts")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountDirectory:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, account_id: int) -> Account:
        """Return the account or raise NotFound."""
        account = self._store.get_account(account_id)
        if account is None:
            raise NotFound()
        return account

    def find_by_email(self, email: str) -> Account | None:
        return self._store.get_account_by_email(normalize_email(email))

    # ------------------------------------------------------------------
    # Signup / login
    # ------------------------------------------------------------------

    def create_account(self, email: str, raw_password: str, role: str = Role.customer.value) -> Account:
        """Register a new, unverified and profile-incomplete account.

        The up-front lookup gives the common case a clean error; the UNIQUE
        constraint catches the concurrent-signup race that slips past it.
        """
        email = normalize_email(email)
        role = Role(role).value
        if self._store.get_account_by_email(email) is not None:
            raise AlreadyExists()

        salt = generate_salt()
        account = Account(
            email=email,
            role=role,
            hashed_password=hash_password(raw_password, salt),
            salt=salt,
        )
        try:
            account_id = self._store.create_account(account)
        except IntegrityError as exc:
            raise AlreadyExists() from exc
        logger.info("Account created id=%s role=%s", account_id, role)
        return self.get(account_id)

    def authenticate_password(self, email: str, raw_password: str) -> Account:
        """Return the account whose password matches, or raise.

        Raises NotFound if no account has this email, InvalidCredentials if
        the password is wrong.
        """
        account = self.find_by_email(email)
        if account is None or not account.hashed_password:
            burn_password_check(raw_password)  # [C1]
            raise NotFound()
        if not verify_password(raw_password, account.hashed_password):
            logger.info("Password mismatch for account id=%s", account.id)
            raise InvalidCredentials()
        return account

    # ------------------------------------------------------------------
    # State mutators (idempotent)
    # ------------------------------------------------------------------

    def mark_verified(self, account_id: int) -> None:
        self._update(account_id, is_verified=True)

    def mark_profile_complete(self, account_id: int, profile_ref: str) -> None:
        self._update(account_id, is_profile_completed=True, profile_id=str(profile_ref))

    def set_password(self, account_id: int, new_hash: str, new_salt: str) -> None:
        self._update(account_id, hashed_password=new_hash, salt=new_salt)

    def set_biometric_enabled(self, account_id: int, enabled: bool) -> None:
        """Write the biometric flag. Reserved for PasskeyRegistry.

        Other callers would let the flag drift from the passkey table; use
        PasskeyRegistry.sync_biometric_flag() instead.
        """
        self._update(account_id, biometric_enabled=enabled)

    def change_password(self, account_id: int, old_password: str, new_password: str) -> None:
        """Replace the password after re-checking the current one.

        Raises WrongCurrentPassword if old_password is wrong and SamePassword if
        new_password is the password already on file.
        """
        account = self.get(account_id)
        if not account.hashed_password or not verify_password(old_password, account.hashed_password):
            raise WrongCurrentPassword()
        if verify_password(new_password, account.hashed_password):
            raise SamePassword()
        salt = generate_salt()
        self.set_password(account_id, hash_password(new_password, salt), salt)
        logger.info("Password changed for account id=%s", account_id)

    def _update(self, account_id: int, **fields) -> None:
        if not self._store.update_account(account_id, **fields):
            raise NotFound()
