"""
auth/otp.py -- OTP Challenge Manager: issue and validate 6-digit email codes.

Lifecycle of one code:
  issue()    -> upsert (replaces any prior OTP for the account) -> email
  validate() -> compare -> compare-and-delete (single use)

Invariants:
  - At most one live OTP per account. The store upserts on UNIQUE(account_id),
    so a second issue() makes the first code unusable (latest wins).
  - A code is consumed at most once. validate() deletes with
    WHERE code_hash = <hash>; when two requests race, only one sees
    rowcount == 1 and the other gets Mismatch.
  - An OTP whose email could not be delivered is deleted again before the
    error propagates, so the account is never left holding a live code
    nobody received.
  - Expiry is checked here, at validation time. sweep_expired() only
    garbage-collects; correctness never depends on it running.

The raw code is returned to the internal caller (AuthService) only. It is
never logged and never persisted.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import Expired, Mismatch, NotFound, OtpDeliveryFailed
from auth.mailer import VERIFICATION_SUBJECT, Mailer, render_otp_email
from auth.models import OtpChallenge, OtpPurpose
from auth.store import AuthStore
from auth.tokens import hash_otp_code, otp_hashes_match

logger = logging.getLogger("tripauth.otp")

_CODE_MIN = 100000
_CODE_MAX = 999999


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    """Return a uniformly random 6-digit code in [100000, 999999]."""
    return str(_CODE_MIN + secrets.randbelow(_CODE_MAX - _CODE_MIN + 1))


class OtpManager:
    def __init__(
        self,
        store: AuthStore,
        mailer: Mailer,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._mailer = mailer
        self._ttl = ttl_seconds
        self._clock = clock

    def issue(self, account_id: int, purpose: str = OtpPurpose.registration.value) -> str:
        """Create the account's live OTP, email it, and return the code.

        Raises NotFound for an unknown account and OtpDeliveryFailed if the
        email could not be sent (the OTP is rolled back first).
        """
        purpose = OtpPurpose(purpose).value
        account = self._store.get_account(account_id)
        if account is None:
            raise NotFound()

        code = generate_code()
        code_hash = hash_otp_code(account_id, code)
        expires_at = self._clock() + timedelta(seconds=self._ttl)
        self._store.upsert_otp(
            OtpChallenge(
                account_id=account_id,
                purpose=purpose,
                code_hash=code_hash,
                expires_at=expires_at.isoformat(timespec="microseconds"),
            )
        )

        html = render_otp_email(code, purpose, self._ttl)
        try:
            self._mailer.send_email(account.email, VERIFICATION_SUBJECT, html)
        except Exception as exc:
            # Compare-and-delete: a newer OTP issued meanwhile stays untouched.
            self._store.delete_otp(account_id, code_hash)
            logger.warning("OTP delivery failed for account id=%s: %s", account_id, type(exc).__name__)
            raise OtpDeliveryFailed() from exc

        logger.info("OTP issued account_id=%s purpose=%s", account_id, purpose)
        return code

    def validate(self, account_id: int, submitted_code: str) -> None:
        """Consume the account's OTP if submitted_code matches and is unexpired.

        Raises Mismatch when there is no live OTP, the code differs, or another
        request consumed it first. Raises Expired when the stored OTP is past
        its expiry; the expired row is deleted.

        The caller marks the account verified on success.
        """
        otp = self._store.get_otp(account_id)
        if otp is None or not otp_hashes_match(otp.code_hash, account_id, str(submitted_code)):
            raise Mismatch()

        if self._clock() > datetime.fromisoformat(otp.expires_at):
            self._store.delete_otp(account_id, otp.code_hash)
            raise Expired()

        if not self._store.delete_otp(account_id, otp.code_hash):
            # Lost the race to a concurrent validation of the same code.
            raise Mismatch()
        logger.info("OTP validated account_id=%s", account_id)

    def sweep_expired(self) -> int:
        """Delete every expired OTP. Returns the number removed."""
        removed = self._store.purge_expired_otps(self._clock().isoformat(timespec="microseconds"))
        if removed:
            logger.info("Swept %d expired OTP(s)", removed)
        return removed
