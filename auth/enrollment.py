"""
auth/enrollment.py -- Registration Challenge Manager: passkey enrollment.

Two-phase ceremony per account:

  NoChallenge --begin_enrollment--> Issued --complete_enrollment--> Consumed
                                      |  ^
                                      +--+ begin_enrollment again (supersedes)

Only the most recent challenge can complete. The challenge is consumed and
the passkey inserted in one transaction (AuthStore.create_passkey), so a
response replayed after success, or one answering a superseded challenge,
finds nothing to consume and fails with ChallengeNotFound.

A response that fails verification leaves the challenge live: the client may
retry the same ceremony until it succeeds or a new challenge replaces it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.accounts import AccountDirectory
from auth.ceremony import CeremonyPrimitives
from auth.errors import ChallengeNotFound, DuplicateCredential
from auth.models import Passkey
from auth.passkeys import PasskeyRegistry
from auth.store import AuthStore

logger = logging.getLogger("tripauth.enrollment")

_MAX_NAME_LEN = 100


class EnrollmentManager:
    def __init__(
        self,
        store: AuthStore,
        accounts: AccountDirectory,
        registry: PasskeyRegistry,
        ceremony: CeremonyPrimitives,
        rp_id: str,
        rp_name: str,
        origin: str,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._registry = registry
        self._ceremony = ceremony
        self._rp_id = rp_id
        self._rp_name = rp_name
        self._origin = origin

    def begin_enrollment(self, account_id: int, account_display_name: str) -> dict:
        """Issue a fresh registration challenge and return the client options.

        Raises NotFound if the account does not exist. Any earlier challenge
        for the account is replaced.
        """
        self._accounts.get(account_id)
        existing = [p.credential_id for p in self._store.get_passkeys(account_id)]
        payload = self._ceremony.generate_enrollment_challenge(
            rp_id=self._rp_id,
            rp_name=self._rp_name,
            account_display_name=account_display_name,
            user_id=str(account_id),
            exclude_credential_ids=existing,
        )
        self._store.upsert_registration_challenge(account_id, payload.challenge)
        logger.info("Enrollment challenge issued account_id=%s", account_id)
        return payload.options

    def complete_enrollment(
        self,
        account_id: int,
        client_response: dict,
        friendly_name: str | None = None,
        device_type_label: str | None = None,
    ) -> Passkey:
        """Verify the client's attestation and bind the new passkey.

        Raises ChallengeNotFound when no live challenge exists (never issued,
        already consumed, or superseded mid-flight), VerificationFailed when
        the ceremony check rejects the response, and DuplicateCredential when
        the credential id is already bound to any account.
        """
        challenge = self._store.get_registration_challenge(account_id)
        if challenge is None:
            raise ChallengeNotFound()

        verified = self._ceremony.verify_enrollment_response(
            expected_challenge=challenge.challenge,
            expected_origin=self._origin,
            expected_rp_id=self._rp_id,
            response=client_response,
        )

        passkey = Passkey(
            account_id=account_id,
            credential_id=verified.credential_id,
            public_key=verified.public_key,
            sign_count=verified.sign_count,
            transports=verified.transports,
            name=(friendly_name or "Passkey").strip()[:_MAX_NAME_LEN] or "Passkey",
            device_type=(device_type_label or "Unknown").strip()[:50] or "Unknown",
        )
        try:
            passkey_id = self._store.create_passkey(challenge, passkey)
        except IntegrityError as exc:
            logger.warning("Duplicate passkey credential rejected for account_id=%s", account_id)
            raise DuplicateCredential() from exc
        if passkey_id is None:
            raise ChallengeNotFound()

        self._registry.sync_biometric_flag(account_id)
        logger.info("Passkey enrolled id=%s account_id=%s", passkey_id, account_id)
        passkey.id = passkey_id
        return passkey
