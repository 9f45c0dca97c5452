"""
auth/passkey_login.py -- Login Challenge Manager: passkey authentication.

begin_login() issues a challenge restricted to the account's own credentials;
complete_login() verifies the assertion against the stored public key, then
consumes the challenge and stamps the passkey (last_used_at, sign count) in
one transaction. Only the latest challenge for an account can complete, and
only once.

Device binding after a successful login is best effort: a failure is logged
and never turns a verified login into an error.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.accounts import AccountDirectory
from auth.ceremony import CeremonyPrimitives, StoredCredential, credential_id_from_response
from auth.errors import BiometricNotEnabled, ChallengeNotFound, CredentialNotFound
from auth.models import Account, AuthMethod, Device, DeviceType
from auth.store import AuthStore

logger = logging.getLogger("tripauth.passkey_login")


class PasskeyLoginManager:
    def __init__(
        self,
        store: AuthStore,
        accounts: AccountDirectory,
        ceremony: CeremonyPrimitives,
        rp_id: str,
        origin: str,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._ceremony = ceremony
        self._rp_id = rp_id
        self._origin = origin

    def begin_login(self, account_id: int) -> dict:
        """Issue a login challenge and return the client options.

        Raises NotFound for an unknown account and BiometricNotEnabled when
        the account has no passkeys.
        """
        self._accounts.get(account_id)
        credential_ids = [p.credential_id for p in self._store.get_passkeys(account_id)]
        if not credential_ids:
            raise BiometricNotEnabled()
        payload = self._ceremony.generate_login_challenge(
            rp_id=self._rp_id,
            allow_credential_ids=credential_ids,
        )
        self._store.upsert_login_challenge(account_id, payload.challenge)
        logger.info("Login challenge issued account_id=%s", account_id)
        return payload.options

    def complete_login(
        self,
        account_id: int,
        client_response: dict,
        device_token: str | None = None,
        device_type: str | None = None,
    ) -> Account:
        """Verify an assertion and return the authenticated Account.

        Raises ChallengeNotFound, CredentialNotFound (the credential is not
        bound to this account) or VerificationFailed.
        """
        challenge = self._store.get_login_challenge(account_id)
        if challenge is None:
            raise ChallengeNotFound()

        credential_id = credential_id_from_response(client_response)
        passkey = self._store.get_passkey_by_credential(account_id, credential_id) if credential_id else None
        if passkey is None:
            raise CredentialNotFound()

        new_sign_count = self._ceremony.verify_login_response(
            expected_challenge=challenge.challenge,
            expected_origin=self._origin,
            expected_rp_id=self._rp_id,
            response=client_response,
            stored_credential=StoredCredential(
                credential_id=passkey.credential_id,
                public_key=passkey.public_key,
                sign_count=passkey.sign_count,
            ),
        )

        if not self._store.record_passkey_use(challenge, passkey.id, new_sign_count):
            raise ChallengeNotFound()
        logger.info("Passkey login account_id=%s passkey_id=%s", account_id, passkey.id)

        if device_token:
            self._bind_device(account_id, device_token, device_type)
        return self._accounts.get(account_id)

    def _bind_device(self, account_id: int, device_token: str, device_type: str | None) -> None:
        try:
            kind = DeviceType(device_type).value if device_type else DeviceType.other.value
        except ValueError:
            kind = DeviceType.other.value
        try:
            self._store.upsert_device(
                Device(
                    device_token=device_token,
                    account_id=account_id,
                    device_type=kind,
                    auth_method=AuthMethod.biometric.value,
                )
            )
        except SQLAlchemyError:
            logger.warning("Device binding failed for account_id=%s", account_id, exc_info=True)
