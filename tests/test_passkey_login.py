"""
tests/test_passkey_login.py -- Unit tests for PasskeyLoginManager.

Covers:
  - begin on an unknown account -> NotFound
  - begin with zero passkeys -> BiometricNotEnabled
  - begin after the last passkey is removed -> BiometricNotEnabled
  - begin restricts allowed credentials to the account's own
  - complete without a challenge -> ChallengeNotFound
  - credential not bound to the account -> CredentialNotFound
  - wrong challenge -> VerificationFailed, challenge stays live
  - success stamps last_used_at, bumps sign count, consumes the challenge
  - device binding uses auth_method=biometric and never fails the login
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import BiometricNotEnabled, ChallengeNotFound, CredentialNotFound, NotFound, VerificationFailed
from auth.service import AuthService, LoginStatus
from auth.store import AuthStore
from conftest import assertion, enroll


class TestBeginLogin:
    def test_unknown_account(self, service: AuthService) -> None:
        with pytest.raises(NotFound):
            service.passkey_login.begin_login(31337)

    def test_zero_passkeys(self, service: AuthService, verified_account) -> None:
        with pytest.raises(BiometricNotEnabled):
            service.passkey_login.begin_login(verified_account.id)

    def test_zero_passkeys_after_removing_last(self, service: AuthService, verified_account) -> None:
        passkey = enroll(service, verified_account.id, "only-cred")
        options = service.passkey_login.begin_login(verified_account.id)
        service.registry.remove(verified_account.id, passkey.id)
        with pytest.raises(BiometricNotEnabled):
            service.passkey_login.begin_login(verified_account.id)
        # The challenge issued before removal cannot be redeemed.
        with pytest.raises(CredentialNotFound):
            service.passkey_login.complete_login(verified_account.id, assertion(options["challenge"], "only-cred"))

    def test_allow_list_is_own_credentials(self, service: AuthService, ceremony, verified_account) -> None:
        enroll(service, verified_account.id, "mine-1")
        enroll(service, verified_account.id, "mine-2")
        other = service.accounts.create_account("other@example.com", "secret-pass-1")
        enroll(service, other.id, "theirs")
        service.passkey_login.begin_login(verified_account.id)
        assert sorted(ceremony.last_allow) == ["mine-1", "mine-2"]

    def test_unknown_email_via_service(self, service: AuthService) -> None:
        with pytest.raises(NotFound):
            service.begin_passkey_login("nobody@example.com")


class TestCompleteLogin:
    def test_no_challenge(self, service: AuthService, verified_account) -> None:
        enroll(service, verified_account.id)
        with pytest.raises(ChallengeNotFound):
            service.passkey_login.complete_login(verified_account.id, assertion("nothing"))

    def test_credential_not_owned(self, service: AuthService, verified_account) -> None:
        enroll(service, verified_account.id, "mine")
        other = service.accounts.create_account("other@example.com", "secret-pass-1")
        enroll(service, other.id, "theirs")
        options = service.passkey_login.begin_login(verified_account.id)
        with pytest.raises(CredentialNotFound):
            service.passkey_login.complete_login(verified_account.id, assertion(options["challenge"], "theirs"))

    def test_wrong_challenge(self, service: AuthService, store: AuthStore, verified_account) -> None:
        enroll(service, verified_account.id)
        options = service.passkey_login.begin_login(verified_account.id)
        with pytest.raises(VerificationFailed):
            service.passkey_login.complete_login(verified_account.id, assertion("forged"))
        assert store.get_login_challenge(verified_account.id).challenge == options["challenge"]

    def test_success(self, service: AuthService, store: AuthStore, verified_account) -> None:
        enroll(service, verified_account.id, "cred-1")
        options = service.passkey_login.begin_login(verified_account.id)
        account = service.passkey_login.complete_login(
            verified_account.id, assertion(options["challenge"], "cred-1"), device_token="dev-1", device_type="ios"
        )
        assert account.id == verified_account.id
        passkey = store.get_passkey_by_credential(verified_account.id, "cred-1")
        assert passkey.last_used_at is not None
        assert passkey.sign_count == 1
        assert store.get_login_challenge(verified_account.id) is None
        device = store.get_device("dev-1")
        assert device.account_id == verified_account.id
        assert device.auth_method == "biometric"
        assert device.device_type == "ios"

    def test_replay_after_success(self, service: AuthService, verified_account) -> None:
        enroll(service, verified_account.id)
        options = service.passkey_login.begin_login(verified_account.id)
        response = assertion(options["challenge"])
        service.passkey_login.complete_login(verified_account.id, response)
        with pytest.raises(ChallengeNotFound):
            service.passkey_login.complete_login(verified_account.id, response)

    def test_device_binding_failure_does_not_fail_login(
        self, service: AuthService, store: AuthStore, verified_account, monkeypatch
    ) -> None:
        enroll(service, verified_account.id)
        options = service.passkey_login.begin_login(verified_account.id)

        def broken_upsert(device):
            raise OperationalError("INSERT INTO devices", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store, "upsert_device", broken_upsert)
        account = service.passkey_login.complete_login(
            verified_account.id, assertion(options["challenge"]), device_token="dev-x"
        )
        assert account.id == verified_account.id

    def test_service_returns_token(self, service: AuthService, verified_account) -> None:
        enroll(service, verified_account.id)
        _, options = service.begin_passkey_login(verified_account.email)
        result = service.complete_passkey_login(verified_account.email, assertion(options["challenge"]))
        assert result.status is LoginStatus.authenticated
        assert result.token
