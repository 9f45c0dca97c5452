"""
tests/test_passkeys.py -- Unit tests for PasskeyRegistry.

Covers:
  - list is newest first and carries no key material
  - rename / remove of a missing or foreign passkey -> NotFound
  - removing a non-last passkey keeps biometric_enabled
  - removing the last passkey clears biometric_enabled
  - sync_biometric_flag recomputes from the table
"""

from __future__ import annotations

import dataclasses

import pytest

from auth.errors import NotFound
from auth.service import AuthService
from conftest import enroll


class TestList:
    def test_newest_first(self, service: AuthService, verified_account) -> None:
        enroll(service, verified_account.id, "cred-old", name="Old")
        enroll(service, verified_account.id, "cred-new", name="New")
        names = [p.name for p in service.registry.list(verified_account.id)]
        assert names == ["New", "Old"]

    def test_no_key_material(self, service: AuthService, verified_account) -> None:
        enroll(service, verified_account.id)
        summary = service.registry.list(verified_account.id)[0]
        fields = {f.name for f in dataclasses.fields(summary)}
        assert not fields & {"public_key", "sign_count", "transports", "credential_id"}

    def test_empty(self, service: AuthService, verified_account) -> None:
        assert service.registry.list(verified_account.id) == []
        assert service.registry.count(verified_account.id) == 0


class TestRename:
    def test_rename(self, service: AuthService, verified_account) -> None:
        passkey = enroll(service, verified_account.id)
        service.registry.rename(verified_account.id, passkey.id, "Laptop")
        assert service.registry.list(verified_account.id)[0].name == "Laptop"

    def test_rename_missing(self, service: AuthService, verified_account) -> None:
        with pytest.raises(NotFound):
            service.registry.rename(verified_account.id, 404, "Nope")

    def test_rename_foreign(self, service: AuthService, verified_account) -> None:
        other = service.accounts.create_account("other@example.com", "secret-pass-1")
        theirs = enroll(service, other.id, "theirs")
        with pytest.raises(NotFound):
            service.registry.rename(verified_account.id, theirs.id, "Stolen")


class TestRemove:
    def test_remove_non_last_keeps_flag(self, service: AuthService, verified_account) -> None:
        first = enroll(service, verified_account.id, "cred-1")
        enroll(service, verified_account.id, "cred-2")
        service.registry.remove(verified_account.id, first.id)
        assert service.registry.count(verified_account.id) == 1
        assert service.accounts.get(verified_account.id).biometric_enabled is True

    def test_remove_last_clears_flag(self, service: AuthService, verified_account) -> None:
        only = enroll(service, verified_account.id)
        assert service.accounts.get(verified_account.id).biometric_enabled is True
        service.registry.remove(verified_account.id, only.id)
        assert service.registry.count(verified_account.id) == 0
        assert service.accounts.get(verified_account.id).biometric_enabled is False

    def test_remove_missing(self, service: AuthService, verified_account) -> None:
        with pytest.raises(NotFound):
            service.registry.remove(verified_account.id, 404)

    def test_remove_foreign(self, service: AuthService, verified_account) -> None:
        other = service.accounts.create_account("other@example.com", "secret-pass-1")
        theirs = enroll(service, other.id, "theirs")
        with pytest.raises(NotFound):
            service.registry.remove(verified_account.id, theirs.id)
        assert service.registry.count(other.id) == 1


def test_sync_recomputes_from_table(service: AuthService, verified_account) -> None:
    enroll(service, verified_account.id)
    service.accounts.set_biometric_enabled(verified_account.id, False)
    assert service.registry.sync_biometric_flag(verified_account.id) is True
    assert service.accounts.get(verified_account.id).biometric_enabled is True
