"""
auth/passkeys.py -- Passkey Registry: the credentials bound to an account.

The registry is the only writer of Account.biometric_enabled. After every
mutation of the passkey table it recounts the account's passkeys and writes
the flag through AccountDirectory.set_biometric_enabled(), so the flag is
always derived from the table rather than toggled.

Listings never carry key material (public_key, sign_count, transports).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.accounts import AccountDirectory
from auth.errors import NotFound
from auth.models import Passkey
from auth.store import AuthStore

logger = logging.getLogger("tripauth.passkeys")


@dataclass
class PasskeySummary:
    """Client-safe view of a Passkey."""

    id: int
    name: str
    device_type: str
    created_at: str | None = None
    last_used_at: str | None = None


def _summarize(passkey: Passkey) -> PasskeySummary:
    return PasskeySummary(
        id=passkey.id,
        name=passkey.name,
        device_type=passkey.device_type,
        created_at=passkey.created_at,
        last_used_at=passkey.last_used_at,
    )


class PasskeyRegistry:
    def __init__(self, store: AuthStore, accounts: AccountDirectory) -> None:
        self._store = store
        self._accounts = accounts

    def list(self, account_id: int) -> list[PasskeySummary]:
        """Return the account's passkeys, newest first."""
        return [_summarize(p) for p in self._store.get_passkeys(account_id)]

    def count(self, account_id: int) -> int:
        return self._store.count_passkeys(account_id)

    def rename(self, account_id: int, passkey_id: int, new_name: str) -> None:
        """Rename a passkey owned by account_id. Raises NotFound otherwise."""
        if not self._store.rename_passkey(account_id, passkey_id, new_name):
            raise NotFound("Passkey not found.")
        logger.info("Passkey renamed id=%s account_id=%s", passkey_id, account_id)

    def remove(self, account_id: int, passkey_id: int) -> None:
        """Delete a passkey owned by account_id and resync the biometric flag.

        Raises NotFound if the passkey does not exist or belongs to another
        account. Removing the last passkey turns biometric login off.
        """
        if not self._store.delete_passkey(account_id, passkey_id):
            raise NotFound("Passkey not found.")
        logger.info("Passkey removed id=%s account_id=%s", passkey_id, account_id)
        self.sync_biometric_flag(account_id)

    def sync_biometric_flag(self, account_id: int) -> bool:
        """Recompute biometric_enabled from the passkey count and return it."""
        enabled = self.count(account_id) > 0
        self._accounts.set_biometric_enabled(account_id, enabled)
        return enabled
