"""
tests/conftest.py -- Shared test fixtures for TripAuth unit and integration tests.

This module provides:
  - FakeMailer: records every send; can be told to fail
  - FakeCeremony: deterministic stand-in for the py_webauthn verifier
  - attestation() / assertion(): build client responses FakeCeremony accepts
  - Clock: a settable clock for OTP expiry tests
  - store / service fixtures over a fresh in-memory database per test
  - file_store: temp-file WAL database for multi-threaded tests
  - api_client: TestClient with a patched lifespan and injected fakes

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
TestClient because route handlers run in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.accounts import AccountDirectory
from auth.ceremony import ChallengePayload, StoredCredential, VerifiedCredential
from auth.errors import VerificationFailed
from auth.otp import OtpManager
from auth.service import AuthService, build_service
from auth.store import AuthStore
from core.config import get_settings

SETTINGS = get_settings()
ORIGIN = SETTINGS.webauthn_origin
RP_ID = SETTINGS.webauthn_rp_id

_db_counter = itertools.count()
_OTP_RE = re.compile(r">(\d{6})</h1>")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeMailer:
    """Records (to, subject, html) for every send. Set fail=True to raise."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send_email(self, to: str, subject: str, html: str) -> None:
        if self.fail:
            raise ConnectionError("SMTP relay unavailable")
        self.sent.append((to, subject, html))

    def last_code(self, to: str | None = None) -> str:
        """Return the OTP from the most recent email (optionally to one address)."""
        for recipient, _subject, html in reversed(self.sent):
            if to is None or recipient == to:
                match = _OTP_RE.search(html)
                assert match, "OTP email did not contain a 6-digit code"
                return match.group(1)
        raise AssertionError(f"No email sent to {to!r}")


class FakeCeremony:
    """Deterministic ceremony primitives.

    A response is accepted when its "challenge", "origin" and "rpId" fields
    match what the verifier expects. The public key of credential X is
    b"pk-" + X, and each login bumps the sign count by one.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.last_exclude: list[str] = []
        self.last_allow: list[str] = []

    def generate_enrollment_challenge(self, rp_id, rp_name, account_display_name, user_id, exclude_credential_ids):
        challenge = f"reg-challenge-{next(self._counter)}"
        self.last_exclude = list(exclude_credential_ids)
        return ChallengePayload(
            challenge=challenge,
            options={
                "challenge": challenge,
                "rp": {"id": rp_id, "name": rp_name},
                "user": {"id": user_id, "name": account_display_name},
                "excludeCredentials": [{"id": cid, "type": "public-key"} for cid in exclude_credential_ids],
            },
        )

    def verify_enrollment_response(self, expected_challenge, expected_origin, expected_rp_id, response):
        self._check(expected_challenge, expected_origin, expected_rp_id, response)
        credential_id = response["id"]
        return VerifiedCredential(
            credential_id=credential_id,
            public_key=b"pk-" + credential_id.encode(),
            sign_count=0,
            transports=["internal"],
        )

    def generate_login_challenge(self, rp_id, allow_credential_ids):
        challenge = f"login-challenge-{next(self._counter)}"
        self.last_allow = list(allow_credential_ids)
        return ChallengePayload(
            challenge=challenge,
            options={
                "challenge": challenge,
                "rpId": rp_id,
                "allowCredentials": [{"id": cid, "type": "public-key"} for cid in allow_credential_ids],
            },
        )

    def verify_login_response(
        self, expected_challenge, expected_origin, expected_rp_id, response, stored_credential: StoredCredential
    ):
        self._check(expected_challenge, expected_origin, expected_rp_id, response)
        if stored_credential.public_key != b"pk-" + response["id"].encode():
            raise VerificationFailed()
        return stored_credential.sign_count + 1

    @staticmethod
    def _check(expected_challenge, expected_origin, expected_rp_id, response) -> None:
        if (
            response.get("challenge") != expected_challenge
            or response.get("origin") != expected_origin
            or response.get("rpId", RP_ID) != expected_rp_id
        ):
            raise VerificationFailed()


def attestation(challenge: str, credential_id: str = "cred-1", origin: str = ORIGIN) -> dict:
    """Client registration response for FakeCeremony."""
    return {"id": credential_id, "rawId": credential_id, "challenge": challenge, "origin": origin}


def assertion(challenge: str, credential_id: str = "cred-1", origin: str = ORIGIN) -> dict:
    """Client login response for FakeCeremony."""
    return {"id": credential_id, "rawId": credential_id, "challenge": challenge, "origin": origin}


class Clock:
    """Settable UTC clock. advance() moves it forward."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"


@pytest.fixture()
def store() -> Generator[AuthStore, None, None]:
    """Fresh, isolated in-memory store for one test."""
    s = AuthStore(db_url=_memory_url("unit"))
    yield s
    s.close()


@pytest.fixture()
def file_store(tmp_path) -> Generator[AuthStore, None, None]:
    """Temp-file store (WAL mode) for tests that hit it from several threads."""
    s = AuthStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture()
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture()
def ceremony() -> FakeCeremony:
    return FakeCeremony()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def accounts(store: AuthStore) -> AccountDirectory:
    return AccountDirectory(store)


@pytest.fixture()
def otp_manager(store: AuthStore, mailer: FakeMailer, clock: Clock) -> OtpManager:
    return OtpManager(store, mailer, ttl_seconds=600, clock=clock)


@pytest.fixture()
def service(store: AuthStore, mailer: FakeMailer, ceremony: FakeCeremony) -> AuthService:
    return build_service(store, mailer, ceremony, SETTINGS)


@pytest.fixture()
def verified_account(service: AuthService):
    """A verified, profile-complete customer account."""
    account = service.accounts.create_account("traveler@example.com", "correct-horse-1")
    service.accounts.mark_verified(account.id)
    service.accounts.mark_profile_complete(account.id, "profile-1")
    return service.accounts.get(account.id)


def enroll(service: AuthService, account_id: int, credential_id: str = "cred-1", name: str | None = None):
    """Run a full enrollment ceremony through the service and return the Passkey."""
    options = service.begin_enrollment(account_id)
    return service.complete_enrollment(account_id, attestation(options["challenge"], credential_id), name=name)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, mailer: FakeMailer, ceremony: FakeCeremony):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fakes into app.state so TestClient routes never
    open the production database or an SMTP connection. The sweep_task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.mailer = mailer
        app.state.ceremony = ceremony
        app.state.auth_service = build_service(store, mailer, ceremony, SETTINGS)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, FakeMailer, FakeCeremony], None, None]:
    """Yield (client, mailer, ceremony) backed by one isolated store per test module."""
    api_store = AuthStore(db_url=_memory_url("api"))
    api_mailer = FakeMailer()
    api_ceremony = FakeCeremony()
    app.router.lifespan_context = _patch_lifespan(api_store, api_mailer, api_ceremony)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, api_mailer, api_ceremony

    api_store.close()
