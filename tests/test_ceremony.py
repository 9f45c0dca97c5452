"""
tests/test_ceremony.py -- Tests for the py_webauthn-backed WebAuthnCeremony.

Every other passkey test runs against FakeCeremony; these exercise the real
adapter so the base64url handling stays consistent end to end.

Covers:
  - options["challenge"] equals the stored challenge string
  - exclude / allow credential ids survive the bytes round trip
  - malformed and wrong-origin responses -> VerificationFailed
  - credential_id_from_response prefers rawId and strips padding
  - the id stored at enrollment matches the id read back at login
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

import auth.ceremony as ceremony_module
from auth.ceremony import StoredCredential, WebAuthnCeremony, credential_id_from_response
from auth.errors import VerificationFailed
from conftest import ORIGIN, RP_ID

CRED_A = bytes_to_base64url(b"credential-a-raw-id")
CRED_B = bytes_to_base64url(b"credential-b-raw-id-0001")


def _client_data(kind: str, challenge: str, origin: str) -> str:
    payload = {"type": kind, "challenge": challenge, "origin": origin, "crossOrigin": False}
    return bytes_to_base64url(json.dumps(payload).encode())


@pytest.fixture()
def real_ceremony() -> WebAuthnCeremony:
    return WebAuthnCeremony()


class TestGenerate:
    def test_enrollment_options_match_payload(self, real_ceremony: WebAuthnCeremony) -> None:
        payload = real_ceremony.generate_enrollment_challenge(
            RP_ID, "TripAuth", "traveler@example.com", "7", [CRED_A, CRED_B]
        )
        assert payload.options["challenge"] == payload.challenge
        assert base64url_to_bytes(payload.challenge)
        assert [c["id"] for c in payload.options["excludeCredentials"]] == [CRED_A, CRED_B]
        assert payload.options["rp"]["id"] == RP_ID
        assert payload.options["user"]["name"] == "traveler@example.com"

    def test_login_options_match_payload(self, real_ceremony: WebAuthnCeremony) -> None:
        payload = real_ceremony.generate_login_challenge(RP_ID, [CRED_A])
        assert payload.options["challenge"] == payload.challenge
        assert [c["id"] for c in payload.options["allowCredentials"]] == [CRED_A]
        assert payload.options["rpId"] == RP_ID

    def test_challenges_are_fresh(self, real_ceremony: WebAuthnCeremony) -> None:
        first = real_ceremony.generate_login_challenge(RP_ID, [CRED_A])
        second = real_ceremony.generate_login_challenge(RP_ID, [CRED_A])
        assert first.challenge != second.challenge


class TestVerifyRejects:
    def test_malformed_enrollment_response(self, real_ceremony: WebAuthnCeremony) -> None:
        challenge = real_ceremony.generate_enrollment_challenge(RP_ID, "TripAuth", "t@example.com", "1", []).challenge
        with pytest.raises(VerificationFailed):
            real_ceremony.verify_enrollment_response(challenge, ORIGIN, RP_ID, {"garbage": True})

    def test_wrong_origin_enrollment_response(self, real_ceremony: WebAuthnCeremony) -> None:
        challenge = real_ceremony.generate_enrollment_challenge(RP_ID, "TripAuth", "t@example.com", "1", []).challenge
        response = {
            "id": CRED_A,
            "rawId": CRED_A,
            "type": "public-key",
            "response": {
                "clientDataJSON": _client_data("webauthn.create", challenge, "https://evil.example"),
                "attestationObject": bytes_to_base64url(b"not-cbor"),
            },
        }
        with pytest.raises(VerificationFailed):
            real_ceremony.verify_enrollment_response(challenge, ORIGIN, RP_ID, response)

    def test_malformed_login_response(self, real_ceremony: WebAuthnCeremony) -> None:
        challenge = real_ceremony.generate_login_challenge(RP_ID, [CRED_A]).challenge
        stored = StoredCredential(credential_id=CRED_A, public_key=b"not-a-cose-key")
        with pytest.raises(VerificationFailed):
            real_ceremony.verify_login_response(challenge, ORIGIN, RP_ID, {}, stored)

    def test_wrong_origin_login_response(self, real_ceremony: WebAuthnCeremony) -> None:
        challenge = real_ceremony.generate_login_challenge(RP_ID, [CRED_A]).challenge
        stored = StoredCredential(credential_id=CRED_A, public_key=b"not-a-cose-key")
        response = {
            "id": CRED_A,
            "rawId": CRED_A,
            "type": "public-key",
            "response": {
                "clientDataJSON": _client_data("webauthn.get", challenge, "https://evil.example"),
                "authenticatorData": bytes_to_base64url(b"\x00" * 37),
                "signature": bytes_to_base64url(b"sig"),
            },
        }
        with pytest.raises(VerificationFailed):
            real_ceremony.verify_login_response(challenge, ORIGIN, RP_ID, response, stored)


class TestCredentialIds:
    def test_prefers_raw_id(self) -> None:
        assert credential_id_from_response({"rawId": "YWJj", "id": "other"}) == "YWJj"

    def test_falls_back_to_id(self) -> None:
        assert credential_id_from_response({"id": "YWJj"}) == "YWJj"

    def test_strips_padding(self) -> None:
        assert credential_id_from_response({"rawId": "YWI="}) == "YWI"

    def test_non_string_id(self) -> None:
        assert credential_id_from_response({"rawId": 123}) == ""
        assert credential_id_from_response({}) == ""

    def test_enrolled_id_matches_login_lookup(self, real_ceremony: WebAuthnCeremony, monkeypatch) -> None:
        """The id stored at enrollment is the id a later assertion is looked up by."""
        raw = b"\xfa\x01credential\xff"
        monkeypatch.setattr(
            ceremony_module,
            "verify_registration_response",
            lambda **kwargs: SimpleNamespace(credential_id=raw, credential_public_key=b"pk", sign_count=0),
        )
        challenge = real_ceremony.generate_enrollment_challenge(RP_ID, "TripAuth", "t@example.com", "1", []).challenge
        verified = real_ceremony.verify_enrollment_response(challenge, ORIGIN, RP_ID, {"response": {}})
        padded = bytes_to_base64url(raw) + "=" * (-len(bytes_to_base64url(raw)) % 4)
        assert credential_id_from_response({"rawId": padded}) == verified.credential_id

    def test_login_passes_decoded_challenge(self, real_ceremony: WebAuthnCeremony, monkeypatch) -> None:
        seen = {}

        def fake_verify(**kwargs):
            seen.update(kwargs)
            return SimpleNamespace(new_sign_count=5)

        monkeypatch.setattr(ceremony_module, "verify_authentication_response", fake_verify)
        challenge = real_ceremony.generate_login_challenge(RP_ID, [CRED_A]).challenge
        stored = StoredCredential(credential_id=CRED_A, public_key=b"pk", sign_count=4)
        assert real_ceremony.verify_login_response(challenge, ORIGIN, RP_ID, {"id": CRED_A}, stored) == 5
        assert seen["expected_challenge"] == base64url_to_bytes(challenge)
        assert seen["credential_current_sign_count"] == 4
        assert seen["expected_origin"] == ORIGIN
