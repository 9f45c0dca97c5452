"""
auth/ceremony.py -- WebAuthn ceremony primitives backed by py_webauthn.

The enrollment and login managers never call py_webauthn directly; they talk
to an object with the four methods below. WebAuthnCeremony is the production
implementation. Tests inject a deterministic fake with the same methods, so
no test depends on real authenticator output.

Challenges travel as base64url strings (no padding) -- that is what gets
stored in registration_challenges / login_challenges and what the browser
echoes back inside clientDataJSON. Credential ids use the same encoding.

verify_* methods raise VerificationFailed for every rejected response:
wrong challenge, wrong origin, wrong rp id, bad signature, malformed JSON.
py_webauthn reports these through several exception types; the caller only
needs to know the check did not pass.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.errors import VerificationFailed

logger = logging.getLogger("tripauth.ceremony")


@dataclass
class ChallengePayload:
    """A freshly generated challenge and the options the client needs for it."""

    challenge: str  # base64url
    options: dict[str, Any]


@dataclass
class VerifiedCredential:
    """Credential material extracted from a verified registration response."""

    credential_id: str  # base64url
    public_key: bytes
    sign_count: int = 0
    transports: list[str] | None = field(default=None)


@dataclass
class StoredCredential:
    """What login verification needs from a stored passkey."""

    credential_id: str
    public_key: bytes
    sign_count: int = 0


class CeremonyPrimitives(Protocol):
    def generate_enrollment_challenge(
        self,
        rp_id: str,
        rp_name: str,
        account_display_name: str,
        user_id: str,
        exclude_credential_ids: list[str],
    ) -> ChallengePayload: ...

    def verify_enrollment_response(
        self, expected_challenge: str, expected_origin: str, expected_rp_id: str, response: dict
    ) -> VerifiedCredential: ...

    def generate_login_challenge(self, rp_id: str, allow_credential_ids: list[str]) -> ChallengePayload: ...

    def verify_login_response(
        self,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        response: dict,
        stored_credential: StoredCredential,
    ) -> int: ...


def credential_id_from_response(response: dict) -> str:
    """Return the base64url credential id a client response refers to.

    rawId is preferred; id carries the same value for public-key credentials.
    Padding is stripped so ids compare equal to bytes_to_base64url() output.
    """
    raw_id = response.get("rawId") or response.get("id") or ""
    if not isinstance(raw_id, str):
        return ""
    return raw_id.rstrip("=")


def _transports_from_response(response: dict) -> list[str] | None:
    transports = (response.get("response") or {}).get("transports")
    if isinstance(transports, list) and all(isinstance(t, str) for t in transports):
        return transports
    return None


class WebAuthnCeremony:
    """py_webauthn-backed implementation of CeremonyPrimitives."""

    def __init__(self, require_user_verification: bool = False) -> None:
        self._require_uv = require_user_verification

    def generate_enrollment_challenge(
        self,
        rp_id: str,
        rp_name: str,
        account_display_name: str,
        user_id: str,
        exclude_credential_ids: list[str],
    ) -> ChallengePayload:
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=rp_name,
            user_id=user_id.encode(),
            user_name=account_display_name,
            user_display_name=account_display_name,
            # Block re-enrolling an authenticator the account already has.
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid)) for cid in exclude_credential_ids
            ],
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            supported_pub_key_algs=[
                COSEAlgorithmIdentifier.ECDSA_SHA_256,
                COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
            ],
        )
        return ChallengePayload(
            challenge=bytes_to_base64url(options.challenge),
            options=json.loads(options_to_json(options)),
        )

    def verify_enrollment_response(
        self, expected_challenge: str, expected_origin: str, expected_rp_id: str, response: dict
    ) -> VerifiedCredential:
        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=expected_rp_id,
                expected_origin=expected_origin,
                require_user_verification=self._require_uv,
            )
        except Exception as exc:
            logger.warning("Passkey registration verification failed: %s", exc)
            raise VerificationFailed() from None
        return VerifiedCredential(
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=verification.credential_public_key,
            sign_count=verification.sign_count,
            transports=_transports_from_response(response),
        )

    def generate_login_challenge(self, rp_id: str, allow_credential_ids: list[str]) -> ChallengePayload:
        options = generate_authentication_options(
            rp_id=rp_id,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid)) for cid in allow_credential_ids
            ],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return ChallengePayload(
            challenge=bytes_to_base64url(options.challenge),
            options=json.loads(options_to_json(options)),
        )

    def verify_login_response(
        self,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        response: dict,
        stored_credential: StoredCredential,
    ) -> int:
        """Verify an assertion and return the authenticator's new sign count."""
        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=expected_rp_id,
                expected_origin=expected_origin,
                credential_public_key=stored_credential.public_key,
                credential_current_sign_count=stored_credential.sign_count,
                require_user_verification=self._require_uv,
            )
        except Exception as exc:
            logger.warning("Passkey authentication failed: %s", exc)
            raise VerificationFailed() from None
        return verification.new_sign_count
