"""
auth/errors.py -- Typed failures raised by the authentication managers.

Every error carries a stable machine-readable code, a client-safe message, and
the HTTP status the API boundary should use. api/main.py registers a single
exception handler for AuthError; nothing else needs to know about HTTP.

Messages never include secrets (codes, hashes, challenges) and do not reveal
more than the code already does.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication failed."
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class NotFound(AuthError):
    code = "not_found"
    message = "User not found."
    status_code = 404


class AlreadyExists(AuthError):
    code = "already_exists"
    message = "User already exists with this email."
    status_code = 409


class DuplicateCredential(AlreadyExists):
    code = "duplicate_credential"
    message = "This passkey is already registered."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Password mismatch."
    status_code = 401


class WrongCurrentPassword(InvalidCredentials):
    """Wrong current password on an already authenticated request.

    400 rather than 401: the session token is still good.
    """

    code = "wrong_current_password"
    message = "Invalid current password."
    status_code = 400


class SamePassword(AuthError):
    code = "same_password"
    message = "Current password and new password cannot be the same."


class Mismatch(AuthError):
    code = "otp_mismatch"
    message = "OTP mismatch."


class Expired(AuthError):
    code = "otp_expired"
    message = "OTP expired."


class OtpDeliveryFailed(AuthError):
    code = "otp_delivery_failed"
    message = "Failed to send OTP. Please try again."
    status_code = 502


class ChallengeNotFound(AuthError):
    code = "challenge_not_found"
    message = "Challenge not found."


class CredentialNotFound(AuthError):
    code = "credential_not_found"
    message = "Passkey not found for this account."


class VerificationFailed(AuthError):
    code = "verification_failed"
    message = "Challenge verification failed."


class BiometricNotEnabled(AuthError):
    code = "biometric_not_enabled"
    message = "Biometric login is not enabled."
