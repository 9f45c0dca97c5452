"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and managers do
the work; these classes only own domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    customer = "customer"
    operator = "operator"
    driver = "driver"
    manager = "manager"
    super_admin = "super_admin"


class OtpPurpose(str, Enum):
    """Selects the email template an OTP is delivered with."""

    registration = "registration"
    resend = "resend"
    password_reset = "password_reset"


class DeviceType(str, Enum):
    ios = "ios"
    android = "android"
    web = "web"
    postman = "postman"
    other = "other"


class AuthMethod(str, Enum):
    password = "password"
    biometric = "biometric"


@dataclass
class Account:
    """A booking-app identity.

    email is the identity key and is always stored normalized (lower-cased,
    stripped). hashed_password / salt never leave the auth package: API
    response models copy the public fields only.

    biometric_enabled is derived from the passkey count. Only the passkey
    registry writes it (see auth/passkeys.PasskeyRegistry.sync_biometric_flag).
    """

    email: str
    role: str = Role.customer.value
    id: int | None = None
    hashed_password: str | None = None
    salt: str | None = None
    is_verified: bool = False
    is_profile_completed: bool = False
    biometric_enabled: bool = False
    profile_id: str | None = None
    created_at: str | None = None


@dataclass
class OtpChallenge:
    """The single live one-time passcode for an account.

    code_hash is HMAC-SHA256(SECRET_KEY, code). The raw code is handed to the
    mailer and discarded; it is never persisted.
    """

    account_id: int
    purpose: str
    code_hash: str
    expires_at: str  # ISO 8601 UTC
    id: int | None = None
    created_at: str | None = None


@dataclass
class CeremonyChallenge:
    """A server-issued WebAuthn challenge (base64url) awaiting its response.

    Used for both registration_challenges and login_challenges; the table
    decides which ceremony it belongs to.
    """

    account_id: int
    challenge: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class Passkey:
    """A public-key credential bound to an account.

    public_key / sign_count / transports are the credential material. They are
    omitted from every listing returned to clients.
    """

    account_id: int
    credential_id: str  # base64url, globally unique
    public_key: bytes
    sign_count: int = 0
    transports: list[str] | None = None
    name: str = "Passkey"
    device_type: str = "Unknown"
    id: int | None = None
    last_used_at: str | None = None
    created_at: str | None = None


@dataclass
class Device:
    """Best-effort binding of a push/device token to the last account seen on it."""

    device_token: str
    account_id: int
    device_type: str = DeviceType.other.value
    device_name: str = "unknown"
    auth_method: str = AuthMethod.password.value
    is_active: bool = True
    id: int | None = None
    last_login_at: str | None = None
