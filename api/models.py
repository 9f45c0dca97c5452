"""
API request and response models for TripAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two,
and password material never reaches a response model.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Account, DeviceType
from auth.passkeys import PasskeySummary

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Public signups are always customers. Other roles are created with the CLI.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    device_token: Optional[str] = Field(default=None, max_length=255)
    device_type: DeviceType = DeviceType.other


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    device_token: Optional[str] = Field(default=None, max_length=255)
    device_type: DeviceType = DeviceType.other


class OtpSendRequest(BaseModel):
    email: EmailStr


class OtpVerifyRequest(BaseModel):
    account_id: int
    otp: str = Field(pattern=r"^\d{6}$")


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


class PasskeyRegisterVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/passkeys/register/verify.

    credential is the PublicKeyCredential JSON produced by the browser /
    platform authenticator, passed through untouched to the verifier.
    """

    credential: dict[str, Any]
    name: Optional[str] = Field(default=None, max_length=100)
    device_type: Optional[str] = Field(default=None, max_length=50)


class PasskeyLoginOptionsRequest(BaseModel):
    email: EmailStr


class PasskeyLoginVerifyRequest(BaseModel):
    email: EmailStr
    credential: dict[str, Any]
    device_token: Optional[str] = Field(default=None, max_length=255)
    device_type: Optional[DeviceType] = None


class PasskeyRename(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an Account. No password hash, no salt."""

    id: int
    email: str
    role: str
    is_verified: bool
    is_profile_completed: bool
    biometric_enabled: bool
    profile_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            is_verified=account.is_verified,
            is_profile_completed=account.is_profile_completed,
            biometric_enabled=account.biometric_enabled,
            profile_id=account.profile_id,
            created_at=account.created_at,
        )


class SignupResponse(BaseModel):
    account: AccountResponse
    message: str = "OTP sent successfully."
    otp: Optional[str] = None


class LoginResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/passkeys/login/verify.

    status is one of verification_required, profile_incomplete, authenticated.
    access_token is None only for verification_required.
    """

    status: str
    account: AccountResponse
    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    otp: Optional[str] = None


class OtpSendResponse(BaseModel):
    email: str
    account_id: int
    message: str = "OTP sent successfully."
    otp: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse


class MessageResponse(BaseModel):
    message: str


class PasskeyOptionsResponse(BaseModel):
    options: dict[str, Any]


class PasskeyResponse(BaseModel):
    """Passkey listing entry. Key material is never included."""

    id: int
    name: str
    device_type: str
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: PasskeySummary) -> "PasskeyResponse":
        return cls(
            id=summary.id,
            name=summary.name,
            device_type=summary.device_type,
            created_at=summary.created_at,
            last_used_at=summary.last_used_at,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
