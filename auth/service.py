"""
auth/service.py -- Authentication flows composed from the managers.

AuthService is what the API routes and the CLI call. It owns no state of its
own; each method strings together the Account Directory, the OTP manager,
the passkey managers and the token issuer for one user-visible flow.

Password login ends in exactly one of three shapes (LoginStatus):
  verification_required -- account unverified: a fresh OTP is emailed, no token
  profile_incomplete    -- verified, profile not linked yet: token issued
  authenticated         -- verified and profile complete: token issued

OTP echo: when Settings.otp_echo_in_response is on (DEBUG only, see
core/config.py) the freshly issued code is returned alongside the result so a
developer can finish the flow without a mailbox. It is None otherwise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from auth.accounts import AccountDirectory
from auth.ceremony import CeremonyPrimitives
from auth.enrollment import EnrollmentManager
from auth.errors import NotFound
from auth.mailer import Mailer
from auth.models import Account, AuthMethod, Device, DeviceType, OtpPurpose, Passkey, Role
from auth.otp import OtpManager
from auth.passkey_login import PasskeyLoginManager
from auth.passkeys import PasskeyRegistry
from auth.store import AuthStore
from auth.tokens import issue_session_token
from core.config import Settings

logger = logging.getLogger("tripauth.service")


class LoginStatus(str, Enum):
    verification_required = "verification_required"
    profile_incomplete = "profile_incomplete"
    authenticated = "authenticated"


@dataclass
class DeviceInfo:
    """Optional device details sent with signup and login."""

    device_token: str
    device_type: str = DeviceType.other.value
    device_name: str = "unknown"


@dataclass
class SignupResult:
    account: Account
    otp: str | None = None


@dataclass
class LoginResult:
    status: LoginStatus
    account: Account
    token: str | None = None
    otp: str | None = None


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        accounts: AccountDirectory,
        otp: OtpManager,
        registry: PasskeyRegistry,
        enrollment: EnrollmentManager,
        passkey_login: PasskeyLoginManager,
        echo_otp: bool = False,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.otp = otp
        self.registry = registry
        self.enrollment = enrollment
        self.passkey_login = passkey_login
        self._echo_otp = echo_otp

    # ------------------------------------------------------------------
    # Password + OTP
    # ------------------------------------------------------------------

    def signup(
        self,
        email: str,
        password: str,
        role: str = Role.customer.value,
        device: DeviceInfo | None = None,
    ) -> SignupResult:
        """Create an unverified account and email it a registration OTP.

        The account survives an OtpDeliveryFailed; the client recovers with
        resend_otp().
        """
        account = self.accounts.create_account(email, password, role)
        if device is not None:
            self._bind_device(account.id, device, AuthMethod.password.value)
        code = self.otp.issue(account.id, OtpPurpose.registration.value)
        return SignupResult(account=account, otp=self._echo(code))

    def login(self, email: str, password: str, device: DeviceInfo | None = None) -> LoginResult:
        account = self.accounts.authenticate_password(email, password)
        if device is not None:
            self._bind_device(account.id, device, AuthMethod.password.value)

        if not account.is_verified:
            code = self.otp.issue(account.id, OtpPurpose.registration.value)
            logger.info("Login needs verification account_id=%s", account.id)
            return LoginResult(LoginStatus.verification_required, account, otp=self._echo(code))
        return self._session_result(account)

    def resend_otp(self, email: str) -> tuple[Account, str | None]:
        """Issue a new OTP for the account with this email (replacing any live one)."""
        account = self.accounts.find_by_email(email)
        if account is None:
            raise NotFound()
        code = self.otp.issue(account.id, OtpPurpose.resend.value)
        return account, self._echo(code)

    def verify_otp(self, account_id: int, code: str) -> tuple[Account, str]:
        """Consume the OTP, mark the account verified and return a session token."""
        account = self.accounts.get(account_id)
        self.otp.validate(account_id, code)
        self.accounts.mark_verified(account_id)
        account.is_verified = True
        return account, issue_session_token(account)

    def change_password(self, account_id: int, old_password: str, new_password: str) -> None:
        self.accounts.change_password(account_id, old_password, new_password)

    # ------------------------------------------------------------------
    # Passkeys
    # ------------------------------------------------------------------

    def begin_enrollment(self, account_id: int) -> dict:
        account = self.accounts.get(account_id)
        return self.enrollment.begin_enrollment(account_id, account.email)

    def complete_enrollment(
        self,
        account_id: int,
        credential: dict,
        name: str | None = None,
        device_type: str | None = None,
    ) -> Passkey:
        return self.enrollment.complete_enrollment(account_id, credential, name, device_type)

    def begin_passkey_login(self, email: str) -> tuple[Account, dict]:
        account = self.accounts.find_by_email(email)
        if account is None:
            raise NotFound()
        return account, self.passkey_login.begin_login(account.id)

    def complete_passkey_login(
        self,
        email: str,
        credential: dict,
        device_token: str | None = None,
        device_type: str | None = None,
    ) -> LoginResult:
        """Finish a passkey login. Same result shapes as a verified password login."""
        account = self.accounts.find_by_email(email)
        if account is None:
            raise NotFound()
        account = self.passkey_login.complete_login(account.id, credential, device_token, device_type)
        return self._session_result(account)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session_result(self, account: Account) -> LoginResult:
        token = issue_session_token(account)
        if not account.is_profile_completed:
            return LoginResult(LoginStatus.profile_incomplete, account, token=token)
        return LoginResult(LoginStatus.authenticated, account, token=token)

    def _echo(self, code: str) -> str | None:
        return code if self._echo_otp else None

    def _bind_device(self, account_id: int, device: DeviceInfo, auth_method: str) -> None:
        try:
            kind = DeviceType(device.device_type).value
        except ValueError:
            kind = DeviceType.other.value
        try:
            self.store.upsert_device(
                Device(
                    device_token=device.device_token,
                    account_id=account_id,
                    device_type=kind,
                    device_name=(device.device_name or "unknown")[:255],
                    auth_method=auth_method,
                )
            )
        except SQLAlchemyError:
            logger.warning("Device binding failed for account_id=%s", account_id, exc_info=True)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_service(store: AuthStore, mailer: Mailer, ceremony: CeremonyPrimitives, settings: Settings) -> AuthService:
    """Assemble the managers around one store. Shared by the API, the CLI and tests."""
    accounts = AccountDirectory(store)
    registry = PasskeyRegistry(store, accounts)
    return AuthService(
        store=store,
        accounts=accounts,
        otp=OtpManager(store, mailer, ttl_seconds=settings.otp_ttl_seconds),
        registry=registry,
        enrollment=EnrollmentManager(
            store,
            accounts,
            registry,
            ceremony,
            rp_id=settings.webauthn_rp_id,
            rp_name=settings.webauthn_rp_name,
            origin=settings.webauthn_origin,
        ),
        passkey_login=PasskeyLoginManager(
            store,
            accounts,
            ceremony,
            rp_id=settings.webauthn_rp_id,
            origin=settings.webauthn_origin,
        ),
        echo_otp=settings.otp_echo_in_response,
    )


def sweep_once(service: AuthService, challenge_max_age_seconds: int) -> tuple[int, int]:
    """Delete expired OTPs and ceremony challenges older than the cutoff.

    Returns (otps_removed, challenges_removed).
    """
    otps = service.otp.sweep_expired()
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=challenge_max_age_seconds)
    challenges = service.store.purge_stale_challenges(cutoff.isoformat(timespec="microseconds"))
    return otps, challenges
