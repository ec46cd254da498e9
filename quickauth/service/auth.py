from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from quickauth.config import Settings
from quickauth.logging import get_logger, hash_identifier
from quickauth.service.accounts import (
    AccountRecords,
    AccountStore,
    NewAccount,
    PasswordPolicy,
    normalize_email,
)
from quickauth.service.email import DispatchResult, EmailService
from quickauth.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    ConflictError,
    DependencyFailureError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    OtpVerificationError,
    SamePasswordError,
    ServerError,
    ServiceError,
    UnauthorizedError,
    ValidationError,
)
from quickauth.service.lockout import LockoutPolicy
from quickauth.service.passwords import CredentialHasher
from quickauth.service.secret_tokens import SecretTokenGenerator
from quickauth.service.session_tokens import SessionTokenIssuer
from quickauth.service.sms import SmsService
from quickauth.storage.errors import ConstraintViolation
from quickauth.storage.models import Account, Role, SecretKind, SessionEntry, address_to_dict
from quickauth.storage.redis_cache import SessionCache

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = (
    "If an account exists for this email, a password reset link has been sent"
)


@dataclass
class AuthResult:
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthContext:
    account_id: str
    role: Role
    email: str
    token: str
    expires_at: datetime


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _translate_errors(func):
    """Map everything a workflow raises onto the service error taxonomy."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except ServiceError:
            raise
        except ConstraintViolation as exc:
            field_name = exc.detail.get("field", "value")
            raise ConflictError(
                f"An account with this {field_name} already exists",
                detail={"field": field_name},
            ) from exc
        except Exception as exc:
            logger.error(
                "auth_workflow_failed",
                workflow=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Something went wrong, please try again") from exc

    return wrapper


class AuthService:
    """Credential and session lifecycle workflows.

    All collaborators are injected; ``Runtime`` builds the production set and
    tests pass in-memory stores, caches and fake dispatchers.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: Optional[SessionCache],
        settings: Settings,
        *,
        hasher: Optional[CredentialHasher] = None,
        tokens: Optional[SessionTokenIssuer] = None,
        secrets: Optional[SecretTokenGenerator] = None,
        lockout: Optional[LockoutPolicy] = None,
        email: Optional[EmailService] = None,
        sms: Optional[SmsService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher or CredentialHasher.from_settings(settings)
        self.tokens = tokens or SessionTokenIssuer.from_settings(settings, cache)
        self.secrets = secrets or SecretTokenGenerator.from_settings(settings)
        self.lockout = lockout or LockoutPolicy.from_settings(settings)
        self.email = email or EmailService.from_settings(settings)
        self.sms = sms or SmsService.from_settings(settings)
        self.records = AccountRecords(
            store,
            self.hasher,
            password_policy=PasswordPolicy.from_settings(settings),
            min_age_years=settings.min_account_age_years,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # ---- helpers -----------------------------------------------------

    def _token_ttl(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.remember_me_token_ttl_days
            if remember_me
            else self.settings.session_token_ttl_days
        )
        return timedelta(days=days)

    def _cache_ttl(self, remember_me: bool) -> int:
        if remember_me:
            return self.settings.remember_me_cache_ttl_seconds
        return self.settings.session_cache_ttl_seconds

    async def _start_session(
        self,
        account: Account,
        *,
        remember_me: bool = False,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, Any]:
        ttl = self._token_ttl(remember_me)
        token = self.tokens.issue(account.id, account.role.value, account.email, ttl)
        claims = self.tokens.decode(token)
        expires_at = datetime.fromtimestamp(claims.expires_at, tz=timezone.utc)
        now = self._now()
        if self.cache is not None:
            entry = SessionEntry(
                account_id=account.id,
                role=account.role.value,
                email=account.email,
                login_at=now,
                last_activity_at=now,
                ip_address=client.ip_address if client else None,
                user_agent=client.user_agent if client else None,
                remember_me=remember_me,
            )
            try:
                await self.cache.set_session(entry, self._cache_ttl(remember_me))
            except Exception as exc:
                # A cache miss later is a degraded state, not a failed login
                self.logger.warning(
                    "session_cache_write_failed", account_id=account.id, error=str(exc)
                )
        return {
            "token": token,
            "token_type": "bearer",
            "expires_at": expires_at.isoformat(),
            "account": account.to_public_dict(),
        }

    async def _dispatch_mail(self, send: Callable[..., DispatchResult], *args) -> DispatchResult:
        try:
            return await asyncio.to_thread(send, *args)
        except Exception as exc:
            self.logger.error(
                "email_dispatch_crashed", error_type=type(exc).__name__, error=str(exc)
            )
            return DispatchResult(success=False, error=type(exc).__name__)

    async def _mint_secret(self, account: Account, kind: SecretKind):
        minted = self.secrets.mint(kind, now=self._now())
        self.store.set_secret(account.id, kind, minted.pending())
        return minted

    def _rollback_secret(self, account: Account, kind: SecretKind, digest: str) -> None:
        cleared = self.store.clear_secret(account.id, kind, expected_digest=digest)
        self.logger.info(
            "secret_rolled_back", account_id=account.id, kind=kind.value, cleared=cleared
        )

    def _load_account(self, account_id: str, *, with_password: bool = False) -> Account:
        account = self.store.get_account(account_id, with_password=with_password)
        if account is None:
            # A verified token pointing at a missing account is an integrity problem
            self.logger.error("account_missing_for_session", account_id=account_id)
            raise NotFoundError("Account not found")
        return account

    # ---- workflows ---------------------------------------------------

    @_translate_errors
    async def register(
        self,
        new: NewAccount,
        *,
        remember_me: bool = False,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        account = await asyncio.to_thread(self.records.create, new)
        session = await self._start_session(account, remember_me=remember_me, client=client)

        minted = await self._mint_secret(account, SecretKind.EMAIL_VERIFICATION)
        sent = await self._dispatch_mail(
            self.email.send_email_verification,
            account.email,
            account.first_name,
            minted.plaintext,
        )
        if not sent.success:
            self.logger.warning(
                "verification_email_failed", account_id=account.id, error=sent.error
            )
        if account.phone:
            welcome = await self.sms.send_welcome(account.phone, account.first_name)
            if not welcome.success:
                self.logger.warning(
                    "welcome_sms_failed", account_id=account.id, error=welcome.error
                )
        self.logger.info(
            "account_registered",
            account_id=account.id,
            role=account.role.value,
            email_hash=hash_identifier(account.email),
        )
        return AuthResult(
            True,
            "Registration successful. Please check your email to verify your account.",
            session,
        )

    @_translate_errors
    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        try:
            normalized = normalize_email(email)
        except ValidationError:
            raise InvalidCredentialsError() from None
        account = self.store.find_account_by_email(
            normalized, with_password=True, include_inactive=True
        )
        if account is None:
            self.logger.info("login_unknown_email", email_hash=hash_identifier(normalized))
            raise InvalidCredentialsError()
        now = self._now()
        if self.lockout.is_locked(account.lockout, now):
            self.logger.info("login_refused_locked", account_id=account.id)
            raise AccountLockedError(account.lockout.locked_until)
        if not account.is_active:
            self.logger.info("login_refused_deactivated", account_id=account.id)
            raise AccountDeactivatedError("Account has been deactivated")

        matched = await asyncio.to_thread(
            self.hasher.verify, password, account.password_hash
        )
        if not matched:
            state = self.store.record_login_failure(account.id, self.lockout, now)
            self.logger.info(
                "login_failed",
                account_id=account.id,
                attempts=state.attempts,
                locked=state.locked_until is not None,
            )
            raise InvalidCredentialsError(
                attempts_remaining=self.lockout.attempts_remaining(state)
            )

        if account.lockout.attempts or account.lockout.locked_until:
            self.store.reset_lockout(account.id)
        account.last_login_at = now
        if self.hasher.needs_rehash(account.password_hash):
            account = await asyncio.to_thread(
                self.records.save, account, new_password=password, rehash=True
            )
        else:
            account = self.records.save(account)
        session = await self._start_session(account, remember_me=remember_me, client=client)
        self.logger.info("login_succeeded", account_id=account.id, remember_me=remember_me)
        return AuthResult(True, "Login successful", session)

    @_translate_errors
    async def logout(self, ctx: AuthContext) -> AuthResult:
        if self.cache is not None:
            try:
                await self.cache.delete_session(ctx.account_id)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_delete_failed", account_id=ctx.account_id, error=str(exc)
                )
        try:
            await self.tokens.revoke(ctx.token)
        except Exception as exc:
            self.logger.error(
                "session_token_revoke_failed", account_id=ctx.account_id, error=str(exc)
            )
            raise DependencyFailureError("Could not complete logout, please retry") from exc
        self.logger.info("logout", account_id=ctx.account_id)
        return AuthResult(True, "Logged out successfully")

    @_translate_errors
    async def authenticate(self, token: Optional[str]) -> AuthContext:
        """Resolve a bearer token to the account it was issued for."""
        if not token:
            raise UnauthorizedError("Access denied. No token provided.")
        claims = await self.tokens.verify(token)
        if claims is None:
            raise UnauthorizedError("Invalid or expired token")
        account = self.store.get_account(claims.account_id)
        if account is None:
            self.logger.error("account_missing_for_session", account_id=claims.account_id)
            raise UnauthorizedError("Invalid or expired token")
        if not account.is_active:
            raise AccountDeactivatedError("Account has been deactivated")
        if self.cache is not None:
            try:
                await self.cache.touch_session(account.id, self._now())
            except Exception as exc:
                self.logger.warning(
                    "session_activity_update_failed", account_id=account.id, error=str(exc)
                )
        return AuthContext(
            account_id=account.id,
            role=account.role,
            email=account.email,
            token=token,
            expires_at=datetime.fromtimestamp(claims.expires_at, tz=timezone.utc),
        )

    @_translate_errors
    async def get_profile(self, ctx: AuthContext) -> AuthResult:
        account = self._load_account(ctx.account_id)
        data: Dict[str, Any] = {"account": account.to_public_dict(), "session": None}
        if self.cache is not None:
            try:
                entry = await self.cache.get_session(account.id)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_read_failed", account_id=account.id, error=str(exc)
                )
                entry = None
            if entry is not None:
                data["session"] = entry.to_dict()
        return AuthResult(True, "Profile retrieved", data)

    @_translate_errors
    async def update_profile(self, ctx: AuthContext, changes: Dict[str, Any]) -> AuthResult:
        self._load_account(ctx.account_id)
        account = self.records.update_profile(ctx.account_id, changes)
        self.logger.info(
            "profile_updated", account_id=account.id, fields=sorted(changes.keys())
        )
        return AuthResult(True, "Profile updated successfully", {"account": account.to_public_dict()})

    def _address_result(self, message: str, account: Account, address=None) -> AuthResult:
        data: Dict[str, Any] = {"addresses": account.to_public_dict()["profile"]["addresses"]}
        if address is not None:
            data["address"] = address_to_dict(address)
        return AuthResult(True, message, data)

    @_translate_errors
    async def list_addresses(self, ctx: AuthContext) -> AuthResult:
        account = self._load_account(ctx.account_id)
        self.records.customer_profile(account)
        return self._address_result("Addresses retrieved", account)

    @_translate_errors
    async def add_address(self, ctx: AuthContext, raw: Dict[str, Any]) -> AuthResult:
        account, address = self.records.add_address(ctx.account_id, raw)
        return self._address_result("Address added successfully", account, address)

    @_translate_errors
    async def update_address(
        self, ctx: AuthContext, address_id: str, raw: Dict[str, Any]
    ) -> AuthResult:
        account, address = self.records.update_address(ctx.account_id, address_id, raw)
        return self._address_result("Address updated successfully", account, address)

    @_translate_errors
    async def delete_address(self, ctx: AuthContext, address_id: str) -> AuthResult:
        account = self.records.delete_address(ctx.account_id, address_id)
        return self._address_result("Address deleted successfully", account)

    @_translate_errors
    async def set_default_address(self, ctx: AuthContext, address_id: str) -> AuthResult:
        account, address = self.records.set_default_address(ctx.account_id, address_id)
        return self._address_result("Default address set successfully", account, address)

    @_translate_errors
    async def forgot_password(self, email: str) -> AuthResult:
        account = self.records.find_by_email(email)
        if account is None:
            self.logger.info(
                "password_reset_unknown_email", email_hash=hash_identifier(email)
            )
            return AuthResult(True, GENERIC_RESET_MESSAGE)
        minted = await self._mint_secret(account, SecretKind.PASSWORD_RESET)
        sent = await self._dispatch_mail(
            self.email.send_password_reset,
            account.email,
            account.first_name,
            minted.plaintext,
        )
        if not sent.success:
            self._rollback_secret(account, SecretKind.PASSWORD_RESET, minted.digest)
            raise DependencyFailureError(
                "Email could not be sent, please try again later",
                detail={"channel": "email"},
            )
        self.logger.info("password_reset_requested", account_id=account.id)
        return AuthResult(True, GENERIC_RESET_MESSAGE)

    @_translate_errors
    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> AuthResult:
        # Validate first so a weak password does not burn the token
        self.records.password_policy.check(new_password)
        digest = self.secrets.digest(token or "")
        account = self.store.consume_secret(SecretKind.PASSWORD_RESET, digest, self._now())
        if account is None:
            self.logger.info("password_reset_invalid_token")
            raise InvalidOrExpiredTokenError()
        account = await asyncio.to_thread(
            self.records.save, account, new_password=new_password
        )
        self.store.reset_lockout(account.id)
        await self._dispatch_mail(
            self.email.send_password_changed, account.email, account.first_name
        )
        session = await self._start_session(account, client=client)
        self.logger.info("password_reset_completed", account_id=account.id)
        return AuthResult(True, "Password reset successful", session)

    @_translate_errors
    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> AuthResult:
        account = self._load_account(ctx.account_id, with_password=True)
        if not await asyncio.to_thread(
            self.hasher.verify, current_password, account.password_hash
        ):
            raise InvalidCredentialsError("Current password is incorrect")
        if await asyncio.to_thread(self.hasher.verify, new_password, account.password_hash):
            raise SamePasswordError()
        self.records.password_policy.check(new_password, field="new_password")
        account = await asyncio.to_thread(
            self.records.save, account, new_password=new_password
        )
        sent = await self._dispatch_mail(
            self.email.send_password_changed, account.email, account.first_name
        )
        if not sent.success:
            self.logger.warning(
                "password_changed_email_failed", account_id=account.id, error=sent.error
            )
        self.logger.info("password_changed", account_id=account.id)
        return AuthResult(True, "Password changed successfully")

    @_translate_errors
    async def verify_email(self, token: str) -> AuthResult:
        digest = self.secrets.digest(token or "")
        account = self.store.consume_secret(
            SecretKind.EMAIL_VERIFICATION, digest, self._now()
        )
        if account is None:
            self.logger.info("email_verification_invalid_token")
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")
        if not account.is_email_verified:
            account.is_email_verified = True
            account = self.records.save(account)
        self.logger.info("email_verified", account_id=account.id)
        return AuthResult(
            True, "Email verified successfully", {"account": account.to_public_dict()}
        )

    @_translate_errors
    async def resend_verification(self, ctx: AuthContext) -> AuthResult:
        account = self._load_account(ctx.account_id)
        if account.is_email_verified:
            return AuthResult(True, "Email is already verified")
        minted = await self._mint_secret(account, SecretKind.EMAIL_VERIFICATION)
        sent = await self._dispatch_mail(
            self.email.send_email_verification,
            account.email,
            account.first_name,
            minted.plaintext,
        )
        if not sent.success:
            self._rollback_secret(account, SecretKind.EMAIL_VERIFICATION, minted.digest)
            raise DependencyFailureError(
                "Email could not be sent, please try again later",
                detail={"channel": "email"},
            )
        self.logger.info("email_verification_resent", account_id=account.id)
        return AuthResult(True, "Verification email sent")

    @_translate_errors
    async def send_phone_otp(self, ctx: AuthContext) -> AuthResult:
        account = self._load_account(ctx.account_id)
        if not account.phone:
            raise ValidationError(
                "Add a phone number to your profile first", detail={"field": "phone"}
            )
        if account.is_phone_verified:
            return AuthResult(True, "Phone number is already verified")
        minted = await self._mint_secret(account, SecretKind.PHONE_OTP)
        sent = await self.sms.send_otp(account.phone, minted.plaintext, account.first_name)
        if not sent.success:
            self._rollback_secret(account, SecretKind.PHONE_OTP, minted.digest)
            raise DependencyFailureError(
                "OTP could not be sent, please try again later",
                detail={"channel": "sms"},
            )
        self.logger.info("phone_otp_sent", account_id=account.id)
        return AuthResult(
            True,
            "OTP sent to your phone",
            {"expires_at": minted.expires_at.isoformat()},
        )

    @_translate_errors
    async def verify_phone_otp(self, ctx: AuthContext, otp: str) -> AuthResult:
        account = self._load_account(ctx.account_id)
        if account.is_phone_verified:
            return AuthResult(True, "Phone number is already verified")
        pending = self.store.get_secret(account.id, SecretKind.PHONE_OTP)
        if pending is None:
            raise OtpVerificationError("no_otp_pending")
        if self.secrets.is_expired(pending, self._now()):
            raise OtpVerificationError("otp_expired")
        if not self.secrets.verify(otp or "", pending, self._now()):
            self.logger.info("phone_otp_mismatch", account_id=account.id)
            raise OtpVerificationError("otp_mismatch")
        if not self.store.clear_secret(
            account.id, SecretKind.PHONE_OTP, expected_digest=pending.digest
        ):
            # Consumed or replaced concurrently
            raise OtpVerificationError("no_otp_pending")
        account.is_phone_verified = True
        account = self.records.save(account)
        self.logger.info("phone_verified", account_id=account.id)
        return AuthResult(
            True, "Phone number verified successfully", {"account": account.to_public_dict()}
        )

    @_translate_errors
    async def deactivate_account(self, ctx: AuthContext, account_id: str) -> AuthResult:
        if not ctx.role.is_staff:
            raise ForbiddenError("Only administrators can deactivate accounts")
        target = self._load_account(account_id)
        if target.role == Role.ADMIN and ctx.role != Role.ADMIN:
            raise ForbiddenError("Only administrators can deactivate administrators")
        account = self.records.deactivate(account_id)
        if self.cache is not None:
            try:
                await self.cache.delete_session(account_id)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_delete_failed", account_id=account_id, error=str(exc)
                )
        self.logger.info(
            "account_deactivated_by_staff", account_id=account_id, actor_id=ctx.account_id
        )
        return AuthResult(True, "Account deactivated", {"account": account.to_public_dict()})

    @_translate_errors
    async def deactivate_self(self, ctx: AuthContext, password: str) -> AuthResult:
        """Soft-delete the caller's own account after re-checking the password.

        The current token is deny-listed as well; any other outstanding token
        is refused by ``authenticate`` because the account is inactive.
        """
        account = self._load_account(ctx.account_id, with_password=True)
        if not await asyncio.to_thread(self.hasher.verify, password, account.password_hash):
            raise InvalidCredentialsError("Password is incorrect")
        self.records.deactivate(account.id)
        if self.cache is not None:
            try:
                await self.cache.delete_session(account.id)
            except Exception as exc:
                self.logger.warning(
                    "session_cache_delete_failed", account_id=account.id, error=str(exc)
                )
        try:
            await self.tokens.revoke(ctx.token)
        except Exception as exc:
            self.logger.warning(
                "session_token_revoke_failed", account_id=account.id, error=str(exc)
            )
        self.logger.info("account_deactivated_by_owner", account_id=account.id)
        return AuthResult(True, "Account deactivated")
