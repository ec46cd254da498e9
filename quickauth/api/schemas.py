from __future__ import annotations

import unicodedata
from datetime import date
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from quickauth.storage.models import Role

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_credentials",
        "unauthorized",
        "account_deactivated",
        "forbidden",
        "not_found",
        "conflict",
        "account_locked",
        "invalid_or_expired_token",
        "no_otp_pending",
        "otp_expired",
        "otp_mismatch",
        "same_password",
        "dependency_failure",
        "server_error",
    }
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None
    debug: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class RegisterRequest(_Request):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)
    phone: Optional[str] = Field(default=None, max_length=20)
    date_of_birth: Optional[date] = None
    role: Role = Role.CUSTOMER
    remember_me: bool = False

    @field_validator("email", "first_name", "last_name")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_unicode(value)

    @field_validator("role")
    @classmethod
    def _no_self_service_staff(cls, value: Role) -> Role:
        if value.is_staff:
            raise ValueError("staff roles cannot be self-registered")
        return value


class LoginRequest(_Request):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value)


class ForgotPasswordRequest(_Request):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(_Request):
    password: str = Field(..., min_length=1, max_length=128)


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class VerifyOtpRequest(_Request):
    otp: str = Field(..., pattern=r"^\d{6}$")


class AddressInput(_Request):
    id: Optional[str] = Field(default=None, max_length=64)
    label: str = Field(default="home", max_length=10)
    full_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    line1: str = Field(..., max_length=200)
    line2: Optional[str] = Field(default=None, max_length=200)
    landmark: Optional[str] = Field(default=None, max_length=100)
    city: str = Field(..., max_length=50)
    state: str = Field(..., max_length=50)
    pincode: str = Field(..., max_length=6)
    country: str = Field(default="India", max_length=50)
    lat: Optional[float] = None
    lng: Optional[float] = None
    is_default: bool = False


class AddressPatchRequest(_Request):
    label: Optional[str] = Field(default=None, max_length=10)
    full_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    line1: Optional[str] = Field(default=None, max_length=200)
    line2: Optional[str] = Field(default=None, max_length=200)
    landmark: Optional[str] = Field(default=None, max_length=100)
    city: Optional[str] = Field(default=None, max_length=50)
    state: Optional[str] = Field(default=None, max_length=50)
    pincode: Optional[str] = Field(default=None, max_length=6)
    country: Optional[str] = Field(default=None, max_length=50)
    lat: Optional[float] = None
    lng: Optional[float] = None
    is_default: Optional[bool] = None

    def to_changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class DeactivateSelfRequest(_Request):
    password: str = Field(..., min_length=1, max_length=128)


class NotificationInput(_Request):
    email: Optional[bool] = None
    sms: Optional[bool] = None
    push: Optional[bool] = None
    marketing: Optional[bool] = None
    order_updates: Optional[bool] = None


class PreferencesInput(_Request):
    language: Optional[str] = None
    theme: Optional[str] = None
    notifications: Optional[NotificationInput] = None


class ProfileInput(_Request):
    addresses: Optional[List[AddressInput]] = Field(default=None, max_length=10)
    preferences: Optional[PreferencesInput] = None
    restaurant_name: Optional[str] = Field(default=None, max_length=100)
    cuisine_types: Optional[List[str]] = Field(default=None, max_length=20)
    documents: Optional[List[str]] = Field(default=None, max_length=20)
    vehicle_type: Optional[str] = Field(default=None, max_length=30)
    license_number: Optional[str] = Field(default=None, max_length=30)
    is_available: Optional[bool] = None


class UpdateProfileRequest(_Request):
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    phone: Optional[str] = Field(default=None, max_length=20)
    date_of_birth: Optional[date] = None
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    profile: Optional[ProfileInput] = None

    def to_changes(self) -> dict:
        """Only the fields the client actually sent; explicit nulls are kept."""
        changes = self.model_dump(exclude_unset=True)
        if self.profile is not None:
            changes["profile"] = self.profile.model_dump(exclude_unset=True)
            prefs = self.profile.preferences
            if prefs is not None:
                changes["profile"]["preferences"] = prefs.model_dump(exclude_none=True)
        return changes
