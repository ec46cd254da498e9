from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from quickauth.config import Settings
from quickauth.logging import get_logger
from quickauth.service.errors import NotFoundError, ValidationError
from quickauth.service.lockout import LockoutPolicy
from quickauth.service.passwords import CredentialHasher
from quickauth.storage.models import (
    Account,
    Address,
    CustomerProfile,
    DeliveryProfile,
    LockoutState,
    NotificationPreferences,
    PendingSecret,
    Preferences,
    RestaurantProfile,
    Role,
    SecretKind,
    new_profile_for,
    utcnow,
)

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{9,14}$")
NAME_RE = re.compile(r"^[A-Za-z][A-Za-z\s'.-]{1,49}$")
PINCODE_RE = re.compile(r"^[1-9][0-9]{5}$")
ADDRESS_LABELS = {"home", "work", "other"}
LANGUAGES = {"en", "hi"}
THEMES = {"light", "dark", "system"}
MAX_PASSWORD_LENGTH = 128
MAX_ADDRESSES = 10


class AccountStore(Protocol):
    def insert_account(self, account: Account) -> Account: ...

    def get_account(
        self, account_id: str, *, with_password: bool = False
    ) -> Optional[Account]: ...

    def find_account_by_email(
        self,
        email: str,
        *,
        with_password: bool = False,
        include_inactive: bool = False,
    ) -> Optional[Account]: ...

    def update_account(
        self, account: Account, *, password_hash: Optional[str] = None
    ) -> Account: ...

    def record_login_failure(
        self, account_id: str, policy: LockoutPolicy, now: datetime
    ) -> LockoutState: ...

    def reset_lockout(self, account_id: str) -> None: ...

    def set_secret(
        self, account_id: str, kind: SecretKind, secret: PendingSecret
    ) -> None: ...

    def get_secret(
        self, account_id: str, kind: SecretKind
    ) -> Optional[PendingSecret]: ...

    def clear_secret(
        self,
        account_id: str,
        kind: SecretKind,
        *,
        expected_digest: Optional[str] = None,
    ) -> bool: ...

    def consume_secret(
        self, kind: SecretKind, digest: str, now: datetime
    ) -> Optional[Account]: ...


@dataclass
class NewAccount:
    email: str
    password: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    role: str = Role.CUSTOMER.value


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_upper=settings.password_require_upper,
            require_lower=settings.password_require_lower,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
        )

    def violations(self, password: str) -> List[str]:
        problems = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            problems.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
        if self.require_upper and not any(c.isupper() for c in password):
            problems.append("must contain an uppercase letter")
        if self.require_lower and not any(c.islower() for c in password):
            problems.append("must contain a lowercase letter")
        if self.require_digit and not any(c.isdigit() for c in password):
            problems.append("must contain a digit")
        if self.require_special and all(c.isalnum() for c in password):
            problems.append("must contain a special character")
        return problems

    def check(self, password: str, field: str = "password") -> None:
        problems = self.violations(password or "")
        if problems:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"field": field, "problems": problems},
            )


def _invalid(field: str, message: str) -> ValidationError:
    return ValidationError(message, detail={"field": field})


def normalize_email(email: Any) -> str:
    if not isinstance(email, str):
        raise _invalid("email", "Email is required")
    normalized = email.strip().lower()
    if len(normalized) > 254 or not EMAIL_RE.match(normalized):
        raise _invalid("email", "Please provide a valid email address")
    return normalized


def normalize_phone(phone: Any) -> Optional[str]:
    if phone is None:
        return None
    if not isinstance(phone, str):
        raise _invalid("phone", "Please provide a valid phone number")
    normalized = re.sub(r"[\s()-]", "", phone)
    if not normalized:
        return None
    if not PHONE_RE.match(normalized):
        raise _invalid("phone", "Please provide a valid phone number")
    return normalized


def normalize_name(value: Any, field: str) -> str:
    if not isinstance(value, str):
        raise _invalid(field, f"{field.replace('_', ' ').capitalize()} is required")
    normalized = " ".join(value.split())
    if not NAME_RE.match(normalized):
        raise _invalid(
            field, f"{field.replace('_', ' ').capitalize()} must be 2-50 letters"
        )
    return normalized


def age_on(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def normalize_role(role: Any) -> Role:
    try:
        return Role(role or Role.CUSTOMER.value)
    except ValueError:
        raise _invalid("role", f"Unknown role: {role}") from None


class AccountRecords:
    """Validation, normalization and persistence rules for accounts."""

    def __init__(
        self,
        store: AccountStore,
        hasher: CredentialHasher,
        *,
        password_policy: Optional[PasswordPolicy] = None,
        min_age_years: int = 13,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.password_policy = password_policy or PasswordPolicy()
        self.min_age_years = min_age_years

    def _check_birth_date(self, born: Optional[date], today: Optional[date] = None) -> None:
        if born is None:
            return
        today = today or utcnow().date()
        if born > today:
            raise _invalid("date_of_birth", "Date of birth cannot be in the future")
        if age_on(born, today) < self.min_age_years:
            raise _invalid(
                "date_of_birth", f"You must be at least {self.min_age_years} years old"
            )

    def build(self, new: NewAccount) -> Account:
        """Normalize and validate registration input without persisting it."""
        email = normalize_email(new.email)
        first_name = normalize_name(new.first_name, "first_name")
        last_name = normalize_name(new.last_name, "last_name")
        phone = normalize_phone(new.phone)
        role = normalize_role(new.role)
        self._check_birth_date(new.date_of_birth)
        self.password_policy.check(new.password)
        now = utcnow()
        return Account(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            phone=phone,
            date_of_birth=new.date_of_birth,
            profile=new_profile_for(role),
            created_at=now,
            updated_at=now,
        )

    def create(self, new: NewAccount) -> Account:
        """Insert a validated account; duplicate email or phone raises
        ``ConstraintViolation`` from the store."""
        account = self.build(new)
        account.password_hash = self.hasher.hash(new.password)
        created = self.store.insert_account(account)
        logger.info("account_created", account_id=created.id, role=created.role.value)
        return created

    def get(self, account_id: str, *, with_password: bool = False) -> Account:
        account = self.store.get_account(account_id, with_password=with_password)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    def find_by_email(
        self, email: str, *, with_password: bool = False
    ) -> Optional[Account]:
        try:
            normalized = normalize_email(email)
        except ValidationError:
            return None
        return self.store.find_account_by_email(normalized, with_password=with_password)

    def save(
        self,
        account: Account,
        *,
        new_password: Optional[str] = None,
        rehash: bool = False,
    ) -> Account:
        """Persist ``account``.

        The password is hashed only when ``new_password`` differs from the
        stored one, or when ``rehash`` asks to upgrade the stored parameters.
        """
        password_hash = None
        current = None
        if new_password is not None:
            current = self.store.get_account(account.id, with_password=True)
            if current is None:
                raise NotFoundError("Account not found")
            if rehash or not self.hasher.verify(new_password, current.password_hash):
                password_hash = self.hasher.hash(new_password)
        account.updated_at = utcnow()
        if isinstance(account.profile, CustomerProfile):
            stored = current or self.store.get_account(account.id)
            repair_default_address(
                account.profile.addresses, previously_default=_default_ids(stored)
            )
        return self.store.update_account(account, password_hash=password_hash)

    def update_profile(self, account_id: str, changes: Dict[str, Any]) -> Account:
        account = self.get(account_id)
        for key in ("first_name", "last_name"):
            if key in changes and changes[key] is not None:
                setattr(account, key, normalize_name(changes[key], key))
        if "phone" in changes:
            phone = normalize_phone(changes["phone"])
            if phone != account.phone:
                account.phone = phone
                account.is_phone_verified = False
                self.store.clear_secret(account.id, SecretKind.PHONE_OTP)
        if "date_of_birth" in changes:
            self._check_birth_date(changes["date_of_birth"])
            account.date_of_birth = changes["date_of_birth"]
        if "avatar_url" in changes:
            account.avatar_url = changes["avatar_url"] or None
        profile_changes = changes.get("profile") or {}
        if profile_changes:
            account.profile = apply_profile_changes(account, profile_changes)
        return self.save(account)

    def deactivate(self, account_id: str) -> Account:
        account = self.get(account_id)
        if not account.is_active:
            return account
        account.is_active = False
        saved = self.save(account)
        logger.info("account_deactivated", account_id=account_id)
        return saved

    # ---- addresses ---------------------------------------------------

    def customer_profile(self, account: Account) -> CustomerProfile:
        """The account's customer profile, or ``ValidationError`` for other roles."""
        if not isinstance(account.profile, CustomerProfile):
            raise _invalid(
                "addresses", f"Addresses are not available to role {account.role.value}"
            )
        return account.profile

    def add_address(self, account_id: str, raw: Dict[str, Any]) -> Tuple[Account, Address]:
        """Append an address; the first one, or one marked default, becomes the default."""
        account = self.get(account_id)
        profile = self.customer_profile(account)
        if len(profile.addresses) >= MAX_ADDRESSES:
            raise _invalid("addresses", f"At most {MAX_ADDRESSES} addresses allowed")
        address = _build_address({**raw, "id": None})
        if address.is_default or not profile.addresses:
            for other in profile.addresses:
                other.is_default = False
            address.is_default = True
        profile.addresses.append(address)
        saved = self.save(account)
        logger.info("address_added", account_id=account_id, address_id=address.id)
        return saved, _find_address(saved.profile.addresses, address.id)

    def update_address(
        self, account_id: str, address_id: str, raw: Dict[str, Any]
    ) -> Tuple[Account, Address]:
        account = self.get(account_id)
        profile = self.customer_profile(account)
        current = _find_address(profile.addresses, address_id)
        merged = {**asdict(current), **raw, "id": current.id}
        updated = _build_address(merged)
        updated.created_at = current.created_at
        if raw.get("is_default"):
            for other in profile.addresses:
                other.is_default = False
            updated.is_default = True
        index = profile.addresses.index(current)
        profile.addresses[index] = updated
        if not any(a.is_default for a in profile.addresses):
            # Unmarking the only default leaves it in place
            updated.is_default = True
        saved = self.save(account)
        logger.info(
            "address_updated", account_id=account_id, address_id=address_id, fields=sorted(raw)
        )
        return saved, _find_address(saved.profile.addresses, address_id)

    def delete_address(self, account_id: str, address_id: str) -> Account:
        """Remove an address; if it was the default, the first remaining one takes over."""
        account = self.get(account_id)
        profile = self.customer_profile(account)
        address = _find_address(profile.addresses, address_id)
        profile.addresses.remove(address)
        _ensure_default(profile.addresses)
        saved = self.save(account)
        logger.info(
            "address_deleted",
            account_id=account_id,
            address_id=address_id,
            was_default=address.is_default,
        )
        return saved

    def set_default_address(self, account_id: str, address_id: str) -> Tuple[Account, Address]:
        account = self.get(account_id)
        profile = self.customer_profile(account)
        target = _find_address(profile.addresses, address_id)
        for address in profile.addresses:
            address.is_default = address is target
        saved = self.save(account)
        return saved, _find_address(saved.profile.addresses, address_id)


def _find_address(addresses: List[Address], address_id: str) -> Address:
    for address in addresses:
        if address.id == address_id:
            return address
    raise NotFoundError("Address not found")


def _ensure_default(addresses: List[Address]) -> None:
    if addresses and not any(a.is_default for a in addresses):
        addresses[0].is_default = True


def _default_ids(account: Optional[Account]) -> Set[str]:
    if account is None or not isinstance(account.profile, CustomerProfile):
        return set()
    return {a.id for a in account.profile.addresses if a.is_default}


def repair_default_address(
    addresses: List[Address], previously_default: Iterable[str] = ()
) -> None:
    """Keep at most one default address.

    When several are flagged, one newly marked in this change beats one that
    was already the default; otherwise the later list position wins.
    """
    defaults = [a for a in addresses if a.is_default]
    if len(defaults) <= 1:
        return
    already = set(previously_default)
    newly_marked = [a for a in defaults if a.id not in already]
    keep = (newly_marked or defaults)[-1]
    for address in defaults:
        address.is_default = address is keep


def _build_address(raw: Dict[str, Any]) -> Address:
    label = (raw.get("label") or "home").lower()
    if label not in ADDRESS_LABELS:
        raise _invalid("label", "Address label must be home, work or other")
    for required in ("line1", "city", "state", "pincode"):
        value = raw.get(required)
        if not isinstance(value, str) or not value.strip():
            raise _invalid(required, f"{required} is required")
    pincode = raw["pincode"].strip()
    if not PINCODE_RE.match(pincode):
        raise _invalid("pincode", "Please provide a valid 6-digit pincode")
    lat, lng = raw.get("lat"), raw.get("lng")
    if lat is not None and not -90 <= float(lat) <= 90:
        raise _invalid("lat", "Latitude out of range")
    if lng is not None and not -180 <= float(lng) <= 180:
        raise _invalid("lng", "Longitude out of range")
    address = Address(
        line1=raw["line1"].strip(),
        city=raw["city"].strip(),
        state=raw["state"].strip(),
        pincode=pincode,
        label=label,
        full_name=(raw.get("full_name") or "").strip() or None,
        phone=normalize_phone(raw.get("phone")),
        line2=(raw.get("line2") or "").strip() or None,
        landmark=(raw.get("landmark") or "").strip() or None,
        country=(raw.get("country") or "India").strip(),
        lat=float(lat) if lat is not None else None,
        lng=float(lng) if lng is not None else None,
        is_default=bool(raw.get("is_default")),
    )
    if raw.get("id"):
        address.id = str(raw["id"])
    return address


def _apply_preferences(current: Preferences, raw: Dict[str, Any]) -> Preferences:
    language = raw.get("language", current.language)
    if language not in LANGUAGES:
        raise _invalid("language", "Language must be en or hi")
    theme = raw.get("theme", current.theme)
    if theme not in THEMES:
        raise _invalid("theme", "Theme must be light, dark or system")
    notifications = current.notifications
    if raw.get("notifications"):
        known = set(NotificationPreferences.__dataclass_fields__)
        unknown = set(raw["notifications"]) - known
        if unknown:
            raise _invalid("notifications", f"Unknown notification flags: {sorted(unknown)}")
        notifications = replace(
            notifications, **{k: bool(v) for k, v in raw["notifications"].items()}
        )
    return Preferences(language=language, theme=theme, notifications=notifications)


def apply_profile_changes(account: Account, raw: Dict[str, Any]):
    """Apply role-profile changes; fields of another role's profile are rejected."""
    profile = account.profile
    if isinstance(profile, CustomerProfile):
        allowed = {"addresses", "preferences"}
    elif isinstance(profile, RestaurantProfile):
        allowed = {"restaurant_name", "cuisine_types", "documents"}
    elif isinstance(profile, DeliveryProfile):
        allowed = {"vehicle_type", "license_number", "is_available"}
    else:
        allowed = set()
    unknown = set(raw) - allowed
    if unknown:
        raise _invalid(
            "profile",
            f"Fields not applicable to role {account.role.value}: {sorted(unknown)}",
        )

    if isinstance(profile, CustomerProfile):
        addresses = profile.addresses
        if "addresses" in raw:
            # An explicit null clears the list
            items = raw["addresses"] or []
            if len(items) > MAX_ADDRESSES:
                raise _invalid("addresses", f"At most {MAX_ADDRESSES} addresses allowed")
            existing = {a.id: a for a in profile.addresses}
            addresses = []
            for item in items:
                address = _build_address(item)
                previous = existing.get(address.id)
                if previous is not None:
                    address.created_at = previous.created_at
                addresses.append(address)
        preferences = profile.preferences
        if "preferences" in raw:
            preferences = _apply_preferences(preferences, raw["preferences"] or {})
        return replace(profile, addresses=addresses, preferences=preferences)
    if isinstance(profile, RestaurantProfile):
        updates: Dict[str, Any] = {}
        if "restaurant_name" in raw:
            updates["restaurant_name"] = (raw["restaurant_name"] or "").strip() or None
        if "cuisine_types" in raw:
            updates["cuisine_types"] = [str(c).strip() for c in raw["cuisine_types"] or []]
        if "documents" in raw:
            updates["documents"] = [str(d) for d in raw["documents"] or []]
        return replace(profile, **updates)
    if isinstance(profile, DeliveryProfile):
        updates = {}
        for key in ("vehicle_type", "license_number"):
            if key in raw:
                updates[key] = (raw[key] or "").strip() or None
        if "is_available" in raw:
            updates["is_available"] = bool(raw["is_available"])
        return replace(profile, **updates)
    return profile
