from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT_OWNER = "restaurant-owner"
    DELIVERY_PERSONNEL = "delivery-personnel"
    SUB_ADMIN = "sub-admin"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self in {Role.ADMIN, Role.SUB_ADMIN}


class SecretKind(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"
    PHONE_OTP = "phone_otp"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class LockoutState:
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None


@dataclass
class PendingSecret:
    """Digest of a single-use secret and the instant it stops being valid."""

    digest: str
    expires_at: datetime


@dataclass
class Address:
    line1: str
    city: str
    state: str
    pincode: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    label: str = "home"
    full_name: Optional[str] = None
    phone: Optional[str] = None
    line2: Optional[str] = None
    landmark: Optional[str] = None
    country: str = "India"
    lat: Optional[float] = None
    lng: Optional[float] = None
    is_default: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class NotificationPreferences:
    email: bool = True
    sms: bool = True
    push: bool = True
    marketing: bool = False
    order_updates: bool = True


@dataclass
class Preferences:
    language: str = "en"
    theme: str = "system"
    notifications: NotificationPreferences = field(
        default_factory=NotificationPreferences
    )


@dataclass
class CustomerProfile:
    addresses: List[Address] = field(default_factory=list)
    preferences: Preferences = field(default_factory=Preferences)
    loyalty_points: int = 0

    kind = "customer"


@dataclass
class RestaurantProfile:
    restaurant_name: Optional[str] = None
    cuisine_types: List[str] = field(default_factory=list)
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    documents: List[str] = field(default_factory=list)

    kind = "restaurant"


@dataclass
class DeliveryProfile:
    vehicle_type: Optional[str] = None
    license_number: Optional[str] = None
    is_available: bool = False
    approval_status: ApprovalStatus = ApprovalStatus.PENDING

    kind = "delivery"


RoleProfile = Union[CustomerProfile, RestaurantProfile, DeliveryProfile]

PROFILE_BY_ROLE: Dict[Role, Optional[type]] = {
    Role.CUSTOMER: CustomerProfile,
    Role.RESTAURANT_OWNER: RestaurantProfile,
    Role.DELIVERY_PERSONNEL: DeliveryProfile,
    Role.SUB_ADMIN: None,
    Role.ADMIN: None,
}


def new_profile_for(role: Role) -> Optional[RoleProfile]:
    profile_cls = PROFILE_BY_ROLE[role]
    return profile_cls() if profile_cls else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def address_to_dict(address: Address) -> dict:
    return _jsonable(asdict(address))


def profile_to_dict(profile: Optional[RoleProfile]) -> Optional[dict]:
    if profile is None:
        return None
    data = _jsonable(asdict(profile))
    data["kind"] = profile.kind
    return data


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def profile_from_dict(role: Role, data: Optional[dict]) -> Optional[RoleProfile]:
    """Rebuild the role profile from its stored JSON form."""
    profile_cls = PROFILE_BY_ROLE[role]
    if profile_cls is None:
        return None
    data = dict(data or {})
    data.pop("kind", None)
    if profile_cls is CustomerProfile:
        addresses = []
        for raw in data.get("addresses") or []:
            raw = dict(raw)
            raw["created_at"] = _parse_dt(raw.get("created_at")) or utcnow()
            addresses.append(Address(**raw))
        prefs_raw = dict(data.get("preferences") or {})
        notifications = NotificationPreferences(**(prefs_raw.pop("notifications", None) or {}))
        return CustomerProfile(
            addresses=addresses,
            preferences=Preferences(notifications=notifications, **prefs_raw),
            loyalty_points=int(data.get("loyalty_points") or 0),
        )
    if "approval_status" in data:
        data["approval_status"] = ApprovalStatus(data["approval_status"])
    return profile_cls(**data)


@dataclass
class Account:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role = Role.CUSTOMER
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    avatar_url: Optional[str] = None
    profile: Optional[RoleProfile] = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_active: bool = True
    lockout: LockoutState = field(default_factory=LockoutState)
    pending_secrets: Dict[SecretKind, PendingSecret] = field(default_factory=dict)
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    password_hash: Optional[str] = field(default=None, repr=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_public_dict(self) -> dict:
        """Outward representation: never includes the hash or secret digests."""
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "role": self.role.value,
            "date_of_birth": _jsonable(self.date_of_birth),
            "avatar_url": self.avatar_url,
            "is_email_verified": self.is_email_verified,
            "is_phone_verified": self.is_phone_verified,
            "is_active": self.is_active,
            "profile": profile_to_dict(self.profile),
            "last_login_at": _jsonable(self.last_login_at),
            "created_at": _jsonable(self.created_at),
            "updated_at": _jsonable(self.updated_at),
        }


def account_to_record(account: Account) -> dict:
    """Internal JSON form, including the hash and pending digests."""
    record = account.to_public_dict()
    record.pop("full_name", None)
    record["password_hash"] = account.password_hash
    record["lockout"] = _jsonable(asdict(account.lockout))
    record["pending_secrets"] = {
        kind.value: _jsonable(asdict(secret))
        for kind, secret in account.pending_secrets.items()
    }
    return record


def account_from_record(record: dict) -> Account:
    role = Role(record["role"])
    lockout_raw = record.get("lockout") or {}
    dob = record.get("date_of_birth")
    return Account(
        id=record["id"],
        email=record["email"],
        first_name=record["first_name"],
        last_name=record["last_name"],
        role=role,
        phone=record.get("phone"),
        date_of_birth=date.fromisoformat(dob) if isinstance(dob, str) else dob,
        avatar_url=record.get("avatar_url"),
        profile=profile_from_dict(role, record.get("profile")),
        is_email_verified=bool(record.get("is_email_verified")),
        is_phone_verified=bool(record.get("is_phone_verified")),
        is_active=bool(record.get("is_active", True)),
        lockout=LockoutState(
            attempts=int(lockout_raw.get("attempts") or 0),
            last_attempt_at=_parse_dt(lockout_raw.get("last_attempt_at")),
            locked_until=_parse_dt(lockout_raw.get("locked_until")),
        ),
        pending_secrets={
            SecretKind(kind): PendingSecret(
                digest=raw["digest"], expires_at=_parse_dt(raw["expires_at"])
            )
            for kind, raw in (record.get("pending_secrets") or {}).items()
        },
        last_login_at=_parse_dt(record.get("last_login_at")),
        created_at=_parse_dt(record.get("created_at")) or utcnow(),
        updated_at=_parse_dt(record.get("updated_at")) or utcnow(),
        password_hash=record.get("password_hash"),
    )


@dataclass
class SessionEntry:
    """Cached view of a logged-in session; never authoritative."""

    account_id: str
    role: str
    email: str
    login_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "SessionEntry":
        data = dict(data)
        data["login_at"] = _parse_dt(data["login_at"])
        data["last_activity_at"] = _parse_dt(data["last_activity_at"])
        return cls(**data)
