from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from quickauth.config import Settings
from quickauth.storage.models import PendingSecret, SecretKind, utcnow

OTP_LOW = 100_000
OTP_HIGH = 999_999
RANDOM_TOKEN_BYTES = 32


@dataclass(frozen=True)
class MintedSecret:
    kind: SecretKind
    plaintext: str
    digest: str
    expires_at: datetime

    def pending(self) -> PendingSecret:
        return PendingSecret(digest=self.digest, expires_at=self.expires_at)


def digest_secret(plaintext: str) -> str:
    """SHA-256 hex of a secret; deterministic so it can be used as a lookup key."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class SecretTokenGenerator:
    """Mints single-use secrets whose lifetime is fixed by their kind.

    Reset and verification secrets are 32 random bytes, hex encoded. Phone
    OTPs are six decimal digits drawn uniformly from 100000-999999. Only
    the digest is ever persisted; the plaintext is handed back once.
    """

    def __init__(self, lifetimes: Mapping[SecretKind, timedelta]) -> None:
        missing = set(SecretKind) - set(lifetimes)
        if missing:
            raise ValueError(f"missing lifetimes for {sorted(k.value for k in missing)}")
        self.lifetimes = dict(lifetimes)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretTokenGenerator":
        return cls(
            {
                SecretKind.PASSWORD_RESET: timedelta(
                    minutes=settings.password_reset_ttl_minutes
                ),
                SecretKind.EMAIL_VERIFICATION: timedelta(
                    hours=settings.email_verification_ttl_hours
                ),
                SecretKind.PHONE_OTP: timedelta(minutes=settings.phone_otp_ttl_minutes),
            }
        )

    def mint(self, kind: SecretKind, now: Optional[datetime] = None) -> MintedSecret:
        now = now or utcnow()
        if kind == SecretKind.PHONE_OTP:
            plaintext = str(OTP_LOW + secrets.randbelow(OTP_HIGH - OTP_LOW + 1))
        else:
            plaintext = secrets.token_bytes(RANDOM_TOKEN_BYTES).hex()
        return MintedSecret(
            kind=kind,
            plaintext=plaintext,
            digest=digest_secret(plaintext),
            expires_at=now + self.lifetimes[kind],
        )

    @staticmethod
    def digest(plaintext: str) -> str:
        return digest_secret(plaintext)

    @staticmethod
    def is_expired(pending: PendingSecret, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > pending.expires_at

    @staticmethod
    def verify(
        plaintext: str,
        pending: Optional[PendingSecret],
        now: Optional[datetime] = None,
    ) -> bool:
        if pending is None:
            return False
        # Expired secrets fail even when the plaintext matches
        if SecretTokenGenerator.is_expired(pending, now):
            return False
        return hmac.compare_digest(digest_secret(plaintext), pending.digest)
