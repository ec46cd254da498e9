from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from quickauth.config import Settings
from quickauth.logging import get_logger
from quickauth.storage.redis_cache import SessionCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    role: str
    email: str
    issued_at: int
    expires_at: int
    jti: str


class SessionTokenIssuer:
    """HS256 session tokens with issuer/audience/expiry checks and a deny-list."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        cache: Optional[SessionCache] = None,
    ) -> None:
        if not secret:
            raise ValueError("session token secret must be non-empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.cache = cache

    @classmethod
    def from_settings(
        cls, settings: Settings, cache: Optional[SessionCache] = None
    ) -> "SessionTokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            cache=cache,
        )

    def issue(self, account_id: str, role: str, email: str, ttl: timedelta) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account_id,
            "role": role,
            "email": email,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            # Distinct tokens even when issued in the same second
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def decode(self, token: str) -> Optional[TokenClaims]:
        """Signature and claim checks only; does not consult the deny-list."""
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        try:
            return TokenClaims(
                account_id=str(payload["sub"]),
                role=str(payload["role"]),
                email=str(payload.get("email") or ""),
                issued_at=int(payload.get("iat") or 0),
                expires_at=int(payload["exp"]),
                jti=str(payload.get("jti") or ""),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("session_token_claims_malformed")
            return None

    async def verify(self, token: str) -> Optional[TokenClaims]:
        claims = self.decode(token)
        if claims is None:
            return None
        if self.cache is not None:
            try:
                if await self.cache.is_token_denied(token):
                    return None
            except Exception as exc:
                # Fail closed: a revoked token must not pass during a cache outage
                logger.warning("session_token_denylist_unavailable", error=str(exc))
                return None
        return claims

    async def revoke(self, token: str) -> None:
        """Deny-list ``token`` for the rest of its validity."""
        claims = self.decode(token)
        if claims is None or self.cache is None:
            return
        remaining = claims.expires_at - int(time.time())
        await self.cache.deny_token(token, remaining)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("session_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "session_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        # Header values arrive latin-1 decoded, so the signature may hold non-ASCII
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("session_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload
