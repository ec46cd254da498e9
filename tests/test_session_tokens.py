import base64
import json
import time
from datetime import timedelta

import pytest

from quickauth.service.session_tokens import SessionTokenIssuer
from quickauth.storage.redis_cache import DENYLIST_PREFIX, MemoryCache, token_fingerprint

SECRET = "a" * 48


def _issuer(cache=None, *, secret=SECRET, issuer="quick-commerce-api", audience="quick-commerce-app"):
    return SessionTokenIssuer(secret, issuer=issuer, audience=audience, cache=cache)


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{sig}"


class TestIssueAndDecode:
    def test_round_trip_claims(self):
        issuer = _issuer()
        token = issuer.issue("acc-1", "customer", "alice@x.com", timedelta(days=7))
        claims = issuer.decode(token)
        assert claims.account_id == "acc-1"
        assert claims.role == "customer"
        assert claims.email == "alice@x.com"
        assert claims.expires_at - claims.issued_at == 7 * 24 * 3600
        assert claims.jti

    def test_tokens_issued_together_are_distinct(self):
        issuer = _issuer()
        first = issuer.issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        second = issuer.issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        assert first != second

    def test_wrong_key_fails(self):
        token = _issuer().issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        assert _issuer(secret="b" * 48).decode(token) is None

    def test_altered_payload_fails(self):
        issuer = _issuer()
        token = issuer.issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        assert issuer.decode(_tamper_payload(token, role="admin")) is None

    def test_altered_signature_byte_fails(self):
        issuer = _issuer()
        token = issuer.issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        flipped = token[:-1] + ("A" if token[-1] != "A" else "B")
        assert issuer.decode(flipped) is None

    def test_wrong_issuer_or_audience_fails(self):
        token = _issuer().issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        assert _issuer(issuer="someone-else").decode(token) is None
        assert _issuer(audience="other-app").decode(token) is None

    def test_expired_token_fails(self, monkeypatch):
        issuer = _issuer()
        token = issuer.issue("acc-1", "customer", "a@x.com", timedelta(seconds=60))
        real_time = time.time
        monkeypatch.setattr(time, "time", lambda: real_time() + 120)
        assert issuer.decode(token) is None

    def test_alg_none_is_rejected(self):
        issuer = _issuer()
        token = issuer.issue("acc-1", "customer", "a@x.com", timedelta(days=1))
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert issuer.decode(f"{header}.{payload}.") is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, garbage):
        assert _issuer().decode(garbage) is None

    @pytest.mark.parametrize("signature", ["éé", "sigÿ", "ü" * 43])
    def test_non_ascii_signature_is_invalid(self, signature):
        issuer = _issuer()
        header, payload, _ = issuer.issue("acc-1", "customer", "a@x.com", timedelta(hours=1)).split(".")
        assert issuer.decode(f"{header}.{payload}.{signature}") is None

    async def test_non_ascii_header_segment_is_invalid(self):
        issuer = _issuer(MemoryCache())
        _, payload, sig = issuer.issue("acc-1", "customer", "a@x.com", timedelta(hours=1)).split(".")
        assert await issuer.verify(f"é{payload}.{payload}.{sig}") is None

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            SessionTokenIssuer("", issuer="i", audience="a")


class TestRevocation:
    async def test_revoked_token_no_longer_verifies(self):
        cache = MemoryCache()
        issuer = _issuer(cache)
        token = issuer.issue("acc-1", "customer", "a@x.com", timedelta(hours=1))
        assert await issuer.verify(token) is not None
        await issuer.revoke(token)
        assert await issuer.verify(token) is None
        # Deny-list entry lives as long as the token would have
        remaining = cache.ttl_remaining(f"{DENYLIST_PREFIX}{token_fingerprint(token)}")
        assert 3500 < remaining <= 3600

    async def test_deny_list_outage_fails_closed(self):
        class BrokenCache(MemoryCache):
            async def is_token_denied(self, token):
                raise ConnectionError("redis down")

        issuer = _issuer(BrokenCache())
        token = issuer.issue("acc-1", "customer", "a@x.com", timedelta(hours=1))
        assert await issuer.verify(token) is None
