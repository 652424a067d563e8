"""Tests for provider ID token verification.

Covers:
- Claim extraction from a valid token
- Rejection of bad audience, issuer, expiry, signature and header
- Key cache reuse within max-age and refetch on kid rotation
- Unknown kids on freshly fetched keys failing without a refetch
- Key endpoint failures surfacing as KeyFetchError
"""

import time
from types import MappingProxyType

import jwt
import pytest

from conftest import PROJECT_ID
from gradauth.service.errors import InvalidTokenError, KeyFetchError
from gradauth.service.token_verifier import (
    KeySnapshot,
    PublicKeyCache,
    TokenVerifier,
    parse_max_age,
)


class TestValidTokens:
    async def test_valid_token_yields_claims(self, provider, verifier):
        token = provider.sign()

        claims = await verifier.verify(token, PROJECT_ID)

        assert claims.uid == "provider-uid-1"
        assert claims.email == "ada@example.com"
        assert claims.email_verified is True
        assert claims.aud == PROJECT_ID
        assert claims.iss == f"https://securetoken.google.com/{PROJECT_ID}"
        assert claims.sign_in_provider == "google.com"
        assert claims.name == "Ada"

    async def test_email_verified_must_be_literal_true(self, provider, verifier):
        token = provider.sign(email_verified="true")

        claims = await verifier.verify(token, PROJECT_ID)

        assert claims.email_verified is False

    async def test_missing_email_is_none(self, provider, verifier):
        token = provider.sign(email=None)

        claims = await verifier.verify(token, PROJECT_ID)

        assert claims.email is None


class TestRejectedTokens:
    async def test_wrong_audience(self, provider, verifier):
        token = provider.sign(aud="other-project")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    async def test_wrong_issuer(self, provider, verifier):
        token = provider.sign(iss="https://evil.example.com/demo-project")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    async def test_expired_beyond_leeway(self, provider, verifier):
        now = int(time.time())
        token = provider.sign(iat=now - 7200, exp=now - 3600)

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    async def test_signature_from_other_key(self, provider, verifier):
        provider.publish("kid-2")
        token = provider.sign(kid="kid-1", signing_kid="kid-2")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    async def test_empty_subject(self, provider, verifier):
        token = provider.sign(sub="")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    async def test_header_without_kid(self, provider, verifier):
        token = jwt.encode(provider.claims(), provider.private["kid-1"], algorithm="RS256")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)
        assert provider.fetch_count == 0

    async def test_symmetric_algorithm_rejected(self, provider, verifier):
        token = jwt.encode(
            provider.claims(), "shared-secret-value-long-enough-for-hs256", algorithm="HS256",
            headers={"kid": "kid-1"},
        )

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b", "a.b.c"])
    async def test_malformed_token(self, verifier, token):
        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)

    async def test_unknown_kid_rejected(self, provider, verifier):
        provider.publish("kid-2")
        token = provider.sign(kid="kid-2")
        provider.withdraw("kid-2")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(token, PROJECT_ID)


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def clocked_verifier(provider, clock, **kwargs):
    return TokenVerifier(
        "https://keys.test/certs",
        "https://securetoken.google.com/",
        key_cache=PublicKeyCache(clock=clock),
        transport=provider.transport,
        clock=clock,
        **kwargs,
    )


class TestKeyCache:
    async def test_keys_reused_within_max_age(self, provider, verifier):
        await verifier.verify(provider.sign(), PROJECT_ID)
        await verifier.verify(provider.sign(sub="provider-uid-2"), PROJECT_ID)

        assert provider.fetch_count == 1

    async def test_rotation_triggers_single_refetch(self, provider):
        clock = Clock()
        verifier = clocked_verifier(provider, clock, min_refetch_seconds=60)
        await verifier.verify(provider.sign(), PROJECT_ID)
        provider.publish("kid-2")
        clock.now += 61

        claims = await verifier.verify(provider.sign(kid="kid-2"), PROJECT_ID)

        assert claims.uid == "provider-uid-1"
        assert provider.fetch_count == 2

    async def test_unknown_kids_on_fresh_keys_do_not_refetch(self, provider):
        clock = Clock()
        verifier = clocked_verifier(provider, clock, min_refetch_seconds=60)
        await verifier.verify(provider.sign(), PROJECT_ID)

        for i in range(20):
            forged = jwt.encode(
                provider.claims(),
                provider.private["kid-1"],
                algorithm="RS256",
                headers={"kid": f"rand-{i}"},
            )
            with pytest.raises(InvalidTokenError):
                await verifier.verify(forged, PROJECT_ID)

        assert provider.fetch_count == 1
        # The cached snapshot survives and still serves good tokens.
        await verifier.verify(provider.sign(), PROJECT_ID)
        assert provider.fetch_count == 1

    async def test_refetch_allowed_again_once_floor_passes(self, provider):
        clock = Clock()
        verifier = clocked_verifier(provider, clock, min_refetch_seconds=60)
        await verifier.verify(provider.sign(), PROJECT_ID)
        provider.publish("kid-2")

        with pytest.raises(InvalidTokenError):
            await verifier.verify(provider.sign(kid="kid-2"), PROJECT_ID)
        assert provider.fetch_count == 1

        clock.now += 60
        await verifier.verify(provider.sign(kid="kid-2"), PROJECT_ID)
        assert provider.fetch_count == 2

    async def test_cache_expires_after_max_age(self, provider):
        clock = Clock()
        provider.max_age = 60
        verifier = clocked_verifier(provider, clock)
        await verifier.verify(provider.sign(), PROJECT_ID)
        clock.now += 61
        await verifier.verify(provider.sign(), PROJECT_ID)

        assert provider.fetch_count == 2

    async def test_fetch_failure_raises_key_fetch_error(self, provider, verifier):
        provider.fail = True

        with pytest.raises(KeyFetchError):
            await verifier.verify(provider.sign(), PROJECT_ID)

    def test_snapshot_is_read_only(self):
        snapshot = KeySnapshot(keys=MappingProxyType({"a": object()}), expires_at=0.0)

        with pytest.raises(TypeError):
            snapshot.keys["b"] = object()

    def test_replace_swaps_whole_snapshot(self):
        cache = PublicKeyCache(clock=lambda: 0.0)
        first = KeySnapshot(keys=MappingProxyType({"a": 1}), expires_at=10.0)
        second = KeySnapshot(keys=MappingProxyType({"b": 2}), expires_at=10.0)
        cache.replace(first)
        held = cache.current()

        cache.replace(second)

        assert held is first
        assert cache.current() is second

    def test_expired_snapshot_not_current(self):
        cache = PublicKeyCache(clock=lambda: 20.0)
        cache.replace(KeySnapshot(keys={}, expires_at=10.0))

        assert cache.current() is None


class TestParseMaxAge:
    def test_reads_max_age(self):
        assert parse_max_age("public, max-age=19302, must-revalidate, no-transform", 3600) == 19302

    def test_defaults_without_header(self):
        assert parse_max_age(None, 3600) == 3600
        assert parse_max_age("no-cache", 3600) == 3600
