"""Identity provider ID token verification.

Provider tokens are RS256 JWTs whose signing keys are published as X.509
certificates keyed by ``kid`` and rotated periodically. Keys are cached
process-wide in an immutable snapshot: a refresh builds a complete new
snapshot and swaps it in with a single assignment, so concurrent readers see
either the old key set or the new one, never a partial update.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import httpx
import jwt
from cryptography import x509

from gradauth.config import Settings
from gradauth.logging import get_logger
from gradauth.service.errors import InvalidTokenError, KeyFetchError

logger = get_logger(__name__)

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")
_ALGORITHM = "RS256"


@dataclass(frozen=True)
class ProviderClaims:
    uid: str
    email: Optional[str]
    email_verified: bool
    iat: int
    exp: int
    aud: str
    iss: str
    name: Optional[str] = None
    picture: Optional[str] = None
    sign_in_provider: Optional[str] = None


@dataclass(frozen=True)
class KeySnapshot:
    keys: Mapping[str, Any]
    expires_at: float
    fetched_at: float = 0.0


class PublicKeyCache:
    """Holds the current key snapshot; replaced wholesale, never mutated."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._snapshot: Optional[KeySnapshot] = None

    def current(self) -> Optional[KeySnapshot]:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.expires_at > self._clock():
            return snapshot
        return None

    def replace(self, snapshot: KeySnapshot) -> None:
        self._snapshot = snapshot


_shared_key_cache = PublicKeyCache()


def parse_max_age(cache_control: Optional[str], default: int) -> int:
    if not cache_control:
        return default
    match = _MAX_AGE_RE.search(cache_control)
    if not match:
        return default
    return int(match.group(1))


class TokenVerifier:
    """Verify provider-issued ID tokens against rotating public keys."""

    def __init__(
        self,
        certs_url: str,
        issuer_prefix: str,
        *,
        timeout: float = 5.0,
        default_cache_seconds: int = 3600,
        leeway_seconds: int = 60,
        min_refetch_seconds: int = 60,
        key_cache: Optional[PublicKeyCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.certs_url = certs_url
        self.issuer_prefix = issuer_prefix
        self.timeout = timeout
        self.default_cache_seconds = default_cache_seconds
        self.leeway_seconds = leeway_seconds
        self.min_refetch_seconds = min_refetch_seconds
        self.key_cache = key_cache or _shared_key_cache
        self._transport = transport
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenVerifier":
        return cls(
            settings.provider_certs_url,
            settings.provider_issuer_prefix,
            timeout=settings.key_fetch_timeout_seconds,
            default_cache_seconds=settings.default_key_cache_seconds,
            leeway_seconds=settings.token_leeway_seconds,
            min_refetch_seconds=settings.key_refetch_min_interval_seconds,
            **kwargs,
        )

    async def verify(self, token: str, audience: str) -> ProviderClaims:
        """Return verified claims or raise ``InvalidTokenError``.

        ``KeyFetchError`` is raised only when the key endpoint cannot be
        reached or returns garbage; a token is never accepted in that case.
        """
        kid = self._read_kid(token)
        snapshot = await self._current_keys()
        key = snapshot.keys.get(kid)
        if key is None:
            # Keys younger than the floor cannot be stale; an unknown kid is just bad.
            if self._clock() - snapshot.fetched_at < self.min_refetch_seconds:
                logger.info("provider_key_miss", kid=kid)
                raise InvalidTokenError("no public key matches token kid", detail={"kid": kid})
            logger.info("provider_key_miss_refetching", kid=kid)
            snapshot = await self._fetch_keys()
            self.key_cache.replace(snapshot)
            key = snapshot.keys.get(kid)
            if key is None:
                raise InvalidTokenError("no public key matches token kid", detail={"kid": kid})
        return self._decode(token, key, audience)

    def _read_kid(self, token: str) -> str:
        if not token or token.count(".") != 2:
            raise InvalidTokenError("token is not a compact JWT")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("token header is malformed") from exc
        if header.get("alg") != _ALGORITHM:
            raise InvalidTokenError("unexpected token algorithm")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise InvalidTokenError("token header missing kid")
        return kid

    async def _current_keys(self) -> KeySnapshot:
        snapshot = self.key_cache.current()
        if snapshot is None:
            snapshot = await self._fetch_keys()
            self.key_cache.replace(snapshot)
        return snapshot

    async def _fetch_keys(self) -> KeySnapshot:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(self.certs_url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("provider_key_fetch_failed", url=self.certs_url, error=str(exc))
            raise KeyFetchError("unable to fetch provider public keys") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise KeyFetchError("provider key response was not JSON") from exc
        if not isinstance(payload, dict):
            raise KeyFetchError("provider key response has unexpected shape")

        keys: dict[str, Any] = {}
        for kid, pem in payload.items():
            try:
                keys[str(kid)] = x509.load_pem_x509_certificate(pem.encode()).public_key()
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("provider_key_parse_failed", kid=kid, error=str(exc))

        max_age = parse_max_age(
            response.headers.get("Cache-Control"), self.default_cache_seconds
        )
        logger.debug("provider_keys_refreshed", key_count=len(keys), max_age=max_age)
        fetched_at = self._clock()
        return KeySnapshot(
            keys=MappingProxyType(keys), expires_at=fetched_at + max_age, fetched_at=fetched_at
        )

    def _decode(self, token: str, key: Any, audience: str) -> ProviderClaims:
        issuer = f"{self.issuer_prefix}{audience}"
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(f"token rejected: {type(exc).__name__}") from exc

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidTokenError("token subject is empty")
        firebase = payload.get("firebase")
        if not isinstance(firebase, dict):
            firebase = {}
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        email = payload.get("email")
        return ProviderClaims(
            uid=sub,
            email=email if isinstance(email, str) and email else None,
            email_verified=payload.get("email_verified") is True,
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            aud=str(aud),
            iss=str(payload["iss"]),
            name=payload.get("name"),
            picture=payload.get("picture"),
            sign_in_provider=firebase.get("sign_in_provider"),
        )
