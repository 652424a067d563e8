import asyncio
import inspect
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_AUTHORITY", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty Redis URL keeps lightweight sessions in process
os.environ.setdefault("REDIS_URL", "")
# Test clients talk plain HTTP and would drop Secure cookies
os.environ.setdefault("COOKIE_SECURE", "false")

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gradauth.service.runtime import reset_runtime_for_tests  # noqa: E402

PROJECT_ID = "demo-project"
CERTS_URL = "https://keys.test/certs"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


def _self_signed_cert(private_key) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "securetoken.test")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


@pytest.fixture(scope="session")
def rsa_keys():
    """Spare signing keys so tests can simulate rotation."""
    return [
        rsa.generate_private_key(public_exponent=65537, key_size=2048) for _ in range(3)
    ]


class FakeProvider:
    """Serves X.509 signing certs over an httpx mock transport and mints ID tokens."""

    def __init__(self, keys):
        self._spare = list(keys)
        self.published = {}
        self.private = {}
        self.fetch_count = 0
        self.max_age = 3600
        self.fail = False
        self.publish("kid-1")

    def publish(self, kid: str) -> None:
        key = self._spare.pop(0)
        self.private[kid] = key
        self.published[kid] = _self_signed_cert(key)

    def withdraw(self, kid: str) -> None:
        self.published.pop(kid, None)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.fetch_count += 1
        if self.fail:
            raise httpx.ConnectError("key endpoint unreachable", request=request)
        return httpx.Response(
            200,
            json=dict(self.published),
            headers={"Cache-Control": f"public, max-age={self.max_age}, must-revalidate"},
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def claims(self, **overrides):
        now = int(time.time())
        payload = {
            "iss": f"https://securetoken.google.com/{PROJECT_ID}",
            "aud": PROJECT_ID,
            "sub": "provider-uid-1",
            "iat": now,
            "exp": now + 3600,
            "email": "ada@example.com",
            "email_verified": True,
            "name": "Ada",
            "firebase": {"sign_in_provider": "google.com"},
        }
        payload.update(overrides)
        return {key: value for key, value in payload.items() if value is not None}

    def sign(self, kid: str = "kid-1", signing_kid: str | None = None, **overrides) -> str:
        key = self.private[signing_kid or kid]
        return jwt.encode(
            self.claims(**overrides), key, algorithm="RS256", headers={"kid": kid}
        )


@pytest.fixture
def provider(rsa_keys):
    return FakeProvider(rsa_keys)


@pytest.fixture
def verifier(provider):
    from gradauth.service.token_verifier import PublicKeyCache, TokenVerifier

    return TokenVerifier(
        CERTS_URL,
        "https://securetoken.google.com/",
        key_cache=PublicKeyCache(),
        transport=provider.transport,
    )
