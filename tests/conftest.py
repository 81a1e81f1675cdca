"""Shared fixtures for the licenseguard test suite.

Provides a throwaway RSA signing key, a token factory, an in-memory
secret store, and a controllable clock and ticker so the watch loops can
be driven without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from licenseguard.crypto import encrypt
from licenseguard.errors import SecretStoreError
from licenseguard.models import RawLicense
from licenseguard.sources import SecretStore, StaticClusterIdentity
from licenseguard.store import LifecycleStore
from licenseguard.validation import LicenseValidator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CLUSTER_UUID = "3f2a9c1e-7b4d-4e8a-9c2f-1a2b3c4d5e6f"
SUBJECT = "user-1"
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeTicker:
    """Ticker that advances a FakeClock instead of sleeping.

    Returns False (as if cancelled) after *max_waits* waits so a loop
    that would otherwise run forever ends the test.
    """

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        *,
        max_waits: int = 100,
        on_wait: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.clock = clock
        self.max_waits = max_waits
        self.on_wait = on_wait
        self.waits: List[float] = []
        self.cancelled = False

    def wait(self, interval: float) -> bool:
        if self.cancelled or len(self.waits) >= self.max_waits:
            return False
        self.waits.append(interval)
        if self.clock is not None:
            self.clock.advance(interval)
        if self.on_wait is not None:
            self.on_wait(len(self.waits))
        return not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True


class InMemorySecretStore(SecretStore):
    """Secret store backed by a single attribute, with injectable failures."""

    def __init__(self, raw: Optional[RawLicense] = None) -> None:
        self.raw = raw
        self.fail_get = False
        self.fail_put = False
        self.fail_delete = False
        self.calls: List[str] = []

    def get_raw_license(self) -> Optional[RawLicense]:
        self.calls.append("get")
        if self.fail_get:
            raise SecretStoreError("secret store unavailable")
        return self.raw

    def put_raw_license(self, subject_id: str, encrypted_key: str) -> None:
        self.calls.append("put")
        if self.fail_put:
            raise SecretStoreError("secret store rejected write")
        self.raw = RawLicense(subject_id=subject_id, encrypted_key=encrypted_key)

    def delete_raw_license(self) -> None:
        self.calls.append("delete")
        if self.fail_delete:
            raise SecretStoreError("secret store rejected delete")
        self.raw = None


# ---------------------------------------------------------------------------
# Keys and tokens
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    """RSA key standing in for the external license issuer."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_key(signing_key):
    return signing_key.public_key()


@pytest.fixture()
def make_token(signing_key) -> Callable[..., str]:
    """Sign a token; ``exp`` defaults to one day after T0."""

    def _make(
        subject: Optional[str] = SUBJECT,
        expires_at: Optional[datetime] = T0 + timedelta(days=1),
        *,
        algorithm: str = "RS256",
        key: Any = None,
        **extra: Any,
    ) -> str:
        payload: dict[str, Any] = dict(extra)
        if subject is not None:
            payload["sub"] = subject
        if expires_at is not None:
            payload["exp"] = int(expires_at.timestamp())
        return jwt.encode(payload, key if key is not None else signing_key, algorithm=algorithm)

    return _make


@pytest.fixture()
def make_raw(make_token) -> Callable[..., RawLicense]:
    """Build an encrypted RawLicense for the test cluster."""

    def _make(
        subject: str = SUBJECT,
        expires_at: datetime = T0 + timedelta(days=1),
        *,
        stored_subject: Optional[str] = None,
        cluster_uuid: str = CLUSTER_UUID,
        **extra: Any,
    ) -> RawLicense:
        token = make_token(subject, expires_at, **extra)
        return RawLicense(
            subject_id=stored_subject if stored_subject is not None else subject,
            encrypted_key=encrypt(token, cluster_uuid),
        )

    return _make


# ---------------------------------------------------------------------------
# Pipeline components
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> LifecycleStore:
    return LifecycleStore()


@pytest.fixture()
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture()
def identity() -> StaticClusterIdentity:
    return StaticClusterIdentity(CLUSTER_UUID)


@pytest.fixture()
def validator(store, secret_store, identity, public_key, clock) -> LicenseValidator:
    return LicenseValidator(store, secret_store, identity, public_key=public_key, clock=clock)
