"""licenseguard - cluster-bound license validation and enforcement."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from licenseguard.errors import (
    AlreadyLicensed,
    ClusterIdentityUnavailable,
    DecryptionError,
    EntitlementExpired,
    MalformedClaimsError,
    PersistenceAfterRemovalError,
    SecretNotFound,
    SecretStoreError,
    SignatureError,
    SubjectMismatch,
    ValidationError,
)
from licenseguard.models import Entitlement, RawLicense
from licenseguard.store import LifecycleStore
from licenseguard.supervisor import Supervisor
from licenseguard.validation import LicenseValidator
from licenseguard.watch import ExpiryEnforcer, StartupGate, TerminationRequest, Ticker

try:
    __version__ = version("licenseguard")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = [
    "AlreadyLicensed",
    "ClusterIdentityUnavailable",
    "DecryptionError",
    "Entitlement",
    "EntitlementExpired",
    "ExpiryEnforcer",
    "LicenseValidator",
    "LifecycleStore",
    "MalformedClaimsError",
    "PersistenceAfterRemovalError",
    "RawLicense",
    "SecretNotFound",
    "SecretStoreError",
    "SignatureError",
    "StartupGate",
    "SubjectMismatch",
    "Supervisor",
    "TerminationRequest",
    "Ticker",
    "ValidationError",
    "__version__",
]
