"""Exception hierarchy for license validation.

Every failure of :meth:`LicenseValidator.validate` is raised as a
subclass of :class:`ValidationError`.  Callers decide whether to retry by
looking at :attr:`ValidationError.retryable`: transient infrastructure
problems (cluster API down, secret not yet created) are retryable, while a
bad license (wrong signature, wrong subject, malformed claims) is not.
"""

from __future__ import annotations


class ValidationError(Exception):
    """Base class for all license validation failures."""

    retryable: bool = False
    fatal: bool = False

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class SecretNotFound(ValidationError):
    """No raw license exists in the secret store."""

    retryable = True


class SecretStoreError(ValidationError):
    """Reading, writing or deleting the stored license failed."""

    retryable = True


class ClusterIdentityUnavailable(ValidationError):
    """The cluster UUID used as decryption key material could not be resolved."""

    retryable = True


class DecryptionError(ValidationError):
    """Ciphertext is malformed or does not decrypt to a three-segment token."""


class SignatureError(ValidationError):
    """Token signature is invalid or uses an unsupported algorithm."""


class MalformedClaimsError(ValidationError):
    """Verified token is missing required claims or they cannot be parsed."""


class SubjectMismatch(ValidationError):
    """Token subject differs from the subject the license was stored under."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"license subject mismatch: secret is for {expected!r}, token was issued to {actual!r}"
        )


class EntitlementExpired(ValidationError):
    """Token verified correctly but its expiration time has already passed."""


class AlreadyLicensed(ValidationError):
    """A valid, unexpired entitlement is already active."""

    def __init__(self, subject_id: str, cluster_uuid: str) -> None:
        self.subject_id = subject_id
        self.cluster_uuid = cluster_uuid
        super().__init__(
            f"valid license already exists for user-id {subject_id!r} on cluster {cluster_uuid!r}"
        )


class PersistenceAfterRemovalError(ValidationError):
    """The expired license was deleted but its replacement could not be stored.

    Durable state no longer matches in-memory state.  The process must
    terminate rather than continue or retry.
    """

    fatal = True
