"""License validation and replacement.

:class:`LicenseValidator` runs the full pipeline for a raw license:

1. refuse to overwrite an entitlement that is still valid;
2. resolve the cluster UUID fresh from the identity source;
3. decrypt the key, verify its signature and decode its claims;
4. check the subject, not-before and expiry claims;
5. replace the stored license and commit the new entitlement.

Nothing is mutated until every check has passed.  The only ordering
hazard is the delete-then-create when an expired license is renewed; a
failure between the two is reported as
:class:`~licenseguard.errors.PersistenceAfterRemovalError`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from licenseguard.claims import check_not_before, decode_claims
from licenseguard.crypto import TRUST_ANCHOR, decrypt, load_public_key, verify_signature
from licenseguard.errors import (
    AlreadyLicensed,
    ClusterIdentityUnavailable,
    EntitlementExpired,
    PersistenceAfterRemovalError,
    SecretNotFound,
    SecretStoreError,
    SubjectMismatch,
    ValidationError,
)
from licenseguard.models import Entitlement, RawLicense, utcnow
from licenseguard.sources import ClusterIdentitySource, SecretStore
from licenseguard.store import LifecycleStore

logger = logging.getLogger(__name__)


class LicenseValidator:
    """Validates raw licenses and keeps the lifecycle store and secret store in step.

    Args:
        store: Holder of the current entitlement, shared with the watch loops.
        secret_store: Durable storage for the encrypted license.
        identity: Source of the cluster UUID.
        public_key: Signature trust anchor.  Defaults to the embedded key.
        clock: Returns the current aware UTC datetime.
        on_fatal: Called with a :class:`PersistenceAfterRemovalError`
            before it is raised, typically to request process termination.
    """

    def __init__(
        self,
        store: LifecycleStore,
        secret_store: SecretStore,
        identity: ClusterIdentitySource,
        *,
        public_key: RSAPublicKey | str = TRUST_ANCHOR,
        clock: Callable[[], datetime] = utcnow,
        on_fatal: Callable[[PersistenceAfterRemovalError], None] | None = None,
    ) -> None:
        self._store = store
        self._secrets = secret_store
        self._identity = identity
        self._public_key = public_key if isinstance(public_key, RSAPublicKey) else load_public_key(public_key)
        self._clock = clock
        self._on_fatal = on_fatal
        self._lock = threading.Lock()

    @property
    def store(self) -> LifecycleStore:
        return self._store

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate(self, raw: RawLicense) -> Entitlement:
        """Validate *raw* and make it the active entitlement.

        Raises:
            ValidationError: One of its subclasses describing why the
                license was refused.  Prior state is left untouched except
                in the PersistenceAfterRemovalError case.
        """
        with self._lock:
            try:
                return self._validate(raw)
            except ValidationError as exc:
                logger.error(
                    "License validation failed for user-id %s: %s",
                    raw.subject_id,
                    exc,
                )
                raise

    def install(self, raw: RawLicense) -> Entitlement:
        """Install a license supplied by an operator."""
        entitlement = self.validate(raw)
        logger.info("License installed successfully for user-id %s", entitlement.subject_id)
        return entitlement

    def check_license_secret(self) -> Entitlement:
        """Load the stored license and validate it.

        A stored license that is already the active, unexpired entitlement
        is returned as-is, so calling this repeatedly is safe.
        """
        logger.info("Fetching license secret to validate licensing")
        raw = self._secrets.get_raw_license()
        if raw is None:
            raise SecretNotFound("license secret does not exist")

        current = self._store.current()
        if (
            current is not None
            and not current.is_expired(self._clock())
            and current.subject_id == raw.subject_id
            and current.encrypted_key == raw.encrypted_key
        ):
            logger.debug("Stored license for %s is already active", raw.subject_id)
            return current

        entitlement = self.validate(raw)
        logger.info(
            "License validated successfully for user-id %s with key ...%s",
            entitlement.subject_id,
            entitlement.key_hint,
        )
        return entitlement

    def inspect_license_secret(self) -> Entitlement:
        """Verify the stored license without touching either store.

        Runs the same decrypt, signature and claim checks as
        :meth:`validate` but never deletes, rewrites or commits anything.
        """
        raw = self._secrets.get_raw_license()
        if raw is None:
            raise SecretNotFound("license secret does not exist")
        try:
            return self._verify(raw, self._clock())
        except ValidationError as exc:
            logger.error("Stored license for user-id %s is invalid: %s", raw.subject_id, exc)
            raise

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(self, raw: RawLicense) -> Entitlement:
        now = self._clock()
        existing = self._store.current()
        if existing is not None:
            if not existing.is_expired(now):
                raise AlreadyLicensed(existing.subject_id, existing.cluster_uuid)
            logger.info(
                "Expired license for %s already exists (expired %s), attempting replacement",
                existing.subject_id,
                existing.expires_at.isoformat(),
            )

        entitlement = self._verify(raw, now)
        self._replace(existing, raw, entitlement)
        return entitlement

    def _verify(self, raw: RawLicense, now: datetime) -> Entitlement:
        cluster_uuid = self._resolve_cluster_uuid()
        token = decrypt(raw.encrypted_key, cluster_uuid)
        claims = decode_claims(verify_signature(token, self._public_key))

        if claims.subject_id != raw.subject_id:
            raise SubjectMismatch(raw.subject_id, claims.subject_id)
        check_not_before(claims, now)
        if claims.expires_at <= now:
            raise EntitlementExpired(f"license expired at {claims.expires_at.isoformat()}")

        return Entitlement(
            subject_id=raw.subject_id,
            encrypted_key=raw.encrypted_key,
            cluster_uuid=cluster_uuid,
            expires_at=claims.expires_at,
            features=claims.features,
            issued_at=claims.issued_at,
            not_before=claims.not_before,
        )

    def _resolve_cluster_uuid(self) -> str:
        cluster_uuid = self._identity.get_cluster_uuid()
        if not cluster_uuid:
            raise ClusterIdentityUnavailable("cluster identity source returned an empty UUID")
        return cluster_uuid

    def _replace(self, existing: Entitlement | None, raw: RawLicense, entitlement: Entitlement) -> None:
        removed = False
        if existing is not None:
            self._secrets.delete_raw_license()
            removed = True
            logger.info("Removed expired license secret for %s", existing.subject_id)

        try:
            self._secrets.put_raw_license(raw.subject_id, raw.encrypted_key)
        except SecretStoreError as exc:
            if not removed:
                raise
            self._store.clear()
            fatal = PersistenceAfterRemovalError(
                f"expired license was removed but the new license could not be stored: {exc}",
                cause=exc,
            )
            logger.critical("%s", fatal)
            if self._on_fatal is not None:
                self._on_fatal(fatal)
            raise fatal from exc

        self._store.commit(entitlement)
        logger.info(
            "License for %s active until %s",
            entitlement.subject_id,
            entitlement.expires_at.isoformat(),
        )
