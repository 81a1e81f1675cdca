"""Interfaces for the collaborators the validator depends on.

Concrete Kubernetes implementations live in :mod:`licenseguard.kubernetes`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from licenseguard.errors import ClusterIdentityUnavailable
from licenseguard.models import RawLicense


class SecretStore(ABC):
    """Durable storage for the encrypted license.

    Implementations raise :class:`~licenseguard.errors.SecretStoreError`
    on I/O failure.
    """

    @abstractmethod
    def get_raw_license(self) -> RawLicense | None:
        """Return the stored license, or ``None`` if none exists."""

    @abstractmethod
    def put_raw_license(self, subject_id: str, encrypted_key: str) -> None:
        """Store a license, creating the backing secret."""

    @abstractmethod
    def delete_raw_license(self) -> None:
        """Remove the stored license.  Removing a missing license is not an error."""


class ClusterIdentitySource(ABC):
    """Supplies the per-cluster UUID used as decryption key material."""

    @abstractmethod
    def get_cluster_uuid(self) -> str:
        """Return the cluster UUID or raise ClusterIdentityUnavailable."""


class StaticClusterIdentity(ClusterIdentitySource):
    """Fixed cluster UUID, for running outside a cluster."""

    def __init__(self, cluster_uuid: str) -> None:
        self._cluster_uuid = cluster_uuid

    def get_cluster_uuid(self) -> str:
        if not self._cluster_uuid:
            raise ClusterIdentityUnavailable("no cluster UUID configured")
        return self._cluster_uuid
