"""Value types shared across the license pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any


def utcnow() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RawLicense:
    """License material as stored: the claimed subject plus the encrypted key."""

    subject_id: str
    encrypted_key: str

    @property
    def key_hint(self) -> str:
        return self.encrypted_key[-6:] if self.encrypted_key else ""


@dataclass(frozen=True)
class Entitlement:
    """A verified license in force for one subject on one cluster.

    Instances are immutable.  The lifecycle store swaps whole values and
    never edits fields in place, so a reader can never observe a
    half-updated entitlement.
    """

    subject_id: str
    encrypted_key: str
    cluster_uuid: str
    expires_at: datetime
    features: tuple[str, ...] = ()
    issued_at: datetime | None = None
    not_before: datetime | None = None

    @property
    def signature_valid(self) -> bool:
        # Only a verified token can produce an Entitlement.
        return True

    @property
    def key_hint(self) -> str:
        return self.encrypted_key[-6:] if self.encrypted_key else ""

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the entitlement has lapsed.  ``expires_at == now`` counts as expired."""
        now = now or utcnow()
        return self.expires_at <= now

    def remaining(self, now: datetime | None = None) -> timedelta:
        now = now or utcnow()
        return max(self.expires_at - now, timedelta(0))

    def has_feature(self, name: str) -> bool:
        return name in self.features

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        return {
            "subject_id": self.subject_id,
            "cluster_uuid": self.cluster_uuid,
            "key_hint": self.key_hint,
            "features": list(self.features),
            "expires_at": self.expires_at.isoformat(),
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "is_expired": self.is_expired(now),
            "remaining_seconds": int(self.remaining(now).total_seconds()),
        }
