"""Turn verified JWT claims into structured license claims."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from licenseguard.errors import MalformedClaimsError


@dataclass(frozen=True)
class Claims:
    """License-relevant claims extracted from a verified token."""

    subject_id: str
    expires_at: datetime
    features: tuple[str, ...] = ()
    issued_at: datetime | None = None
    not_before: datetime | None = None


def _numeric_date(claims: dict[str, Any], name: str) -> datetime | None:
    """Parse a NumericDate claim; ``None`` when absent."""
    if name not in claims:
        return None
    value = claims[name]
    if isinstance(value, bool):
        raise MalformedClaimsError(f"claim {name!r} must be a number, got bool")
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError as exc:
            raise MalformedClaimsError(f"claim {name!r} is not a number: {value!r}", cause=exc) from exc
    if not isinstance(value, (int, float)):
        raise MalformedClaimsError(f"claim {name!r} must be a number, got {type(value).__name__}")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedClaimsError(f"claim {name!r} is out of range: {value!r}", cause=exc) from exc


def _features(claims: dict[str, Any]) -> tuple[str, ...]:
    raw = claims.get("features")
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(f, str) for f in raw):
        raise MalformedClaimsError("claim 'features' must be a list of strings")
    return tuple(raw)


def decode_claims(verified: dict[str, Any]) -> Claims:
    """Extract subject, features and timestamps from verified claims.

    A missing or unparseable ``exp`` is an error.  It is never read as
    "does not expire".
    """
    subject = verified.get("sub")
    if not isinstance(subject, str) or not subject:
        raise MalformedClaimsError("token has no subject")

    expires_at = _numeric_date(verified, "exp")
    if expires_at is None:
        raise MalformedClaimsError("token has no expiration time")

    return Claims(
        subject_id=subject,
        expires_at=expires_at,
        features=_features(verified),
        issued_at=_numeric_date(verified, "iat"),
        not_before=_numeric_date(verified, "nbf"),
    )


def check_not_before(claims: Claims, now: datetime) -> None:
    if claims.not_before is not None and claims.not_before > now:
        raise MalformedClaimsError(
            f"token is not valid before {claims.not_before.isoformat()}"
        )
