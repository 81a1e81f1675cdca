"""Tests for licenseguard.claims."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from licenseguard.claims import Claims, check_not_before, decode_claims
from licenseguard.errors import MalformedClaimsError

from .conftest import T0

EXP = int((T0 + timedelta(days=30)).timestamp())


class TestDecodeClaims:
    def test_minimal(self):
        claims = decode_claims({"sub": "user-1", "exp": EXP})
        assert claims.subject_id == "user-1"
        assert claims.expires_at == datetime.fromtimestamp(EXP, tz=timezone.utc)
        assert claims.features == ()
        assert claims.issued_at is None
        assert claims.not_before is None

    def test_features_keep_order_and_duplicates(self):
        claims = decode_claims({"sub": "u", "exp": EXP, "features": ["b", "a", "b"]})
        assert claims.features == ("b", "a", "b")

    def test_null_features_default_to_empty(self):
        assert decode_claims({"sub": "u", "exp": EXP, "features": None}).features == ()

    def test_optional_timestamps(self):
        iat = int(T0.timestamp())
        claims = decode_claims({"sub": "u", "exp": EXP, "iat": iat, "nbf": iat})
        assert claims.issued_at == T0
        assert claims.not_before == T0

    def test_float_and_numeric_string_exp(self):
        assert decode_claims({"sub": "u", "exp": float(EXP)}).expires_at.timestamp() == EXP
        assert decode_claims({"sub": "u", "exp": str(EXP)}).expires_at.timestamp() == EXP

    def test_missing_exp_is_error_not_forever(self):
        with pytest.raises(MalformedClaimsError, match="expiration"):
            decode_claims({"sub": "u"})

    @pytest.mark.parametrize("exp", ["tomorrow", True, None, [EXP], {"at": EXP}, 10**20])
    def test_unparseable_exp(self, exp):
        with pytest.raises(MalformedClaimsError):
            decode_claims({"sub": "u", "exp": exp})

    @pytest.mark.parametrize("sub", [None, "", 42])
    def test_bad_subject(self, sub):
        payload = {"exp": EXP}
        if sub is not None:
            payload["sub"] = sub
        with pytest.raises(MalformedClaimsError):
            decode_claims(payload)

    @pytest.mark.parametrize("features", ["premium", [1, 2], {"a": True}])
    def test_bad_features(self, features):
        with pytest.raises(MalformedClaimsError):
            decode_claims({"sub": "u", "exp": EXP, "features": features})


class TestNotBefore:
    def test_future_nbf_rejected(self):
        claims = Claims(subject_id="u", expires_at=T0 + timedelta(days=1), not_before=T0 + timedelta(hours=1))
        with pytest.raises(MalformedClaimsError):
            check_not_before(claims, T0)

    def test_past_or_equal_nbf_accepted(self):
        claims = Claims(subject_id="u", expires_at=T0 + timedelta(days=1), not_before=T0)
        check_not_before(claims, T0)

    def test_absent_nbf_accepted(self):
        check_not_before(Claims(subject_id="u", expires_at=T0), T0)
