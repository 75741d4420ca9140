"""Unit tests for password hashing, opaque tokens and signed sessions."""

import json
import time
from datetime import timedelta

import pytest

from tenantauth.service.crypto import (
    InvalidSignature,
    SignatureExpired,
    _encode_segment,
    decode_claims_unverified,
    hash_password,
    new_opaque_token,
    sign_session,
    verify_password,
    verify_session,
)


class TestPasswordHashing:
    def test_hash_is_salted(self):
        first = hash_password("correct horse")
        second = hash_password("correct horse")
        assert first != second
        assert first.startswith("$argon2id$")

    def test_verify_accepts_matching_password(self):
        assert verify_password("correct horse", hash_password("correct horse"))

    def test_verify_rejects_wrong_password(self):
        assert not verify_password("battery staple", hash_password("correct horse"))

    def test_verify_rejects_garbage_hash(self):
        assert not verify_password("anything", "not-a-hash")


class TestOpaqueTokens:
    def test_tokens_are_url_safe_and_long(self):
        token = new_opaque_token()
        # 32 random bytes encode to 43 url-safe characters
        assert len(token) >= 43
        assert all(c.isalnum() or c in "-_" for c in token)

    def test_tokens_do_not_repeat(self):
        assert len({new_opaque_token() for _ in range(200)}) == 200


class TestSignedSessions:
    KEY = "tenant-signing-key"

    def test_round_trip_keeps_claims(self):
        token = sign_session({"sub": "u1", "tid": "t1"}, self.KEY, timedelta(minutes=5))
        claims = verify_session(token, self.KEY)
        assert claims["sub"] == "u1"
        assert claims["tid"] == "t1"
        assert claims["exp"] - claims["iat"] == 300

    def test_other_tenant_key_is_rejected(self):
        token = sign_session({"sub": "u1"}, self.KEY, timedelta(minutes=5))
        with pytest.raises(InvalidSignature):
            verify_session(token, "another-tenant-key")

    def test_expired_token_is_reported_as_expired(self):
        issued = time.time() - 600
        token = sign_session({"sub": "u1"}, self.KEY, timedelta(minutes=5), now=issued)
        with pytest.raises(SignatureExpired):
            verify_session(token, self.KEY)

    def test_leeway_tolerates_small_clock_skew(self):
        issued = time.time() - 310
        token = sign_session({"sub": "u1"}, self.KEY, timedelta(minutes=5), now=issued)
        assert verify_session(token, self.KEY, leeway_seconds=30)["sub"] == "u1"

    def test_tampered_payload_is_rejected(self):
        token = sign_session({"sub": "u1"}, self.KEY, timedelta(minutes=5))
        header, _, signature = token.split(".")
        forged = _encode_segment(json.dumps({"sub": "admin", "exp": 9999999999}).encode())
        with pytest.raises(InvalidSignature):
            verify_session(f"{header}.{forged}.{signature}", self.KEY)

    def test_none_algorithm_is_rejected(self):
        header = _encode_segment(json.dumps({"alg": "none"}).encode())
        payload = _encode_segment(json.dumps({"sub": "u1", "exp": 9999999999}).encode())
        with pytest.raises(InvalidSignature):
            verify_session(f"{header}.{payload}.", self.KEY)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_rejected(self, token):
        with pytest.raises(InvalidSignature):
            verify_session(token, self.KEY)

    def test_unverified_decode_reads_claims(self):
        token = sign_session({"tid": "t9"}, self.KEY, timedelta(minutes=5))
        assert decode_claims_unverified(token)["tid"] == "t9"
        assert decode_claims_unverified("garbage") is None
