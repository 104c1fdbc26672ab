"""Tests for the HS256 access-token codec and opaque refresh secrets."""

import base64
import json

import pytest

from creatorauth.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
)
from creatorauth.service.tokens import TokenCodec, generate_opaque_secret, hash_token


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def codec(clock, settings_factory):
    return TokenCodec(settings_factory(), now=clock)


def _sign(codec: TokenCodec) -> str:
    return codec.sign(
        user_id="user-1", email="alice@example.com", role="user", session_id="sess-1"
    )


class TestSignAndVerify:
    def test_round_trip_claims(self, codec, clock):
        claims = codec.verify(_sign(codec))

        assert claims.sub == "user-1"
        assert claims.email == "alice@example.com"
        assert claims.role == "user"
        assert claims.session_id == "sess-1"
        assert claims.iat == pytest.approx(clock().timestamp())
        assert claims.exp == int(clock().timestamp()) + 15 * 60
        assert claims.jti

    def test_iat_keeps_sub_second_precision(self, codec, clock):
        clock.advance(microseconds=250_000)
        claims = codec.verify(_sign(codec))
        assert claims.iat % 1 == pytest.approx(0.25, abs=1e-5)

    def test_each_token_has_unique_jti(self, codec):
        first = codec.verify(_sign(codec))
        second = codec.verify(_sign(codec))
        assert first.jti != second.jti

    def test_tampered_signature_rejected(self, codec):
        token = _sign(codec)
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        with pytest.raises(InvalidSignatureError):
            codec.verify(f"{header}.{payload}.{flipped}")

    def test_tampered_payload_rejected(self, codec):
        header, _, signature = _sign(codec).split(".")
        forged = _segment({"sub": "admin-1", "role": "admin", "exp": 9999999999})
        with pytest.raises(InvalidSignatureError):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, codec):
        _, payload, signature = _sign(codec).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidSignatureError):
            codec.verify(f"{header}.{payload}.{signature}")

    def test_malformed_token_rejected(self, codec):
        with pytest.raises(InvalidSignatureError):
            codec.verify("not-a-token")

    def test_other_secret_rejected(self, codec, clock, settings_factory):
        other = TokenCodec(settings_factory(jwt_secret="another-secret-" + "y" * 32), now=clock)
        with pytest.raises(InvalidSignatureError):
            other.verify(_sign(codec))

    def test_other_audience_rejected(self, codec, clock, settings_factory):
        other = TokenCodec(settings_factory(jwt_audience="someone-else"), now=clock)
        with pytest.raises(InvalidSignatureError):
            other.verify(_sign(codec))

    def test_expired_token_rejected(self, codec, clock):
        token = _sign(codec)
        clock.advance(minutes=16)
        with pytest.raises(TokenExpiredError):
            codec.verify(token)

    def test_expiry_instant_is_already_expired(self, codec, clock):
        token = _sign(codec)
        clock.advance(minutes=15)
        with pytest.raises(TokenExpiredError):
            codec.verify(token)

    def test_custom_ttl(self, clock, settings_factory):
        codec = TokenCodec(settings_factory(access_token_ttl_minutes=1), now=clock)
        token = _sign(codec)
        clock.advance(seconds=59)
        codec.verify(token)
        clock.advance(seconds=2)
        with pytest.raises(TokenExpiredError):
            codec.verify(token)


class TestUnverifiedDecoding:
    def test_expiry_of_reads_exp_claim(self, codec, clock):
        token = _sign(codec)
        assert int(codec.expiry_of(token).timestamp()) == int(clock().timestamp()) + 900

    def test_expiry_of_requires_exp(self, codec):
        token = f"{_segment({'alg': 'HS256'})}.{_segment({'sub': 'x'})}.sig"
        with pytest.raises(InvalidTokenError):
            codec.expiry_of(token)

    def test_expiry_of_rejects_non_numeric_exp(self, codec):
        token = f"{_segment({'alg': 'HS256'})}.{_segment({'exp': 'soon'})}.sig"
        with pytest.raises(InvalidTokenError):
            codec.expiry_of(token)

    def test_decode_unverified_rejects_garbage(self, codec):
        with pytest.raises(InvalidTokenError):
            codec.decode_unverified("a.%%%.c")
        with pytest.raises(InvalidTokenError):
            codec.decode_unverified("only-one-part")


class TestOpaqueSecrets:
    def test_refresh_secret_is_512_bits_of_hex(self):
        secret = generate_opaque_secret()
        assert len(secret) == 128
        int(secret, 16)

    def test_refresh_secrets_are_unique(self):
        assert generate_opaque_secret() != generate_opaque_secret()

    def test_hash_token_is_stable_sha256(self):
        digest = hash_token("abc")
        assert digest == hash_token("abc")
        assert len(digest) == 64
        assert digest != hash_token("abd")
