"""Tests for webhook JWT signing and backend HMAC signatures."""
from __future__ import annotations

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ucp_commerce.signing import ES256KeyManager, compute_hmac_signature, verify_hmac_signature


class TestES256KeyManager:
    """Tests for ES256KeyManager."""

    def test_sign_and_verify(self):
        manager = ES256KeyManager(key_id="kid-1")
        token = manager.sign_payload({"event": "order.shipped", "order": {"id": "o-1"}})

        header, _, _ = token.split(".")
        assert header
        claims = manager.verify(token)
        assert claims["event"] == "order.shipped"
        assert claims["exp"] > claims["iat"]

    def test_tampered_token_rejected(self):
        manager = ES256KeyManager()
        header, payload, signature = manager.sign_payload({"event": "order.updated"}).split(".")
        other = ES256KeyManager().sign_payload({"event": "order.canceled"}).split(".")[1]

        assert manager.verify(f"{header}.{other}.{signature}") is None
        assert manager.verify("not-a-token") is None

    def test_public_jwk(self):
        jwk = ES256KeyManager(key_id="kid-1").public_jwk()
        assert jwk["kid"] == "kid-1"
        assert jwk["alg"] == "ES256"
        assert len(jwk["x"]) == 43
        assert "d" not in jwk

    def test_from_pem(self):
        key = ec.generate_private_key(ec.SECP256R1())
        pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()

        first = ES256KeyManager.from_settings(pem, "stable")
        second = ES256KeyManager.from_settings(pem, "stable")
        assert first.public_jwk() == second.public_jwk()
        assert second.verify(first.sign_payload({"event": "x"}))["event"] == "x"

    def test_generated_key_id(self):
        assert ES256KeyManager.from_settings().key_id


class TestHmac:
    def test_roundtrip(self):
        signature = compute_hmac_signature("secret", b'{"a": 1}')
        assert len(signature) == 64
        assert verify_hmac_signature("secret", '{"a": 1}', signature)
        assert verify_hmac_signature("secret", b'{"a": 1}', signature.upper())

    def test_rejections(self):
        signature = compute_hmac_signature("secret", "body")
        assert not verify_hmac_signature("other", "body", signature)
        assert not verify_hmac_signature("secret", "body", None)
        assert not verify_hmac_signature("", "body", signature)
