"""Signing primitives.

Outbound platform webhooks are signed as compact ES256 JWS tokens whose
public keys are published in the profile document. Inbound backend requests
are authenticated with hex HMAC-SHA256 signatures over the raw body (or the
query string for the registration handshake).
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

logger = logging.getLogger(__name__)

TOKEN_LIFETIME_SECONDS = 3600


class WebhookSigner(Protocol):
    """Signs outbound webhook payloads and exposes verification keys."""

    def sign_payload(self, payload: Dict[str, Any]) -> str:
        ...

    def public_keys(self) -> List[Dict[str, Any]]:
        ...


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


class ES256KeyManager:
    """EC P-256 key holder producing compact JWS signatures."""

    def __init__(
        self,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        key_id: Optional[str] = None,
    ) -> None:
        self._private_key = private_key or ec.generate_private_key(ec.SECP256R1())
        self._key_id = key_id or str(uuid.uuid4())

    @classmethod
    def from_pem(cls, pem: str, key_id: Optional[str] = None) -> "ES256KeyManager":
        key = serialization.load_pem_private_key(pem.encode(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ValueError("Signing key must be an EC private key")
        return cls(private_key=key, key_id=key_id)

    @classmethod
    def from_settings(cls, pem: str = "", key_id: str = "") -> "ES256KeyManager":
        if pem:
            manager = cls.from_pem(pem, key_id=key_id or None)
            logger.info(f"Loaded signing key: kid={manager.key_id}")
        else:
            manager = cls(key_id=key_id or None)
            logger.info(f"Generated ephemeral signing key: kid={manager.key_id}")
        return manager

    @property
    def key_id(self) -> str:
        return self._key_id

    def public_jwk(self) -> Dict[str, Any]:
        numbers = self._private_key.public_key().public_numbers()
        return {
            "kty": "EC",
            "crv": "P-256",
            "x": _b64url(numbers.x.to_bytes(32, "big")),
            "y": _b64url(numbers.y.to_bytes(32, "big")),
            "kid": self._key_id,
            "alg": "ES256",
            "use": "sig",
        }

    def public_keys(self) -> List[Dict[str, Any]]:
        return [self.public_jwk()]

    def sign_payload(self, payload: Dict[str, Any]) -> str:
        """Sign a payload as a JWT valid for one hour."""
        now = int(time.time())
        header = {"alg": "ES256", "kid": self._key_id, "typ": "JWT"}
        claims = {**payload, "iat": now, "exp": now + TOKEN_LIFETIME_SECONDS}
        signing_input = (
            _b64url(json.dumps(header, separators=(",", ":")).encode())
            + "."
            + _b64url(json.dumps(claims, separators=(",", ":"), default=str).encode())
        )
        der = self._private_key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        signature = r.to_bytes(32, "big") + s.to_bytes(32, "big")
        return f"{signing_input}.{_b64url(signature)}"

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the claims of a valid, unexpired token, or None."""
        try:
            header_b64, payload_b64, signature_b64 = token.split(".")
            raw = _b64url_decode(signature_b64)
            if len(raw) != 64:
                return None
            der = encode_dss_signature(
                int.from_bytes(raw[:32], "big"), int.from_bytes(raw[32:], "big")
            )
            self._private_key.public_key().verify(
                der,
                f"{header_b64}.{payload_b64}".encode("ascii"),
                ec.ECDSA(hashes.SHA256()),
            )
            claims = json.loads(_b64url_decode(payload_b64))
        except (ValueError, InvalidSignature) as e:
            logger.warning(f"JWT verification failed: {e}")
            return None
        if claims.get("exp") and claims["exp"] < int(time.time()):
            return None
        return claims


def compute_hmac_signature(secret: str, message: bytes | str) -> str:
    """Hex HMAC-SHA256 of message under secret."""
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_hmac_signature(secret: str, message: bytes | str, signature: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    expected = compute_hmac_signature(secret, message)
    return hmac.compare_digest(expected, signature.strip().lower())
