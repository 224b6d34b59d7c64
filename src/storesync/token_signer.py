"""ES256 bearer tokens for the App Store Connect API.

Tokens are signed locally with the team's P-256 API key and cached on the
signer instance until they are within ``REFRESH_MARGIN_SECONDS`` of expiry.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable
import json
import logging
import time

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from jwt.utils import base64url_encode

from storesync.observability import log_event


LOGGER = logging.getLogger("storesync.token_signer")

AUDIENCE = "appstoreconnect-v1"
TOKEN_LIFETIME_SECONDS = 20 * 60
REFRESH_MARGIN_SECONDS = 60
_COORDINATE_BYTES = 32


class TokenSignerError(ValueError):
    """Raised when the configured private key cannot be used for ES256 signing."""


class MalformedSignature(ValueError):
    """Raised when an ECDSA signature is not a well-formed DER (r, s) sequence."""


def der_to_raw(der_signature: bytes) -> bytes:
    """Convert a DER ``SEQUENCE { r INTEGER, s INTEGER }`` into 64-byte ``r || s``."""
    try:
        r, s = decode_dss_signature(der_signature)
    except ValueError as exc:
        raise MalformedSignature(f"Invalid DER signature: {exc}") from exc
    try:
        return r.to_bytes(_COORDINATE_BYTES, "big") + s.to_bytes(_COORDINATE_BYTES, "big")
    except OverflowError as exc:
        raise MalformedSignature("Signature integer does not fit in 32 bytes") from exc


def load_private_key(content: str) -> ec.EllipticCurvePrivateKey:
    """Load a PEM key given either as PEM text or as base64 of the PEM text."""
    text = content.strip()
    if "-----BEGIN" not in text:
        try:
            text = base64.b64decode(text, validate=False).decode("utf-8").strip()
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise TokenSignerError("Private key is neither PEM nor base64-encoded PEM") from exc
    try:
        key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
    except (ValueError, TypeError) as exc:
        raise TokenSignerError(f"Private key could not be loaded: {exc}") from exc
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise TokenSignerError("ES256 requires an elliptic-curve private key")
    if not isinstance(key.curve, ec.SECP256R1):
        raise TokenSignerError(f"ES256 requires a P-256 key, got {key.curve.name}")
    return key


class TokenSigner:
    def __init__(
        self,
        *,
        key_id: str,
        issuer_id: str,
        private_key: str | ec.EllipticCurvePrivateKey,
        clock: Callable[[], float] = time.time,
        lifetime_seconds: int = TOKEN_LIFETIME_SECONDS,
    ) -> None:
        if lifetime_seconds <= REFRESH_MARGIN_SECONDS:
            raise TokenSignerError("Token lifetime must exceed the refresh margin")
        self.key_id = key_id
        self.issuer_id = issuer_id
        self._private_key = (
            private_key
            if isinstance(private_key, ec.EllipticCurvePrivateKey)
            else load_private_key(private_key)
        )
        self._clock = clock
        self._lifetime_seconds = lifetime_seconds
        self._token: str | None = None
        self._expires_at: int | None = None

    @property
    def expires_at(self) -> int | None:
        return self._expires_at

    def current_token(self) -> str:
        now = int(self._clock())
        if (
            self._token is not None
            and self._expires_at is not None
            and now < self._expires_at - REFRESH_MARGIN_SECONDS
        ):
            return self._token

        expires_at = now + self._lifetime_seconds
        header = {"alg": "ES256", "kid": self.key_id, "typ": "JWT"}
        payload = {"iss": self.issuer_id, "iat": now, "exp": expires_at, "aud": AUDIENCE}
        signing_input = b".".join(
            (
                base64url_encode(_compact_json(header)),
                base64url_encode(_compact_json(payload)),
            )
        )
        der_signature = self._private_key.sign(signing_input, ec.ECDSA(hashes.SHA256()))
        signature = base64url_encode(der_to_raw(der_signature))

        self._token = (signing_input + b"." + signature).decode("ascii")
        self._expires_at = expires_at
        log_event(LOGGER, "asc_token_issued", key_id=self.key_id, expires_at=expires_at)
        return self._token


def _compact_json(value: dict[str, object]) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")
