"""Dump file naming and the opaque token used to expose dumps publicly."""

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import string
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from porter.exceptions import ConfigurationError

_ALPHABET = string.ascii_letters + string.digits
_NONCE_BYTES = 12
_TAG_BYTES = 16


def generate_filename(prefix: str = "export_", length: int = 10) -> str:
    """Random dump name such as ``export_a8Fq0ZkP1c.sql``."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(length))
    return f"{prefix}{suffix}.sql"


class ArtifactNamer:
    """Stable filename <-> token mapping.

    A token is the urlsafe-base64 of ``nonce + AES-256-GCM(filename)``. The nonce
    is an HMAC of the filename, so the same filename always yields the same token
    for a given secret, and the name cannot be read or forged without the secret.
    Encryption and nonce keys are derived separately from the secret.
    """

    def __init__(self, secret: bytes) -> None:
        if not secret:
            raise ConfigurationError("Artifact token secret must not be empty")
        self._cipher = AESGCM(self._derive(secret, b"porter-artifact-encryption"))
        self._nonce_key = self._derive(secret, b"porter-artifact-nonce")

    @classmethod
    def from_env(cls, env_var: str, fallback: Optional[bytes] = None) -> "ArtifactNamer":
        """Read the secret from ``env_var``; use ``fallback`` (or a random one) if unset.

        A random secret keeps tokens opaque but makes them unresolvable after the
        process exits.
        """
        value = os.getenv(env_var)
        if value:
            return cls(value.encode("utf-8"))
        return cls(fallback or secrets.token_bytes(32))

    @staticmethod
    def _derive(secret: bytes, label: bytes) -> bytes:
        return hmac.new(secret, label, hashlib.sha256).digest()

    def _nonce(self, name_bytes: bytes) -> bytes:
        return hmac.new(self._nonce_key, name_bytes, hashlib.sha256).digest()[:_NONCE_BYTES]

    def token_for(self, filename: str) -> str:
        name_bytes = filename.encode("utf-8")
        nonce = self._nonce(name_bytes)
        raw = nonce + self._cipher.encrypt(nonce, name_bytes, None)
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    def resolve(self, token: str) -> Optional[str]:
        """Return the filename behind ``token``, or None if it is invalid or forged."""
        padded = token + "=" * (-len(token) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            return None
        if len(raw) <= _NONCE_BYTES + _TAG_BYTES:
            return None

        nonce, ciphertext = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
        try:
            name_bytes = self._cipher.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            return None
        # A valid tag under a nonce we would not have produced still does not resolve
        if not hmac.compare_digest(nonce, self._nonce(name_bytes)):
            return None
        try:
            return name_bytes.decode("utf-8")
        except UnicodeDecodeError:
            return None
