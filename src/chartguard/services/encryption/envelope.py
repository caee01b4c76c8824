"""AES-256-GCM envelope for protected fields at rest.

Every protected value (record content, verification labels, alert text) goes
through :class:`EncryptionEnvelope` before it reaches a repository. An
envelope is a single ASCII token::

    base64( nonce[12] || tag[16] || ciphertext )

A fresh random nonce is drawn for every call. Decryption fails closed: any
authentication, decoding or framing problem raises
:class:`~src.chartguard.errors.DecryptionError` and never yields partial or
empty plaintext. Key material comes from a :class:`KeyProvider` that is
consulted exactly once, when the envelope is constructed.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any, Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.chartguard.errors import DecryptionError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class KeyProvider(Protocol):
    """Supplies raw key material. Provisioning itself is out of scope."""

    def load_key(self) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError


class StaticKeyProvider:
    def __init__(self, key: bytes) -> None:
        self._key = bytes(key)

    def load_key(self) -> bytes:
        return self._key


class EnvKeyProvider:
    """Reads a hex-encoded key from ``ENCRYPTION_KEY`` (or an explicit value).

    With ``allow_ephemeral`` a random key is generated when none is
    configured. Anything encrypted with it is lost on restart, so this is
    for local development only.
    """

    def __init__(self, key_hex: Optional[str] = None, *, allow_ephemeral: bool = False) -> None:
        self._key_hex = key_hex if key_hex is not None else os.getenv("ENCRYPTION_KEY")
        self._allow_ephemeral = allow_ephemeral

    def load_key(self) -> bytes:
        if not self._key_hex:
            if self._allow_ephemeral:
                logger.warning("ENCRYPTION_KEY not set; generating an ephemeral key (development only)")
                return AESGCM.generate_key(bit_length=256)
            raise RuntimeError("ENCRYPTION_KEY not set")
        try:
            key = bytes.fromhex(self._key_hex.strip())
        except ValueError as exc:
            raise RuntimeError("ENCRYPTION_KEY must be hex encoded") from exc
        return key


def generate_key_hex() -> str:
    """Return a new 32-byte key as 64 hex characters."""

    return AESGCM.generate_key(bit_length=256).hex()


class EncryptionEnvelope:
    def __init__(self, key_provider: KeyProvider) -> None:
        key = key_provider.load_key()
        if len(key) != KEY_LENGTH:
            raise RuntimeError("encryption key must be 32 bytes (64 hex chars)")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be str")
        nonce = os.urandom(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext; repack as nonce|tag|ct.
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        packed = self._unpack(envelope)
        nonce = packed[:NONCE_LENGTH]
        tag = packed[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = packed[NONCE_LENGTH + TAG_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("envelope failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("envelope plaintext is not valid UTF-8") from exc

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return None if plaintext is None else self.encrypt(plaintext)

    def decrypt_optional(self, envelope: Optional[str]) -> Optional[str]:
        return None if envelope is None else self.decrypt(envelope)

    def encrypt_json(self, value: Any) -> str:
        return self.encrypt(json.dumps(value, separators=(",", ":"), ensure_ascii=False))

    def decrypt_json(self, envelope: str) -> Any:
        plaintext = self.decrypt(envelope)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise DecryptionError("envelope payload was not valid JSON") from exc

    @staticmethod
    def _unpack(envelope: str) -> bytes:
        if not isinstance(envelope, str) or not envelope:
            raise DecryptionError("envelope is empty or not a string")
        try:
            raw = envelope.encode("ascii")
            packed = base64.b64decode(raw, validate=True)
        except (UnicodeEncodeError, binascii.Error, ValueError) as exc:
            raise DecryptionError("envelope is not valid base64") from exc
        # Reject tokens whose unused trailing bits were altered; base64
        # decoding alone would silently ignore them.
        if base64.b64encode(packed) != raw:
            raise DecryptionError("envelope is not canonically encoded")
        if len(packed) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError("envelope is truncated")
        return packed
