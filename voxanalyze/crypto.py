"""Authenticated encryption for stored transcript payloads.

Transcripts are sealed into a self-describing envelope before they reach the
record store::

    {"encrypted": true, "data": base64(iv || ciphertext || tag)}

AES-GCM with a fresh 96-bit IV per call is used, so encrypting the same
plaintext twice yields different envelopes, and any modification of the
stored bytes is detected on decrypt. Key material is injected by the caller
(hex from configuration, or raw bytes) and never stored in the envelope.

When no key is configured the cipher passes plaintext through unchanged, and
readers must therefore accept both the envelope and the plaintext shape.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import CryptoError

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32  # 256 bits
VALID_KEY_LENGTHS = (16, 24, 32)

# IV plus at least one byte of ciphertext
MIN_ENVELOPE_BYTES = IV_LENGTH + 1

KeyMaterial = bytes | str


@dataclass(frozen=True)
class Envelope:
    """Sealed payload as stored: base64 of IV followed by ciphertext and tag."""

    data: str
    encrypted: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"encrypted": True, "data": self.data}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Envelope:
        if not is_envelope(d):
            raise CryptoError("invalid envelope")
        return cls(data=d["data"])


def is_envelope(payload: Any) -> bool:
    """Return True if ``payload`` has the stored envelope shape."""
    return (
        isinstance(payload, dict)
        and payload.get("encrypted") is True
        and isinstance(payload.get("data"), str)
    )


def generate_key() -> str:
    """Generate a new random 256-bit key rendered as hex."""
    return os.urandom(KEY_LENGTH).hex()


def parse_key_material(key: KeyMaterial) -> bytes:
    """Convert configured key material into raw key bytes.

    Args:
        key: Hex string (as stored in configuration) or raw key bytes.

    Returns:
        Raw key bytes of a length AES-GCM accepts.

    Raises:
        CryptoError: If the hex is malformed or the key length is unsupported.
    """
    if isinstance(key, str):
        try:
            raw = bytes.fromhex(key.strip())
        except ValueError as e:
            raise CryptoError("malformed key material: expected a hex string") from e
    else:
        raw = bytes(key)

    if len(raw) not in VALID_KEY_LENGTHS:
        raise CryptoError(
            f"malformed key material: key must be 128, 192 or 256 bits, got {len(raw) * 8}"
        )
    return raw


class EnvelopeCipher:
    """Seal and open transcript payloads with AES-GCM.

    The cipher is stateless apart from its key and is safe to share across
    concurrent requests. Key material is validated lazily, so a cipher built
    from bad configuration only fails when it is first used.

    Example:
        cipher = EnvelopeCipher(generate_key())
        envelope = cipher.encrypt('{"text": "..."}')
        cipher.decrypt(envelope)
    """

    def __init__(self, key: KeyMaterial | None = None) -> None:
        self._key_material = key or None
        self._aead: AESGCM | None = None

    def __repr__(self) -> str:
        state = "configured" if self.has_key else "none"
        return f"EnvelopeCipher(key={state})"

    @property
    def has_key(self) -> bool:
        return self._key_material is not None

    def _get_aead(self) -> AESGCM:
        if self._key_material is None:
            raise CryptoError("no encryption key configured")
        if self._aead is None:
            raw = parse_key_material(self._key_material)
            try:
                self._aead = AESGCM(raw)
            except ValueError as e:
                raise CryptoError(f"key import failed: {e}") from e
        return self._aead

    def encrypt(self, plaintext: str) -> Envelope:
        """Seal ``plaintext`` under a fresh random IV.

        Raises:
            CryptoError: If no key is configured or the key material is malformed.
        """
        aead = self._get_aead()
        iv = os.urandom(IV_LENGTH)
        ciphertext = aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return Envelope(data=base64.b64encode(iv + ciphertext).decode("ascii"))

    def decrypt(self, envelope: Envelope | dict[str, Any] | str) -> str:
        """Open an envelope and return the plaintext.

        Accepts an ``Envelope``, its stored dict form, or the bare base64 data.

        Raises:
            CryptoError: On malformed input, a wrong key or tampered data.
        """
        if isinstance(envelope, dict):
            envelope = Envelope.from_dict(envelope)
        data = envelope.data if isinstance(envelope, Envelope) else envelope

        try:
            combined = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CryptoError("invalid envelope") from e

        if len(combined) < MIN_ENVELOPE_BYTES:
            raise CryptoError("invalid envelope")

        aead = self._get_aead()
        iv, ciphertext = combined[:IV_LENGTH], combined[IV_LENGTH:]
        try:
            plaintext = aead.decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise CryptoError("decryption failed: authentication tag mismatch") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("decryption failed: payload is not UTF-8 text") from e

    def encrypt_for_storage(self, serialized: str) -> Envelope | str:
        """Seal ``serialized`` if a key is configured, else return it unchanged."""
        if not self.has_key:
            return serialized
        return self.encrypt(serialized)

    def seal(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return the stored shape for ``payload``.

        With a key this is the envelope dict; without one it is ``payload``
        itself (plaintext pass-through).
        """
        sealed = self.encrypt_for_storage(json.dumps(payload, ensure_ascii=False))
        if isinstance(sealed, Envelope):
            return sealed.to_dict()
        return payload

    def open_sealed(self, stored: dict[str, Any]) -> dict[str, Any]:
        """Inverse of ``seal``: decrypt envelopes, pass plaintext dicts through.

        Raises:
            CryptoError: If ``stored`` is an envelope that cannot be opened
                (including when no key is configured).
        """
        if not is_envelope(stored):
            return stored
        plaintext = self.decrypt(stored)
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise CryptoError("decrypted payload is not valid JSON") from e
        if not isinstance(payload, dict):
            raise CryptoError("decrypted payload is not a JSON object")
        return payload


def decrypt_for_storage(envelope: Envelope | dict[str, Any] | str, key: KeyMaterial) -> str:
    """Decrypt a stored envelope with explicitly supplied key material."""
    return EnvelopeCipher(key).decrypt(envelope)
