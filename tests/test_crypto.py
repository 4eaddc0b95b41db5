"""Tests for the AES-GCM transcript envelope."""

from __future__ import annotations

import base64
import json

import pytest

from voxanalyze.crypto import (
    IV_LENGTH,
    Envelope,
    EnvelopeCipher,
    decrypt_for_storage,
    generate_key,
    is_envelope,
    parse_key_material,
)
from voxanalyze.exceptions import CryptoError


class TestKeyMaterial:
    """Tests for key generation and parsing."""

    def test_generate_key_is_256_bit_hex(self) -> None:
        key = generate_key()
        assert len(key) == 64
        assert len(bytes.fromhex(key)) == 32

    def test_generated_keys_differ(self) -> None:
        assert generate_key() != generate_key()

    @pytest.mark.parametrize("length", [16, 24, 32])
    def test_accepts_aes_key_lengths(self, length: int) -> None:
        assert len(parse_key_material("ab" * length)) == length

    def test_accepts_raw_bytes(self) -> None:
        assert parse_key_material(b"\x01" * 32) == b"\x01" * 32

    def test_rejects_non_hex(self) -> None:
        with pytest.raises(CryptoError, match="malformed key material"):
            parse_key_material("not-a-hex-key")

    def test_rejects_wrong_length(self) -> None:
        with pytest.raises(CryptoError, match="malformed key material"):
            parse_key_material("ab" * 10)


class TestEnvelopeCipher:
    """Tests for encrypt/decrypt behaviour."""

    def test_round_trip_preserves_unicode(self, cipher: EnvelopeCipher) -> None:
        text = "Klientas paminėjo [NAME], sąskaita užšaldyta – ačiū! 🎧"
        assert cipher.decrypt(cipher.encrypt(text)) == text

    def test_round_trip_empty_string(self, cipher: EnvelopeCipher) -> None:
        assert cipher.decrypt(cipher.encrypt("")) == ""

    def test_envelope_shape(self, cipher: EnvelopeCipher) -> None:
        envelope = cipher.encrypt("hello")
        stored = envelope.to_dict()
        assert stored["encrypted"] is True
        assert is_envelope(stored)
        raw = base64.b64decode(stored["data"])
        # IV + ciphertext (5 bytes) + 16-byte tag
        assert len(raw) == IV_LENGTH + 5 + 16

    def test_same_plaintext_encrypts_differently(self, cipher: EnvelopeCipher) -> None:
        first = cipher.encrypt("same text")
        second = cipher.encrypt("same text")
        assert first.data != second.data
        assert cipher.decrypt(first) == cipher.decrypt(second) == "same text"

    def test_decrypt_accepts_dict_and_bare_data(self, cipher: EnvelopeCipher) -> None:
        envelope = cipher.encrypt("payload")
        assert cipher.decrypt(envelope.to_dict()) == "payload"
        assert cipher.decrypt(envelope.data) == "payload"

    def test_tampered_ciphertext_is_rejected(self, cipher: EnvelopeCipher) -> None:
        envelope = cipher.encrypt("sensitive")
        original = base64.b64decode(envelope.data)
        # every position: IV, ciphertext and tag
        for index in range(len(original)):
            raw = bytearray(original)
            raw[index] ^= 0x01
            tampered = Envelope(data=base64.b64encode(bytes(raw)).decode("ascii"))
            with pytest.raises(CryptoError, match="decryption failed"):
                cipher.decrypt(tampered)

    def test_wrong_key_is_rejected(self, cipher: EnvelopeCipher) -> None:
        envelope = cipher.encrypt("sensitive")
        with pytest.raises(CryptoError, match="decryption failed"):
            EnvelopeCipher(generate_key()).decrypt(envelope)

    def test_invalid_base64_is_rejected(self, cipher: EnvelopeCipher) -> None:
        with pytest.raises(CryptoError, match="invalid envelope"):
            cipher.decrypt("%%%not base64%%%")

    def test_too_short_payload_is_rejected(self, cipher: EnvelopeCipher) -> None:
        short = base64.b64encode(b"\x00" * IV_LENGTH).decode("ascii")
        with pytest.raises(CryptoError, match="invalid envelope"):
            cipher.decrypt(short)

    def test_missing_key_raises_on_encrypt(self) -> None:
        with pytest.raises(CryptoError, match="no encryption key"):
            EnvelopeCipher().encrypt("text")

    def test_malformed_key_fails_on_first_use(self) -> None:
        cipher = EnvelopeCipher("zz" * 32)
        assert cipher.has_key
        with pytest.raises(CryptoError):
            cipher.encrypt("text")

    def test_repr_hides_key(self, encryption_key: str) -> None:
        cipher = EnvelopeCipher(encryption_key)
        assert encryption_key not in repr(cipher)
        assert repr(cipher) == "EnvelopeCipher(key=configured)"

    def test_module_level_decrypt(self, cipher: EnvelopeCipher, encryption_key: str) -> None:
        envelope = cipher.encrypt("x")
        assert decrypt_for_storage(envelope, encryption_key) == "x"


class TestStorageHelpers:
    """Tests for seal/open_sealed and plaintext pass-through."""

    def test_encrypt_for_storage_without_key_passes_through(self) -> None:
        assert EnvelopeCipher().encrypt_for_storage('{"a": 1}') == '{"a": 1}'

    def test_seal_and_open(self, cipher: EnvelopeCipher) -> None:
        payload = {"text": "Labas", "segments": [{"speaker": "Agentas", "text": "Labas"}]}
        sealed = cipher.seal(payload)
        assert is_envelope(sealed)
        assert "Labas" not in json.dumps(sealed)
        assert cipher.open_sealed(sealed) == payload

    def test_seal_without_key_returns_payload(self) -> None:
        payload = {"text": "Labas"}
        assert EnvelopeCipher().seal(payload) is payload

    def test_open_sealed_accepts_plaintext_dict(self, cipher: EnvelopeCipher) -> None:
        payload = {"text": "legacy plaintext"}
        assert cipher.open_sealed(payload) == payload

    def test_open_sealed_without_key_fails_for_envelope(self, cipher: EnvelopeCipher) -> None:
        sealed = cipher.seal({"text": "x"})
        with pytest.raises(CryptoError):
            EnvelopeCipher().open_sealed(sealed)

    def test_open_sealed_rejects_non_object_payload(self, cipher: EnvelopeCipher) -> None:
        sealed = cipher.encrypt("[1, 2, 3]").to_dict()
        with pytest.raises(CryptoError, match="not a JSON object"):
            cipher.open_sealed(sealed)

    def test_is_envelope(self) -> None:
        assert is_envelope({"encrypted": True, "data": "abc"})
        assert not is_envelope({"encrypted": "true", "data": "abc"})
        assert not is_envelope({"text": "plain"})
        assert not is_envelope("abc")
