from __future__ import annotations
import base64
import hashlib
from typing import Optional

from nacl.secret import SecretBox
from nacl.utils import random as nacl_random
from nacl.exceptions import CryptoError
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes

KEY_INFO_PREFIX = b"settlement-note-v1|"


class FieldDecryptionError(ValueError):
    pass


def derive_field_key(master_key: bytes, context: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=KEY_INFO_PREFIX + context,
    )
    return hkdf.derive(master_key)


class FieldEncryption:
    """
    Per-record authenticated encryption for note secrets at rest.

    Each record gets its own XSalsa20-Poly1305 key derived from the master key
    and the record context (the note commitment), so ciphertexts cannot be
    swapped between rows without failing authentication.
    """

    def __init__(self, master_key: bytes):
        if len(master_key) < 32:
            raise ValueError("master key must be at least 32 bytes")
        self._master_key = master_key

    @classmethod
    def from_passphrase(cls, passphrase: str, salt: Optional[bytes] = None) -> "FieldEncryption":
        salt = salt or b"settlement-note-store"
        key = hashlib.scrypt(passphrase.encode(), salt=salt, n=2 ** 14, r=8, p=1, dklen=32)
        return cls(key)

    @classmethod
    def from_encoded_key(cls, encoded: str) -> "FieldEncryption":
        """Hex (64 chars) or urlsafe base64 master key, as stored in NOTE_ENCRYPTION_KEY."""
        text = encoded.strip()
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raw = base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
        return cls(raw)

    def encrypt(self, plaintext: str, context: str) -> str:
        box = SecretBox(derive_field_key(self._master_key, context.encode()))
        nonce = nacl_random(SecretBox.NONCE_SIZE)
        return base64.b64encode(bytes(box.encrypt(plaintext.encode(), nonce))).decode()

    def decrypt(self, token: str, context: str) -> str:
        box = SecretBox(derive_field_key(self._master_key, context.encode()))
        try:
            return box.decrypt(base64.b64decode(token)).decode()
        except (CryptoError, ValueError) as e:
            raise FieldDecryptionError(f"cannot decrypt field for context {context[:18]}...") from e
