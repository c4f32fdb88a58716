"""Symmetric encryption for per-tenant channel secrets.

Values are encrypted with AES-256-CBC. Each call to :meth:`CredentialVault.encrypt`
draws a fresh 16-byte IV which is stored in front of the ciphertext as
``"<iv hex>:<ciphertext hex>"`` so that decryption only needs the stored value
and the master key.
"""

from __future__ import annotations

import json
import os
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..errors import DecryptionError

KEY_LENGTH = 32
IV_LENGTH = 16
_SEPARATOR = ":"


def derive_key(master_key: str) -> bytes:
    """Pad with zero bytes or truncate ``master_key`` to the AES-256 key length."""

    raw = master_key.encode("utf-8")
    return raw[:KEY_LENGTH].ljust(KEY_LENGTH, b"\0")


class CredentialVault:
    """Encrypt and decrypt channel secrets with a configured master key."""

    def __init__(self, master_key: str) -> None:
        if not master_key:
            raise ValueError("A non-empty master key is required for the credential vault.")
        self._key = derive_key(master_key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}{_SEPARATOR}{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        iv_hex, sep, body_hex = (ciphertext or "").partition(_SEPARATOR)
        if not sep or not body_hex:
            raise DecryptionError("Stored credential is malformed.")
        try:
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
        except ValueError as exc:
            raise DecryptionError("Stored credential is malformed.") from exc
        if len(iv) != IV_LENGTH or not body or len(body) % IV_LENGTH:
            raise DecryptionError("Stored credential is malformed.")
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except ValueError as exc:
            # Wrong key surfaces as invalid padding or undecodable bytes.
            raise DecryptionError("Stored credential cannot be decrypted.") from exc

    def encrypt_json(self, secrets: dict[str, Any]) -> str:
        """Encrypt a mapping of secrets as a single JSON document."""

        return self.encrypt(json.dumps(secrets, sort_keys=True))

    def decrypt_json(self, ciphertext: str) -> dict[str, Any]:
        plain = self.decrypt(ciphertext)
        try:
            value = json.loads(plain)
        except json.JSONDecodeError as exc:
            raise DecryptionError("Stored credential bundle is not valid JSON.") from exc
        if not isinstance(value, dict):
            raise DecryptionError("Stored credential bundle has an unexpected shape.")
        return value


__all__ = ["CredentialVault", "derive_key"]
