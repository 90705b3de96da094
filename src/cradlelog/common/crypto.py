"""
Field-level encryption for individual string values.

Envelope format (what ends up in a local row or a remote column):

    hex(iv[16]) + base64(AES-256-CBC(PKCS7(utf8(plaintext))))

The working key is SHA-256 of the long-lived secret held by a secret store.
A fast hash is used on purpose: the secret is random and access controlled,
so it is the security boundary, not the derived key.

Envelopes written by the earlier mobile client share the 32 hex character
prefix but carry an OpenSSL "Salted__" payload whose key and IV were derived
from the passphrase hex(SHA-256(secret)); in that format the hex prefix is
never used. `decrypt` reads both formats, `encrypt` only writes the first.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from typing import Callable, Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .secret_store import SecretStore


logger = logging.getLogger(__name__)

DEFAULT_SECRET_NAME = "ENCRYPTION_KEY"
DECRYPTION_PLACEHOLDER = "[Decryption Failed]"

IV_SIZE = 16
IV_HEX_LEN = IV_SIZE * 2
KEY_SIZE = 32
BLOCK_BITS = 128

OPENSSL_MAGIC = b"Salted__"
OPENSSL_SALT_SIZE = 8


class CryptoError(RuntimeError):
    """Base error for the field codec."""


class DecryptionError(CryptoError, ValueError):
    """The value is not an envelope this codec can open with its key."""


def evp_bytes_to_key(passphrase: bytes, salt: bytes, key_len: int = KEY_SIZE, iv_len: int = IV_SIZE) -> Tuple[bytes, bytes]:
    """OpenSSL EVP_BytesToKey with MD5 and a single iteration."""
    derived = b""
    block = b""
    while len(derived) < key_len + iv_len:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


def _aes_cbc_encrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _aes_cbc_decrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    if not data or len(data) % IV_SIZE:
        raise DecryptionError("Ciphertext length is not a positive multiple of the AES block size")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(data) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise DecryptionError("Invalid padding (wrong key or corrupted ciphertext)") from exc


class FieldCodec:
    """
    Encrypts and decrypts single string values.

    The secret is fetched from `secret_store` (created there on first use)
    and hashed on every call; pass `cache_key=True` to keep the derived key
    for the lifetime of the codec. Secret-store errors propagate unchanged.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        *,
        secret_name: str = DEFAULT_SECRET_NAME,
        random_bytes: Callable[[int], bytes] = os.urandom,
        cache_key: bool = False,
    ) -> None:
        self._secrets = secret_store
        self._secret_name = secret_name
        self._random_bytes = random_bytes
        self._cache_key = cache_key
        self._cached: Optional[bytes] = None

    def _secret(self) -> str:
        secret = self._secrets.get_or_create_secret(self._secret_name)
        if not secret:
            raise CryptoError(f"Secret {self._secret_name!r} is empty")
        return secret

    def _derived_key(self) -> bytes:
        if self._cached is not None:
            return self._cached
        key = hashlib.sha256(self._secret().encode("utf-8")).digest()
        if self._cache_key:
            self._cached = key
        return key

    def _legacy_passphrase(self) -> bytes:
        return hashlib.sha256(self._secret().encode("utf-8")).hexdigest().encode("ascii")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt `plaintext` under a fresh random IV and return the envelope."""
        if not isinstance(plaintext, str):
            raise TypeError("encrypt expects str")
        iv = self._random_bytes(IV_SIZE)
        if len(iv) != IV_SIZE:
            raise CryptoError(f"Random source returned {len(iv)} bytes, expected {IV_SIZE}")
        ciphertext = _aes_cbc_encrypt(self._derived_key(), iv, plaintext.encode("utf-8"))
        return iv.hex() + base64.b64encode(ciphertext).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        """Open an envelope produced by `encrypt` (or by the legacy client).

        Raises DecryptionError for anything that is not a well-formed envelope
        under this codec's key, including results that are not valid UTF-8.
        """
        if not isinstance(envelope, str):
            raise DecryptionError("Envelope must be a string")
        if len(envelope) <= IV_HEX_LEN:
            raise DecryptionError("Envelope is too short to contain an IV and ciphertext")

        iv_hex, body = envelope[:IV_HEX_LEN], envelope[IV_HEX_LEN:]
        try:
            iv = bytes.fromhex(iv_hex)
        except ValueError as exc:
            raise DecryptionError("IV prefix is not hexadecimal") from exc
        if len(iv) != IV_SIZE:
            raise DecryptionError("IV prefix is not hexadecimal")
        try:
            raw = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Ciphertext is not valid base64") from exc

        if raw.startswith(OPENSSL_MAGIC):
            salt = raw[len(OPENSSL_MAGIC):len(OPENSSL_MAGIC) + OPENSSL_SALT_SIZE]
            if len(salt) != OPENSSL_SALT_SIZE:
                raise DecryptionError("Legacy envelope is missing its salt")
            key, iv = evp_bytes_to_key(self._legacy_passphrase(), salt)
            raw = raw[len(OPENSSL_MAGIC) + OPENSSL_SALT_SIZE:]
        else:
            key = self._derived_key()

        plain = _aes_cbc_decrypt(key, iv, raw)
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted bytes are not valid UTF-8") from exc

    def safe_decrypt(self, envelope: str, placeholder: str = DECRYPTION_PLACEHOLDER) -> str:
        """Decrypt, substituting `placeholder` when the value cannot be opened."""
        try:
            return self.decrypt(envelope)
        except DecryptionError as exc:
            logger.warning("Field decryption failed: %s", exc)
            return placeholder
