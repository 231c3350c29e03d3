"""Password encoding and verification for the supported cipher algorithms.

Hash algorithms produce upper-case hex digests; salted variants produce
``base64(digest + salt)``; AES is reversible (AES-GCM, random nonce).
"""
from __future__ import annotations
import base64
import hashlib
import hmac
import os
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

SALT_LENGTH = 8
NONCE_LENGTH = 12


class CipherAlgorithm(str, Enum):
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"
    SSHA256 = "SSHA256"
    SSHA512 = "SSHA512"
    AES = "AES"

    @property
    def salted(self) -> bool:
        return self.value.startswith("SSHA")

    @property
    def hashlib_name(self) -> str:
        return {"SHA1": "sha1", "SHA256": "sha256", "SHA512": "sha512",
                "SSHA256": "sha256", "SSHA512": "sha512"}[self.value]


class Encryptor:
    """Encode and verify secrets.

    Usage:
        encryptor = Encryptor(secret_key)
        stored = encryptor.encode("s3cret", CipherAlgorithm.SSHA256)
        encryptor.verify("s3cret", CipherAlgorithm.SSHA256, stored)  # True
    """

    def __init__(self, secret_key: str):
        self._aes_key = hashlib.sha256(secret_key.encode("utf-8")).digest()

    def encode(self, value: str, algorithm: CipherAlgorithm) -> str:
        algorithm = CipherAlgorithm(algorithm)
        data = value.encode("utf-8")

        if algorithm == CipherAlgorithm.AES:
            nonce = os.urandom(NONCE_LENGTH)
            return base64.b64encode(nonce + AESGCM(self._aes_key).encrypt(nonce, data, None)).decode("ascii")

        if algorithm.salted:
            salt = os.urandom(SALT_LENGTH)
            digest = hashlib.new(algorithm.hashlib_name, data + salt).digest()
            return base64.b64encode(digest + salt).decode("ascii")

        return hashlib.new(algorithm.hashlib_name, data).hexdigest().upper()

    def decode(self, encoded: str, algorithm: CipherAlgorithm) -> Optional[str]:
        """Return the clear-text value for reversible algorithms, None otherwise."""
        if CipherAlgorithm(algorithm) != CipherAlgorithm.AES:
            return None
        raw = base64.b64decode(encoded)
        try:
            return AESGCM(self._aes_key).decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None).decode("utf-8")
        except InvalidTag:
            return None

    def verify(self, value: Optional[str], algorithm: Optional[CipherAlgorithm], encoded: Optional[str]) -> bool:
        """Check ``value`` against ``encoded`` without comparing clear text to clear text."""
        if value is None or encoded is None or algorithm is None:
            return False
        try:
            algorithm = CipherAlgorithm(algorithm)
        except ValueError:
            return False

        if algorithm == CipherAlgorithm.AES:
            decoded = self.decode(encoded, algorithm)
            return decoded is not None and hmac.compare_digest(decoded, value)

        if algorithm.salted:
            try:
                raw = base64.b64decode(encoded)
            except ValueError:
                return False
            digest, salt = raw[:-SALT_LENGTH], raw[-SALT_LENGTH:]
            expected = hashlib.new(algorithm.hashlib_name, value.encode("utf-8") + salt).digest()
            return hmac.compare_digest(digest, expected)

        return hmac.compare_digest(self.encode(value, algorithm), encoded.upper())
