"""
Banking details at rest.

Ciphertexts are base64 of a 12-byte IV followed by the AES-GCM ciphertext
and tag. The key is the first 32 characters of BANKING_ENCRYPTION_KEY,
right-padded with "0".
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bookmarket.config import Config
from bookmarket.services.errors import BankingDecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 12


def _derive_key(secret: str) -> bytes:
    return secret[:32].ljust(32, "0").encode("utf-8")[:32]


class BankingCrypto:
    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = Config.BANKING_ENCRYPTION_KEY if secret is None else secret

    def encrypt(self, plaintext: str) -> str:
        if not self.secret:
            raise BankingDecryptionError("Banking encryption key is not configured")
        iv = os.urandom(IV_LENGTH)
        ciphertext = AESGCM(_derive_key(self.secret)).encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not self.secret:
            raise BankingDecryptionError("Banking encryption key is not configured")
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BankingDecryptionError("Encrypted banking value is not valid base64") from exc
        if len(combined) <= IV_LENGTH:
            raise BankingDecryptionError("Encrypted banking value is too short")
        iv, ciphertext = combined[:IV_LENGTH], combined[IV_LENGTH:]
        try:
            plaintext = AESGCM(_derive_key(self.secret)).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            logger.error("Banking decryption failed: authentication tag mismatch")
            raise BankingDecryptionError("Failed to decrypt banking details") from exc
        return plaintext.decode("utf-8")
