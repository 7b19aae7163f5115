"""
Message content obfuscation.

Reads and writes the passphrase format the web client produces with
CryptoJS.AES: base64 of ``b"Salted__" + salt(8) + ciphertext``, AES-256-CBC
with PKCS7 padding, key and IV derived from the passphrase and salt with
OpenSSL's EVP_BytesToKey (MD5, one round).

The passphrase is a static value shipped to every client, so this is only
obfuscation. Anyone holding the client bundle can reverse it. Real
confidentiality needs per-conversation key exchange, which this does not do.
"""

import base64
import binascii
import hashlib
import os
from typing import Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

MAGIC = b"Salted__"
KEY_SIZE = 32
IV_SIZE = 16


def evp_bytes_to_key(passphrase: bytes, salt: bytes) -> Tuple[bytes, bytes]:
    derived = b""
    block = b""
    while len(derived) < KEY_SIZE + IV_SIZE:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:KEY_SIZE], derived[KEY_SIZE:KEY_SIZE + IV_SIZE]


class ContentObfuscator:
    def __init__(self, passphrase: str) -> None:
        self.passphrase = passphrase.encode("utf-8")

    def obfuscate(self, text: str, salt: Optional[bytes] = None) -> str:
        salt = salt if salt is not None else os.urandom(8)
        if len(salt) != 8:
            raise ValueError("Salt must be 8 bytes")
        key, iv = evp_bytes_to_key(self.passphrase, salt)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(MAGIC + salt + ciphertext).decode("ascii")

    def reveal(self, token: str) -> str:
        """Reverse ``obfuscate``. Raises ValueError on anything malformed."""
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Obfuscated content is not valid base64") from exc
        if not raw.startswith(MAGIC) or len(raw) < len(MAGIC) + 8 + 16 or (len(raw) - 16) % 16:
            raise ValueError("Obfuscated content has an unexpected layout")
        salt, ciphertext = raw[8:16], raw[16:]
        key, iv = evp_bytes_to_key(self.passphrase, salt)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
