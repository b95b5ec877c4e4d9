"""
Key Custody Service
Encrypts and decrypts wallet secret key material with format auto-detection

Current format is ``ivHex:cipherHex`` (AES-256-CBC, scrypt-derived key). Two
legacy formats stay readable: the OpenSSL salted envelope (``Salted__`` +
8-byte salt, base64) and the older client's unsalted passphrase format.
Decrypted secrets are returned to the caller and never logged or persisted.
"""

import base64
import binascii
import logging
import os
from typing import List, Optional

import base58
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from solders.keypair import Keypair

from config import Config
from utils.exception_handler import DecryptionError

logger = logging.getLogger(__name__)

AES_KEY_LENGTH = 32
AES_BLOCK_LENGTH = 16
OPENSSL_SALT_MAGIC = b"Salted__"
OPENSSL_SALT_PREFIX_B64 = "U2FsdGVk"


def _aes_cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _aes_cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    if not ciphertext or len(ciphertext) % AES_BLOCK_LENGTH:
        raise ValueError("ciphertext is not a whole number of AES blocks")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def evp_bytes_to_key(password: bytes, salt: Optional[bytes], length: int) -> bytes:
    """OpenSSL EVP_BytesToKey with MD5 and a single iteration"""
    derived = b""
    block = b""
    while len(derived) < length:
        digest = hashes.Hash(hashes.MD5())
        digest.update(block + password + (salt or b""))
        block = digest.finalize()
        derived += block
    return derived[:length]


def _decode_plaintext(raw: bytes) -> str:
    text = raw.decode("utf-8")
    if not text:
        raise ValueError("empty plaintext")
    return text


class CiphertextFormat:
    """One supported ciphertext encoding"""

    name = "base"

    def detect(self, ciphertext: str) -> bool:
        raise NotImplementedError

    def decrypt(self, ciphertext: str, service: "KeyCustodyService") -> str:
        raise NotImplementedError


class ColonHexFormat(CiphertextFormat):
    """``ivHex:cipherHex`` produced by the current encrypt()"""

    name = "colon_hex"

    def detect(self, ciphertext: str) -> bool:
        parts = ciphertext.split(":")
        return len(parts) == 2 and all(parts)

    def decrypt(self, ciphertext: str, service: "KeyCustodyService") -> str:
        iv_hex, data_hex = ciphertext.split(":")
        iv = bytes.fromhex(iv_hex)
        if len(iv) != AES_BLOCK_LENGTH:
            raise ValueError("invalid IV length")
        return _decode_plaintext(_aes_cbc_decrypt(service.derived_key, iv, bytes.fromhex(data_hex)))


class SaltedEnvelopeFormat(CiphertextFormat):
    """OpenSSL ``Salted__`` envelope, key and IV from EVP_BytesToKey(secret, salt)"""

    name = "salted_envelope"

    def detect(self, ciphertext: str) -> bool:
        return ciphertext.startswith(OPENSSL_SALT_PREFIX_B64)

    def decrypt(self, ciphertext: str, service: "KeyCustodyService") -> str:
        raw = base64.b64decode(ciphertext, validate=True)
        if raw[:8] != OPENSSL_SALT_MAGIC:
            raise ValueError("missing Salted__ marker")
        salt, body = raw[8:16], raw[16:]
        material = evp_bytes_to_key(service.secret_bytes, salt, AES_KEY_LENGTH + AES_BLOCK_LENGTH)
        return _decode_plaintext(_aes_cbc_decrypt(material[:AES_KEY_LENGTH], material[AES_KEY_LENGTH:], body))


class PassphraseFormat(CiphertextFormat):
    """Older client's passphrase format: bare base64, key and IV from EVP_BytesToKey(secret)"""

    name = "passphrase"

    def detect(self, ciphertext: str) -> bool:
        return ":" not in ciphertext

    def decrypt(self, ciphertext: str, service: "KeyCustodyService") -> str:
        body = base64.b64decode(ciphertext, validate=True)
        material = evp_bytes_to_key(service.secret_bytes, None, AES_KEY_LENGTH + AES_BLOCK_LENGTH)
        return _decode_plaintext(_aes_cbc_decrypt(material[:AES_KEY_LENGTH], material[AES_KEY_LENGTH:], body))


# Tried in this order; the first handler that detects and decrypts wins
DEFAULT_FORMATS: List[CiphertextFormat] = [
    ColonHexFormat(),
    SaltedEnvelopeFormat(),
    PassphraseFormat(),
]


class KeyCustodyService:
    """Encrypt/decrypt secret key material with the process-wide master secret"""

    def __init__(self, secret: Optional[str] = None, formats: Optional[List[CiphertextFormat]] = None):
        secret = secret if secret is not None else Config.ENCRYPTION_SECRET
        if not secret:
            raise ValueError("ENCRYPTION_SECRET is not configured")
        self.secret_bytes = secret.encode("utf-8")
        self.formats = list(formats) if formats is not None else list(DEFAULT_FORMATS)
        self._derived_key: Optional[bytes] = None

    @property
    def derived_key(self) -> bytes:
        # scrypt is deliberately slow, derive once per service instance
        if self._derived_key is None:
            kdf = Scrypt(salt=Config.ENCRYPTION_KDF_SALT, length=AES_KEY_LENGTH, n=2 ** 14, r=8, p=1)
            self._derived_key = kdf.derive(self.secret_bytes)
        return self._derived_key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt to ``ivHex:cipherHex`` with a fresh random IV"""
        if not isinstance(plaintext, str) or not plaintext:
            raise ValueError("plaintext must be a non-empty string")
        iv = os.urandom(AES_BLOCK_LENGTH)
        ciphertext = _aes_cbc_encrypt(self.derived_key, iv, plaintext.encode("utf-8"))
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt any supported format, trying handlers in priority order"""
        if not isinstance(ciphertext, str) or not ciphertext.strip():
            raise DecryptionError("Encrypted key material is empty")

        ciphertext = ciphertext.strip()
        attempted = []
        for handler in self.formats:
            if not handler.detect(ciphertext):
                continue
            attempted.append(handler.name)
            try:
                return handler.decrypt(ciphertext, self)
            except (ValueError, binascii.Error, UnicodeDecodeError) as e:
                # Reason only; ciphertext and plaintext stay out of logs
                logger.debug(f"🔐 {handler.name} decrypt did not apply: {type(e).__name__}")

        logger.warning(f"❌ Decryption failed for every supported format (tried: {', '.join(attempted) or 'none'})")
        raise DecryptionError(f"Decryption failed: no supported format matched (tried: {', '.join(attempted) or 'none'})")

    def detect_format(self, ciphertext: str) -> str:
        """Name of the first handler that can actually decrypt, or ``unknown``"""
        for handler in self.formats:
            if handler.detect(ciphertext):
                try:
                    handler.decrypt(ciphertext, self)
                    return handler.name
                except (ValueError, binascii.Error, UnicodeDecodeError):
                    continue
        return "unknown"

    def reencrypt(self, ciphertext: str) -> str:
        """Migrate any supported ciphertext to the current format"""
        return self.encrypt(self.decrypt(ciphertext))

    # Legacy encoders keep the old formats reproducible for migration tooling

    def encrypt_legacy_salted(self, plaintext: str, salt: Optional[bytes] = None) -> str:
        salt = salt or os.urandom(8)
        material = evp_bytes_to_key(self.secret_bytes, salt, AES_KEY_LENGTH + AES_BLOCK_LENGTH)
        body = _aes_cbc_encrypt(material[:AES_KEY_LENGTH], material[AES_KEY_LENGTH:], plaintext.encode("utf-8"))
        return base64.b64encode(OPENSSL_SALT_MAGIC + salt + body).decode("ascii")

    def encrypt_legacy_passphrase(self, plaintext: str) -> str:
        material = evp_bytes_to_key(self.secret_bytes, None, AES_KEY_LENGTH + AES_BLOCK_LENGTH)
        body = _aes_cbc_encrypt(material[:AES_KEY_LENGTH], material[AES_KEY_LENGTH:], plaintext.encode("utf-8"))
        return base64.b64encode(body).decode("ascii")

    # Keypair helpers

    def encrypt_keypair(self, keypair: Keypair) -> str:
        return self.encrypt(base58.b58encode(bytes(keypair)).decode("ascii"))

    def decrypt_keypair(self, ciphertext: str) -> Keypair:
        return keypair_from_secret(self.decrypt(ciphertext))


def keypair_from_secret(secret: str) -> Keypair:
    """Build a keypair from a base58 (or base64) encoded 64-byte secret key"""
    try:
        raw = base58.b58decode(secret)
    except ValueError:
        raw = b""
    if len(raw) != 64:
        try:
            raw = base64.b64decode(secret, validate=True)
        except binascii.Error:
            raw = b""
    if len(raw) != 64:
        raise DecryptionError("Secret key material is not a 64-byte keypair")
    return Keypair.from_bytes(raw)


def public_key_of(secret: str) -> str:
    return str(keypair_from_secret(secret).pubkey())


def generate_keypair() -> Keypair:
    return Keypair()


def secret_of(keypair: Keypair) -> str:
    return base58.b58encode(bytes(keypair)).decode("ascii")


_custody_service: Optional[KeyCustodyService] = None


def get_custody_service() -> KeyCustodyService:
    """Process-wide custody service built from Config"""
    global _custody_service
    if _custody_service is None:
        _custody_service = KeyCustodyService()
    return _custody_service
