"""Token handling and symmetric crypto for the miio protocol."""
from __future__ import annotations

import binascii
import hmac as std_hmac
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


TOKEN_SIZE = 16
BLOCK_SIZE = 16

# Wrapped tokens exported by the iOS app: 96 hex chars, ECB-encrypted under
# an all-zero key.
WRAPPED_TOKEN_SIZE = 48
WRAPPED_CIPHERTEXT_SIZE = 32
WRAP_KEY = bytes(16)

TokenInput = Union[str, bytes]


class MiioError(Exception):
    """Base class for every error raised by miiolan."""


class ConfigError(MiioError):
    """Raised when the configured token cannot be used."""


@dataclass(frozen=True)
class DerivedKeys:
    """AES key material derived once from the device token."""

    token: bytes
    key: bytes
    iv: bytes

    def __repr__(self) -> str:
        return "DerivedKeys(token=<hidden>)"


def md5(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.MD5(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


def digests_equal(a: bytes, b: bytes) -> bool:
    return std_hmac.compare_digest(a, b)


def token_from_hex(value: TokenInput) -> bytes:
    """Turn the configured token into raw bytes.

    Strings are read as hex with whitespace ignored; bytes are taken as the
    raw token.
    """

    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str):
        raise ConfigError(f"Token must be str or bytes, not {type(value).__name__}")
    cleaned = "".join(value.split())
    try:
        return bytes.fromhex(cleaned)
    except ValueError as exc:
        raise ConfigError("Token is not a valid hex string") from exc


def unwrap_token(wrapped: bytes) -> bytes:
    """Recover the raw 16-byte token from the vendor's wrapped form."""

    if len(wrapped) < WRAPPED_CIPHERTEXT_SIZE:
        raise ConfigError("Wrapped token is too short")
    decryptor = Cipher(
        algorithms.AES(WRAP_KEY), modes.ECB(), backend=default_backend()
    ).decryptor()
    decrypted = decryptor.update(wrapped[:WRAPPED_CIPHERTEXT_SIZE]) + decryptor.finalize()
    try:
        text = decrypted.decode("ascii")
        token = binascii.unhexlify(text[: TOKEN_SIZE * 2])
    except (UnicodeDecodeError, binascii.Error, ValueError) as exc:
        raise ConfigError("Wrapped token did not decrypt to a hex token") from exc
    if len(token) != TOKEN_SIZE:
        raise ConfigError("Wrapped token did not decrypt to 16 bytes")
    return token


def derive_keys(token: TokenInput) -> DerivedKeys:
    """Derive the AES key and IV used for every packet of a session.

    ``key = MD5(token)`` and ``iv = MD5(key + token)``.  A wrapped token is
    unwrapped first.
    """

    raw = token_from_hex(token)
    if len(raw) == WRAPPED_TOKEN_SIZE:
        raw = unwrap_token(raw)
    if len(raw) != TOKEN_SIZE:
        raise ConfigError(
            f"Token must be {TOKEN_SIZE} bytes ({TOKEN_SIZE * 2} hex characters), got {len(raw)}"
        )
    key = md5(raw)
    iv = md5(key + raw)
    return DerivedKeys(token=raw, key=key, iv=iv)


def _cipher(keys: DerivedKeys) -> Cipher:
    return Cipher(algorithms.AES(keys.key), modes.CBC(keys.iv), backend=default_backend())


def encrypt(keys: DerivedKeys, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = _cipher(keys).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt(keys: DerivedKeys, ciphertext: bytes) -> bytes:
    """AES-128-CBC decrypt and strip the PKCS7 padding.

    Raises :class:`ValueError` when the ciphertext is not block aligned or the
    padding is invalid.
    """

    if not ciphertext or len(ciphertext) % BLOCK_SIZE:
        raise ValueError("Ciphertext length is not a multiple of the block size")
    decryptor = _cipher(keys).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()
