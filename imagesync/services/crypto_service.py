"""Callback signature verification and envelope encryption for WeChat Work.

WeChat Work signs each callback with SHA-1 over the sorted concatenation of
the application token, timestamp, nonce and (when present) the encrypted
payload. Encrypted payloads use AES-256-CBC with the 43-character
``EncodingAESKey`` (base64 without padding) as key and its first 16 bytes as
IV. The plaintext envelope is::

    random(16) | length(4, big-endian) | message(length) | receive_id

padded with PKCS#7 to a 32-byte block.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import secrets
import struct
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from imagesync.exceptions import AuthenticationError, DecryptionError

logger = logging.getLogger(__name__)

_BLOCK_SIZE = 32
_RANDOM_PREFIX = 16
_LENGTH_FIELD = 4


def compute_signature(token: str, timestamp: str, nonce: str, encrypted: str = "") -> str:
    """Return the hex SHA-1 signature WeChat Work expects for these values."""
    parts = [token, timestamp, nonce]
    if encrypted:
        parts.append(encrypted)
    return hashlib.sha1("".join(sorted(parts)).encode()).hexdigest()


def verify_signature(
    signature: str | None,
    token: str,
    timestamp: str | None,
    nonce: str | None,
    encrypted: str = "",
) -> None:
    """Check a callback signature. Raises AuthenticationError on mismatch."""
    if not signature or not timestamp or not nonce:
        raise AuthenticationError("Missing signature parameters")
    expected = compute_signature(token, timestamp, nonce, encrypted)
    if not secrets.compare_digest(expected.encode(), signature.encode()):
        raise AuthenticationError("Callback signature mismatch")



def _cipher(key: bytes) -> Cipher[modes.CBC]:
    return Cipher(algorithms.AES(key), modes.CBC(key[:16]))


@dataclass(frozen=True)
class DecryptedMessage:
    """Plaintext recovered from an envelope."""

    content: str
    receive_id: str


class WeChatCrypto:
    """Verifies and opens (or seals) callback envelopes for one application.

    With an empty ``encoding_aes_key`` the instance runs in plaintext mode:
    signatures are still checked but payloads pass through unchanged.
    """

    def __init__(self, token: str, encoding_aes_key: str = "", receive_id: str = "") -> None:
        self.token = token
        self.receive_id = receive_id
        self._key: bytes | None = None
        if encoding_aes_key:
            try:
                key = base64.b64decode(encoding_aes_key + "=", validate=True)
            except binascii.Error as exc:
                raise ValueError("EncodingAESKey is not valid base64") from exc
            if len(key) != 32:
                msg = f"EncodingAESKey must decode to 32 bytes, got {len(key)}"
                raise ValueError(msg)
            self._key = key

    @property
    def encrypted(self) -> bool:
        """Whether payloads are AES-encrypted."""
        return self._key is not None

    def decrypt(self, ciphertext: str) -> DecryptedMessage:
        """Open an envelope. Raises DecryptionError if it is malformed."""
        if self._key is None:
            return DecryptedMessage(content=ciphertext, receive_id="")

        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Envelope is not valid base64") from exc
        if not raw or len(raw) % 16 != 0:
            raise DecryptionError(f"Envelope has invalid length {len(raw)}")

        decryptor = _cipher(self._key).decryptor()
        padded = decryptor.update(raw) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_SIZE * 8).unpadder()
        try:
            plain = unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionError("Envelope has invalid padding") from exc

        header = _RANDOM_PREFIX + _LENGTH_FIELD
        if len(plain) < header:
            raise DecryptionError("Envelope is too short")
        (length,) = struct.unpack(">I", plain[_RANDOM_PREFIX:header])
        if header + length > len(plain):
            raise DecryptionError("Envelope length field exceeds payload")

        try:
            content = plain[header : header + length].decode("utf-8")
            receive_id = plain[header + length :].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Envelope payload is not valid UTF-8") from exc

        if self.receive_id and receive_id != self.receive_id:
            logger.warning(
                "Envelope receive id %r does not match configured %r", receive_id, self.receive_id
            )
        return DecryptedMessage(content=content, receive_id=receive_id)

    def encrypt(self, plaintext: str, random_prefix: bytes | None = None) -> str:
        """Seal plaintext into a base64 envelope (identity in plaintext mode)."""
        if self._key is None:
            return plaintext

        prefix = random_prefix if random_prefix is not None else secrets.token_bytes(16)
        if len(prefix) != _RANDOM_PREFIX:
            raise ValueError("random_prefix must be 16 bytes")
        body = plaintext.encode("utf-8")
        envelope = (
            prefix + struct.pack(">I", len(body)) + body + self.receive_id.encode("utf-8")
        )
        padder = padding.PKCS7(_BLOCK_SIZE * 8).padder()
        padded = padder.update(envelope) + padder.finalize()
        encryptor = _cipher(self._key).encryptor()
        return base64.b64encode(encryptor.update(padded) + encryptor.finalize()).decode()

    def decrypt_echo(
        self, signature: str | None, timestamp: str | None, nonce: str | None, echostr: str
    ) -> str:
        """Verify a URL-validation request and return the plaintext echo string."""
        verify_signature(signature, self.token, timestamp, nonce, echostr)
        return self.decrypt(echostr).content

    def open_envelope(
        self, signature: str | None, timestamp: str | None, nonce: str | None, encrypted: str
    ) -> str:
        """Verify a message callback and return the decrypted inner message."""
        verify_signature(signature, self.token, timestamp, nonce, encrypted)
        return self.decrypt(encrypted).content
