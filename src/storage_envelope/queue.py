"""
Whole-message envelope encryption for queue messages.

A queue message fits in memory, so it is encrypted in one shot with
AES-CBC-256 and PKCS7 padding, then shipped as a JSON envelope:

    {"EncryptedMessageContents": "<base64 ciphertext>", "EncryptionData": {...}}

Messages without "EncryptionData" are plain base64 payloads written by
clients that did not encrypt; they decode as-is unless encryption is required.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from storage_envelope._logging import get_logger
from storage_envelope.constants import QUEUE_MAX_MESSAGE_SIZE
from storage_envelope.envelope import (
    EncryptionData,
    b64decode,
    b64encode,
    build_encryption_data,
    create_transform,
    generate_cek,
    unwrap_content_key,
    wrap_content_key,
)
from storage_envelope.exceptions import (
    CryptoError,
    DecryptionError,
    EncryptionDataNotPresentError,
    KeyMissingError,
    MessageDeserializationError,
    MessageTooLargeError,
)
from storage_envelope.keys import KeyEncryptionKey, KeyResolver
from storage_envelope.streaming import AesCbcTransform

__all__ = [
    "EncryptedQueueMessage",
    "QueueEncryptionPolicy",
]

_logger = get_logger(__name__)


@dataclass(frozen=True)
class EncryptedQueueMessage:
    """Queue message envelope: base64 contents plus optional metadata."""

    encrypted_message_contents: str
    encryption_data: EncryptionData | None = None

    def to_json(self) -> str:
        data: dict[str, Any] = {"EncryptedMessageContents": self.encrypted_message_contents}
        if self.encryption_data is not None:
            data["EncryptionData"] = self.encryption_data.to_dict()
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> EncryptedQueueMessage:
        """
        Parse an envelope from the wire.

        Raises:
            MessageDeserializationError: If the text is not a valid envelope
        """
        try:
            data = json.loads(text)
            contents = data["EncryptedMessageContents"]
            if not isinstance(contents, str):
                raise TypeError(f"EncryptedMessageContents must be a string, got {type(contents).__name__}")
            raw_encryption_data = data.get("EncryptionData")
            encryption_data = (
                EncryptionData.from_dict(raw_encryption_data) if raw_encryption_data is not None else None
            )
        except (ValueError, KeyError, TypeError, AttributeError, binascii.Error) as e:
            raise MessageDeserializationError(
                "Error while deserializing the encrypted queue message string from the wire"
            ) from e
        return cls(encrypted_message_contents=contents, encryption_data=encryption_data)


class QueueEncryptionPolicy:
    """
    Encrypt and decrypt queue messages with envelope encryption.

    Example:
        policy = QueueEncryptionPolicy(key=kek)
        wire_text = policy.encrypt_message(b"hello")
        assert policy.decrypt_message(wire_text) == b"hello"

    Args:
        key: Key-encryption key; required to encrypt, optional to decrypt
        key_resolver: kid -> key lookup; wins over ``key`` when decrypting
        max_message_size: Reject envelopes larger than this (characters)
    """

    def __init__(
        self,
        key: KeyEncryptionKey | None = None,
        key_resolver: KeyResolver | None = None,
        *,
        max_message_size: int | None = QUEUE_MAX_MESSAGE_SIZE,
    ) -> None:
        self.key = key
        self.key_resolver = key_resolver
        self.max_message_size = max_message_size

    def encrypt_message(self, message: bytes) -> str:
        """
        Encrypt a message and serialize the envelope.

        Raises:
            KeyMissingError: If no key is configured
            MessageTooLargeError: If the envelope exceeds max_message_size
        """
        if message is None:
            raise ValueError("message is required")
        if self.key is None:
            raise KeyMissingError()

        iv, cek = generate_cek()
        wrapped_cek, wrap_algorithm = wrap_content_key(self.key, cek)
        encryption_data = build_encryption_data(iv, wrapped_cek, self.key.kid, wrap_algorithm)

        transform = AesCbcTransform.encryptor(cek, iv, padding=True)
        try:
            ciphertext = transform.transform_final_block(message)
        finally:
            transform.close()

        envelope = EncryptedQueueMessage(b64encode(ciphertext), encryption_data).to_json()
        if self.max_message_size is not None and len(envelope) > self.max_message_size:
            raise MessageTooLargeError(len(envelope), self.max_message_size)

        _logger.debug(
            "Message encrypted: kid=%s plaintext=%d envelope=%d",
            self.key.kid,
            len(message),
            len(envelope),
        )
        return envelope

    def decrypt_message(self, message: str, require_encryption: bool | None = None) -> bytes:
        """
        Decrypt a serialized envelope.

        Args:
            message: Envelope text from the queue
            require_encryption: Fail if the message carries no encryption metadata

        Returns:
            Plaintext message bytes

        Raises:
            MessageDeserializationError: If the envelope is malformed
            EncryptionDataNotPresentError: If encryption is required but absent
            CryptoError: Subclasses for protocol, key and algorithm failures
            DecryptionError: For any other failure (original kept as __cause__)
        """
        if message is None:
            raise ValueError("message is required")

        try:
            envelope = EncryptedQueueMessage.from_json(message)

            if envelope.encryption_data is None:
                if require_encryption:
                    raise EncryptionDataNotPresentError()
                _logger.debug("Unencrypted message decoded: length=%d", len(envelope.encrypted_message_contents))
                return base64.b64decode(envelope.encrypted_message_contents, validate=True)

            encryption_data = envelope.encryption_data
            cek = unwrap_content_key(encryption_data, self.key, self.key_resolver)
            transform = create_transform(encryption_data, cek, padding=True)
            try:
                return transform.transform_final_block(b64decode(envelope.encrypted_message_contents))
            finally:
                transform.close()
        except CryptoError:
            raise
        except Exception as e:
            _logger.debug("Message decryption failed: error_type=%s", type(e).__name__)
            raise DecryptionError(
                "Decryption logic threw error. Check the inner exception for more details."
            ) from e
