"""
Envelope encryption metadata and protocol.

Every encrypt call generates a fresh content encryption key (CEK) and IV,
wraps the CEK with a caller-supplied key-encryption key, and records how
in an EncryptionData document. Decryption reverses this: validate the
document, find a key able to unwrap the CEK, then build the cipher.

Wire format (JSON, shared by blobs and queue messages):
    {
        "WrappedContentKey": {"KeyId": "...", "EncryptedKey": "<base64>", "Algorithm": "A256KW"},
        "EncryptionAgent": {"Protocol": "1.0", "EncryptionAlgorithm": "AES_CBC_256"},
        "ContentEncryptionIV": "<base64>",
        "KeyWrappingMetadata": {"EncryptionLibrary": "Python 0.1.0"},
        "EncryptionMode": "FullBlob"          # blobs only
    }
"""

from __future__ import annotations

import base64
import binascii
import json
import secrets
from dataclasses import dataclass, field
from typing import Any

from storage_envelope._logging import get_logger
from storage_envelope.constants import (
    AES_IV_SIZE,
    AGENT_METADATA_KEY,
    AGENT_METADATA_VALUE,
    CEK_SIZE,
    ENCRYPTION_PROTOCOL_V1,
    EncryptionAlgorithm,
)
from storage_envelope.exceptions import (
    EncryptionMetadataError,
    KeyAndResolverMissingError,
    KeyMismatchError,
    KeyNotFoundError,
    ProtocolVersionError,
    UnsupportedAlgorithmError,
)
from storage_envelope.keys import KeyEncryptionKey, KeyResolver
from storage_envelope.streaming import AesCbcTransform

__all__ = [
    "EncryptionAgent",
    "EncryptionData",
    "WrappedKey",
    "build_encryption_data",
    "create_transform",
    "generate_cek",
    "unwrap_content_key",
    "wrap_content_key",
]

_logger = get_logger(__name__)


def b64encode(data: bytes) -> str:
    """Standard base64 (with padding), as used in the JSON documents."""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict standard base64 decode."""
    return base64.b64decode(data, validate=True)


@dataclass(frozen=True)
class EncryptionAgent:
    """Protocol version and content encryption algorithm."""

    protocol: str
    encryption_algorithm: str

    def to_dict(self) -> dict[str, str]:
        return {"Protocol": self.protocol, "EncryptionAlgorithm": self.encryption_algorithm}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptionAgent:
        return cls(protocol=data.get("Protocol"), encryption_algorithm=data.get("EncryptionAlgorithm"))  # type: ignore[arg-type]


@dataclass(frozen=True)
class WrappedKey:
    """Wrapped CEK plus the id and algorithm of the key that wrapped it."""

    key_id: str
    encrypted_key: bytes | None
    algorithm: str

    def to_dict(self) -> dict[str, str | None]:
        return {
            "KeyId": self.key_id,
            "EncryptedKey": b64encode(self.encrypted_key) if self.encrypted_key is not None else None,
            "Algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WrappedKey:
        encrypted_key = data.get("EncryptedKey")
        return cls(
            key_id=data.get("KeyId"),  # type: ignore[arg-type]
            encrypted_key=b64decode(encrypted_key) if encrypted_key is not None else None,
            algorithm=data.get("Algorithm"),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class EncryptionData:
    """How a queue message or blob was encrypted.

    Created fresh on every encrypt, parsed fresh on every decrypt, never
    mutated in between.
    """

    encryption_agent: EncryptionAgent
    wrapped_content_key: WrappedKey
    content_encryption_iv: bytes | None
    key_wrapping_metadata: dict[str, str] = field(default_factory=dict)
    encryption_mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "WrappedContentKey": self.wrapped_content_key.to_dict(),
            "EncryptionAgent": self.encryption_agent.to_dict(),
            "ContentEncryptionIV": (
                b64encode(self.content_encryption_iv) if self.content_encryption_iv is not None else None
            ),
            "KeyWrappingMetadata": dict(self.key_wrapping_metadata),
        }
        if self.encryption_mode is not None:
            data["EncryptionMode"] = self.encryption_mode
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptionData:
        """
        Build EncryptionData from a parsed JSON object.

        Raises:
            KeyError, TypeError, AttributeError, binascii.Error: On structurally invalid input
        """
        iv = data.get("ContentEncryptionIV")
        return cls(
            encryption_agent=EncryptionAgent.from_dict(data["EncryptionAgent"]),
            wrapped_content_key=WrappedKey.from_dict(data["WrappedContentKey"]),
            content_encryption_iv=b64decode(iv) if iv is not None else None,
            key_wrapping_metadata=dict(data.get("KeyWrappingMetadata") or {}),
            encryption_mode=data.get("EncryptionMode"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> EncryptionData:
        """
        Parse the JSON form stored in blob metadata.

        Raises:
            EncryptionMetadataError: If the document is malformed
        """
        try:
            return cls.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError, AttributeError, binascii.Error) as e:
            raise EncryptionMetadataError("Error while deserializing the encryption metadata") from e


def generate_cek() -> tuple[bytes, bytes]:
    """
    Generate a fresh content encryption key and IV.

    Returns:
        Tuple of (iv, key): 16-byte IV and 32-byte AES-256 key
    """
    return secrets.token_bytes(AES_IV_SIZE), secrets.token_bytes(CEK_SIZE)


def wrap_content_key(key: KeyEncryptionKey, cek: bytes) -> tuple[bytes, str]:
    """
    Wrap the CEK with the key-encryption key.

    The call is synchronous; see storage_envelope.keys for the contract.

    Returns:
        Tuple of (wrapped key bytes, wrap algorithm name)
    """
    return key.wrap_key(cek, None)


def build_encryption_data(
    iv: bytes,
    wrapped_cek: bytes,
    key_id: str,
    wrap_algorithm: str,
    *,
    encryption_mode: str | None = None,
) -> EncryptionData:
    """Describe a fresh AES-CBC-256 encryption under protocol 1.0."""
    return EncryptionData(
        encryption_agent=EncryptionAgent(ENCRYPTION_PROTOCOL_V1, EncryptionAlgorithm.AES_CBC_256.value),
        wrapped_content_key=WrappedKey(key_id, wrapped_cek, wrap_algorithm),
        content_encryption_iv=iv,
        key_wrapping_metadata={AGENT_METADATA_KEY: AGENT_METADATA_VALUE},
        encryption_mode=encryption_mode,
    )


def unwrap_content_key(
    encryption_data: EncryptionData,
    key: KeyEncryptionKey | None,
    resolver: KeyResolver | None,
) -> bytes:
    """
    Validate encryption metadata and recover the CEK.

    The resolver takes priority over a direct key so that rotated data
    (wrapped under an older key) still decrypts.

    Args:
        encryption_data: Parsed metadata
        key: Key-encryption key, used when no resolver is given
        resolver: Optional kid -> key lookup

    Returns:
        Plaintext CEK

    Raises:
        EncryptionMetadataError: If the IV or wrapped key is missing
        ProtocolVersionError: If the protocol version is not 1.0
        KeyAndResolverMissingError: If neither key nor resolver is given
        KeyNotFoundError: If the resolver has no key for the stored kid
        KeyMismatchError: If the direct key's kid differs from the stored kid
    """
    wrapped = encryption_data.wrapped_content_key
    if encryption_data.content_encryption_iv is None:
        raise EncryptionMetadataError("Missing ContentEncryptionIV")
    if wrapped.encrypted_key is None:
        raise EncryptionMetadataError("Missing EncryptedKey")

    if encryption_data.encryption_agent.protocol != ENCRYPTION_PROTOCOL_V1:
        raise ProtocolVersionError(encryption_data.encryption_agent.protocol)

    if key is None and resolver is None:
        raise KeyAndResolverMissingError()

    if resolver is not None:
        resolved = resolver.resolve_key(wrapped.key_id)
        if resolved is None:
            raise KeyNotFoundError(wrapped.key_id)
        _logger.debug("CEK unwrap via resolver: kid=%s algorithm=%s", wrapped.key_id, wrapped.algorithm)
        return resolved.unwrap_key(wrapped.encrypted_key, wrapped.algorithm)

    assert key is not None
    if key.kid != wrapped.key_id:
        raise KeyMismatchError(expected=wrapped.key_id, actual=key.kid)
    _logger.debug("CEK unwrap via key: kid=%s algorithm=%s", wrapped.key_id, wrapped.algorithm)
    return key.unwrap_key(wrapped.encrypted_key, wrapped.algorithm)


def create_transform(
    encryption_data: EncryptionData,
    cek: bytes,
    *,
    iv: bytes | None = None,
    padding: bool = True,
) -> AesCbcTransform:
    """
    Build the decrypting transform for the recorded algorithm.

    Args:
        encryption_data: Validated metadata
        cek: Unwrapped content encryption key
        iv: IV override (ranged reads take the previous ciphertext block)
        padding: Strip PKCS7 padding at the end

    Raises:
        UnsupportedAlgorithmError: For anything but AES_CBC_256
    """
    algorithm = encryption_data.encryption_agent.encryption_algorithm
    if algorithm == EncryptionAlgorithm.AES_CBC_256.value:
        return AesCbcTransform.decryptor(
            cek,
            iv if iv is not None else encryption_data.content_encryption_iv,  # type: ignore[arg-type]
            padding=padding,
        )
    raise UnsupportedAlgorithmError(algorithm)
