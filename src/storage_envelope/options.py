"""Per-request settings for encrypted transfers."""

from __future__ import annotations

from dataclasses import dataclass

from storage_envelope.blob import BlobEncryptionPolicy
from storage_envelope.constants import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_ATTEMPTS
from storage_envelope.exceptions import EncryptionPolicyMissingError

__all__ = ["RequestOptions"]


@dataclass
class RequestOptions:
    """
    Options applied to every request made by EncryptedBlobClient.

    Attributes:
        encryption_policy: Encrypts uploads and decrypts downloads; None sends plaintext
        require_encryption: Refuse to read data that is not encrypted
        max_attempts: Attempts per operation for transient failures (>= 1)
        chunk_size: Read size for response bodies
    """

    encryption_policy: BlobEncryptionPolicy | None = None
    require_encryption: bool | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")

    def assert_policy_if_required(self) -> None:
        """
        Raises:
            EncryptionPolicyMissingError: If require_encryption is set without a policy
        """
        if self.require_encryption and self.encryption_policy is None:
            raise EncryptionPolicyMissingError()
