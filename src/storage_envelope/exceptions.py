"""
Exception hierarchy for storage_envelope.

Encryption errors inherit from CryptoError. None of them is retryable:
retrying a cryptographic or configuration failure cannot help, so a retry
layer must check ``is_retryable`` before spending another attempt.

Transport failures reported by the blob client inherit from StorageTransportError
instead, so callers can tell a bad key from a bad network.
"""


class CryptoError(Exception):
    """Base exception for all client-side encryption errors."""

    is_retryable: bool = False


class ConfigurationError(CryptoError):
    """The policy or request options are not set up for the operation."""


class KeyMissingError(ConfigurationError):
    """Encryption was requested without a key-encryption key."""

    def __init__(self) -> None:
        super().__init__("Key is not initialized. Encryption requires it to be initialized.")


class EncryptionPolicyMissingError(ConfigurationError):
    """require_encryption is set but no encryption policy is configured."""

    def __init__(self) -> None:
        super().__init__(
            "Encryption policy is mandatory when require_encryption is set. "
            "If you do not want to encrypt/decrypt data, set require_encryption to False."
        )


class EncryptionDataNotPresentError(CryptoError):
    """Encryption was required but the data carries no encryption metadata."""

    def __init__(self) -> None:
        super().__init__(
            "Encryption data does not exist. If you do not want to decrypt the data, "
            "do not set require_encryption."
        )


class ProtocolVersionError(CryptoError):
    """The EncryptionAgent protocol version is not understood by this library."""

    def __init__(self, protocol: str | None) -> None:
        self.protocol = protocol
        super().__init__(f"Invalid encryption agent protocol: {protocol!r}")


class UnsupportedAlgorithmError(CryptoError):
    """The content encryption algorithm is not supported."""

    def __init__(self, algorithm: str | None) -> None:
        self.algorithm = algorithm
        super().__init__(f"Unsupported encryption algorithm: {algorithm!r}")


class KeyResolutionError(CryptoError):
    """No key able to unwrap the content encryption key could be found."""


class KeyAndResolverMissingError(KeyResolutionError):
    """Decryption needs either a key or a key resolver."""

    def __init__(self) -> None:
        super().__init__("Key and resolver are not initialized. Decryption requires either of them.")


class KeyNotFoundError(KeyResolutionError):
    """The key resolver has no key for the stored key id."""

    def __init__(self, kid: str) -> None:
        self.kid = kid
        super().__init__(f"Key resolver returned no key for kid={kid!r}")


class KeyMismatchError(KeyResolutionError):
    """The configured key's id does not match the stored key id."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__("Key mismatch. The stored key id does not match the specified key.")


class MessageDeserializationError(CryptoError):
    """The encrypted queue message could not be parsed."""


class EncryptionMetadataError(CryptoError):
    """The encryption metadata could not be parsed or is incomplete."""


class DecryptionError(CryptoError):
    """Decryption failed.

    Wraps any unexpected failure in the decrypt path; the original exception
    is kept as ``__cause__``.
    """


class MessageTooLargeError(CryptoError):
    """The encrypted queue message exceeds the service size limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Encrypted messages cannot be larger than {limit} bytes (got {size})")


class StorageTransportError(Exception):
    """Base exception for failed storage requests."""

    is_retryable: bool = False


class TransferError(StorageTransportError):
    """The storage endpoint answered with a non-retryable status."""

    def __init__(self, status: int, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"Storage request failed: status={status} reason={reason}")
