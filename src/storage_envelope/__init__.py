"""
Client-side envelope encryption for cloud blob and queue storage.

Data is encrypted with a fresh AES-CBC-256 content key per message/blob;
the content key is wrapped by a key-encryption key you hold and stored
next to the data, so the service only ever sees ciphertext.

Usage (queue messages):
    from storage_envelope import QueueEncryptionPolicy, SymmetricKey

    policy = QueueEncryptionPolicy(key=SymmetricKey.generate("local:key1"))
    wire_text = policy.encrypt_message(b"hello")
    plaintext = policy.decrypt_message(wire_text, require_encryption=True)

Usage (blobs over aiohttp):
    from storage_envelope import BlobEncryptionPolicy, RequestOptions
    from storage_envelope.transfer import EncryptedBlobClient

    options = RequestOptions(encryption_policy=BlobEncryptionPolicy(key=kek))
    async with EncryptedBlobClient(container_url, options) as client:
        await client.upload_blob("data.bin", payload)
        await client.download_blob("data.bin", dest, offset=100, length=50)
"""

from storage_envelope.blob import BlobDecryptStream, BlobEncryptionPolicy, adjust_range_for_decryption
from storage_envelope.constants import ENCRYPTION_PROTOCOL_V1, VERSION, EncryptionAlgorithm
from storage_envelope.envelope import EncryptionAgent, EncryptionData, WrappedKey
from storage_envelope.exceptions import (
    ConfigurationError,
    CryptoError,
    DecryptionError,
    EncryptionDataNotPresentError,
    EncryptionMetadataError,
    EncryptionPolicyMissingError,
    KeyAndResolverMissingError,
    KeyMismatchError,
    KeyMissingError,
    KeyNotFoundError,
    KeyResolutionError,
    MessageDeserializationError,
    MessageTooLargeError,
    ProtocolVersionError,
    StorageTransportError,
    TransferError,
    UnsupportedAlgorithmError,
)
from storage_envelope.keys import DictKeyResolver, KeyEncryptionKey, KeyResolver, RsaKey, SymmetricKey
from storage_envelope.options import RequestOptions
from storage_envelope.queue import EncryptedQueueMessage, QueueEncryptionPolicy
from storage_envelope.streams import ByteCountingStream, LengthLimitingStream, RequestResult

__all__ = [
    # Constants
    "ENCRYPTION_PROTOCOL_V1",
    "EncryptionAlgorithm",
    # Metadata
    "EncryptionAgent",
    "EncryptionData",
    "WrappedKey",
    # Keys
    "DictKeyResolver",
    "KeyEncryptionKey",
    "KeyResolver",
    "RsaKey",
    "SymmetricKey",
    # Policies
    "BlobDecryptStream",
    "BlobEncryptionPolicy",
    "EncryptedQueueMessage",
    "QueueEncryptionPolicy",
    "RequestOptions",
    "adjust_range_for_decryption",
    # Streams
    "ByteCountingStream",
    "LengthLimitingStream",
    "RequestResult",
    # Exceptions
    "ConfigurationError",
    "CryptoError",
    "DecryptionError",
    "EncryptionDataNotPresentError",
    "EncryptionMetadataError",
    "EncryptionPolicyMissingError",
    "KeyAndResolverMissingError",
    "KeyMismatchError",
    "KeyMissingError",
    "KeyNotFoundError",
    "KeyResolutionError",
    "MessageDeserializationError",
    "MessageTooLargeError",
    "ProtocolVersionError",
    "StorageTransportError",
    "TransferError",
    "UnsupportedAlgorithmError",
]

__version__ = VERSION
