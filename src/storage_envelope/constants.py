"""
Protocol constants for client-side envelope encryption.

Values mirror what the storage service clients already write into blob
metadata and queue message bodies, so data stays interoperable.
"""

from enum import Enum
from typing import Final

VERSION: Final = "0.1.0"

# =============================================================================
# Envelope protocol
# =============================================================================

ENCRYPTION_PROTOCOL_V1: Final = "1.0"
"""The only EncryptionAgent protocol version this library can decrypt."""


class EncryptionAlgorithm(str, Enum):
    """Content encryption algorithms (closed set)."""

    AES_CBC_256 = "AES_CBC_256"


class BlobEncryptionMode(str, Enum):
    """How a blob's content was encrypted."""

    FULL_BLOB = "FullBlob"


AGENT_METADATA_KEY: Final = "EncryptionLibrary"
AGENT_METADATA_VALUE: Final = f"Python {VERSION}"

# Blob metadata entry holding the serialized EncryptionData
BLOB_ENCRYPTION_DATA_KEY: Final = "encryptiondata"

# =============================================================================
# AES-CBC-256
# =============================================================================

AES_BLOCK_SIZE: Final = 16
AES_IV_SIZE: Final = 16
CEK_SIZE: Final = 32  # AES-256

# =============================================================================
# Key wrapping algorithm names (JWA identifiers)
# =============================================================================

KEY_WRAP_A128KW: Final = "A128KW"
KEY_WRAP_A192KW: Final = "A192KW"
KEY_WRAP_A256KW: Final = "A256KW"
KEY_WRAP_RSA_OAEP: Final = "RSA-OAEP"
KEY_WRAP_RSA_OAEP_256: Final = "RSA-OAEP-256"

# =============================================================================
# Queue
# =============================================================================

QUEUE_MAX_MESSAGE_SIZE: Final = 64 * 1024  # 64 KiB after encryption + serialization

# =============================================================================
# HTTP transfer
# =============================================================================

HEADER_META_PREFIX: Final = "x-ms-meta-"
HEADER_BLOB_TYPE: Final = "x-ms-blob-type"
HEADER_RANGE: Final = "Range"
HEADER_CONTENT_RANGE: Final = "Content-Range"
HEADER_ETAG: Final = "ETag"
HEADER_IF_MATCH: Final = "If-Match"

BLOB_TYPE_BLOCK: Final = "BlockBlob"
BLOB_TYPE_PAGE: Final = "PageBlob"
PAGE_SIZE: Final = 512

DEFAULT_MAX_ATTEMPTS: Final = 3
DEFAULT_CHUNK_SIZE: Final = 64 * 1024

# Status codes worth another attempt (everything else fails immediately)
RETRYABLE_STATUS_CODES: Final = frozenset({408, 500, 502, 503, 504})
