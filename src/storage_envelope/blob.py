"""
Blob encryption policy and retry-safe streaming decryption.

Blobs are encrypted as one AES-CBC-256 stream whose IV and wrapped CEK live
in the ``encryptiondata`` metadata entry. A ranged read must fetch whole AES
blocks, plus the block before the range (its ciphertext is the IV for the
first block we decrypt), so the downloaded plaintext is wider than what the
caller asked for. BlobDecryptStream strips the IV block, decrypts, and
trims the result back to the requested window.

Pipeline for a ranged read:

    HTTP body -> BlobDecryptStream -> CryptoStream -> LengthLimitingStream -> user stream
                 (buffers IV)         (AES-CBC)       (drops block slop)
"""

from __future__ import annotations

import enum
import io
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any

from storage_envelope._logging import get_logger
from storage_envelope.constants import (
    AES_BLOCK_SIZE,
    AES_IV_SIZE,
    BLOB_ENCRYPTION_DATA_KEY,
    BlobEncryptionMode,
)
from storage_envelope.envelope import (
    EncryptionData,
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
)
from storage_envelope.keys import KeyEncryptionKey, KeyResolver
from storage_envelope.streaming import AesCbcTransform, CryptoStream
from storage_envelope.streams import LengthLimitingStream, NonCloseableStream

__all__ = [
    "BlobDecryptStream",
    "BlobEncryptionPolicy",
    "DecryptState",
    "DecryptionRange",
    "adjust_range_for_decryption",
    "wrap_download_stream",
]

_logger = get_logger(__name__)


class BlobEncryptionPolicy:
    """
    Encrypt blob uploads and decrypt blob downloads.

    Args:
        key: Key-encryption key; required to encrypt, optional to decrypt
        key_resolver: kid -> key lookup; wins over ``key`` when decrypting
    """

    def __init__(
        self,
        key: KeyEncryptionKey | None = None,
        key_resolver: KeyResolver | None = None,
    ) -> None:
        self.key = key
        self.key_resolver = key_resolver
        self.encryption_mode = BlobEncryptionMode.FULL_BLOB

    def create_encryption_context(
        self,
        metadata: MutableMapping[str, str],
        no_padding: bool = False,
    ) -> AesCbcTransform:
        """
        Start encrypting a new blob.

        Generates a fresh CEK and IV and stores the serialized EncryptionData
        under ``metadata["encryptiondata"]``.

        Args:
            metadata: Blob metadata, updated in place
            no_padding: Skip PKCS7 padding (page blobs are already aligned)

        Returns:
            Encrypting transform; the caller owns it and must close it

        Raises:
            KeyMissingError: If no key is configured
        """
        if metadata is None:
            raise ValueError("metadata is required")
        if self.key is None:
            raise KeyMissingError()

        iv, cek = generate_cek()
        wrapped_cek, wrap_algorithm = wrap_content_key(self.key, cek)
        encryption_data = build_encryption_data(
            iv,
            wrapped_cek,
            self.key.kid,
            wrap_algorithm,
            encryption_mode=self.encryption_mode.value,
        )
        metadata[BLOB_ENCRYPTION_DATA_KEY] = encryption_data.to_json()
        _logger.debug("Blob encryption context created: kid=%s no_padding=%s", self.key.kid, no_padding)
        return AesCbcTransform.encryptor(cek, iv, padding=not no_padding)

    def encrypt_blob(self, data: bytes, metadata: MutableMapping[str, str]) -> bytes:
        """Encrypt a whole in-memory blob (PKCS7 padded)."""
        transform = self.create_encryption_context(metadata)
        try:
            return transform.transform_final_block(data)
        finally:
            transform.close()

    @staticmethod
    def encrypted_length(length: int, no_padding: bool = False) -> int:
        """Ciphertext length for ``length`` plaintext bytes (AES_CBC_256 only)."""
        if no_padding:
            return length
        return length + (AES_BLOCK_SIZE - length % AES_BLOCK_SIZE)

    def decrypt_blob(
        self,
        user_stream: Any,
        metadata: Mapping[str, str],
        require_encryption: bool | None,
        iv: bytes | None = None,
        no_padding: bool = False,
    ) -> tuple[Any, AesCbcTransform | None]:
        """
        Wrap ``user_stream`` in a decrypting CryptoStream.

        Args:
            user_stream: Where plaintext goes
            metadata: Blob metadata (may hold ``encryptiondata``)
            require_encryption: Fail if the blob is not encrypted
            iv: IV override; defaults to the IV recorded in metadata
            no_padding: Keep PKCS7 padding (range does not reach the last block)

        Returns:
            Tuple of (stream to write ciphertext into, transform or None).
            Unencrypted blobs return ``(user_stream, None)``.

        Raises:
            EncryptionDataNotPresentError: Encryption required but absent
            EncryptionMetadataError: Metadata JSON is malformed
            CryptoError: Subclasses for protocol, key and algorithm failures
            DecryptionError: For any other failure (original kept as __cause__)
        """
        if metadata is None:
            raise ValueError("metadata is required")

        encryption_data_text = metadata.get(BLOB_ENCRYPTION_DATA_KEY)
        if encryption_data_text is None:
            if require_encryption:
                raise EncryptionDataNotPresentError()
            return user_stream, None

        try:
            encryption_data = EncryptionData.from_json(encryption_data_text)
            cek = unwrap_content_key(encryption_data, self.key, self.key_resolver)
            transform = create_transform(encryption_data, cek, iv=iv, padding=not no_padding)
        except CryptoError:
            raise
        except Exception as e:
            _logger.debug("Blob decryption setup failed: error_type=%s", type(e).__name__)
            raise DecryptionError(
                "Decryption logic threw error. Check the inner exception for more details."
            ) from e

        return CryptoStream(user_stream, transform), transform


@dataclass(frozen=True)
class DecryptionRange:
    """Ciphertext range to request for a plaintext range.

    Example: offset=39, length=54 (plaintext bytes 39..92) becomes
    offset=16, length=80 (ciphertext bytes 16..95): blocks 32..95 hold the
    data, block 16..31 is the IV, and the first 7 decrypted bytes are dropped.
    """

    offset: int
    length: int | None
    discard_first: int
    end_offset: int | None
    buffer_iv: bool
    user_length: int | None


def adjust_range_for_decryption(offset: int, length: int | None) -> DecryptionRange:
    """
    Widen a plaintext byte range to whole AES blocks.

    Args:
        offset: First plaintext byte wanted
        length: Number of bytes wanted, or None for "to the end"

    Returns:
        DecryptionRange describing the ciphertext request
    """
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")
    if length is not None and length <= 0:
        raise ValueError(f"length must be > 0, got {length}")

    end_offset: int | None = None
    if length is not None:
        end_offset = offset + length - 1
        # Round the end up to the last byte of its block
        if (end_offset + 1) % AES_BLOCK_SIZE != 0:
            end_offset += AES_BLOCK_SIZE - (end_offset + 1) % AES_BLOCK_SIZE

    discard_first = offset % AES_BLOCK_SIZE
    aligned = offset - discard_first

    # Offsets past the first block need the previous block as IV
    buffer_iv = False
    if aligned > AES_BLOCK_SIZE - 1:
        aligned -= AES_BLOCK_SIZE
        buffer_iv = True

    adjusted_length = end_offset - aligned + 1 if end_offset is not None else None
    return DecryptionRange(
        offset=aligned,
        length=adjusted_length,
        discard_first=discard_first,
        end_offset=end_offset,
        buffer_iv=buffer_iv,
        user_length=length,
    )


class DecryptState(enum.Enum):
    """Lifecycle of a BlobDecryptStream."""

    BUFFERING_IV = "buffering_iv"
    PENDING = "pending"  # IV known, cipher stream not built yet
    ACTIVE = "active"
    CLOSED = "closed"


class BlobDecryptStream(io.RawIOBase):
    """
    Write-only stream decrypting a ranged blob download into ``user_stream``.

    The cipher stream is built once, on the first write after the IV is
    known, and reused for the life of this object. A retried download keeps
    writing into the same instance from where the last attempt stopped;
    rebuilding the cipher stream would restart CBC with the wrong IV and
    splice two decryption runs into the output.

    Args:
        user_stream: Destination for plaintext
        metadata: Blob metadata holding ``encryptiondata``
        user_provided_length: Plaintext bytes wanted, None for "to the end"
        discard_first: Leading decrypted bytes to drop (offset % 16)
        buffer_iv: Take the IV from the first 16 bytes written
        no_padding: Do not strip PKCS7 padding (range ends before the last block)
        policy: Policy holding the key / resolver
        require_encryption: Fail if the blob is not encrypted
    """

    def __init__(
        self,
        user_stream: Any,
        metadata: Mapping[str, str],
        user_provided_length: int | None,
        discard_first: int,
        buffer_iv: bool,
        no_padding: bool,
        policy: BlobEncryptionPolicy,
        require_encryption: bool | None = None,
    ) -> None:
        super().__init__()
        self._user_stream = user_stream
        self._metadata = metadata
        self._user_provided_length = user_provided_length
        self._discard_first = discard_first
        self._buffer_iv = buffer_iv
        self._no_padding = no_padding
        self._policy = policy
        self._require_encryption = require_encryption

        self._iv = bytearray(AES_IV_SIZE)
        self._position = 0
        self._crypto_stream: Any = None
        self._transform: AesCbcTransform | None = None
        self._state = DecryptState.BUFFERING_IV if buffer_iv else DecryptState.PENDING

    @property
    def state(self) -> DecryptState:
        return self._state

    @property
    def cipher_stream_created(self) -> bool:
        return self._crypto_stream is not None

    @property
    def transform(self) -> AesCbcTransform | None:
        return self._transform

    @property
    def iv(self) -> bytes:
        return bytes(self._iv)

    def writable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def write(self, b: Any) -> int:  # type: ignore[override]
        if self._state is DecryptState.CLOSED:
            raise ValueError("write to closed BlobDecryptStream")

        data = memoryview(b).cast("B")
        offset = 0
        count = len(data)

        if self._state is DecryptState.BUFFERING_IV:
            to_copy = min(AES_IV_SIZE - self._position, count)
            self._iv[self._position : self._position + to_copy] = data[:to_copy]
            self._position += to_copy
            offset += to_copy
            count -= to_copy
            if self._position == AES_IV_SIZE:
                self._state = DecryptState.PENDING

        if self._state is DecryptState.PENDING:
            self._create_crypto_stream()

        if count > 0 and self._state is DecryptState.ACTIVE:
            self._crypto_stream.write(data[offset : offset + count])
            self._position += count

        return len(data)

    def _create_crypto_stream(self) -> None:
        # Only reachable once: the state leaves PENDING below
        limiter = LengthLimitingStream(self._user_stream, self._discard_first, self._user_provided_length)
        self._crypto_stream, self._transform = self._policy.decrypt_blob(
            limiter,
            self._metadata,
            self._require_encryption,
            iv=bytes(self._iv) if self._buffer_iv else None,
            no_padding=self._no_padding,
        )
        self._state = DecryptState.ACTIVE
        _logger.debug(
            "Blob decrypt stream active: discard_first=%d length=%s buffer_iv=%s no_padding=%s",
            self._discard_first,
            self._user_provided_length,
            self._buffer_iv,
            self._no_padding,
        )

    def flush(self) -> None:
        if self._state is not DecryptState.CLOSED:
            self._user_stream.flush()

    def abort(self) -> None:
        """Release the transform without flushing the final block."""
        if self._state is DecryptState.CLOSED:
            return
        self._state = DecryptState.CLOSED
        try:
            if isinstance(self._crypto_stream, CryptoStream):
                self._crypto_stream.abort()
        finally:
            self._release_transform()
            super().close()

    def __del__(self) -> None:
        # An unclosed stream is an abandoned download; never flush or close the user stream
        self.abort()

    def close(self) -> None:
        """Flush the final decrypted block, then release the transform."""
        if self._state is DecryptState.CLOSED:
            return
        self._state = DecryptState.CLOSED
        try:
            if self._crypto_stream is not None:
                self._crypto_stream.close()
        finally:
            self._release_transform()
            super().close()

    def _release_transform(self) -> None:
        if self._transform is not None:
            self._transform.close()


def wrap_download_stream(
    user_stream: Any,
    policy: BlobEncryptionPolicy,
    metadata: Mapping[str, str],
    *,
    require_encryption: bool | None = None,
    blob_length: int | None = None,
    page_blob: bool = False,
    decryption_range: DecryptionRange | None = None,
) -> tuple[Any, AesCbcTransform | None]:
    """
    Build the decrypting destination for a blob download.

    Full downloads get a CryptoStream over a NonCloseableStream (closing it
    flushes the last block without closing the user's stream). Ranged
    downloads get a BlobDecryptStream, which owns its transform.

    Args:
        user_stream: Destination for plaintext
        policy: Blob encryption policy
        metadata: Blob metadata from the first response
        require_encryption: Fail if the blob is not encrypted
        blob_length: Total ciphertext length of the blob
        page_blob: Page blobs are never padded
        decryption_range: Adjusted range for ranged reads

    Returns:
        Tuple of (stream to write ciphertext into, transform the caller must
        release or None)
    """
    if decryption_range is None:
        return policy.decrypt_blob(
            NonCloseableStream(user_stream),
            metadata,
            require_encryption,
            no_padding=page_blob,
        )

    # Only the last block carries padding
    no_padding = page_blob or (
        decryption_range.end_offset is not None
        and blob_length is not None
        and decryption_range.end_offset < blob_length - AES_BLOCK_SIZE
    )
    stream = BlobDecryptStream(
        user_stream,
        metadata,
        decryption_range.user_length,
        decryption_range.discard_first,
        decryption_range.buffer_iv,
        no_padding,
        policy,
        require_encryption,
    )
    return stream, None
