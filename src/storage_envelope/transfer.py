"""
aiohttp blob client with transparent client-side encryption.

Uploads are encrypted before they leave the process; downloads (full or
ranged) are decrypted while the body streams in. A download that fails
mid-body with a transient error resumes from the last byte received and
keeps writing into the same decrypt stream, so cipher state carries over.

Usage:
    policy = BlobEncryptionPolicy(key=kek)
    options = RequestOptions(encryption_policy=policy)
    async with EncryptedBlobClient("https://account.blob.example/container", options) as client:
        await client.upload_blob("report.bin", data)
        out = io.BytesIO()
        await client.download_blob("report.bin", out, offset=1000, length=500)

Authentication is not handled here; pass a pre-signed base URL or an
aiohttp ``headers=`` / middleware that signs requests.
"""

from __future__ import annotations

import asyncio
import io
import shutil
import types
from typing import Any

import aiohttp
from typing_extensions import Self

from storage_envelope._logging import get_logger
from storage_envelope.blob import DecryptionRange, adjust_range_for_decryption, wrap_download_stream
from storage_envelope.constants import (
    BLOB_TYPE_BLOCK,
    BLOB_TYPE_PAGE,
    HEADER_BLOB_TYPE,
    HEADER_CONTENT_RANGE,
    HEADER_ETAG,
    HEADER_IF_MATCH,
    HEADER_RANGE,
    PAGE_SIZE,
    RETRYABLE_STATUS_CODES,
)
from storage_envelope.exceptions import DecryptionError, TransferError
from storage_envelope.headers import format_range, metadata_from_headers, metadata_to_headers, parse_content_range
from storage_envelope.options import RequestOptions
from storage_envelope.streaming import AesCbcTransform, CryptoStream
from storage_envelope.streams import ByteCountingStream, NonCloseableStream, RequestResult

__all__ = [
    "EncryptedBlobClient",
]

_logger = get_logger(__name__)

_TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class EncryptedBlobClient:
    """
    Blob upload/download over aiohttp with client-side envelope encryption.

    Args:
        base_url: Container URL; blob names are appended to it
        options: Encryption and retry settings
        **aiohttp_kwargs: Passed to aiohttp.ClientSession
    """

    def __init__(
        self,
        base_url: str,
        options: RequestOptions | None = None,
        **aiohttp_kwargs: Any,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.options = options or RequestOptions()
        self._aiohttp_kwargs = aiohttp_kwargs
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> Self:
        self._session = aiohttp.ClientSession(**self._aiohttp_kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")
        return self._session

    def blob_url(self, name: str) -> str:
        return f"{self.base_url}/{name.lstrip('/')}"

    # =========================================================================
    # Upload
    # =========================================================================

    async def upload_blob(
        self,
        name: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        page_blob: bool = False,
    ) -> RequestResult:
        """
        Encrypt (if a policy is set) and upload a blob.

        Args:
            name: Blob name
            data: Plaintext content
            metadata: Extra blob metadata; encryption metadata is added to a copy
            page_blob: Upload as a page blob (length must be a multiple of 512)

        Returns:
            RequestResult with egress byte count

        Raises:
            EncryptionPolicyMissingError: require_encryption set without a policy
            KeyMissingError: Policy has no key
            TransferError: Non-retryable status, or retries exhausted
        """
        session = self._require_session()
        self.options.assert_policy_if_required()
        if page_blob and len(data) % PAGE_SIZE:
            raise ValueError(f"Page blob length must be a multiple of {PAGE_SIZE}, got {len(data)}")

        metadata = dict(metadata or {})
        result = RequestResult()
        body = self._stage_upload(data, metadata, result, page_blob)

        headers = {HEADER_BLOB_TYPE: BLOB_TYPE_PAGE if page_blob else BLOB_TYPE_BLOCK}
        headers.update(metadata_to_headers(metadata))

        url = self.blob_url(name)
        max_attempts = self.options.max_attempts
        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                async with session.put(url, data=body, headers=headers) as resp:
                    result.status = resp.status
                    if resp.status < 300:
                        result.etag = resp.headers.get(HEADER_ETAG)
                        break
                    if resp.status in RETRYABLE_STATUS_CODES and attempt < max_attempts:
                        _logger.debug("Upload retry: url=%s status=%d attempt=%d", url, resp.status, attempt)
                        continue
                    raise TransferError(resp.status, resp.reason)
            except _TRANSIENT_ERRORS as e:
                if attempt >= max_attempts:
                    raise
                _logger.debug("Upload retry: url=%s error=%s attempt=%d", url, type(e).__name__, attempt)

        _logger.debug(
            "Blob uploaded: url=%s encrypted=%s egress=%d attempts=%d",
            url,
            self.options.encryption_policy is not None,
            result.egress_bytes,
            result.attempts,
        )
        return result

    def _stage_upload(
        self,
        data: bytes,
        metadata: dict[str, str],
        result: RequestResult,
        page_blob: bool,
    ) -> bytes:
        """Produce the request body, counting it as egress."""
        buffer = io.BytesIO()
        counted = ByteCountingStream(NonCloseableStream(buffer), result)
        policy = self.options.encryption_policy
        if policy is None:
            counted.write(data)
            return buffer.getvalue()

        transform = policy.create_encryption_context(metadata, no_padding=page_blob)
        try:
            with CryptoStream(counted, transform) as stream:
                stream.write(data)
        finally:
            transform.close()
        return buffer.getvalue()

    # =========================================================================
    # Download
    # =========================================================================

    async def download_blob(
        self,
        name: str,
        dest: Any,
        offset: int | None = None,
        length: int | None = None,
    ) -> RequestResult:
        """
        Download a blob (or a byte range of it) into ``dest``, decrypting on the fly.

        Args:
            name: Blob name
            dest: Writable binary stream receiving plaintext
            offset: First plaintext byte; None downloads the whole blob
            length: Plaintext bytes wanted; None means to the end

        Returns:
            RequestResult with ingress byte count and attempts made

        Raises:
            CryptoError: Subclasses for encryption failures (never retried)
            TransferError: Non-retryable status (412 if the blob changed while
                resuming), or retries exhausted
            aiohttp.ClientError: Transport failure on the last attempt
        """
        session = self._require_session()
        self.options.assert_policy_if_required()
        if length is not None and offset is None:
            offset = 0

        policy = self.options.encryption_policy
        decryption_range: DecryptionRange | None = None
        if offset is not None and policy is not None:
            decryption_range = adjust_range_for_decryption(offset, length)
            start, request_length = decryption_range.offset, decryption_range.length
        else:
            start, request_length = offset or 0, length
        end = start + request_length - 1 if request_length is not None else None

        url = self.blob_url(name)
        result = RequestResult()
        sink: Any = None
        transform: AesCbcTransform | None = None
        locked_etag: str | None = None
        received = 0

        max_attempts = self.options.max_attempts
        try:
            for attempt in range(1, max_attempts + 1):
                result.attempts = attempt
                headers: dict[str, str] = {}
                if offset is not None or received:
                    headers[HEADER_RANGE] = format_range(start + received, end)
                expected_status = 206 if headers else 200
                if locked_etag is not None:
                    # Resumed bytes must come from the blob version the decrypt chain was built for
                    headers[HEADER_IF_MATCH] = locked_etag

                try:
                    async with session.get(url, headers=headers) as resp:
                        result.status = resp.status
                        if resp.status != expected_status:
                            if resp.status in RETRYABLE_STATUS_CODES and attempt < max_attempts:
                                _logger.debug("Download retry: url=%s status=%d attempt=%d", url, resp.status, attempt)
                                continue
                            raise TransferError(resp.status, resp.reason)

                        if sink is None:
                            # Properties come from the first successful response only
                            locked_etag = resp.headers.get(HEADER_ETAG)
                            result.etag = locked_etag
                            sink, transform = self._open_sink(dest, resp, decryption_range)

                        async for chunk in resp.content.iter_chunked(self.options.chunk_size):
                            shutil.copyfileobj(ByteCountingStream(io.BytesIO(chunk), result), sink)
                            received += len(chunk)
                    break
                except _TRANSIENT_ERRORS as e:
                    if attempt >= max_attempts:
                        raise
                    _logger.debug(
                        "Download resume: url=%s error=%s received=%d attempt=%d",
                        url,
                        type(e).__name__,
                        received,
                        attempt,
                    )
        except BaseException:
            _abandon(sink, transform)
            raise

        _finish(sink, transform)
        _logger.debug(
            "Blob downloaded: url=%s range=%s ingress=%d attempts=%d",
            url,
            decryption_range,
            result.ingress_bytes,
            result.attempts,
        )
        return result

    def _open_sink(
        self,
        dest: Any,
        resp: aiohttp.ClientResponse,
        decryption_range: DecryptionRange | None,
    ) -> tuple[Any, AesCbcTransform | None]:
        """Wrap ``dest`` in the decrypting stream chain for this blob."""
        policy = self.options.encryption_policy
        if policy is None:
            return NonCloseableStream(dest), None

        metadata = metadata_from_headers(resp.headers)
        content_range = resp.headers.get(HEADER_CONTENT_RANGE)
        if content_range:
            _, _, blob_length = parse_content_range(content_range)
        else:
            blob_length = resp.content_length
        page_blob = resp.headers.get(HEADER_BLOB_TYPE) == BLOB_TYPE_PAGE

        return wrap_download_stream(
            dest,
            policy,
            metadata,
            require_encryption=self.options.require_encryption,
            blob_length=blob_length,
            page_blob=page_blob,
            decryption_range=decryption_range,
        )


def _finish(sink: Any, transform: AesCbcTransform | None) -> None:
    """Flush the last decrypted block and release the transform."""
    if sink is None:
        return
    try:
        sink.close()
    except ValueError as e:
        # Bad padding or a truncated final block
        raise DecryptionError("Cryptographic error while finalizing the download") from e
    finally:
        if transform is not None:
            transform.close()


def _abandon(sink: Any, transform: AesCbcTransform | None) -> None:
    """Release decryption state without flushing (download failed)."""
    try:
        if sink is not None:
            abort = getattr(sink, "abort", None)
            if abort is not None:
                abort()
            else:
                sink.close()
    finally:
        if transform is not None:
            transform.close()
