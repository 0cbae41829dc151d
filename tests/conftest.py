"""Shared test fixtures for storage_envelope tests."""

import asyncio
import io
import logging
import secrets
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from storage_envelope.blob import BlobEncryptionPolicy, adjust_range_for_decryption, wrap_download_stream
from storage_envelope.constants import (
    BLOB_TYPE_BLOCK,
    HEADER_BLOB_TYPE,
    HEADER_CONTENT_RANGE,
    HEADER_ETAG,
    HEADER_IF_MATCH,
    HEADER_RANGE,
)
from storage_envelope.headers import metadata_from_headers, metadata_to_headers
from storage_envelope.keys import RsaKey, SymmetricKey
from storage_envelope.queue import QueueEncryptionPolicy

# Enable storage_envelope debug logging during tests
logging.getLogger("storage_envelope").setLevel(logging.DEBUG)
logging.getLogger("storage_envelope").addHandler(logging.StreamHandler())


# === Key Fixtures ===


@pytest.fixture
def symmetric_key() -> SymmetricKey:
    """Fresh 256-bit AES key-wrap key."""
    return SymmetricKey.generate("local:key1")


@pytest.fixture
def other_key() -> SymmetricKey:
    """A second key with a different kid."""
    return SymmetricKey.generate("local:key2")


@pytest.fixture(scope="session")
def rsa_key() -> RsaKey:
    """RSA key pair (session-scoped: generation is slow)."""
    return RsaKey.generate("local:rsa1")


# === Policy Fixtures ===


@pytest.fixture
def queue_policy(symmetric_key: SymmetricKey) -> QueueEncryptionPolicy:
    return QueueEncryptionPolicy(key=symmetric_key)


@pytest.fixture
def blob_policy(symmetric_key: SymmetricKey) -> BlobEncryptionPolicy:
    return BlobEncryptionPolicy(key=symmetric_key)


@pytest.fixture
def encrypted_blob(blob_policy: BlobEncryptionPolicy) -> tuple[bytes, bytes, dict[str, str]]:
    """(plaintext, ciphertext, metadata) for a 200-byte blob."""
    plaintext = secrets.token_bytes(200)
    metadata: dict[str, str] = {}
    ciphertext = blob_policy.encrypt_blob(plaintext, metadata)
    return plaintext, ciphertext, metadata


# === Helpers ===


def decrypt_range(
    policy: BlobEncryptionPolicy,
    ciphertext: bytes,
    metadata: dict[str, str],
    offset: int,
    length: int | None,
    chunk_size: int | None = None,
) -> bytes:
    """Simulate a ranged download: slice the adjusted range, stream it through the decrypt chain."""
    decryption_range = adjust_range_for_decryption(offset, length)
    out = io.BytesIO()
    stream, transform = wrap_download_stream(
        out,
        policy,
        metadata,
        blob_length=len(ciphertext),
        decryption_range=decryption_range,
    )
    assert transform is None  # BlobDecryptStream owns its transform

    if decryption_range.length is None:
        body = ciphertext[decryption_range.offset :]
    else:
        body = ciphertext[decryption_range.offset : decryption_range.offset + decryption_range.length]

    step = chunk_size or max(len(body), 1)
    for i in range(0, len(body), step):
        stream.write(body[i : i + step])
    stream.close()
    return out.getvalue()


# === Blob Service Fixtures ===


@dataclass
class StoredBlob:
    data: bytes
    metadata: dict[str, str]
    blob_type: str
    etag: str


class BlobStore:
    """In-memory blob container served over aiohttp.

    ``faults`` is a queue consumed one entry per request: "503" answers with
    Service Unavailable, "truncate" sends half the body then drops the connection.
    ``replace_on_truncate`` maps a blob name to another blob copied over it
    (with a new ETag) when a truncate fault hits it. GETs carrying ``If-Match``
    for a stale ETag get 412.
    """

    def __init__(self) -> None:
        self.blobs: dict[str, StoredBlob] = {}
        self.faults: list[str] = []
        self.replace_on_truncate: dict[str, str] = {}
        self.requests: list[tuple[str, str | None]] = []
        self.if_match: list[str | None] = []
        self._etag = 0

    def _next_fault(self) -> str | None:
        return self.faults.pop(0) if self.faults else None

    def _next_etag(self) -> str:
        self._etag += 1
        return f'"{self._etag}"'

    async def handle_put(self, request: web.Request) -> web.StreamResponse:
        self.requests.append((request.method, request.headers.get(HEADER_RANGE)))
        body = await request.read()
        if self._next_fault() == "503":
            return web.Response(status=503)

        name = request.match_info["name"]
        blob = StoredBlob(
            data=body,
            metadata=metadata_from_headers(request.headers),
            blob_type=request.headers.get(HEADER_BLOB_TYPE, BLOB_TYPE_BLOCK),
            etag=self._next_etag(),
        )
        self.blobs[name] = blob
        return web.Response(status=201, headers={HEADER_ETAG: blob.etag})

    async def handle_get(self, request: web.Request) -> web.StreamResponse:
        range_header = request.headers.get(HEADER_RANGE)
        if_match = request.headers.get(HEADER_IF_MATCH)
        self.requests.append((request.method, range_header))
        self.if_match.append(if_match)
        fault = self._next_fault()
        if fault == "503":
            return web.Response(status=503)

        name = request.match_info["name"]
        if name not in self.blobs:
            return web.Response(status=404)
        blob = self.blobs[name]
        if if_match is not None and if_match != blob.etag:
            return web.Response(status=412)
        data = blob.data

        headers = {HEADER_BLOB_TYPE: blob.blob_type, HEADER_ETAG: blob.etag}
        headers.update(metadata_to_headers(blob.metadata))
        status = 200
        body = data
        if range_header:
            start_text, _, end_text = range_header.removeprefix("bytes=").partition("-")
            start = int(start_text)
            end = min(int(end_text), len(data) - 1) if end_text else len(data) - 1
            body = data[start : end + 1]
            status = 206
            headers[HEADER_CONTENT_RANGE] = f"bytes {start}-{end}/{len(data)}"

        if fault == "truncate":
            resp = web.StreamResponse(status=status, headers=headers)
            resp.content_length = len(body)
            await resp.prepare(request)
            await resp.write(body[: len(body) // 2])
            if name in self.replace_on_truncate:
                source = self.blobs[self.replace_on_truncate[name]]
                self.blobs[name] = replace(source, etag=self._next_etag())
            # Let the client drain the first half before the connection drops
            await asyncio.sleep(0.1)
            assert request.transport is not None
            request.transport.close()
            return resp

        return web.Response(status=status, body=body, headers=headers)


@pytest_asyncio.fixture
async def blob_store() -> AsyncIterator[tuple[BlobStore, str]]:
    """Start an aiohttp blob service; yields (store, container URL)."""
    store = BlobStore()
    app = web.Application()
    app.router.add_put("/container/{name}", store.handle_put)
    app.router.add_get("/container/{name}", store.handle_get)

    server = TestServer(app)
    await server.start_server()
    try:
        yield store, str(server.make_url("/container"))
    finally:
        await server.close()
