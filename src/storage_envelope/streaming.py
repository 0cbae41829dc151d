"""
AES-CBC transforms and write-mode crypto streams.

A transform owns the cipher context (and key schedule). A CryptoStream pushes
written bytes through a transform into an inner stream. The two have separate
lifetimes: closing a CryptoStream finalizes the transform (flushing the last
block) but does not release it, so whoever created the transform must call
``AesCbcTransform.close()`` as well.

Usage:
    transform = AesCbcTransform.decryptor(cek, iv, padding=True)
    try:
        with CryptoStream(dest, transform) as stream:
            for chunk in chunks:
                stream.write(chunk)
    finally:
        transform.close()
"""

from __future__ import annotations

import io
from typing import Any

from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from storage_envelope.constants import AES_BLOCK_SIZE, AES_IV_SIZE

__all__ = [
    "AesCbcTransform",
    "CryptoStream",
]

_PKCS7_BITS = AES_BLOCK_SIZE * 8


class AesCbcTransform:
    """One-shot AES-CBC encryptor or decryptor with optional PKCS7 padding.

    ``update`` may be called any number of times, ``finalize`` exactly once.
    """

    __slots__ = ("_context", "_finalized", "_padder", "encrypting", "padding")

    def __init__(self, key: bytes, iv: bytes, *, encrypt: bool, padding: bool = True) -> None:
        if len(iv) != AES_IV_SIZE:
            raise ValueError(f"Invalid IV length: {len(iv)} bytes (expected {AES_IV_SIZE})")
        cipher = Cipher(algorithms.AES(key), modes.CBC(bytes(iv)))
        self.encrypting = encrypt
        self.padding = padding
        self._context: Any = cipher.encryptor() if encrypt else cipher.decryptor()
        self._padder: Any = None
        if padding:
            pkcs7 = sym_padding.PKCS7(_PKCS7_BITS)
            self._padder = pkcs7.padder() if encrypt else pkcs7.unpadder()
        self._finalized = False

    @classmethod
    def encryptor(cls, key: bytes, iv: bytes, *, padding: bool = True) -> AesCbcTransform:
        return cls(key, iv, encrypt=True, padding=padding)

    @classmethod
    def decryptor(cls, key: bytes, iv: bytes, *, padding: bool = True) -> AesCbcTransform:
        return cls(key, iv, encrypt=False, padding=padding)

    @property
    def closed(self) -> bool:
        return self._context is None

    def update(self, data: bytes | memoryview) -> bytes:
        """Transform ``data``; may return fewer bytes than given (buffered block)."""
        self._check_usable()
        if self._padder is None:
            return self._context.update(data)
        if self.encrypting:
            return self._context.update(self._padder.update(data))
        return self._padder.update(self._context.update(data))

    def finalize(self) -> bytes:
        """Flush the final block.

        Raises:
            ValueError: If input was not block aligned (no padding) or padding is invalid
        """
        self._check_usable()
        self._finalized = True
        if self._padder is None:
            return self._context.finalize()
        if self.encrypting:
            tail = self._context.update(self._padder.finalize())
            return tail + self._context.finalize()
        tail = self._padder.update(self._context.finalize())
        return tail + self._padder.finalize()

    def close(self) -> None:
        """Release the cipher context. Safe to call repeatedly."""
        self._context = None
        self._padder = None

    def _check_usable(self) -> None:
        if self._context is None:
            raise ValueError("Transform has been released")
        if self._finalized:
            raise ValueError("Transform has already been finalized")

    def transform_final_block(self, data: bytes) -> bytes:
        """Transform a complete buffer in one call."""
        return self.update(data) + self.finalize()


class CryptoStream(io.RawIOBase):
    """Write-only stream that transforms bytes before writing them to ``inner``.

    Closing the stream finalizes the transform, writes the final block, and
    closes ``inner``. Wrap ``inner`` in a NonCloseableStream to keep it open.
    """

    def __init__(self, inner: io.IOBase | Any, transform: AesCbcTransform) -> None:
        super().__init__()
        self._inner = inner
        self.transform = transform

    def writable(self) -> bool:
        return True

    def write(self, b: Any) -> int:  # type: ignore[override]
        if self.closed:
            raise ValueError("write to closed CryptoStream")
        data = memoryview(b).cast("B")
        out = self.transform.update(data)
        if out:
            self._inner.write(out)
        return len(data)

    def flush(self) -> None:
        if not self.closed:
            self._inner.flush()

    def abort(self) -> None:
        """Close without finalizing the transform (abandoned transfer)."""
        if not self.closed:
            super().close()

    def __del__(self) -> None:
        # IOBase.__del__ would close, finalizing a partial block into inner
        self.abort()

    def close(self) -> None:
        if self.closed:
            return
        try:
            final = self.transform.finalize()
            if final:
                self._inner.write(final)
            self._inner.flush()
        finally:
            super().close()
            self._inner.close()
