"""
Key-encryption keys and key resolvers.

A key-encryption key (KEK) wraps the per-operation content encryption key
(CEK). The wrapped CEK travels with the data; the KEK never does.

The wrap/unwrap contract is synchronous. Every key type shipped here works
locally, so nothing ever waits on I/O. A network-backed key (e.g. a remote
key vault) must not block on an event loop inside ``wrap_key``/``unwrap_key``;
it needs an async variant of the policies instead.

Usage:
    kek = SymmetricKey.generate("local:key1")
    resolver = DictKeyResolver([kek, old_kek])
    policy = QueueEncryptionPolicy(key=kek, key_resolver=resolver)
"""

from __future__ import annotations

import secrets
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.keywrap import aes_key_unwrap, aes_key_wrap

from storage_envelope._logging import get_logger
from storage_envelope.constants import (
    KEY_WRAP_A128KW,
    KEY_WRAP_A192KW,
    KEY_WRAP_A256KW,
    KEY_WRAP_RSA_OAEP,
    KEY_WRAP_RSA_OAEP_256,
)

__all__ = [
    "DictKeyResolver",
    "KeyEncryptionKey",
    "KeyResolver",
    "RsaKey",
    "SymmetricKey",
]

_logger = get_logger(__name__)

_AES_KW_BY_SIZE = {
    16: KEY_WRAP_A128KW,
    24: KEY_WRAP_A192KW,
    32: KEY_WRAP_A256KW,
}


@runtime_checkable
class KeyEncryptionKey(Protocol):
    """Wraps and unwraps content encryption keys."""

    @property
    def kid(self) -> str:
        """Key identifier stored alongside the wrapped key."""
        ...

    def wrap_key(self, key: bytes, algorithm: str | None = None) -> tuple[bytes, str]:
        """Wrap ``key``.

        Returns:
            Tuple of (wrapped key bytes, algorithm name used)
        """
        ...

    def unwrap_key(self, encrypted_key: bytes, algorithm: str) -> bytes:
        """Unwrap a key previously produced by wrap_key."""
        ...


@runtime_checkable
class KeyResolver(Protocol):
    """Maps a key identifier to the key able to unwrap it."""

    def resolve_key(self, kid: str) -> KeyEncryptionKey | None:
        """Return the key for ``kid``, or None when unknown."""
        ...


class SymmetricKey:
    """AES key wrap (RFC 3394) with a local symmetric key."""

    __slots__ = ("_key", "_kid")

    def __init__(self, kid: str, key: bytes) -> None:
        if len(key) not in _AES_KW_BY_SIZE:
            raise ValueError(f"Invalid symmetric key size: {len(key)} bytes (expected 16, 24 or 32)")
        self._kid = kid
        self._key = bytes(key)

    @classmethod
    def generate(cls, kid: str, size: int = 32) -> SymmetricKey:
        """Create a key with fresh random material."""
        return cls(kid, secrets.token_bytes(size))

    @property
    def kid(self) -> str:
        return self._kid

    @property
    def default_algorithm(self) -> str:
        return _AES_KW_BY_SIZE[len(self._key)]

    def wrap_key(self, key: bytes, algorithm: str | None = None) -> tuple[bytes, str]:
        algorithm = algorithm or self.default_algorithm
        self._check_algorithm(algorithm)
        return aes_key_wrap(self._key, key), algorithm

    def unwrap_key(self, encrypted_key: bytes, algorithm: str) -> bytes:
        self._check_algorithm(algorithm)
        return aes_key_unwrap(self._key, encrypted_key)

    def _check_algorithm(self, algorithm: str) -> None:
        if algorithm != self.default_algorithm:
            raise ValueError(f"Unsupported key wrap algorithm for {len(self._key) * 8}-bit key: {algorithm!r}")

    def __repr__(self) -> str:
        return f"SymmetricKey(kid={self._kid!r})"


class RsaKey:
    """RSA-OAEP key wrap.

    Wrapping only needs the public half; unwrapping needs the private key.
    """

    __slots__ = ("_kid", "_private_key", "_public_key")

    def __init__(
        self,
        kid: str,
        private_key: rsa.RSAPrivateKey | None = None,
        public_key: rsa.RSAPublicKey | None = None,
    ) -> None:
        if private_key is None and public_key is None:
            raise ValueError("RsaKey needs a private or a public key")
        self._kid = kid
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key()  # type: ignore[union-attr]

    @classmethod
    def generate(cls, kid: str, key_size: int = 2048) -> RsaKey:
        """Create a key pair with fresh random material."""
        return cls(kid, rsa.generate_private_key(public_exponent=65537, key_size=key_size))

    @property
    def kid(self) -> str:
        return self._kid

    def wrap_key(self, key: bytes, algorithm: str | None = None) -> tuple[bytes, str]:
        algorithm = algorithm or KEY_WRAP_RSA_OAEP
        return self._public_key.encrypt(key, _oaep(algorithm)), algorithm

    def unwrap_key(self, encrypted_key: bytes, algorithm: str) -> bytes:
        if self._private_key is None:
            raise ValueError(f"RsaKey {self._kid!r} has no private key and cannot unwrap")
        return self._private_key.decrypt(encrypted_key, _oaep(algorithm))

    def __repr__(self) -> str:
        return f"RsaKey(kid={self._kid!r})"


def _oaep(algorithm: str) -> padding.OAEP:
    if algorithm == KEY_WRAP_RSA_OAEP:
        digest: hashes.HashAlgorithm = hashes.SHA1()  # noqa: S303
    elif algorithm == KEY_WRAP_RSA_OAEP_256:
        digest = hashes.SHA256()
    else:
        raise ValueError(f"Unsupported RSA key wrap algorithm: {algorithm!r}")
    return padding.OAEP(mgf=padding.MGF1(algorithm=digest), algorithm=digest, label=None)


class DictKeyResolver:
    """In-memory key resolver.

    Holding both the current and retired keys lets data wrapped under an old
    key keep decrypting after rotation.
    """

    def __init__(self, keys: Iterable[KeyEncryptionKey] = ()) -> None:
        self._keys: dict[str, KeyEncryptionKey] = {}
        for key in keys:
            self.add(key)

    def add(self, key: KeyEncryptionKey) -> None:
        self._keys[key.kid] = key

    def resolve_key(self, kid: str) -> KeyEncryptionKey | None:
        key = self._keys.get(kid)
        if key is None:
            _logger.debug("Key resolver miss: kid=%s known=%d", kid, len(self._keys))
        return key

    def __len__(self) -> int:
        return len(self._keys)
