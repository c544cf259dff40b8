"""
File Key Manager

Every node (file or directory) gets its own random AES-256 key. That key
is stored wrapped:
- for a root node, with RSA-OAEP under the owner's public key
- for a child node, sealed with AES-GCM under its parent directory's key
- for a grantee, with RSA-OAEP under the grantee's public key
- for a link, sealed under a key derived from the link secret

The manager is stateless. Unwrap failures (ValueError from RSA, InvalidTag
from AES-GCM) propagate unchanged; the decrypt pipeline translates them.
"""

from abc import ABC, abstractmethod
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from cipher import primitives
from cipher.primitives import b64d, b64e

from .models import FileNode

_PARENT_WRAP_AAD = b"file-key"


class FileKeyManager:
    @staticmethod
    def create_file_key() -> bytes:
        return primitives.random_bytes(primitives.KEY_SIZE)

    @staticmethod
    def wrap_for_owner(file_key: bytes, owner_public_key: rsa.RSAPublicKey) -> str:
        """Wrap a node key for a public key (owner or grantee)."""
        return b64e(primitives.asym_encrypt(owner_public_key, file_key))

    @staticmethod
    def unwrap(encrypted_key: str, private_key: rsa.RSAPrivateKey) -> bytes:
        file_key = primitives.asym_decrypt(private_key, b64d(encrypted_key))
        if len(file_key) != primitives.KEY_SIZE:
            raise ValueError("unwrapped key has the wrong length")
        return file_key

    @staticmethod
    def wrap_symmetric(file_key: bytes, wrapping_key: bytes, aad: bytes = _PARENT_WRAP_AAD) -> str:
        return b64e(primitives.seal(wrapping_key, file_key, aad))

    @staticmethod
    def unwrap_symmetric(encrypted_key: str, wrapping_key: bytes, aad: bytes = _PARENT_WRAP_AAD) -> bytes:
        return primitives.open_sealed(wrapping_key, b64d(encrypted_key), aad)

    def wrap_for_parent(self, file_key: bytes, parent_key: bytes) -> str:
        return self.wrap_symmetric(file_key, parent_key)

    def unwrap_with_parent(self, encrypted_key: str, parent_key: bytes) -> bytes:
        return self.unwrap_symmetric(encrypted_key, parent_key)


class KeySource(ABC):
    """Whatever key material the caller holds that can open a node's key."""

    @abstractmethod
    def unwrap(self, node: FileNode, file_keys: FileKeyManager) -> bytes: ...


class PrivateKeySource(KeySource):
    """
    The owner's private key (using the node's own wrapped key) or a
    grantee's private key (using the key from their ShareGrant).
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, encrypted_key: Optional[str] = None):
        self.private_key = private_key
        self.encrypted_key = encrypted_key

    def unwrap(self, node: FileNode, file_keys: FileKeyManager) -> bytes:
        return file_keys.unwrap(self.encrypted_key or node.encrypted_key, self.private_key)


class ParentKeySource(KeySource):
    """The already unwrapped key of the node's parent directory."""

    def __init__(self, parent_key: bytes):
        self.parent_key = parent_key

    def unwrap(self, node: FileNode, file_keys: FileKeyManager) -> bytes:
        return file_keys.unwrap_with_parent(node.encrypted_key, self.parent_key)
