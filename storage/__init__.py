"""Storage module for encrypted file management."""

from .decryption import DecryptedHandle, DecryptionPipeline
from .encryption import EncryptionPipeline
from .file_keys import FileKeyManager, KeySource, ParentKeySource, PrivateKeySource
from .file_manager import FileManager
from .models import (
    DecryptedCacheEntry,
    DecryptedFile,
    EncryptedUpload,
    FileNode,
    LinkShare,
    NodeInfo,
    ShareGrant,
)
from .records import IContentSource, IContentStore, IRecordStore, JSONRecordStore, LocalContentStore
from .sharing import LinkKeySource, ShareManager

__all__ = [
    "DecryptedHandle",
    "DecryptionPipeline",
    "EncryptionPipeline",
    "FileKeyManager",
    "KeySource",
    "ParentKeySource",
    "PrivateKeySource",
    "FileManager",
    "DecryptedCacheEntry",
    "DecryptedFile",
    "EncryptedUpload",
    "FileNode",
    "LinkShare",
    "NodeInfo",
    "ShareGrant",
    "IContentSource",
    "IContentStore",
    "IRecordStore",
    "JSONRecordStore",
    "LocalContentStore",
    "LinkKeySource",
    "ShareManager",
]
