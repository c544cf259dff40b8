from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid


def _now_iso() -> str:
    """Consistent ISO-8601 timestamp (UTC, seconds precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class FileNode:
    """
    A file or directory as the server stores it.

    Nothing here is readable without the node key:
    - `encrypted_key`: the node key, RSA-OAEP wrapped for the owner when
      the node sits at the root, AES-GCM sealed under the parent
      directory's key otherwise
    - `nonce`: AES-GCM nonce of the content ciphertext
    - `encrypted_name` / `encrypted_mime_type`: sealed with their own
      nonces under the node key
    All binary fields are base64.
    """

    id: str
    is_directory: bool
    encrypted_name: str
    encrypted_key: str
    nonce: str
    owner_id: str
    uploader_id: str
    encrypted_mime_type: Optional[str] = None
    parent_id: Optional[str] = None
    size: int = 0
    created_at: str = ""
    modified_at: str = ""

    @staticmethod
    def new(
        owner_id: str,
        *,
        is_directory: bool,
        encrypted_name: str,
        encrypted_key: str,
        nonce: str,
        encrypted_mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
        uploader_id: Optional[str] = None,
        size: int = 0,
    ) -> "FileNode":
        now = _now_iso()
        return FileNode(
            id=str(uuid.uuid4()),
            is_directory=is_directory,
            encrypted_name=encrypted_name,
            encrypted_key=encrypted_key,
            nonce=nonce,
            owner_id=owner_id,
            uploader_id=uploader_id or owner_id,
            encrypted_mime_type=encrypted_mime_type,
            parent_id=parent_id,
            size=size,
            created_at=now,
            modified_at=now,
        )

    @property
    def fingerprint(self) -> Tuple[str, ...]:
        """Changes whenever the key wrapping, the content or the name changes."""
        return (self.encrypted_key, self.nonce, self.encrypted_name, self.encrypted_mime_type or "", self.modified_at)

    def upload_metadata(self) -> Dict[str, Any]:
        return {
            "encryptedFileName": self.encrypted_name,
            "encryptedKey": self.encrypted_key,
            "encryptedMimeType": self.encrypted_mime_type,
            "nonce": self.nonce,
            "parentId": self.parent_id,
            "isDirectory": self.is_directory,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.upload_metadata()
        d.update(
            id=self.id,
            ownerId=self.owner_id,
            uploaderId=self.uploader_id,
            size=self.size,
            createdAt=self.created_at,
            modifiedAt=self.modified_at,
        )
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileNode":
        return cls(
            id=data["id"],
            is_directory=bool(data.get("isDirectory", False)),
            encrypted_name=data["encryptedFileName"],
            encrypted_key=data["encryptedKey"],
            nonce=data["nonce"],
            owner_id=data["ownerId"],
            uploader_id=data.get("uploaderId") or data["ownerId"],
            encrypted_mime_type=data.get("encryptedMimeType"),
            parent_id=data.get("parentId"),
            size=data.get("size", 0),
            created_at=data.get("createdAt", ""),
            modified_at=data.get("modifiedAt", ""),
        )


@dataclass
class ShareGrant:
    """The node key re-wrapped for one grantee's public key."""

    file_id: str
    user_id: str
    encrypted_key: str
    edit_permission: bool = False
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "userId": self.user_id,
            "encryptedKey": self.encrypted_key,
            "editPermission": self.edit_permission,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShareGrant":
        return cls(
            file_id=data["fileId"],
            user_id=data["userId"],
            encrypted_key=data["encryptedKey"],
            edit_permission=bool(data.get("editPermission", False)),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class LinkShare:
    """
    Anonymous access to one node.

    `wrapped_key` is the node key sealed under a key derived from the link
    secret (kept in the link's URL fragment, never stored here) and, when
    `password_protected`, the link password as well.
    """

    link_id: str
    file_id: str
    wrapped_key: str
    salt: str
    password_protected: bool = False
    kdf: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[str] = None
    edit_permission: bool = False
    created_at: str = field(default_factory=_now_iso)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        return now > parse_iso(self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "linkId": self.link_id,
            "fileId": self.file_id,
            "wrappedKey": self.wrapped_key,
            "salt": self.salt,
            "passwordProtected": self.password_protected,
            "kdf": dict(self.kdf),
            "expiresAt": self.expires_at,
            "editPermission": self.edit_permission,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinkShare":
        return cls(
            link_id=data["linkId"],
            file_id=data["fileId"],
            wrapped_key=data["wrappedKey"],
            salt=data["salt"],
            password_protected=bool(data.get("passwordProtected", False)),
            kdf=dict(data.get("kdf") or {}),
            expires_at=data.get("expiresAt"),
            edit_permission=bool(data.get("editPermission", False)),
            created_at=data.get("createdAt", ""),
        )


@dataclass(frozen=True)
class EncryptedUpload:
    """What encrypt_upload hands to the upload endpoint besides the wrapped key."""

    ciphertext: bytes
    encrypted_name: str
    nonce: str
    encrypted_mime_type: Optional[str] = None


@dataclass(frozen=True)
class DecryptedFile:
    file_id: str
    name: str
    mime_type: Optional[str]
    data: bytes
    is_directory: bool = False

    @property
    def is_previewable(self) -> bool:
        return bool(self.mime_type) and self.mime_type.startswith(("image/", "video/"))


@dataclass(frozen=True)
class NodeInfo:
    """A listed node with its decrypted name; content is not fetched."""

    node: FileNode
    name: str
    mime_type: Optional[str]
    can_edit: bool = False

    @property
    def is_directory(self) -> bool:
        return self.node.is_directory


@dataclass
class DecryptedCacheEntry:
    """
    Plaintext of one node held for the current session only.

    Lives while at least one handle references it; never persisted.
    """

    file_id: str
    fingerprint: Tuple[str, ...]
    result: DecryptedFile
    refcount: int = 0
    finalizers: List[Callable[[], None]] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return len(self.result.data)
