"""
Session-scoped entry point for everything the UI layer does with files.

A FileManager belongs to one client session: either a logged-in user
(`session`) or an anonymous visitor who unlocked a share link. It keeps
the decrypted-entry cache for that session and nothing else; records and
ciphertext live in the stores passed in.
"""

from datetime import timedelta
from pathlib import Path
import asyncio
import dataclasses
import logging
from typing import List, Optional, Tuple

from accounts.manager import AccountManager, Session
from cipher.errors import KeyUnavailable, LinkExpired, NotFound, PermissionDenied
from config import Settings, get_settings

from .decryption import DecryptedHandle, DecryptionPipeline
from .encryption import EncryptionPipeline
from .file_keys import FileKeyManager, KeySource, ParentKeySource, PrivateKeySource
from .models import FileNode, LinkShare, NodeInfo, ShareGrant, _now_iso
from .records import IContentStore, IRecordStore
from .sharing import KEEP, LinkKeySource, ShareManager

logger = logging.getLogger(__name__)


def _safe_filename(name: str) -> str:
    name = Path(name.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return "download"
    return name


class FileManager:
    def __init__(
        self,
        records: IRecordStore,
        content: IContentStore,
        session: Optional[Session] = None,
        accounts: Optional[AccountManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.records = records
        self.content = content
        self.session = session
        self.accounts = accounts
        self.file_keys = FileKeyManager()
        self.encryption = EncryptionPipeline()
        self.decryption = DecryptionPipeline(content, self.file_keys, self.encryption, self.settings)
        self.shares = ShareManager(records, self.file_keys, self.settings)
        self._link: Optional[LinkKeySource] = None

    # ============================================================================
    # Access resolution
    # ============================================================================

    def _current_link(self) -> Optional[LinkKeySource]:
        if self._link is None:
            return None
        link = self.records.get_link(self._link.link.link_id)
        if link is None:
            raise KeyUnavailable()
        if link.is_expired():
            raise LinkExpired()
        self._link.link = link
        return self._link

    async def _access(self, node: FileNode) -> Tuple[KeySource, bool]:
        """
        Find the caller's path to `node`'s key: (key source, can edit).

        Checked against the records on every call so a revoked grant or
        link stops working immediately, even with keys still cached.
        """
        link = self._current_link()
        if link is not None and link.link.file_id == node.id:
            return link, link.link.edit_permission

        session = self.session
        if session is not None:
            if node.owner_id == session.user_id and node.parent_id is None:
                return PrivateKeySource(session.private_key), True
            if node.owner_id != session.user_id:
                grant = self.records.get_grant(node.id, session.user_id)
                if grant is not None:
                    return PrivateKeySource(session.private_key, grant.encrypted_key), grant.edit_permission

        if node.parent_id is None:
            raise KeyUnavailable()
        parent = self.records.get_file(node.parent_id)
        parent_source, can_edit = await self._access(parent)
        parent_key = await self.decryption.resolve_key(parent, parent_source)
        return ParentKeySource(parent_key), can_edit

    async def _node_key(self, node: FileNode, *, edit: bool = False) -> bytes:
        source, can_edit = await self._access(node)
        if edit and not can_edit:
            raise PermissionDenied()
        return await self.decryption.resolve_key(node, source)

    def _require_session(self) -> Session:
        if self.session is None:
            raise KeyUnavailable("log in first")
        return self.session

    def _require_owner(self, node: FileNode) -> Session:
        session = self._require_session()
        if node.owner_id != session.user_id:
            raise PermissionDenied()
        return session

    # ============================================================================
    # Reading
    # ============================================================================

    async def open_file(self, file_id: str) -> DecryptedHandle:
        """Decrypt a node; release the returned handle when done with it."""
        node = self.records.get_file(file_id)
        source, _ = await self._access(node)
        return await self.decryption.decrypt(node, source)

    async def download_file(self, file_id: str, dest_dir: Path) -> Path:
        dest_dir = Path(dest_dir).expanduser()
        dest_dir.mkdir(parents=True, exist_ok=True)
        with await self.open_file(file_id) as handle:
            if handle.result.is_directory:
                raise IsADirectoryError(handle.name)
            target = dest_dir / _safe_filename(handle.name)
            await asyncio.to_thread(target.write_bytes, handle.data)
        return target

    async def describe(self, node: FileNode) -> NodeInfo:
        source, can_edit = await self._access(node)
        name, mime_type = await self.decryption.decrypt_metadata(node, source)
        return NodeInfo(node=node, name=name, mime_type=mime_type, can_edit=can_edit)

    async def list_directory(self, parent_id: Optional[str] = None) -> List[NodeInfo]:
        """Children of a directory, or the caller's own root nodes."""
        if parent_id is None:
            nodes = self.records.list_children(None, owner_id=self._require_session().user_id)
        else:
            parent = self.records.get_file(parent_id)
            if not parent.is_directory:
                raise NotADirectoryError(parent_id)
            await self._node_key(parent)
            nodes = self.records.list_children(parent_id)
        infos = await asyncio.gather(*(self.describe(n) for n in nodes))
        return sorted(infos, key=lambda i: (not i.is_directory, i.name.lower()))

    async def list_shared_with_me(self) -> List[NodeInfo]:
        session = self._require_session()
        nodes = [self.records.get_file(g.file_id) for g in self.records.list_grants(user_id=session.user_id)]
        return list(await asyncio.gather(*(self.describe(n) for n in nodes)))

    # ============================================================================
    # Writing
    # ============================================================================

    async def _placement(self, file_key: bytes, parent_id: Optional[str]) -> Tuple[str, str]:
        """Wrap a new node key for where it will live. Returns (encrypted_key, owner_id)."""
        session = self._require_session()
        if parent_id is None:
            encrypted = await asyncio.to_thread(self.file_keys.wrap_for_owner, file_key, session.public_key)
            return encrypted, session.user_id
        parent = self.records.get_file(parent_id)
        if not parent.is_directory:
            raise NotADirectoryError(parent_id)
        parent_key = await self._node_key(parent, edit=True)
        # children belong to the directory's owner whoever uploads them
        return self.file_keys.wrap_for_parent(file_key, parent_key), parent.owner_id

    async def upload_file(
        self,
        data: bytes,
        name: str,
        mime_type: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> FileNode:
        session = self._require_session()
        file_key = self.file_keys.create_file_key()
        upload = await asyncio.to_thread(self.encryption.encrypt_upload, data, name, mime_type, file_key)
        encrypted_key, owner_id = await self._placement(file_key, parent_id)
        node = FileNode.new(
            owner_id,
            is_directory=False,
            encrypted_name=upload.encrypted_name,
            encrypted_key=encrypted_key,
            nonce=upload.nonce,
            encrypted_mime_type=upload.encrypted_mime_type,
            parent_id=parent_id,
            uploader_id=session.user_id,
            size=len(upload.ciphertext),
        )
        self.content.put(node.id, upload.ciphertext)
        self.records.save_file(node)
        logger.info("uploaded node %s (%d bytes)", node.id, node.size)
        return node

    async def create_directory(self, name: str, parent_id: Optional[str] = None) -> FileNode:
        session = self._require_session()
        file_key = self.file_keys.create_file_key()
        upload = self.encryption.encrypt_directory(name, file_key)
        encrypted_key, owner_id = await self._placement(file_key, parent_id)
        node = FileNode.new(
            owner_id,
            is_directory=True,
            encrypted_name=upload.encrypted_name,
            encrypted_key=encrypted_key,
            nonce=upload.nonce,
            parent_id=parent_id,
            uploader_id=session.user_id,
        )
        self.records.save_file(node)
        logger.info("created directory %s", node.id)
        return node

    async def update_file(self, file_id: str, data: bytes) -> FileNode:
        """Replace a file's content; the key stays, the content nonce does not."""
        node = self.records.get_file(file_id)
        if node.is_directory:
            raise IsADirectoryError(file_id)
        file_key = await self._node_key(node, edit=True)
        ciphertext, nonce = await asyncio.to_thread(self.encryption.encrypt_content, data, file_key)
        node = dataclasses.replace(node, nonce=nonce, size=len(ciphertext), modified_at=_now_iso())
        self.content.put(node.id, ciphertext)
        self.records.save_file(node)
        self.decryption.invalidate(node.id)
        return node

    async def rename_file(self, file_id: str, new_name: str) -> FileNode:
        node = self.records.get_file(file_id)
        file_key = await self._node_key(node, edit=True)
        node = dataclasses.replace(
            node,
            encrypted_name=self.encryption.encrypt_name(new_name, file_key),
            modified_at=_now_iso(),
        )
        self.records.save_file(node)
        self.decryption.invalidate(node.id)
        return node

    def _is_within(self, node_id: str, ancestor_id: str) -> bool:
        current: Optional[str] = node_id
        while current is not None:
            if current == ancestor_id:
                return True
            current = self.records.get_file(current).parent_id
        return False

    async def move_file(self, file_id: str, new_parent_id: Optional[str]) -> FileNode:
        """Re-wrap the node key for its new parent; content and name are untouched."""
        node = self.records.get_file(file_id)
        session = self._require_owner(node)
        file_key = await self._node_key(node)
        if new_parent_id is None:
            encrypted_key = await asyncio.to_thread(self.file_keys.wrap_for_owner, file_key, session.public_key)
        else:
            parent = self.records.get_file(new_parent_id)
            if not parent.is_directory:
                raise NotADirectoryError(new_parent_id)
            if parent.owner_id != node.owner_id:
                raise PermissionDenied()
            if self._is_within(new_parent_id, node.id):
                raise ValueError("cannot move a directory into itself")
            encrypted_key = self.file_keys.wrap_for_parent(file_key, await self._node_key(parent))
        node = dataclasses.replace(
            node,
            encrypted_key=encrypted_key,
            parent_id=new_parent_id,
            modified_at=_now_iso(),
        )
        self.records.save_file(node)
        self.decryption.invalidate(node.id)
        return node

    def delete_file(self, file_id: str) -> None:
        """Delete a node and, for directories, everything below it. Owner only."""
        node = self.records.get_file(file_id)
        self._require_owner(node)
        for child in self.records.list_children(node.id):
            self.delete_file(child.id)
        self.content.delete(node.id)
        self.records.delete_file(node.id)
        self.decryption.invalidate(node.id)
        logger.info("deleted node %s", node.id)

    # ============================================================================
    # Sharing
    # ============================================================================

    def _grantee_id(self, username: str) -> Tuple[str, object]:
        if self.accounts is None:
            raise NotFound("no account directory configured")
        user = self.accounts.get_user_by_username(username)
        if user is None:
            raise NotFound(f"no user named {username}")
        return user.user_id, self.accounts.identities.public_key(user.identity)

    async def share_with_user(self, file_id: str, username: str, edit_permission: bool = False) -> ShareGrant:
        node = self.records.get_file(file_id)
        self._require_owner(node)
        file_key = await self._node_key(node)
        user_id, public_key = self._grantee_id(username)
        return await asyncio.to_thread(
            self.shares.share_with_user, file_id, user_id, public_key, file_key, edit_permission
        )

    def revoke_user_share(self, file_id: str, username: str) -> None:
        self._require_owner(self.records.get_file(file_id))
        user_id, _ = self._grantee_id(username)
        self.shares.revoke_user_share(file_id, user_id)

    def update_share_permission(self, file_id: str, username: str, edit_permission: bool) -> ShareGrant:
        self._require_owner(self.records.get_file(file_id))
        user_id, _ = self._grantee_id(username)
        return self.shares.update_share_permission(file_id, user_id, edit_permission)

    async def create_link(
        self,
        file_id: str,
        password: Optional[str] = None,
        expires_in: Optional[timedelta] = None,
        edit_permission: bool = False,
    ) -> Tuple[LinkShare, str]:
        node = self.records.get_file(file_id)
        self._require_owner(node)
        file_key = await self._node_key(node)
        return await asyncio.to_thread(
            self.shares.create_link, file_id, file_key, password, expires_in, edit_permission
        )

    async def change_link_password(self, link_id: str, secret: str, password: Optional[str]) -> LinkShare:
        link = self.shares.get_link(link_id)
        node = self.records.get_file(link.file_id)
        self._require_owner(node)
        file_key = await self._node_key(node)
        return await asyncio.to_thread(self.shares.change_link_password, link_id, file_key, secret, password)

    def update_link(self, link_id: str, *, edit_permission: Optional[bool] = None, expires_in=KEEP) -> LinkShare:
        """Change a link's edit permission or expiry; its key material stays as it is."""
        link = self.shares.get_link(link_id)
        self._require_owner(self.records.get_file(link.file_id))
        return self.shares.update_link(link_id, edit_permission=edit_permission, expires_in=expires_in)

    def revoke_link(self, link_id: str) -> None:
        link = self.shares.get_link(link_id)
        self._require_owner(self.records.get_file(link.file_id))
        self.shares.revoke_link(link_id)

    async def unlock_link(self, link_id: str, secret: str, password: Optional[str] = None) -> NodeInfo:
        """
        Open a share link for this manager. The linked node and, for a
        directory, everything below it become readable.
        """
        source = self.shares.link_key_source(link_id, secret, password)
        node = self.records.get_file(source.link.file_id)
        await self.decryption.resolve_key(node, source)
        self._link = source
        return await self.describe(node)

    def close(self) -> None:
        """Forget every decrypted entry and key held by this session."""
        self.decryption.clear()
        self._link = None
