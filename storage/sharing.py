"""
Share Manager

Sharing never re-encrypts content. A direct share is one more RSA-OAEP
wrap of the node key, for the grantee's public key. A link share seals the
node key under a key derived from a random link secret:

    no password:   link_key = HKDF(secret, salt, "link")
    with password: link_key = HKDF(secret || KDF(password, salt), salt, "link+password")

The secret travels in the link's URL fragment and is never stored, so the
server cannot open a link; with a password, neither can anyone holding
only the URL. Revoking deletes the grant or link record and nothing else.
"""

import base64
import binascii
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import rsa

from cipher import primitives
from cipher.errors import KeyUnavailable, LinkExpired, NotFound
from cipher.primitives import KdfParams, b64d, b64e
from config import Settings, get_settings

from .file_keys import FileKeyManager, KeySource
from .models import FileNode, LinkShare, ShareGrant
from .records import IRecordStore

logger = logging.getLogger(__name__)

LINK_WRAP_AAD = b"link-key"

# passed as expires_in to leave a link's expiry as it is
KEEP = object()


def encode_secret(secret: bytes) -> str:
    return base64.urlsafe_b64encode(secret).rstrip(b"=").decode("ascii")


def decode_secret(secret: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(secret + "=" * (-len(secret) % 4))
    except (binascii.Error, ValueError):
        raise KeyUnavailable("invalid link") from None


def _expiry(expires_in: Optional[timedelta]) -> Optional[str]:
    if expires_in is None:
        return None
    at = datetime.now(timezone.utc) + expires_in
    return at.isoformat(timespec="seconds").replace("+00:00", "Z")


class LinkKeyPolicy:
    """Derives the key a link's wrapped node key is sealed under."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def new_secret(self) -> bytes:
        return primitives.random_bytes(self.settings.LINK_SECRET_BYTES)

    def derive(self, secret: bytes, salt: bytes, password: Optional[str], params: KdfParams) -> bytes:
        if password is None:
            return primitives.hkdf(secret, salt, b"link")
        password_key = primitives.derive_key(password, salt, params)
        return primitives.hkdf(secret + password_key, salt, b"link+password")


class LinkKeySource(KeySource):
    def __init__(self, link: LinkShare, secret: bytes, password: Optional[str], policy: LinkKeyPolicy):
        self.link = link
        self.secret = secret
        self.password = password
        self.policy = policy

    def unwrap(self, node: FileNode, file_keys: FileKeyManager) -> bytes:
        if node.id != self.link.file_id:
            raise KeyUnavailable()
        params = KdfParams.from_dict(self.link.kdf) if self.link.kdf else KdfParams()
        link_key = self.policy.derive(
            self.secret,
            b64d(self.link.salt),
            self.password if self.link.password_protected else None,
            params,
        )
        return file_keys.unwrap_symmetric(self.link.wrapped_key, link_key, LINK_WRAP_AAD)


class ShareManager:
    def __init__(
        self,
        records: IRecordStore,
        file_keys: Optional[FileKeyManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.records = records
        self.file_keys = file_keys or FileKeyManager()
        self.settings = settings or get_settings()
        self.policy = LinkKeyPolicy(self.settings)

    # ============================================================================
    # Direct shares
    # ============================================================================

    def share_with_user(
        self,
        file_id: str,
        user_id: str,
        grantee_public_key: rsa.RSAPublicKey,
        file_key: bytes,
        edit_permission: bool = False,
    ) -> ShareGrant:
        node = self.records.get_file(file_id)
        if node.owner_id == user_id:
            raise ValueError("Cannot share a file with its owner")
        try:
            encrypted_key = self.file_keys.wrap_for_owner(file_key, grantee_public_key)
        except (ValueError, TypeError):
            raise KeyUnavailable("invalid grantee key") from None
        grant = ShareGrant(
            file_id=file_id,
            user_id=user_id,
            encrypted_key=encrypted_key,
            edit_permission=edit_permission,
        )
        self.records.save_grant(grant)
        logger.info("shared node %s with user %s (edit=%s)", file_id, user_id, edit_permission)
        return grant

    def revoke_user_share(self, file_id: str, user_id: str) -> None:
        if not self.records.delete_grant(file_id, user_id):
            raise NotFound("share not found")
        logger.info("revoked share of node %s for user %s", file_id, user_id)

    def update_share_permission(self, file_id: str, user_id: str, edit_permission: bool) -> ShareGrant:
        grant = self.records.get_grant(file_id, user_id)
        if grant is None:
            raise NotFound("share not found")
        grant.edit_permission = edit_permission
        self.records.save_grant(grant)
        return grant

    def list_grants(self, file_id: str) -> List[ShareGrant]:
        return self.records.list_grants(file_id=file_id)

    # ============================================================================
    # Links
    # ============================================================================

    def _seal_for_link(self, file_key: bytes, secret: bytes, password: Optional[str]) -> Tuple[str, str, dict]:
        salt = primitives.random_bytes(primitives.SALT_SIZE)
        params = KdfParams.from_settings(self.settings)
        link_key = self.policy.derive(secret, salt, password, params)
        wrapped = self.file_keys.wrap_symmetric(file_key, link_key, LINK_WRAP_AAD)
        return wrapped, b64e(salt), params.to_dict()

    def create_link(
        self,
        file_id: str,
        file_key: bytes,
        password: Optional[str] = None,
        expires_in: Optional[timedelta] = None,
        edit_permission: bool = False,
    ) -> Tuple[LinkShare, str]:
        """
        Create a link share. Returns the stored record and the encoded link
        secret; the secret is returned once and is not recoverable later.
        """
        self.records.get_file(file_id)
        password = password or None
        secret = self.policy.new_secret()
        wrapped, salt, kdf = self._seal_for_link(file_key, secret, password)
        link = LinkShare(
            link_id=str(uuid.uuid4()),
            file_id=file_id,
            wrapped_key=wrapped,
            salt=salt,
            password_protected=password is not None,
            kdf=kdf,
            expires_at=_expiry(expires_in),
            edit_permission=edit_permission,
        )
        self.records.save_link(link)
        logger.info("created link %s for node %s (password=%s)", link.link_id, file_id, link.password_protected)
        return link, encode_secret(secret)

    def get_link(self, link_id: str) -> LinkShare:
        link = self.records.get_link(link_id)
        if link is None:
            raise NotFound("link not found")
        return link

    def change_link_password(
        self,
        link_id: str,
        file_key: bytes,
        secret: str,
        password: Optional[str],
    ) -> LinkShare:
        """Re-seal the node key for the same link secret with a new (or no) password."""
        link = self.get_link(link_id)
        password = password or None
        wrapped, salt, kdf = self._seal_for_link(file_key, decode_secret(secret), password)
        link.wrapped_key = wrapped
        link.salt = salt
        link.kdf = kdf
        link.password_protected = password is not None
        self.records.save_link(link)
        return link

    def update_link(self, link_id: str, *, edit_permission=None, expires_in=KEEP) -> LinkShare:
        link = self.get_link(link_id)
        if edit_permission is not None:
            link.edit_permission = bool(edit_permission)
        if expires_in is not KEEP:
            link.expires_at = _expiry(expires_in)
        self.records.save_link(link)
        return link

    def revoke_link(self, link_id: str) -> None:
        if not self.records.delete_link(link_id):
            raise NotFound("link not found")
        logger.info("revoked link %s", link_id)

    def list_links(self, file_id: str) -> List[LinkShare]:
        return self.records.list_links(file_id)

    def link_key_source(
        self,
        link_id: str,
        secret: str,
        password: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LinkKeySource:
        """
        Key source for opening a link. Expired links are treated as absent
        even though the record may still exist.
        """
        link = self.get_link(link_id)
        if link.is_expired(now):
            raise LinkExpired()
        if link.password_protected and not password:
            raise KeyUnavailable("this link requires a password")
        return LinkKeySource(link, decode_secret(secret), password, self.policy)
