"""
Decryption Pipeline

decrypt(node, key_source) runs, at most once per node state:

    1. unwrap the node key with whatever the caller holds
    2. fetch the ciphertext (retried, it is idempotent)
    3. AES-GCM decrypt the content with the node's stored nonce
    4. decrypt name and mime type

Concurrent callers asking for the same node (same id and fingerprint)
share one in-flight task. Each waits on a shield of that task, so a
caller that goes away (its task is cancelled) does not cancel the work for
the others and is never handed a handle.

Successful results are kept as DecryptedCacheEntry objects for as long as
a DecryptedHandle references them. The event loop is single threaded and
every cache/in-flight mutation happens without an intervening await, so
the coalescing check and the cache writes cannot interleave.
"""

import asyncio
import functools
import logging
from collections import OrderedDict
from typing import Callable, Dict, Hashable, Optional, Tuple

from cryptography.exceptions import InvalidTag

from cipher.errors import AuthTagMismatch, DecryptFailure, KeyUnavailable, VaultError
from config import Settings, get_settings

from .encryption import MIME_AAD, NAME_AAD, EncryptionPipeline
from .file_keys import FileKeyManager, KeySource
from .models import DecryptedCacheEntry, DecryptedFile, FileNode
from .records import IContentSource

logger = logging.getLogger(__name__)


class DecryptedHandle:
    """
    A caller's reference to decrypted plaintext.

    Must be released (or used as a context manager). Finalizers attached
    with add_finalizer run once the last handle on the entry is released,
    which is where view-local resources such as display buffers belong.
    """

    def __init__(self, pipeline: "DecryptionPipeline", entry: DecryptedCacheEntry):
        self._pipeline = pipeline
        self._entry = entry
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def result(self) -> DecryptedFile:
        if self._released:
            raise RuntimeError("handle already released")
        return self._entry.result

    @property
    def file_id(self) -> str:
        return self._entry.file_id

    @property
    def data(self) -> bytes:
        return self.result.data

    @property
    def name(self) -> str:
        return self.result.name

    @property
    def mime_type(self) -> Optional[str]:
        return self.result.mime_type

    @property
    def size_bytes(self) -> int:
        return self._entry.size_bytes

    def add_finalizer(self, finalizer: Callable[[], None]) -> None:
        if self._released:
            raise RuntimeError("handle already released")
        self._entry.finalizers.append(finalizer)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pipeline._release(self._entry)

    def __enter__(self) -> "DecryptedHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class DecryptionPipeline:
    def __init__(
        self,
        content: IContentSource,
        file_keys: Optional[FileKeyManager] = None,
        encryption: Optional[EncryptionPipeline] = None,
        settings: Optional[Settings] = None,
    ):
        self.content = content
        self.file_keys = file_keys or FileKeyManager()
        self.encryption = encryption or EncryptionPipeline()
        self.settings = settings or get_settings()
        self._cache: Dict[str, DecryptedCacheEntry] = {}
        self._keys: "OrderedDict[str, Tuple[str, bytes]]" = OrderedDict()
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    # ============================================================================
    # Coalescing
    # ============================================================================

    async def _coalesce(self, key: Hashable, factory):
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._settle, key))
        return await asyncio.shield(task)

    def _settle(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # retrieved here so a failure nobody waits for any more is not reported as unhandled
        if not task.cancelled():
            task.exception()

    # ============================================================================
    # Keys
    # ============================================================================

    async def resolve_key(self, node: FileNode, source: KeySource) -> bytes:
        """Unwrap (once) and remember the key of `node`."""
        cached = self._keys.get(node.id)
        if cached and cached[0] == node.encrypted_key:
            self._keys.move_to_end(node.id)
            return cached[1]
        return await self._coalesce(("key", node.id, node.encrypted_key), lambda: self._unwrap(node, source))

    async def _unwrap(self, node: FileNode, source: KeySource) -> bytes:
        try:
            file_key = await asyncio.to_thread(source.unwrap, node, self.file_keys)
        except VaultError:
            raise
        except (InvalidTag, ValueError, TypeError):
            logger.info("no usable key for node %s", node.id)
            raise KeyUnavailable() from None
        self._remember_key(node, file_key)
        return file_key

    def _remember_key(self, node: FileNode, file_key: bytes) -> None:
        # least recently used keys go first once the session holds too many
        self._keys[node.id] = (node.encrypted_key, file_key)
        self._keys.move_to_end(node.id)
        while len(self._keys) > self.settings.KEY_CACHE_SIZE:
            self._keys.popitem(last=False)

    # ============================================================================
    # Content
    # ============================================================================

    async def _fetch(self, file_id: str) -> bytes:
        attempts = 1 + max(0, self.settings.FETCH_RETRIES)
        delay = self.settings.FETCH_RETRY_DELAY
        for attempt in range(1, attempts):
            try:
                return await self.content.fetch(file_id)
            except OSError:
                logger.info("fetch of %s failed (attempt %d/%d), retrying", file_id, attempt, attempts)
                await asyncio.sleep(delay)
                delay *= 2
        try:
            return await self.content.fetch(file_id)
        except OSError:
            logger.warning("fetch of %s failed after %d attempts", file_id, attempts)
            raise

    def _open(self, node: FileNode, file_key: bytes, ciphertext: bytes) -> DecryptedFile:
        data = b"" if node.is_directory else self.encryption.decrypt_content(ciphertext, node.nonce, file_key)
        name, mime_type = self._open_metadata(node, file_key)
        return DecryptedFile(
            file_id=node.id,
            name=name,
            mime_type=mime_type,
            data=data,
            is_directory=node.is_directory,
        )

    def _open_metadata(self, node: FileNode, file_key: bytes) -> Tuple[str, Optional[str]]:
        name = self.encryption.decrypt_text(node.encrypted_name, file_key, NAME_AAD)
        mime_type = None
        if node.encrypted_mime_type:
            mime_type = self.encryption.decrypt_text(node.encrypted_mime_type, file_key, MIME_AAD)
        return name, mime_type

    async def _run(self, node: FileNode, source: KeySource) -> DecryptedFile:
        file_key = await self.resolve_key(node, source)
        ciphertext = b"" if node.is_directory else await self._fetch(node.id)
        try:
            result = await asyncio.to_thread(self._open, node, file_key, ciphertext)
        except InvalidTag:
            logger.warning("authentication tag mismatch on node %s", node.id)
            raise AuthTagMismatch() from None
        except (ValueError, UnicodeDecodeError):
            logger.warning("malformed ciphertext on node %s", node.id)
            raise DecryptFailure() from None
        logger.debug("decrypted node %s (%d bytes)", node.id, len(result.data))
        return result

    async def decrypt(self, node: FileNode, source: KeySource) -> DecryptedHandle:
        entry = self._cache.get(node.id)
        if entry is not None:
            if entry.fingerprint == node.fingerprint:
                return self._acquire(entry)
            self._discard(node.id)

        result = await self._coalesce(
            ("file", node.id, node.fingerprint),
            lambda: self._run(node, source),
        )
        # only callers still waiting get here; a cancelled one never creates an entry
        entry = self._cache.get(node.id)
        if entry is None or entry.fingerprint != node.fingerprint:
            entry = self._store(node, result)
        return self._acquire(entry)

    async def decrypt_metadata(self, node: FileNode, source: KeySource) -> Tuple[str, Optional[str]]:
        """Name and mime type only; the content is not fetched."""
        file_key = await self.resolve_key(node, source)
        try:
            return self._open_metadata(node, file_key)
        except InvalidTag:
            raise AuthTagMismatch() from None
        except (ValueError, UnicodeDecodeError):
            raise DecryptFailure() from None

    # ============================================================================
    # Cache entries
    # ============================================================================

    def _store(self, node: FileNode, result: DecryptedFile) -> DecryptedCacheEntry:
        entry = DecryptedCacheEntry(file_id=node.id, fingerprint=node.fingerprint, result=result)
        self._cache[node.id] = entry
        return entry

    def _acquire(self, entry: DecryptedCacheEntry) -> DecryptedHandle:
        entry.refcount += 1
        return DecryptedHandle(self, entry)

    def _release(self, entry: DecryptedCacheEntry) -> None:
        entry.refcount -= 1
        if entry.refcount > 0:
            return
        if self._cache.get(entry.file_id) is entry:
            del self._cache[entry.file_id]
        self._finalize(entry)

    def _discard(self, file_id: str) -> None:
        entry = self._cache.pop(file_id, None)
        if entry is not None and entry.refcount <= 0:
            self._finalize(entry)

    @staticmethod
    def _finalize(entry: DecryptedCacheEntry) -> None:
        finalizers, entry.finalizers = entry.finalizers, []
        for finalizer in finalizers:
            try:
                finalizer()
            except Exception:
                logger.exception("finalizer for node %s failed", entry.file_id)

    def cached(self, file_id: str) -> Optional[DecryptedCacheEntry]:
        return self._cache.get(file_id)

    def invalidate(self, file_id: str) -> None:
        """Forget everything decrypted for `file_id` (after an edit, move or revoke)."""
        self._discard(file_id)
        self._keys.pop(file_id, None)

    def clear(self) -> None:
        for file_id in list(self._cache):
            self._discard(file_id)
        self._keys.clear()
