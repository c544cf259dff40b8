"""
Persistence boundary.

The vault core only needs CRUD on FileNode / ShareGrant / LinkShare
records and a byte fetch keyed by file id. In production these sit behind
the REST API; the JSON and directory backed classes here are what the
CLI and the tests use. They hold only ciphertext and wrapped keys.
"""

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from cipher.errors import NotFound

from .models import FileNode, LinkShare, ShareGrant


class IRecordStore(ABC):
    # files
    @abstractmethod
    def get_file(self, file_id: str) -> FileNode: ...
    @abstractmethod
    def save_file(self, node: FileNode) -> None: ...
    @abstractmethod
    def delete_file(self, file_id: str) -> None: ...
    @abstractmethod
    def list_children(self, parent_id: Optional[str], owner_id: Optional[str] = None) -> List[FileNode]: ...

    # user shares
    @abstractmethod
    def get_grant(self, file_id: str, user_id: str) -> Optional[ShareGrant]: ...
    @abstractmethod
    def save_grant(self, grant: ShareGrant) -> None: ...
    @abstractmethod
    def delete_grant(self, file_id: str, user_id: str) -> bool: ...
    @abstractmethod
    def list_grants(self, file_id: Optional[str] = None, user_id: Optional[str] = None) -> List[ShareGrant]: ...

    # links
    @abstractmethod
    def get_link(self, link_id: str) -> Optional[LinkShare]: ...
    @abstractmethod
    def save_link(self, link: LinkShare) -> None: ...
    @abstractmethod
    def delete_link(self, link_id: str) -> bool: ...
    @abstractmethod
    def list_links(self, file_id: str) -> List[LinkShare]: ...


class JSONRecordStore(IRecordStore):
    """All records in one JSON index, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._save({"files": {}, "grants": [], "links": {}})

    def _load(self) -> Dict[str, Any]:
        with self.path.open("r", encoding="utf-8") as fh:
            return json.load(fh)

    def _save(self, payload: Dict[str, Any]) -> None:
        fd, tmp = tempfile.mkstemp(prefix="records.", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
            Path(tmp).replace(self.path)
        finally:
            tmp_path = Path(tmp)
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------ files

    def get_file(self, file_id: str) -> FileNode:
        item = self._load()["files"].get(file_id)
        if item is None:
            raise NotFound("file not found")
        return FileNode.from_dict(item)

    def save_file(self, node: FileNode) -> None:
        data = self._load()
        data["files"][node.id] = node.to_dict()
        self._save(data)

    def delete_file(self, file_id: str) -> None:
        data = self._load()
        if data["files"].pop(file_id, None) is None:
            raise NotFound("file not found")
        # shares go with the file
        data["grants"] = [g for g in data["grants"] if g["fileId"] != file_id]
        data["links"] = {k: v for k, v in data["links"].items() if v["fileId"] != file_id}
        self._save(data)

    def list_children(self, parent_id: Optional[str], owner_id: Optional[str] = None) -> List[FileNode]:
        nodes = [FileNode.from_dict(item) for item in self._load()["files"].values()]
        return [
            n for n in nodes
            if n.parent_id == parent_id and (owner_id is None or n.owner_id == owner_id)
        ]

    # ----------------------------------------------------------------- grants

    def get_grant(self, file_id: str, user_id: str) -> Optional[ShareGrant]:
        for item in self._load()["grants"]:
            if item["fileId"] == file_id and item["userId"] == user_id:
                return ShareGrant.from_dict(item)
        return None

    def save_grant(self, grant: ShareGrant) -> None:
        data = self._load()
        data["grants"] = [
            g for g in data["grants"]
            if not (g["fileId"] == grant.file_id and g["userId"] == grant.user_id)
        ]
        data["grants"].append(grant.to_dict())
        self._save(data)

    def delete_grant(self, file_id: str, user_id: str) -> bool:
        data = self._load()
        kept = [g for g in data["grants"] if not (g["fileId"] == file_id and g["userId"] == user_id)]
        if len(kept) == len(data["grants"]):
            return False
        data["grants"] = kept
        self._save(data)
        return True

    def list_grants(self, file_id: Optional[str] = None, user_id: Optional[str] = None) -> List[ShareGrant]:
        return [
            ShareGrant.from_dict(g) for g in self._load()["grants"]
            if (file_id is None or g["fileId"] == file_id) and (user_id is None or g["userId"] == user_id)
        ]

    # ------------------------------------------------------------------ links

    def get_link(self, link_id: str) -> Optional[LinkShare]:
        item = self._load()["links"].get(link_id)
        return LinkShare.from_dict(item) if item else None

    def save_link(self, link: LinkShare) -> None:
        data = self._load()
        data["links"][link.link_id] = link.to_dict()
        self._save(data)

    def delete_link(self, link_id: str) -> bool:
        data = self._load()
        if data["links"].pop(link_id, None) is None:
            return False
        self._save(data)
        return True

    def list_links(self, file_id: str) -> List[LinkShare]:
        return [LinkShare.from_dict(v) for v in self._load()["links"].values() if v["fileId"] == file_id]


class IContentSource(ABC):
    @abstractmethod
    async def fetch(self, file_id: str) -> bytes:
        """Return the ciphertext stored for `file_id`; NotFound if there is none."""


class IContentStore(IContentSource):
    @abstractmethod
    def put(self, file_id: str, ciphertext: bytes) -> None:
        """Store (or replace) the ciphertext of `file_id`."""

    @abstractmethod
    def delete(self, file_id: str) -> None:
        """Drop the ciphertext of `file_id`; a missing blob is not an error."""


class LocalContentStore(IContentStore):
    """Ciphertext blobs in a directory, one opaque file per node."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _blob(self, file_id: str) -> Path:
        return self.root / f"{file_id}.bin"

    def put(self, file_id: str, ciphertext: bytes) -> None:
        self._blob(file_id).write_bytes(ciphertext)

    def delete(self, file_id: str) -> None:
        self._blob(file_id).unlink(missing_ok=True)

    async def fetch(self, file_id: str) -> bytes:
        try:
            return await asyncio.to_thread(self._blob(file_id).read_bytes)
        except FileNotFoundError:
            raise NotFound("file content not found") from None
