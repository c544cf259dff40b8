import asyncio
from pathlib import Path

import pytest

from accounts.manager import AccountManager
from accounts.storage import MemoryStorage
from cipher import primitives
from config import Settings
from storage.encryption import EncryptionPipeline
from storage.file_keys import FileKeyManager, PrivateKeySource
from storage.file_manager import FileManager
from storage.models import FileNode
from storage.records import JSONRecordStore, LocalContentStore


@pytest.fixture(scope="session")
def settings() -> Settings:
    # cheap parameters; production defaults are far more expensive
    return Settings(
        _env_file=None,
        KDF_ITERATIONS=1000,
        ARGON2_TIME_COST=1,
        ARGON2_MEMORY_COST_KIB=1024,
        RSA_KEY_SIZE=2048,
        FETCH_RETRIES=3,
        FETCH_RETRY_DELAY=0,
    )


@pytest.fixture(scope="session")
def owner_keys():
    return primitives.generate_keypair(2048)


@pytest.fixture(scope="session")
def other_keys():
    return primitives.generate_keypair(2048)


class CountingContent(LocalContentStore):
    """Local blob store that counts fetches and can hold them until released."""

    def __init__(self, root: Path):
        super().__init__(root)
        self.fetches = 0
        self.started = asyncio.Event()
        self.gate = None

    async def fetch(self, file_id: str) -> bytes:
        self.fetches += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0.01)
        return await super().fetch(file_id)


class CountingSource(PrivateKeySource):
    def __init__(self, private_key, encrypted_key=None):
        super().__init__(private_key, encrypted_key)
        self.unwraps = 0

    def unwrap(self, node, file_keys):
        self.unwraps += 1
        return super().unwrap(node, file_keys)


def make_node(content: LocalContentStore, public_key, data: bytes, name: str, mime_type=None):
    """Encrypt `data` as a root node owned by `public_key`; returns (node, file_key)."""
    file_keys = FileKeyManager()
    file_key = file_keys.create_file_key()
    upload = EncryptionPipeline().encrypt_upload(data, name, mime_type, file_key)
    node = FileNode.new(
        "owner",
        is_directory=False,
        encrypted_name=upload.encrypted_name,
        encrypted_key=file_keys.wrap_for_owner(file_key, public_key),
        nonce=upload.nonce,
        encrypted_mime_type=upload.encrypted_mime_type,
        size=len(upload.ciphertext),
    )
    content.put(node.id, upload.ciphertext)
    return node, file_key


@pytest.fixture
def content(tmp_path) -> CountingContent:
    return CountingContent(tmp_path / "blobs")


@pytest.fixture
def records(tmp_path) -> JSONRecordStore:
    return JSONRecordStore(tmp_path / "records.json")


@pytest.fixture
def accounts(settings) -> AccountManager:
    return AccountManager(MemoryStorage(), settings=settings)


@pytest.fixture
def vault(records, content, accounts, settings):
    """Factory for FileManagers sharing one record store, blob store and account directory."""

    def _open(session=None) -> FileManager:
        return FileManager(records, content, session, accounts, settings)

    return _open
