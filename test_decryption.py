"""
Tests for the decrypt pipeline: coalescing, cancellation, the session cache
and failure mapping.
"""
import asyncio
import dataclasses

import pytest

from cipher.errors import AuthTagMismatch, DecryptFailure, KeyUnavailable, NotFound
from conftest import CountingSource, make_node
from storage.decryption import DecryptionPipeline
from storage.file_keys import PrivateKeySource
from storage.records import LocalContentStore


@pytest.fixture
def pipeline(content, settings):
    return DecryptionPipeline(content, settings=settings)


@pytest.fixture
def notes(content, owner_keys):
    _, public_key = owner_keys
    node, _ = make_node(content, public_key, b"0123456789", "notes.txt", "text/plain")
    return node


def test_concurrent_decrypts_share_one_fetch_and_unwrap(pipeline, content, notes, owner_keys):
    source = CountingSource(owner_keys[0])

    async def scenario():
        return await asyncio.gather(*(pipeline.decrypt(notes, source) for _ in range(5)))

    handles = asyncio.run(scenario())
    assert content.fetches == 1
    assert source.unwraps == 1
    assert len({id(h.result) for h in handles}) == 1
    for h in handles:
        assert h.data == b"0123456789"
        assert h.name == "notes.txt"
        assert h.mime_type == "text/plain"
    assert pipeline.cached(notes.id).refcount == 5


def test_cache_hit_skips_fetch(pipeline, content, notes, owner_keys):
    source = CountingSource(owner_keys[0])

    async def scenario():
        first = await pipeline.decrypt(notes, source)
        second = await pipeline.decrypt(notes, source)
        return first, second

    first, second = asyncio.run(scenario())
    assert content.fetches == 1
    assert source.unwraps == 1
    assert first.result is second.result
    assert first.size_bytes == 10


def test_shared_failure_is_the_same_error_for_everyone(pipeline, content, notes, owner_keys):
    blob = bytearray(content._blob(notes.id).read_bytes())
    blob[3] ^= 0x01
    content.put(notes.id, bytes(blob))

    async def scenario():
        return await asyncio.gather(
            *(pipeline.decrypt(notes, PrivateKeySource(owner_keys[0])) for _ in range(4)),
            return_exceptions=True,
        )

    errors = asyncio.run(scenario())
    assert all(isinstance(e, AuthTagMismatch) for e in errors)
    assert isinstance(errors[0], DecryptFailure)
    assert len({id(e) for e in errors}) == 1
    assert content.fetches == 1
    assert pipeline.cached(notes.id) is None


def test_cancelled_subscriber_does_not_affect_others(pipeline, content, notes, owner_keys):
    source = PrivateKeySource(owner_keys[0])

    async def scenario():
        content.gate = asyncio.Event()
        content.started = asyncio.Event()
        tasks = [asyncio.ensure_future(pipeline.decrypt(notes, source)) for _ in range(3)]
        await content.started.wait()
        tasks[0].cancel()
        content.gate.set()
        return await asyncio.gather(*tasks, return_exceptions=True)

    cancelled, *handles = asyncio.run(scenario())
    assert isinstance(cancelled, asyncio.CancelledError)
    assert [h.data for h in handles] == [b"0123456789", b"0123456789"]
    assert content.fetches == 1
    assert pipeline.cached(notes.id).refcount == 2


def test_everyone_cancelled_leaves_no_entry(pipeline, content, notes, owner_keys):
    source = CountingSource(owner_keys[0])

    async def abandon():
        content.gate = asyncio.Event()
        content.started = asyncio.Event()
        tasks = [asyncio.ensure_future(pipeline.decrypt(notes, source)) for _ in range(2)]
        await content.started.wait()
        inner = list(pipeline._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        content.gate.set()
        await asyncio.wait(inner)
        await asyncio.sleep(0)

    asyncio.run(abandon())
    assert pipeline.cached(notes.id) is None
    assert content.fetches == 1

    content.gate = None
    handle = asyncio.run(pipeline.decrypt(notes, source))
    assert handle.data == b"0123456789"
    assert content.fetches == 2
    # the node key survived
    assert source.unwraps == 1


def test_cancel_as_the_work_finishes_leaves_no_entry(pipeline, content, notes, owner_keys):
    source = PrivateKeySource(owner_keys[0])

    async def scenario():
        waiter = asyncio.ensure_future(pipeline.decrypt(notes, source))
        while not any(key[0] == "file" for key in pipeline._inflight):
            await asyncio.sleep(0)
        inner = next(task for key, task in pipeline._inflight.items() if key[0] == "file")
        # the only waiter goes away in the same loop turn the result lands
        inner.add_done_callback(lambda _: waiter.cancel())
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0)
        return inner

    inner = asyncio.run(scenario())
    assert inner.result().data == b"0123456789"
    assert pipeline.cached(notes.id) is None
    assert pipeline._inflight == {}


def test_key_cache_is_bounded(content, owner_keys, settings):
    pipeline = DecryptionPipeline(content, settings=settings.model_copy(update={"KEY_CACHE_SIZE": 2}))
    source = CountingSource(owner_keys[0])
    a, b, c = (make_node(content, owner_keys[1], b"x", f"{n}.txt")[0] for n in "abc")

    async def resolve(*nodes):
        for node in nodes:
            await pipeline.resolve_key(node, source)

    asyncio.run(resolve(a, b, c))
    assert source.unwraps == 3
    assert list(pipeline._keys) == [b.id, c.id]

    asyncio.run(resolve(a))
    assert source.unwraps == 4
    asyncio.run(resolve(c))
    assert source.unwraps == 4
    assert list(pipeline._keys) == [a.id, c.id]


def test_last_release_evicts_and_runs_finalizers(pipeline, notes, owner_keys):
    source = PrivateKeySource(owner_keys[0])

    async def scenario():
        return await pipeline.decrypt(notes, source), await pipeline.decrypt(notes, source)

    first, second = asyncio.run(scenario())
    freed = []
    first.add_finalizer(lambda: freed.append("display buffer"))

    first.release()
    first.release()
    assert first.released
    assert pipeline.cached(notes.id).refcount == 1
    assert freed == []
    with pytest.raises(RuntimeError):
        first.data

    with second:
        assert second.data == b"0123456789"
    assert pipeline.cached(notes.id) is None
    assert freed == ["display buffer"]


def test_failing_finalizer_does_not_stop_the_rest(pipeline, notes, owner_keys):
    handle = asyncio.run(pipeline.decrypt(notes, PrivateKeySource(owner_keys[0])))
    freed = []

    def broken():
        raise RuntimeError("boom")

    handle.add_finalizer(broken)
    handle.add_finalizer(lambda: freed.append(True))
    handle.release()
    assert freed == [True]


def test_changed_node_is_decrypted_again(pipeline, content, notes, owner_keys):
    source = PrivateKeySource(owner_keys[0])
    old = asyncio.run(pipeline.decrypt(notes, source))

    changed = dataclasses.replace(notes, modified_at="2099-01-01T00:00:00Z")
    new = asyncio.run(pipeline.decrypt(changed, source))
    assert content.fetches == 2
    assert pipeline.cached(notes.id).fingerprint == changed.fingerprint
    # the earlier holder keeps its plaintext until it lets go
    assert old.data == b"0123456789"
    old.release()
    assert pipeline.cached(notes.id).refcount == 1
    new.release()


def test_invalidate_forgets_plaintext_and_key(pipeline, content, notes, owner_keys):
    source = CountingSource(owner_keys[0])
    asyncio.run(pipeline.decrypt(notes, source)).release()
    asyncio.run(pipeline.decrypt(notes, source))
    pipeline.invalidate(notes.id)
    assert pipeline.cached(notes.id) is None
    asyncio.run(pipeline.decrypt(notes, source))
    assert source.unwraps == 2


def test_wrong_private_key_is_key_unavailable(pipeline, content, notes, other_keys):
    with pytest.raises(KeyUnavailable):
        asyncio.run(pipeline.decrypt(notes, PrivateKeySource(other_keys[0])))
    assert content.fetches == 0


def test_metadata_only_does_not_fetch(pipeline, content, notes, owner_keys):
    name, mime_type = asyncio.run(pipeline.decrypt_metadata(notes, PrivateKeySource(owner_keys[0])))
    assert (name, mime_type) == ("notes.txt", "text/plain")
    assert content.fetches == 0


def test_previewable_by_mime_type(content, owner_keys, settings):
    private_key, public_key = owner_keys
    pipeline = DecryptionPipeline(content, settings=settings)
    image, _ = make_node(content, public_key, b"\x89PNG", "cat.png", "image/png")
    text, _ = make_node(content, public_key, b"hi", "a.txt", "text/plain")
    source = PrivateKeySource(private_key)
    assert asyncio.run(pipeline.decrypt(image, source)).result.is_previewable
    assert not asyncio.run(pipeline.decrypt(text, source)).result.is_previewable


class FlakyContent(LocalContentStore):
    def __init__(self, root, failures):
        super().__init__(root)
        self.failures = failures
        self.calls = 0

    async def fetch(self, file_id: str) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("network unreachable")
        return await super().fetch(file_id)


def test_fetch_is_retried(tmp_path, owner_keys, settings):
    private_key, public_key = owner_keys
    content = FlakyContent(tmp_path / "flaky", failures=2)
    node, _ = make_node(content, public_key, b"payload", "p.bin")
    handle = asyncio.run(DecryptionPipeline(content, settings=settings).decrypt(node, PrivateKeySource(private_key)))
    assert handle.data == b"payload"
    assert content.calls == 3


def test_fetch_gives_up_after_retries(tmp_path, owner_keys, settings):
    private_key, public_key = owner_keys
    content = FlakyContent(tmp_path / "down", failures=100)
    node, _ = make_node(content, public_key, b"payload", "p.bin")
    with pytest.raises(ConnectionError):
        asyncio.run(DecryptionPipeline(content, settings=settings).decrypt(node, PrivateKeySource(private_key)))
    assert content.calls == 1 + settings.FETCH_RETRIES


def test_missing_content_is_not_retried(tmp_path, owner_keys, settings):
    private_key, public_key = owner_keys
    content = FlakyContent(tmp_path / "gone", failures=0)
    node, _ = make_node(content, public_key, b"payload", "p.bin")
    content.delete(node.id)
    with pytest.raises(NotFound):
        asyncio.run(DecryptionPipeline(content, settings=settings).decrypt(node, PrivateKeySource(private_key)))
    assert content.calls == 1
