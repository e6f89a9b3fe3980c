"""
Tests for batch collection, flushing and manifest persistence.
"""

import asyncio
import json

import pytest

from matchproof.core import (
    AnchorService,
    BatchConfig,
    BatchManager,
    Hasher,
    TransactionConfig,
    TransactionHandler,
    get_signing_service,
    verify_proof,
)
from matchproof.errors import PermanentTransportError, StorageError
from matchproof.ledger import InMemoryLedger
from matchproof.schemas import BatchAnchor
from matchproof.storage import (
    PENDING_STATE_KEY,
    InMemoryObjectStore,
    batch_index_key,
    manifest_key,
)

from conftest import FlakyLedger


def match_hash(i: int) -> str:
    return Hasher.hash_bytes(f"match-{i}".encode())


class FailingManifestStore(InMemoryObjectStore):
    """Rejects manifest writes until `fail_manifests` is cleared."""

    def __init__(self):
        super().__init__()
        self.fail_manifests = True

    async def put(self, key, data, content_type="application/json"):
        if self.fail_manifests and key.startswith("manifests/"):
            raise StorageError("bucket unavailable")
        return await super().put(key, data, content_type)


class SlowManifestStore(InMemoryObjectStore):
    """Holds each manifest write open for `delay` seconds, then fails it if asked to."""

    def __init__(self, fail_manifests=False, delay=0.05):
        super().__init__()
        self.fail_manifests = fail_manifests
        self.delay = delay

    async def put(self, key, data, content_type="application/json"):
        if key.startswith("manifests/"):
            await asyncio.sleep(self.delay)
            if self.fail_manifests:
                raise StorageError("bucket unavailable")
        return await super().put(key, data, content_type)


def make_manager(store=None, ledger=None, signing=True, **config):
    store = store if store is not None else InMemoryObjectStore()
    ledger = ledger if ledger is not None else InMemoryLedger()
    handler = TransactionHandler(ledger, TransactionConfig(max_attempts=1))
    manager = BatchManager(
        store,
        anchor_service=AnchorService(handler),
        signing_service=get_signing_service() if signing else None,
        config=BatchConfig(**{"max_batch_size": 100, "auto_flush": False, **config}),
    )
    return manager, store, ledger


class TestCollecting:
    """Queueing entries."""

    def test_add_is_pending_until_flush(self, coordinator_keys):
        async def run():
            manager, store, ledger = make_manager()
            for i in range(3):
                assert await manager.add_match(f"m{i}", match_hash(i)) is None
            return manager, ledger

        manager, ledger = asyncio.run(run())
        assert manager.pending_count == 3
        assert [mid for mid, _ in manager.pending_entries()] == ["m0", "m1", "m2"]
        assert ledger.transaction_count == 0

    def test_duplicate_pending_match_rejected(self, coordinator_keys):
        async def run():
            manager, _, _ = make_manager()
            await manager.add_match("m0", match_hash(0))
            await manager.add_match("m0", match_hash(1))

        with pytest.raises(ValueError, match="already pending"):
            asyncio.run(run())

    def test_malformed_hash_rejected(self, coordinator_keys):
        manager, _, _ = make_manager()
        with pytest.raises(ValueError, match="Invalid match hash"):
            asyncio.run(manager.add_match("m0", "xyz"))

    def test_hash_lowercased(self, coordinator_keys):
        manager, _, _ = make_manager()
        asyncio.run(manager.add_match("m0", match_hash(0).upper()))
        assert manager.pending_entries() == [("m0", match_hash(0))]

    def test_pending_state_persisted(self, coordinator_keys):
        manager, store, _ = make_manager()
        asyncio.run(manager.add_match("m0", match_hash(0)))
        saved = json.loads(asyncio.run(store.get(PENDING_STATE_KEY)))
        assert saved["match_ids"] == ["m0"]
        assert saved["match_hashes"] == [match_hash(0)]


class TestFlushing:
    """Closing a batch."""

    def test_empty_flush_is_noop(self, coordinator_keys):
        manager, _, ledger = make_manager()
        assert asyncio.run(manager.flush()) is None
        assert ledger.transaction_count == 0

    def test_size_trigger(self, coordinator_keys):
        async def run():
            manager, _, _ = make_manager(max_batch_size=3, auto_flush=True)
            results = [await manager.add_match(f"m{i}", match_hash(i)) for i in range(3)]
            await manager.shutdown(flush=False)
            return manager, results

        manager, results = asyncio.run(run())
        assert results[0] is None and results[1] is None
        assert results[2] is not None
        assert results[2].match_count == 3
        assert manager.pending_count == 0

    def test_flush_writes_signed_anchored_manifest(self, coordinator_keys):
        async def run():
            manager, store, ledger = make_manager()
            for i in range(5):
                await manager.add_match(f"m{i}", match_hash(i))
            manifest = await manager.flush()
            stored = await manager.get_manifest(manifest.batch_id)
            pointer = await manager.find_batch_for_match("m3")
            located = await ledger.find_anchor(manifest.batch_id)
            return manifest, stored, pointer, located

        manifest, stored, pointer, located = asyncio.run(run())
        assert manifest.match_ids == [f"m{i}" for i in range(5)]
        assert manifest.batch_id.startswith("batch-")
        assert stored.to_document() == manifest.to_document()
        assert pointer == manifest.batch_id

        assert manifest.signer_public_key == coordinator_keys.public_key
        assert get_signing_service().verify_document(manifest.signing_document(), manifest.signature)

        assert located.transaction_id == manifest.anchor_txid
        assert isinstance(located.anchor, BatchAnchor)
        assert located.anchor.merkle_root == manifest.merkle_root
        assert located.anchor.match_count == 5

    def test_proofs_from_stored_manifest(self, coordinator_keys):
        async def run():
            manager, _, _ = make_manager()
            for i in range(7):
                await manager.add_match(f"m{i}", match_hash(i))
            manifest = await manager.flush()
            proofs = [await manager.generate_proof(f"m{i}") for i in range(7)]
            missing = await manager.generate_proof("nope")
            return manifest, proofs, missing

        manifest, proofs, missing = asyncio.run(run())
        for i, proof in enumerate(proofs):
            assert proof.index == i
            assert proof.sha256 == match_hash(i)
            assert verify_proof(proof, manifest.merkle_root)
        assert missing is None

    def test_unsigned_without_signing_service(self):
        manager, _, _ = make_manager(signing=False)
        asyncio.run(manager.add_match("m0", match_hash(0)))
        manifest = asyncio.run(manager.flush())
        assert manifest.signature is None
        assert manifest.anchor_txid is not None

    def test_anchor_failure_stores_unanchored_manifest(self, coordinator_keys):
        ledger = FlakyLedger(failures=[PermanentTransportError("insufficient funds")])
        manager, store, _ = make_manager(ledger=ledger)

        async def run():
            await manager.add_match("m0", match_hash(0))
            return await manager.flush()

        manifest = asyncio.run(run())
        assert manifest.anchor_txid is None
        assert asyncio.run(store.get(manifest_key(manifest.batch_id))) is not None
        assert manager.pending_count == 0

    def test_manifest_write_failure_requeues_at_head(self, coordinator_keys):
        store = FailingManifestStore()
        manager, _, _ = make_manager(store=store)

        async def run():
            await manager.add_match("m0", match_hash(0))
            await manager.add_match("m1", match_hash(1))
            with pytest.raises(StorageError):
                await manager.flush()
            await manager.add_match("m2", match_hash(2))
            order_after_failure = [mid for mid, _ in manager.pending_entries()]
            store.fail_manifests = False
            manifest = await manager.flush()
            return order_after_failure, manifest

        order, manifest = asyncio.run(run())
        assert order == ["m0", "m1", "m2"]
        assert manifest.match_ids == ["m0", "m1", "m2"]
        assert manager.pending_count == 0

    def test_no_pointer_for_requeued_entries(self, coordinator_keys):
        store = FailingManifestStore()
        manager, _, _ = make_manager(store=store)

        async def run():
            await manager.add_match("m0", match_hash(0))
            with pytest.raises(StorageError):
                await manager.flush()
            return await store.get(batch_index_key("m0"))

        assert asyncio.run(run()) is None

    def test_timer_flush(self, coordinator_keys):
        async def run():
            manager, store, _ = make_manager(auto_flush=True, max_wait_seconds=0.05)
            await manager.add_match("m0", match_hash(0))
            await asyncio.sleep(0.3)
            return manager, await manager.find_batch_for_match("m0")

        manager, batch_id = asyncio.run(run())
        assert manager.pending_count == 0
        assert batch_id is not None

    def test_shutdown_flushes(self, coordinator_keys):
        async def run():
            manager, _, _ = make_manager(auto_flush=True)
            await manager.add_match("m0", match_hash(0))
            return await manager.shutdown()

        manifest = asyncio.run(run())
        assert manifest.match_ids == ["m0"]


class TestConcurrentFlush:
    """Entries arriving while a flush is in flight."""

    def test_adds_during_flush_are_not_lost(self, coordinator_keys):
        manager, _, _ = make_manager(store=SlowManifestStore())

        async def run():
            for i in range(3):
                await manager.add_match(f"m{i}", match_hash(i))
            first, *_ = await asyncio.gather(
                manager.flush(),
                *(manager.add_match(f"m{i}", match_hash(i)) for i in range(3, 8)),
            )
            second = await manager.flush()
            return first, second

        first, second = asyncio.run(run())
        flushed = first.match_ids + (second.match_ids if second else [])
        assert sorted(flushed) == [f"m{i}" for i in range(8)]
        assert manager.pending_count == 0

    def test_adds_during_failed_flush_queue_behind_it(self, coordinator_keys):
        manager, _, _ = make_manager(store=SlowManifestStore(fail_manifests=True))

        async def run():
            for i in range(3):
                await manager.add_match(f"m{i}", match_hash(i))
            return await asyncio.gather(
                manager.flush(),
                *(manager.add_match(f"m{i}", match_hash(i)) for i in range(3, 6)),
                return_exceptions=True,
            )

        results = asyncio.run(run())
        assert isinstance(results[0], StorageError)
        assert manager.pending_entries() == [(f"m{i}", match_hash(i)) for i in range(6)]

    def test_match_being_flushed_cannot_be_queued_again(self, coordinator_keys):
        """A failed flush must not bring back a second copy of the same match."""
        manager, _, _ = make_manager(store=SlowManifestStore(fail_manifests=True))

        async def run():
            await manager.add_match("m0", match_hash(0))
            flushing = asyncio.create_task(manager.flush())
            await asyncio.sleep(0.01)
            with pytest.raises(ValueError, match="being flushed"):
                await manager.add_match("m0", match_hash(0))
            with pytest.raises(StorageError):
                await flushing

        asyncio.run(run())
        assert manager.pending_entries() == [("m0", match_hash(0))]

    def test_match_can_be_queued_again_after_its_batch_closes(self, coordinator_keys):
        manager, _, _ = make_manager()

        async def run():
            await manager.add_match("m0", match_hash(0))
            await manager.flush()
            await manager.add_match("m0", match_hash(1))

        asyncio.run(run())
        assert manager.pending_entries() == [("m0", match_hash(1))]


class TestRestart:
    """Pending entries survive a process restart."""

    def test_load_pending(self, coordinator_keys):
        store = InMemoryObjectStore()
        first, _, _ = make_manager(store=store)
        asyncio.run(first.add_match("m0", match_hash(0)))
        asyncio.run(first.add_match("m1", match_hash(1)))

        second, _, _ = make_manager(store=store)
        assert asyncio.run(second.load_pending()) == 2
        manifest = asyncio.run(second.flush())
        assert manifest.match_ids == ["m0", "m1"]

    def test_load_pending_nothing_saved(self, coordinator_keys):
        manager, _, _ = make_manager()
        assert asyncio.run(manager.load_pending()) == 0

    def test_corrupt_pending_state_ignored(self, coordinator_keys):
        store = InMemoryObjectStore()
        asyncio.run(store.put(PENDING_STATE_KEY, b'{"match_ids":["a"],"match_hashes":[]}'))
        manager, _, _ = make_manager(store=store)
        assert asyncio.run(manager.load_pending()) == 0

    def test_persistence_disabled(self, coordinator_keys):
        manager, store, _ = make_manager(persist_pending=False)
        asyncio.run(manager.add_match("m0", match_hash(0)))
        assert asyncio.run(store.get(PENDING_STATE_KEY)) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
