"""Tests for the identifier allocator."""
import threading

from notekeeper.models.schema import EntityKind
from notekeeper.storage.id_allocator import IdentityAllocator


class TestIdentityAllocator:
    """Tests for IdentityAllocator."""

    def test_starts_at_one(self):
        allocator = IdentityAllocator()
        assert allocator.next(EntityKind.NOTES) == 1
        assert allocator.next(EntityKind.NOTES) == 2

    def test_kinds_are_independent(self):
        allocator = IdentityAllocator()
        allocator.next(EntityKind.NOTES)
        allocator.next(EntityKind.NOTES)
        assert allocator.next(EntityKind.TAGS) == 1

    def test_seed_from_max(self):
        allocator = IdentityAllocator(seeds={EntityKind.FOLDERS: 41})
        assert allocator.next("folders") == 42

    def test_seed_empty_table(self):
        allocator = IdentityAllocator()
        allocator.seed(EntityKind.NOTES, None)
        assert allocator.peek(EntityKind.NOTES) == 1

    def test_observe_only_moves_forward(self):
        """External identifiers push the counter past them, never back."""
        allocator = IdentityAllocator()
        allocator.observe(EntityKind.NOTES, [3, 17, None, -4])
        assert allocator.peek(EntityKind.NOTES) == 18
        allocator.observe(EntityKind.NOTES, [5])
        assert allocator.peek(EntityKind.NOTES) == 18

    def test_peek_does_not_allocate(self):
        allocator = IdentityAllocator()
        assert allocator.peek(EntityKind.TAGS) == 1
        assert allocator.next(EntityKind.TAGS) == 1

    def test_concurrent_calls_never_collide(self):
        """Identifiers handed out from many threads are all distinct."""
        allocator = IdentityAllocator()
        results = []
        lock = threading.Lock()

        def worker():
            ids = [allocator.next(EntityKind.NOTES) for _ in range(200)]
            with lock:
                results.extend(ids)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1600
        assert len(set(results)) == 1600
        assert min(results) == 1
        assert max(results) == 1600
