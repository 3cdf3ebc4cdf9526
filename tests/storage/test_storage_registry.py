import threading

import pytest

from bagcatalog.storage import FileRef, StorageRegistry

pytestmark = [pytest.mark.unit, pytest.mark.storage]


@pytest.fixture
def registry(db):
    return StorageRegistry(db)


def test_assign_is_stable(registry):
    first = registry.assign("file:///data", "run1.bag")
    assert registry.assign("file:///data", "run1.bag") == first
    assert registry.lookup("file:///data", "run1.bag") == first


def test_assign_distinguishes_backends_and_keys(registry):
    ids = {
        registry.assign("file:///data", "run1.bag"),
        registry.assign("file:///data", "run2.bag"),
        registry.assign("s3://fleet/", "run1.bag"),
    }
    assert len(ids) == 3


def test_lookup_unknown(registry):
    assert registry.lookup("file:///data", "nope.bag") is None
    assert registry.resolve("deadbeef") is None


def test_resolve(registry):
    storage_id = registry.assign("s3://fleet/", "runs/a.bag")
    assert registry.resolve(storage_id) == FileRef("s3://fleet/", "runs/a.bag")


def test_concurrent_assign_agrees(file_db):
    registry = StorageRegistry(file_db)
    barrier = threading.Barrier(6)
    ids = []

    def worker():
        barrier.wait()
        ids.append(registry.assign("file:///data", "run1.bag"))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(ids) == 6
    assert len(set(ids)) == 1
