import threading
import time

import pandas as pd
import pytest

from bagcatalog.errors import StorageUnreachable
from bagcatalog.pipeline import IndexingOrchestrator
from bagcatalog.storage import ArchiveBackend, FileRef, LocalFilesystemBackend
from tests.helpers.fake_bag import FakeBag, SEC, STRING_DEF, STRING_MD5, STRING_TYPE, T0, gps_bag, string_payload, write_bag

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


def _short_sleep(seconds):
    time.sleep(0.01)


@pytest.fixture
def make_orchestrator(make_config, output_dirs, bag_root, db):
    def _make(backends=None, **user_overrides):
        config = make_config(ROOTS=[str(bag_root)], BASE_DIR=str(output_dirs["base"]), **user_overrides)
        return IndexingOrchestrator(config, backends=backends, output_dirs=output_dirs, db=db,
                                    sleeper=_short_sleep, status_interval=1)
    return _make


def test_default_backends_from_roots(make_orchestrator, bag_root):
    orch = make_orchestrator()
    assert list(orch.backends) == [f"file://{bag_root.resolve()}"]


def test_owned_database_under_catalog_dir(make_config, output_dirs, bag_root):
    config = make_config(ROOTS=[str(bag_root)])
    orch = IndexingOrchestrator(config, output_dirs=output_dirs)
    try:
        assert (output_dirs["catalog"] / "bag_catalog.db").exists()
    finally:
        orch.stop()


def test_ingest_all_preserves_order(make_orchestrator, bag_root):
    orch = make_orchestrator(MAX_WORKERS=3)
    backend_id = next(iter(orch.backends))
    data = gps_bag(n=2).build()
    write_bag(bag_root / "a.bag", data)
    write_bag(bag_root / "b.bag", gps_bag(n=3).build())
    write_bag(bag_root / "a-copy.bag", data)
    refs = [FileRef(backend_id, k) for k in ("a.bag", "b.bag", "missing.bag")]

    results = orch.ingest_all(refs)

    assert [r.ref for r in results] == refs
    assert [r.status for r in results] == ["ingested", "ingested", "failed"]
    assert len(orch.results) == 3


def test_once_mode_end_to_end(make_orchestrator, bag_root, output_dirs):
    write_bag(bag_root / "day1" / "a.bag", gps_bag(n=2).build(compression="lz4"))
    write_bag(bag_root / "day1" / "b.bag", gps_bag(n=3).build(compression="bz2"))
    write_bag(bag_root / "day2" / "a-copy.bag", gps_bag(n=2).build(compression="lz4"))
    write_bag(bag_root / "day2" / "broken.bag", b"#ROSBAG V1.2\n" + b"\x00" * 64)
    orch = make_orchestrator(MAX_WORKERS=2)

    orch.start(setup_logging=False)

    statuses = sorted(r.status for r in orch.results)
    assert statuses == ["duplicate", "failed", "ingested", "ingested"]
    assert orch.catalog.get_statistics()["total"] == 2

    exports = list(output_dirs["exports"].glob("bags_*.parquet"))
    assert len(exports) == 1
    assert len(pd.read_parquet(exports[0])) == 2


def test_once_mode_exports_bags_without_track(make_orchestrator, bag_root, output_dirs):
    chatter = FakeBag().connection(0, "/chatter", STRING_TYPE, STRING_MD5, STRING_DEF)
    for i in range(3):
        chatter.message(0, T0 + i * SEC, string_payload(f"hello {i}"))
    write_bag(bag_root / "gps.bag", gps_bag(n=2).build())
    write_bag(bag_root / "chatter.bag", chatter.build())
    orch = make_orchestrator()

    orch.start(setup_logging=False)

    assert sorted(r.status for r in orch.results) == ["ingested", "ingested"]
    exports = list(output_dirs["exports"].glob("bags_*.parquet"))
    assert len(exports) == 1
    df = pd.read_parquet(exports[0]).set_index("filename")
    assert df.loc["gps.bag", "latitude_deg"] == pytest.approx(29.4505)
    assert pd.isna(df.loc["chatter.bag", "latitude_deg"])
    assert pd.isna(df.loc["chatter.bag", "longitude_deg"])


def test_second_run_skips_cataloged_files(make_orchestrator, bag_root):
    write_bag(bag_root / "a.bag", gps_bag(n=2).build())
    first = make_orchestrator()
    first.start(setup_logging=False)
    assert [r.status for r in first.results] == ["ingested"]

    write_bag(bag_root / "b.bag", gps_bag(n=3).build())
    second = make_orchestrator()
    second.start(setup_logging=False)
    assert [r.ref.key for r in second.results] == ["b.bag"]


def test_sweep_missing_marks_and_restores(make_orchestrator, bag_root):
    orch = make_orchestrator()
    backend_id = next(iter(orch.backends))
    write_bag(bag_root / "a.bag", gps_bag(n=2).build())
    bag_id = orch.ingest_all([FileRef(backend_id, "a.bag")])[0].bag_id

    moved = bag_root / "a.bag.moved"
    (bag_root / "a.bag").rename(moved)
    assert orch.sweep_missing() == {"checked": 1, "marked_missing": 1, "marked_present": 0, "unreachable": 0}
    assert orch.catalog.get_bag(bag_id).missing

    moved.rename(bag_root / "a.bag")
    assert orch.sweep_missing()["marked_present"] == 1
    assert not orch.catalog.get_bag(bag_id).missing


def test_sweep_leaves_offline_archive_alone(make_orchestrator, bag_root):
    archive = ArchiveBackend(LocalFilesystemBackend(bag_root), online=True)
    orch = make_orchestrator(backends=[archive])
    write_bag(bag_root / "a.bag", gps_bag(n=2).build())
    bag_id = orch.ingest_all([FileRef(archive.backend_id, "a.bag")])[0].bag_id

    archive.set_online(False)
    stats = orch.sweep_missing()

    assert stats["unreachable"] == 1
    assert stats["marked_missing"] == 0
    assert not orch.catalog.get_bag(bag_id).missing


def test_watch_mode_until_stopped(make_orchestrator, bag_root):
    write_bag(bag_root / "a.bag", gps_bag(n=2).build())
    orch = make_orchestrator(MODE="watch", POLL_INTERVAL_SEC=1)
    runner = threading.Thread(target=orch.start, kwargs={"setup_logging": False}, daemon=True)
    runner.start()

    deadline = time.time() + 10
    while len(orch.results) < 1 and time.time() < deadline:
        time.sleep(0.02)
    write_bag(bag_root / "b.bag", gps_bag(n=3).build())
    while len(orch.results) < 2 and time.time() < deadline:
        time.sleep(0.02)

    orch.stop()
    runner.join(timeout=10)

    assert not runner.is_alive()
    assert sorted(r.ref.key for r in orch.results) == ["a.bag", "b.bag"]


class FlakyBackend(LocalFilesystemBackend):
    """Local backend whose first ``failures`` opens report the storage unreachable."""

    def __init__(self, root, failures=1):
        super().__init__(root)
        self.failures = failures

    def open(self, key):
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnreachable(f"{key}: mount flapped")
        return super().open(key)


def test_watch_mode_retries_retryable_failure(make_orchestrator, bag_root):
    write_bag(bag_root / "a.bag", gps_bag(n=2).build())
    orch = make_orchestrator(backends=[FlakyBackend(bag_root)], MODE="watch", POLL_INTERVAL_SEC=1)
    runner = threading.Thread(target=orch.start, kwargs={"setup_logging": False}, daemon=True)
    runner.start()

    deadline = time.time() + 10
    while not any(r.status == "ingested" for r in orch.results) and time.time() < deadline:
        time.sleep(0.02)

    orch.stop()
    runner.join(timeout=10)

    statuses = [r.status for r in orch.results]
    assert statuses[0] == "failed"
    assert orch.results[0].retryable
    assert "ingested" in statuses
    assert orch.catalog.get_statistics()["total"] == 1

def test_stop_is_idempotent(make_orchestrator):
    orch = make_orchestrator()
    orch.stop()
    orch.stop()
