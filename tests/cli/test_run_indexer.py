import pytest

from bagcatalog.cli.run_indexer import build_config, load_user_config_dict, main, run_indexer
from tests.helpers.fake_bag import gps_bag, write_bag

pytestmark = [pytest.mark.unit, pytest.mark.cli]


@pytest.fixture
def user_config_file(temp_dir):
    path = temp_dir / "my_config.py"
    path.write_text(
        "CONFIG = {\n"
        "    'MODE': 'watch',\n"
        "    'ROOTS': ['/data/bags'],\n"
        "    'MAX_WORKERS': 3,\n"
        "    'POLL_INTERVAL_SEC': 120,\n"
        "}\n"
    )
    return path


@pytest.fixture
def quiet_logging(monkeypatch):
    """Keep the orchestrator from replacing pytest's log handlers."""
    monkeypatch.setattr("bagcatalog.pipeline.orchestrator.IndexingOrchestrator._setup_logging",
                        lambda self: None)


def test_load_user_config_dict(user_config_file):
    config = load_user_config_dict(str(user_config_file))
    assert config["MAX_WORKERS"] == 3


def test_load_user_config_missing_file(temp_dir):
    with pytest.raises(FileNotFoundError):
        load_user_config_dict(str(temp_dir / "nope.py"))


def test_load_user_config_without_config_dict(temp_dir):
    path = temp_dir / "empty.py"
    path.write_text("SETTINGS = {}\n")
    with pytest.raises(ValueError):
        load_user_config_dict(str(path))


def test_build_config_layers(user_config_file):
    config = build_config(str(user_config_file), {"roots": ["/cli/bags"], "workers": None})

    assert config.mode == "watch"
    assert config.scanner.roots == ["/cli/bags"]
    assert config.scanner.poll_interval_sec == 120
    assert config.ingestion.max_concurrent_ingestions == 3


def test_build_config_defaults_and_verbose():
    config = build_config(verbose=True)
    assert config.logging.level == "DEBUG"
    assert config.scanner.roots == []


def test_run_indexer_requires_roots(temp_dir):
    with pytest.raises(ValueError, match="No scan roots"):
        run_indexer(cli_args={"base_dir": str(temp_dir / "out")})


def test_main_once_mode(bag_root, temp_dir, quiet_logging, capsys):
    write_bag(bag_root / "a.bag", gps_bag(n=2).build())
    out = temp_dir / "out"

    code = main(["--root", str(bag_root), "--base-dir", str(out), "--workers", "1"])

    assert code == 0
    assert "Bag Catalog Indexer" in capsys.readouterr().out
    assert (out / "catalog" / "bag_catalog.db").exists()
    assert len(list((out / "exports").glob("*.parquet"))) == 1


def test_main_reports_failures(bag_root, temp_dir, quiet_logging):
    write_bag(bag_root / "old.bag", b"#ROSBAG V1.2\n" + b"\x00" * 64)
    code = main(["--root", str(bag_root), "--base-dir", str(temp_dir / "out")])
    assert code == 1


def test_rerun_cleans_output(bag_root, temp_dir, quiet_logging):
    out = temp_dir / "out"
    (out / "stale").mkdir(parents=True)
    write_bag(bag_root / "a.bag", gps_bag(n=1).build())

    orchestrator = run_indexer(cli_args={"roots": [str(bag_root)], "base_dir": str(out)}, rerun=True)

    assert not (out / "stale").exists()
    assert [r.status for r in orchestrator.results] == ["ingested"]
