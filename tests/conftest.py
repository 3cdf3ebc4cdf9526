"""Root-level pytest fixtures for the bagcatalog test suite.

Provides shared configuration fixtures following Pydantic-based architecture.
All tests must use these fixtures instead of creating raw dict configs.
"""

import pytest
from pathlib import Path
import tempfile
import shutil

from bagcatalog.catalog import CatalogDatabase, MessageTypeCatalog
from bagcatalog.schemas import ParamConfig, UserConfig, resolve_config
from bagcatalog.setup_directories import setup_output_directories
from bagcatalog.storage import LocalFilesystemBackend


# =============================================================================
# Configuration Fixtures (Pydantic-based)
# =============================================================================

@pytest.fixture
def param_config():
    """Expert configuration with all defaults."""
    return ParamConfig()


@pytest.fixture
def internal_config(param_config):
    """Fully validated runtime configuration (no overrides).

    Use this when tests don't care about specific config values and just
    need a valid InternalConfig to pass to constructors.

    Examples
    --------
    >>> def test_parser_init(internal_config):
    ...     parser = BagFormatParser(internal_config)
    ...     assert parser.supported_major == "2"
    """
    return resolve_config(param_config, None, None)


@pytest.fixture
def make_config(param_config):
    """Factory fixture for creating custom test configs.

    Returns a callable that accepts UserConfig-compatible kwargs.

    Examples
    --------
    >>> def test_lz4_disabled(make_config):
    ...     config = make_config(COMPRESSION_CODECS=["none", "bz2"])
    ...     assert "lz4" not in config.parser.compression_codecs
    """
    def _make(**user_overrides):
        """Create InternalConfig with user overrides."""
        if user_overrides:
            user = UserConfig(**user_overrides)
            return resolve_config(param_config, user, None)
        else:
            return resolve_config(param_config, None, None)

    return _make


# =============================================================================
# Directory Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Temporary directory that is cleaned up after test."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def output_dirs(temp_dir):
    """Standard output directory structure under ``temp_dir / "out"``.

    Returns dict with keys: base, catalog, exports, logs
    """
    return setup_output_directories(temp_dir / "out")


@pytest.fixture
def bag_root(temp_dir):
    """Empty directory to write synthetic bags into."""
    root = temp_dir / "bags"
    root.mkdir()
    return root


@pytest.fixture
def local_backend(bag_root):
    return LocalFilesystemBackend(bag_root)


# =============================================================================
# Catalog Fixtures
# =============================================================================

@pytest.fixture
def db():
    """Private in-memory catalog database."""
    database = CatalogDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture
def file_db(temp_dir):
    """On-disk catalog database (WAL mode), for tests that need a real file."""
    database = CatalogDatabase(temp_dir / "catalog" / "catalog.db")
    yield database
    database.close()


@pytest.fixture
def message_types(db):
    return MessageTypeCatalog(db)
