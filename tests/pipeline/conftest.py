import pytest

from bagcatalog.pipeline import BagIngestor
from bagcatalog.storage import FileRef
from tests.helpers.fake_bag import write_bag


@pytest.fixture
def ingestor(internal_config, local_backend, db):
    return BagIngestor(internal_config, [local_backend], db)


@pytest.fixture
def put_bag(bag_root, local_backend):
    """Write bag bytes under ``bag_root`` and return the FileRef for them."""
    def _put(key, data):
        write_bag(bag_root / key, data)
        return FileRef(local_backend.backend_id, key)
    return _put
