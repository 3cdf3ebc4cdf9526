"""Storage backends holding bag files.

Every backend exposes the same duck-typed surface:

- ``backend_id``: stable name of the backend instance
- ``open(key)``: seekable binary stream
- ``stat_size(key)``: size in bytes
- ``check_exists(key)``: whether the key is still there
- ``iter_candidates()``: keys that look like bag files
- ``describe(key)``: ``(filename, path)`` as recorded in the catalog

Backend failures are mapped onto ``bagcatalog.errors``: a missing key is
``NotFound``, a refused read ``PermissionDenied``, and a backend that
cannot be reached at all ``StorageUnreachable``.
"""

import fnmatch
import logging
import posixpath
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from bagcatalog.errors import BagCatalogError, NotFound, PermissionDenied, StorageUnreachable

__all__ = ['FileRef', 'LocalFilesystemBackend', 'ObjectStoreBackend', 'ArchiveBackend']

logger = logging.getLogger(__name__)

# Magic line plus one record length
MIN_BAG_SIZE = 13


@dataclass(frozen=True)
class FileRef:
    """One file on one backend, as produced by discovery."""
    backend_id: str
    key: str

    def __str__(self):
        return f"{self.backend_id}:{self.key}"


def _matches(name: str, patterns) -> bool:
    return any(fnmatch.fnmatch(name, p) for p in patterns)


class LocalFilesystemBackend:
    """Bags below one directory of the local filesystem.

    Keys are POSIX paths relative to ``root``.

    Parameters
    ----------
    root : Path or str
        Directory to serve. If it disappears (unmounted drive) the backend
        reports ``StorageUnreachable`` rather than every file missing.
    patterns : list of str
        Filename globs ``iter_candidates`` matches.
    backend_id : str, optional
        Defaults to ``file://<absolute root>``.
    min_file_size : int
        Files smaller than this are never candidates.
    """

    def __init__(self, root: Path | str, patterns=("*.bag",), backend_id: Optional[str] = None,
                 min_file_size: int = MIN_BAG_SIZE):
        self.root = Path(root).expanduser().resolve()
        self.patterns = list(patterns)
        self.backend_id = backend_id or f"file://{self.root}"
        self.min_file_size = min_file_size

    def _path(self, key: str) -> Path:
        return self.root / key

    def _check_root(self):
        if not self.root.is_dir():
            raise StorageUnreachable(f"Storage root not available: {self.root}")

    def open(self, key: str):
        self._check_root()
        try:
            return open(self._path(key), "rb")
        except FileNotFoundError:
            raise NotFound(f"No such bag: {key}") from None
        except PermissionError:
            raise PermissionDenied(f"Cannot read bag: {key}") from None
        except IsADirectoryError:
            raise NotFound(f"Not a file: {key}") from None

    def stat_size(self, key: str) -> int:
        self._check_root()
        try:
            return self._path(key).stat().st_size
        except FileNotFoundError:
            raise NotFound(f"No such bag: {key}") from None
        except PermissionError:
            raise PermissionDenied(f"Cannot stat bag: {key}") from None

    def check_exists(self, key: str) -> bool:
        self._check_root()
        return self._path(key).is_file()

    def iter_candidates(self) -> Iterator[str]:
        self._check_root()
        seen = set()
        for pattern in self.patterns:
            for path in sorted(self.root.rglob(pattern)):
                if path in seen or not path.is_file():
                    continue
                seen.add(path)
                try:
                    if path.stat().st_size < self.min_file_size:
                        logger.debug("Skipping small file: %s", path)
                        continue
                except OSError as e:
                    logger.warning("Cannot stat %s: %s", path, e)
                    continue
                yield path.relative_to(self.root).as_posix()

    def describe(self, key: str) -> tuple[str, str]:
        path = self._path(key)
        return path.name, f"{path.parent}/"


def _error_code(exc: Exception) -> Optional[str]:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error") or {}
        code = error.get("Code")
        return str(code) if code is not None else None
    return None


class ObjectStoreBackend:
    """Bags in an S3-compatible bucket.

    The client is injected and only needs ``head_object``, ``get_object``
    and ``list_objects_v2`` with boto3's keyword names. Object bodies are
    spooled to a temporary file so the parser can seek.

    Parameters
    ----------
    client : object
        S3-shaped client.
    bucket : str
        Bucket name.
    prefix : str
        Only keys under this prefix are candidates.
    patterns : list of str
        Basename globs ``iter_candidates`` matches.
    backend_id : str, optional
        Defaults to ``s3://<bucket>/<prefix>``.
    spool_max_bytes : int
        Bodies larger than this go to disk instead of memory.
    """

    NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
    DENIED_CODES = {"403", "AccessDenied", "Forbidden", "AllAccessDisabled"}

    def __init__(self, client, bucket: str, prefix: str = "", patterns=("*.bag",),
                 backend_id: Optional[str] = None, spool_max_bytes: int = 64 * 1024 * 1024,
                 min_file_size: int = MIN_BAG_SIZE, read_block_size: int = 1 << 20):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix
        self.patterns = list(patterns)
        self.backend_id = backend_id or f"s3://{bucket}/{prefix}"
        self.spool_max_bytes = spool_max_bytes
        self.min_file_size = min_file_size
        self.read_block_size = read_block_size

    def _map_error(self, exc: Exception, key: str) -> BagCatalogError:
        code = _error_code(exc)
        if code in self.NOT_FOUND_CODES:
            return NotFound(f"No such object: s3://{self.bucket}/{key}")
        if code in self.DENIED_CODES:
            return PermissionDenied(f"Access denied: s3://{self.bucket}/{key}")
        return StorageUnreachable(f"Object store error for s3://{self.bucket}/{key}: {exc}")

    def _call(self, key: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except BagCatalogError:
            raise
        except Exception as e:
            raise self._map_error(e, key) from e

    def open(self, key: str):
        response = self._call(key, self.client.get_object, Bucket=self.bucket, Key=key)
        body = response["Body"]
        spool = tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes)
        try:
            while True:
                block = self._call(key, body.read, amt=self.read_block_size)
                if not block:
                    break
                spool.write(block)
            spool.seek(0)
        except BaseException:
            spool.close()
            raise
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()
        return spool

    def stat_size(self, key: str) -> int:
        response = self._call(key, self.client.head_object, Bucket=self.bucket, Key=key)
        return int(response["ContentLength"])

    def check_exists(self, key: str) -> bool:
        try:
            self._call(key, self.client.head_object, Bucket=self.bucket, Key=key)
        except NotFound:
            return False
        return True

    def iter_candidates(self) -> Iterator[str]:
        kwargs = {"Bucket": self.bucket, "Prefix": self.prefix}
        while True:
            page = self._call(self.prefix, self.client.list_objects_v2, **kwargs)
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if obj.get("Size", 0) < self.min_file_size:
                    continue
                if _matches(posixpath.basename(key), self.patterns):
                    yield key
            if not page.get("IsTruncated"):
                break
            kwargs["ContinuationToken"] = page["NextContinuationToken"]

    def describe(self, key: str) -> tuple[str, str]:
        directory, filename = posixpath.split(key)
        path = f"s3://{self.bucket}/{directory}/" if directory else f"s3://{self.bucket}/"
        return filename, path


class ArchiveBackend:
    """Offline storage tier in front of another backend.

    While offline every call raises ``StorageUnreachable``; cataloged bags
    on it are kept and never marked missing. Once brought online it
    serves ``inner`` unchanged.

    Parameters
    ----------
    inner : backend
        The backend holding the archived files.
    online : bool
        Initial state.
    backend_id : str, optional
        Defaults to ``archive+<inner backend_id>``.
    """

    def __init__(self, inner, online: bool = False, backend_id: Optional[str] = None):
        self.inner = inner
        self.online = online
        self.backend_id = backend_id or f"archive+{inner.backend_id}"

    def set_online(self, online: bool):
        self.online = online
        logger.info("Archive %s is now %s", self.backend_id, "online" if online else "offline")

    def _require_online(self):
        if not self.online:
            raise StorageUnreachable(f"Archive {self.backend_id} is offline")

    def open(self, key: str):
        self._require_online()
        return self.inner.open(key)

    def stat_size(self, key: str) -> int:
        self._require_online()
        return self.inner.stat_size(key)

    def check_exists(self, key: str) -> bool:
        self._require_online()
        return self.inner.check_exists(key)

    def iter_candidates(self) -> Iterator[str]:
        self._require_online()
        yield from self.inner.iter_candidates()

    def describe(self, key: str) -> tuple[str, str]:
        return self.inner.describe(key)
