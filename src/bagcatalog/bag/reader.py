"""Random-access byte reader for bag files.

Wraps a seekable binary stream from a storage backend and adds the three
things the record parser needs on top of plain ``read``:

- checked reads: ``read_exact`` raises ``Truncated`` instead of returning
  short data, and every record length is checked against ``remaining()``
  before it is trusted;
- decompression filters: ``push_filter`` decompresses the next N bytes and
  makes all following reads come from the decompressed region until
  ``pop_filter``;
- bounded I/O: with a timeout set, open/read/seek on the underlying
  stream run on a worker thread and a stall raises ``IngestionTimeout``.
"""

import bz2
import io
import logging
import os
import struct
import concurrent.futures
from contextlib import contextmanager
from typing import Optional

import lz4.frame

from bagcatalog.errors import CorruptChunk, IngestionTimeout, Truncated

__all__ = ['BinaryReader', 'decompress', 'parse_fields']

logger = logging.getLogger(__name__)

_UINT32 = struct.Struct('<I')
_UINT64 = struct.Struct('<Q')
_TIME = struct.Struct('<II')


def decompress(codec: str, data: bytes) -> bytes:
    """Decompress one chunk payload.

    Raises
    ------
    CorruptChunk
        Unknown codec or a payload the codec rejects.
    """
    try:
        if codec == "none":
            return data
        if codec == "bz2":
            return bz2.decompress(data)
        if codec == "lz4":
            return lz4.frame.decompress(data)
    except (OSError, ValueError, RuntimeError, EOFError) as e:
        raise CorruptChunk(f"{codec} decompression failed: {e}") from e
    raise CorruptChunk(f"Unsupported compression codec: {codec!r}")


def parse_fields(buf: bytes) -> dict[str, bytes]:
    """Split a record header into its ``name=value`` fields.

    Each field is ``uint32 length`` followed by ``length`` bytes. Values
    are kept as raw bytes; the ``field_*`` helpers decode them.
    """
    fields = {}
    offset = 0
    end = len(buf)
    while offset < end:
        if offset + 4 > end:
            raise Truncated(f"Header field length runs past end of header ({offset}/{end})")
        (field_len,) = _UINT32.unpack_from(buf, offset)
        offset += 4
        if offset + field_len > end:
            raise Truncated(f"Header field of {field_len} bytes runs past end of header")
        name, sep, value = buf[offset:offset + field_len].partition(b'=')
        offset += field_len
        if sep:
            fields[name.decode('ascii', errors='replace')] = value
    return fields


def field_uint32(fields: dict, name: str) -> int:
    return _UINT32.unpack(fields[name])[0]


def field_uint64(fields: dict, name: str) -> int:
    return _UINT64.unpack(fields[name])[0]


def field_time(fields: dict, name: str) -> int:
    """Decode a ``time`` field (uint32 sec, uint32 nsec) to nanoseconds."""
    sec, nsec = _TIME.unpack(fields[name])
    return sec * 1_000_000_000 + nsec


def field_str(fields: dict, name: str, default: Optional[str] = None) -> str:
    if name not in fields:
        if default is None:
            raise KeyError(f"Missing header field: {name}")
        return default
    return fields[name].decode('utf-8')


def field_op(fields: dict) -> int:
    op = fields.get('op')
    if op is None or len(op) != 1:
        raise KeyError("Missing or malformed 'op' header field")
    return op[0]


def _close_late_stream(future):
    """Close a stream an abandoned open returned after its caller timed out."""
    if future.cancelled() or future.exception() is not None:
        return
    stream = future.result()
    logger.debug("Closing stream opened after timeout: %s", getattr(stream, "name", stream))
    stream.close()


def _bounded(executor, timeout, fn, *args, on_abandon=None):
    if executor is None:
        return fn(*args)
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        if not future.cancel() and on_abandon is not None:
            future.add_done_callback(on_abandon)
        raise IngestionTimeout(f"Storage I/O did not complete within {timeout}s") from None


class BinaryReader:
    """Checked, seekable reader over one bag file.

    Use ``BinaryReader.open(backend, key)`` to read through a storage
    backend, or pass an already open binary stream directly::

        with BinaryReader(io.BytesIO(raw)) as reader:
            magic = reader.read_line()
            fields, data = reader.read_record()

    Parameters
    ----------
    stream : binary file-like
        Seekable stream positioned anywhere; the reader rewinds it.
    size : int, optional
        Total size in bytes. Measured from the stream when omitted.
    timeout : float, optional
        Bound in seconds on each call into the underlying stream.
    name : str, optional
        Label used in log messages and errors.
    """

    def __init__(self, stream, size: Optional[int] = None,
                 timeout: Optional[float] = None, name: Optional[str] = None,
                 _executor=None):
        self._stream = stream
        self._timeout = timeout
        self._executor = _executor
        if timeout is not None and self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="bag-io")
        self._filters: list[io.BytesIO] = []
        self.name = name or getattr(stream, "name", "<stream>")

        if size is None:
            self._io(stream.seek, 0, os.SEEK_END)
            size = self._io(stream.tell)
        self._size = size
        self._io(stream.seek, 0, os.SEEK_SET)

    @classmethod
    def open(cls, backend, key: str, timeout: Optional[float] = None) -> "BinaryReader":
        """Open ``key`` on ``backend`` for reading.

        Raises
        ------
        NotFound, PermissionDenied, StorageUnreachable
            As mapped by the backend.
        IngestionTimeout
            If the backend does not answer within ``timeout``.
        """
        executor = None
        if timeout is not None:
            executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="bag-io")
        try:
            stream = _bounded(executor, timeout, backend.open, key, on_abandon=_close_late_stream)
            return cls(stream, timeout=timeout, name=key, _executor=executor)
        except BaseException:
            if executor is not None:
                executor.shutdown(wait=False)
            raise

    def _io(self, fn, *args):
        return _bounded(self._executor, self._timeout, fn, *args)

    # ------------------------------------------------------------------
    # Position
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        """Size of the underlying file in bytes."""
        return self._size

    @property
    def filtered(self) -> bool:
        return bool(self._filters)

    def tell(self) -> int:
        if self._filters:
            return self._filters[-1].tell()
        return self._io(self._stream.tell)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        """Move within the current region. Backward seeks are allowed."""
        if self._filters:
            return self._filters[-1].seek(offset, whence)
        return self._io(self._stream.seek, offset, whence)

    def remaining(self) -> int:
        """Bytes left in the current region (decompressed or raw)."""
        if self._filters:
            top = self._filters[-1]
            return len(top.getbuffer()) - top.tell()
        return self._size - self.tell()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_exact(self, n: int) -> bytes:
        """Read exactly ``n`` bytes or raise ``Truncated``."""
        if n < 0:
            raise ValueError(f"Negative read size: {n}")
        if self._filters:
            data = self._filters[-1].read(n)
        else:
            data = self._io(self._stream.read, n)
        if len(data) != n:
            raise Truncated(f"{self.name}: wanted {n} bytes, got {len(data)}")
        return data

    def read_line(self, limit: int = 64) -> bytes:
        """Read up to and including the next newline, at most ``limit`` bytes."""
        if self._filters:
            return self._filters[-1].readline(limit)
        return self._io(self._stream.readline, limit)

    def read_uint32(self) -> int:
        return _UINT32.unpack(self.read_exact(4))[0]

    def read_uint64(self) -> int:
        return _UINT64.unpack(self.read_exact(8))[0]

    def read_length(self) -> int:
        """Read a uint32 length prefix and check it fits in the current region."""
        n = self.read_uint32()
        if n > self.remaining():
            raise Truncated(f"{self.name}: length {n} exceeds {self.remaining()} remaining bytes")
        return n

    def read_record_header(self) -> dict[str, bytes]:
        """Read the length-prefixed header of the next record."""
        return parse_fields(self.read_exact(self.read_length()))

    def read_record(self) -> tuple[dict[str, bytes], bytes]:
        """Read one complete record: ``(header fields, data)``."""
        fields = self.read_record_header()
        data = self.read_exact(self.read_length())
        return fields, data

    def skip_data(self) -> int:
        """Skip the data block of a record whose header was just read."""
        n = self.read_length()
        self.seek(n, os.SEEK_CUR)
        return n

    # ------------------------------------------------------------------
    # Decompression filters
    # ------------------------------------------------------------------

    def push_filter(self, codec: str, length: int, expected_size: Optional[int] = None):
        """Decompress the next ``length`` bytes and read from them until popped.

        The current region is advanced past the compressed bytes before
        decompression starts, so a failed filter leaves the reader
        positioned at the next record.

        Raises
        ------
        Truncated
            Fewer than ``length`` bytes remain.
        CorruptChunk
            The codec is unknown, rejects the data, or the output size does
            not match ``expected_size``.
        """
        raw = self.read_exact(length)
        data = decompress(codec, raw)
        if expected_size is not None and len(data) != expected_size:
            raise CorruptChunk(
                f"Decompressed {len(data)} bytes, chunk header declares {expected_size}")
        self._filters.append(io.BytesIO(data))
        logger.debug("Pushed %s filter: %d -> %d bytes", codec, length, len(data))

    def pop_filter(self):
        """Return to the enclosing region, positioned after the compressed bytes."""
        if not self._filters:
            raise RuntimeError("pop_filter() without a matching push_filter()")
        self._filters.pop().close()

    @contextmanager
    def decompressed(self, codec: str, length: int, expected_size: Optional[int] = None):
        """Context manager form of ``push_filter``/``pop_filter``."""
        self.push_filter(codec, length, expected_size)
        try:
            yield self
        finally:
            self.pop_filter()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self):
        """Close the stream. Safe to call multiple times."""
        while self._filters:
            self._filters.pop().close()
        if self._stream is not None:
            try:
                self._stream.close()
            finally:
                self._stream = None
                if self._executor is not None:
                    self._executor.shutdown(wait=False)
                    self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
