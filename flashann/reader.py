"""Sector-aligned batched reads from an on-disk index file."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, Sequence

__all__ = ["SECTOR_LEN", "DEFAULT_MAX_IO_DEPTH", "AlignedRead", "AlignedFileReader"]

SECTOR_LEN = 4096
DEFAULT_MAX_IO_DEPTH = 128


@dataclass
class AlignedRead:
    """One read request: ``length`` bytes at ``offset``, both sector aligned.

    After a read, ``buf`` holds the bytes. A caller may supply its own
    ``buf``; it must be at least ``length`` bytes long.
    """

    offset: int
    length: int = SECTOR_LEN
    buf: bytearray | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.offset < 0 or self.offset % SECTOR_LEN:
            raise ValueError(
                f"offset {self.offset} is not a non-negative multiple of {SECTOR_LEN}"
            )
        if self.length < 0 or self.length % SECTOR_LEN:
            raise ValueError(
                f"length {self.length} is not a non-negative multiple of {SECTOR_LEN}"
            )


def _batches(
    requests: Sequence[AlignedRead], size: int
) -> Iterator[Sequence[AlignedRead]]:
    for start in range(0, len(requests), size):
        yield requests[start : start + size]


class AlignedFileReader:
    """Reads batches of sector-aligned regions from one file.

    Requests are served in batches of at most ``max_io_depth``. The reader is
    safe to share between threads.
    """

    def __init__(self, max_io_depth: int = DEFAULT_MAX_IO_DEPTH) -> None:
        if max_io_depth <= 0:
            raise ValueError(f"max_io_depth must be positive, got {max_io_depth}")
        self.max_io_depth = max_io_depth
        self.path: Path | None = None
        self._file: BinaryIO | None = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        """Whether a file is currently open."""
        return self._file is not None

    def open(self, path: str | Path) -> None:
        """Open ``path`` for reading, closing any file opened before."""
        handle = open(path, "rb", buffering=0)
        with self._lock:
            previous, self._file = self._file, handle
            self.path = Path(path)
        if previous is not None:
            previous.close()

    def close(self) -> None:
        """Close the file; closing twice does nothing."""
        with self._lock:
            handle, self._file = self._file, None
        if handle is not None:
            handle.close()

    def _read_into(self, handle: BinaryIO, request: AlignedRead) -> bytearray:
        buffer = request.buf if request.buf is not None else bytearray(request.length)
        if len(buffer) < request.length:
            raise ValueError(
                f"buffer of {len(buffer)} bytes is smaller than the "
                f"requested {request.length}"
            )
        view = memoryview(buffer)[: request.length]
        handle.seek(request.offset)
        filled = 0
        while filled < request.length:
            count = handle.readinto(view[filled:])
            if not count:
                raise OSError(
                    f"I/O failed, offset: {request.offset}: read {filled} of "
                    f"{request.length} bytes"
                )
            filled += count
        request.buf = buffer
        return buffer

    def read(self, requests: Sequence[AlignedRead]) -> list[bytearray]:
        """Serve every request, filling its ``buf``; return the buffers in order."""
        results: list[bytearray] = []
        for batch in _batches(list(requests), self.max_io_depth):
            with self._lock:
                handle = self._file
                if handle is None:
                    raise RuntimeError("reader has no open file")
                results.extend(self._read_into(handle, request) for request in batch)
        return results

    def __enter__(self) -> "AlignedFileReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()