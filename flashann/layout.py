"""On-disk layout of a flash index: header, sectors, node records and PQ codes."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import ArrayLike

from flashann.reader import SECTOR_LEN

__all__ = [
    "MAX_GRAPH_DEGREE",
    "MAX_N_CMPS",
    "MAX_N_SECTOR_READS",
    "MAX_PQ_CHUNKS",
    "NUM_PQ_CENTROIDS",
    "IndexLoadError",
    "PQTable",
    "DiskIndexHeader",
    "NodeRecord",
    "parse_node",
    "aggregate_coords",
    "pq_dist_lookup",
]

MAX_GRAPH_DEGREE = 512
MAX_N_CMPS = 16384
MAX_N_SECTOR_READS = 128
MAX_PQ_CHUNKS = 256
NUM_PQ_CENTROIDS = 256

_HEADER = struct.Struct("<5Q")
_NBR_COUNT = struct.Struct("<I")


class IndexLoadError(Exception):
    """The index files are missing, malformed or inconsistent with each other."""


class PQTable:
    """Product-quantisation codebook with fixed, contiguous dimension chunks.

    ``pivots`` has one row per centre (256) and one column per dimension;
    chunk ``c`` covers dimensions ``chunk_offsets[c]:chunk_offsets[c + 1]``.
    ``centroid`` is the mean subtracted from the data before quantisation.
    """

    def __init__(
        self,
        pivots: ArrayLike,
        chunk_offsets: ArrayLike,
        centroid: ArrayLike | None = None,
    ) -> None:
        table = np.asarray(pivots, dtype=np.float32)
        if table.ndim != 2 or table.shape[0] != NUM_PQ_CENTROIDS:
            raise ValueError(
                f"pivots must have shape ({NUM_PQ_CENTROIDS}, dim), got {table.shape}"
            )
        offsets = np.asarray(chunk_offsets, dtype=np.int64).reshape(-1)
        dim = table.shape[1]
        if (
            offsets.shape[0] < 2
            or offsets[0] != 0
            or offsets[-1] != dim
            or np.any(np.diff(offsets) <= 0)
        ):
            raise ValueError(
                "chunk_offsets must rise strictly from 0 to the pivot dimension "
                f"{dim}, got {offsets.tolist()}"
            )
        if centroid is None:
            centre = np.zeros(dim, dtype=np.float32)
        else:
            centre = np.asarray(centroid, dtype=np.float32).reshape(-1)
            if centre.shape[0] != dim:
                raise ValueError(
                    f"centroid has {centre.shape[0]} entries, expected {dim}"
                )
        self.pivots = table
        self.chunk_offsets = offsets
        self.centroid = centre

    @property
    def dim(self) -> int:
        """Number of dimensions the codebook covers."""
        return int(self.pivots.shape[1])

    @property
    def num_chunks(self) -> int:
        """Number of chunks, i.e. bytes per compressed vector."""
        return int(self.chunk_offsets.shape[0] - 1)

    def _query(self, query: ArrayLike) -> np.ndarray:
        vector = np.asarray(query, dtype=np.float32).reshape(-1)
        if vector.shape[0] < self.dim:
            raise ValueError(
                f"query has {vector.shape[0]} entries, fewer than {self.dim}"
            )
        return vector[: self.dim]

    def _codes(self, codes: ArrayLike) -> np.ndarray:
        array = np.asarray(codes, dtype=np.uint8).reshape(-1)
        if array.shape[0] < self.num_chunks:
            raise ValueError(
                f"code has {array.shape[0]} bytes, fewer than {self.num_chunks} chunks"
            )
        return array[: self.num_chunks]

    def populate_chunk_distances(self, query: ArrayLike) -> np.ndarray:
        """Return squared distances from each query chunk to each centre.

        The result has shape ``(num_chunks, 256)``.
        """
        shifted = self._query(query) - self.centroid
        squared = (self.pivots - shifted[np.newaxis, :]) ** 2
        per_chunk = np.add.reduceat(squared, self.chunk_offsets[:-1], axis=1)
        return np.ascontiguousarray(per_chunk.T, dtype=np.float32)

    def inflate_vector(self, codes: ArrayLike) -> np.ndarray:
        """Reconstruct the float vector that ``codes`` stands for."""
        code = self._codes(codes)
        chunk_of_dim = np.repeat(
            np.arange(self.num_chunks), np.diff(self.chunk_offsets)
        )
        rows = code[chunk_of_dim]
        values = self.pivots[rows, np.arange(self.dim)] + self.centroid
        return values.astype(np.float32, copy=False)

    def l2_distance(self, query: ArrayLike, codes: ArrayLike) -> float:
        """Squared Euclidean distance between ``query`` and the decoded ``codes``."""
        diff = self._query(query) - self.inflate_vector(codes)
        return float(np.sum(diff * diff, dtype=np.float32))

    def inner_product(self, query: ArrayLike, codes: ArrayLike) -> float:
        """Negated inner product with the decoded ``codes``; smaller is closer."""
        product = self._query(query) * self.inflate_vector(codes)
        return -float(np.sum(product, dtype=np.float32))


@dataclass(frozen=True)
class DiskIndexHeader:
    """Metadata at the start of a disk index file, validated on reading."""

    file_size: int
    num_nodes: int
    medoid: int
    max_node_len: int
    nnodes_per_sector: int
    disk_bytes_per_point: int
    max_degree: int

    @classmethod
    def read(
        cls, path: str | Path, num_points: int, disk_bytes_per_point: int
    ) -> "DiskIndexHeader":
        """Read and check the header of ``path`` against the compressed data."""
        index_path = Path(path)
        try:
            actual_size = index_path.stat().st_size
            with index_path.open("rb") as handle:
                raw = handle.read(_HEADER.size)
        except OSError as error:
            raise IndexLoadError(f"cannot read disk index {index_path}: {error}") from error
        if len(raw) < _HEADER.size:
            raise IndexLoadError(f"disk index {index_path} is too short for its header")
        expected_size, nnodes, medoid, max_node_len, per_sector = _HEADER.unpack(raw)
        if actual_size != expected_size:
            raise IndexLoadError(
                f"File size mismatch for {index_path} (size: {actual_size}) "
                f"with meta-data size: {expected_size}"
            )
        if nnodes != num_points:
            raise IndexLoadError(
                "Mismatch in #points for compressed data file and disk index file: "
                f"{nnodes} vs {num_points}"
            )
        if per_sector == 0:
            raise IndexLoadError("disk index reports zero nodes per sector")
        neighbour_bytes = max_node_len - disk_bytes_per_point
        max_degree = neighbour_bytes // _NBR_COUNT.size - 1
        if neighbour_bytes < _NBR_COUNT.size or max_degree > MAX_GRAPH_DEGREE:
            raise IndexLoadError(
                "Error loading index. Ensure that max graph degree (R) does not "
                f"exceed {MAX_GRAPH_DEGREE}"
            )
        return cls(
            file_size=expected_size,
            num_nodes=nnodes,
            medoid=medoid,
            max_node_len=max_node_len,
            nnodes_per_sector=per_sector,
            disk_bytes_per_point=disk_bytes_per_point,
            max_degree=max_degree,
        )

    def sector_offset(self, node_id: int) -> int:
        """Byte offset of the sector holding ``node_id``; sector 0 is the header."""
        if node_id < 0:
            raise ValueError(f"node id must not be negative, got {node_id}")
        return (node_id // self.nnodes_per_sector + 1) * SECTOR_LEN

    def node_record(self, sector: bytes | bytearray | memoryview, node_id: int) -> bytes:
        """Return the ``max_node_len`` bytes of ``node_id`` within its sector."""
        start = (node_id % self.nnodes_per_sector) * self.max_node_len
        end = start + self.max_node_len
        if len(sector) < end:
            raise ValueError(
                f"sector of {len(sector)} bytes does not hold node {node_id}"
            )
        return bytes(sector[start:end])


@dataclass(frozen=True)
class NodeRecord:
    """A node read from disk: its stored coordinates and neighbour ids."""

    coords: np.ndarray
    neighbors: np.ndarray


def parse_node(
    record: bytes | bytearray | memoryview,
    disk_bytes_per_point: int,
    dtype,
    dim: int,
) -> NodeRecord:
    """Split a node record into ``dim`` coordinates of ``dtype`` and its neighbours."""
    kind = np.dtype(dtype)
    if dim * kind.itemsize > disk_bytes_per_point:
        raise ValueError(
            f"{dim} values of {kind} do not fit in {disk_bytes_per_point} bytes"
        )
    count_end = disk_bytes_per_point + _NBR_COUNT.size
    if len(record) < count_end:
        raise ValueError("node record is too short to hold a neighbour count")
    (nnbrs,) = _NBR_COUNT.unpack_from(record, disk_bytes_per_point)
    if len(record) < count_end + nnbrs * _NBR_COUNT.size:
        raise ValueError(
            f"node record is too short to hold {nnbrs} neighbours"
        )
    coords = np.frombuffer(record, dtype=kind, count=dim).copy()
    neighbors = np.frombuffer(
        record, dtype="<u4", count=nnbrs, offset=count_end
    ).astype(np.uint32)
    return NodeRecord(coords=coords, neighbors=neighbors)


def aggregate_coords(ids: ArrayLike, all_codes: ArrayLike) -> np.ndarray:
    """Gather the PQ code rows of ``ids`` from the ``(npts, n_chunks)`` code table."""
    table = np.asarray(all_codes, dtype=np.uint8)
    if table.ndim != 2:
        raise ValueError(f"code table must be two-dimensional, got shape {table.shape}")
    rows = np.asarray(ids, dtype=np.int64).reshape(-1)
    return table[rows]


def pq_dist_lookup(codes: ArrayLike, chunk_dists: ArrayLike) -> np.ndarray:
    """Sum per-chunk centre distances for each row of ``codes``.

    ``chunk_dists`` holds 256 distances per chunk, as a ``(n_chunks, 256)``
    array or flat in chunk order.
    """
    code_rows = np.asarray(codes, dtype=np.uint8)
    if code_rows.ndim == 1:
        code_rows = code_rows[np.newaxis, :]
    n_chunks = code_rows.shape[1]
    table = np.asarray(chunk_dists, dtype=np.float32).reshape(-1, NUM_PQ_CENTROIDS)
    if table.shape[0] < n_chunks:
        raise ValueError(
            f"distance table covers {table.shape[0]} chunks, codes have {n_chunks}"
        )
    picked = table[np.arange(n_chunks), code_rows.astype(np.int64)]
    return np.sum(picked, axis=1, dtype=np.float32)