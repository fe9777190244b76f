"""Beam search over a disk-resident graph index guided by in-memory PQ codes."""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import threading
import time
from dataclasses import dataclass
from operator import itemgetter
from pathlib import Path
from typing import Iterable

import numpy as np
from numpy.typing import ArrayLike

from flashann.distance import Metric, select_distances
from flashann.layout import (
    MAX_N_SECTOR_READS,
    MAX_PQ_CHUNKS,
    DiskIndexHeader,
    IndexLoadError,
    NodeRecord,
    PQTable,
    aggregate_coords,
    parse_node,
    pq_dist_lookup,
)
from flashann.reader import AlignedFileReader, AlignedRead

__all__ = ["QueryStats", "PQFlashIndex"]

_log = logging.getLogger(__name__)

_CACHE_BLOCK_SIZE = 8
_MAX_RANGE_BEAM_WIDTH = 100


@dataclass
class QueryStats:
    """Counters and timings (in microseconds) gathered while serving a query."""

    total_us: float = 0.0
    io_us: float = 0.0
    cpu_us: float = 0.0
    n_4k: int = 0
    n_ios: int = 0
    n_cmps: int = 0
    n_cache_hits: int = 0
    n_hops: int = 0


@dataclass(slots=True)
class _Candidate:
    id: int
    distance: float
    fresh: bool = True


def _round_up(value: int, multiple: int) -> int:
    return -(-value // multiple) * multiple


def _elapsed_us(start: float) -> float:
    return (time.perf_counter() - start) * 1e6


class PQFlashIndex:
    """A graph index whose full vectors and adjacency lists live on disk.

    Navigation uses product-quantised codes kept in memory; the nodes that
    are expanded are re-ranked with their full-precision vectors.
    """

    def __init__(self, dtype=np.float32, metric: Metric = Metric.L2) -> None:
        self.dtype = np.dtype(dtype)
        requested = Metric(metric)
        self.dist_cmp, self.dist_cmp_float, self.metric = select_distances(
            self.dtype, requested
        )
        if self.metric != requested:
            _log.warning(
                "metric %s is not supported for %s data; falling back to L2",
                requested.name,
                self.dtype,
            )
        self.reader = AlignedFileReader()
        self.disk_index_file: Path | None = None
        self.header: DiskIndexHeader | None = None
        self.codes = np.zeros((0, 0), dtype=np.uint8)
        self.pq_table: PQTable | None = None
        self.disk_pq_table: PQTable | None = None
        self.data_dim = 0
        self.aligned_dim = 0
        self.disk_bytes_per_point = 0
        self.max_base_norm = 0.0
        self.medoids = np.zeros(0, dtype=np.uint32)
        self.centroid_data = np.zeros((0, 0), dtype=np.float32)
        self.nhood_cache: dict[int, np.ndarray] = {}
        self.coord_cache: dict[int, np.ndarray] = {}
        self.count_visited_nodes = False
        self.node_visit_counter = np.zeros(0, dtype=np.int64)
        self._visit_lock = threading.Lock()
        self._loaded = False

    @property
    def num_points(self) -> int:
        """Number of points in the index."""
        return int(self.codes.shape[0])

    @property
    def n_chunks(self) -> int:
        """Bytes per in-memory PQ code."""
        return int(self.codes.shape[1]) if self.codes.ndim == 2 else 0

    @property
    def use_disk_index_pq(self) -> bool:
        """Whether the disk holds PQ codes instead of full vectors."""
        return self.disk_pq_table is not None

    def load(
        self,
        disk_index_file,
        codes: ArrayLike,
        pq_table: PQTable,
        *,
        medoids: ArrayLike | None = None,
        centroids: ArrayLike | None = None,
        max_base_norm: float = 0.0,
        disk_pq_table: PQTable | None = None,
    ) -> None:
        """Attach the disk index and its compressed data, and open the file.

        ``codes`` is the ``(num_points, n_chunks)`` table of in-memory PQ
        codes. ``medoids`` lists the entry points (default: the medoid in the
        header); ``centroids`` holds one vector per medoid used to choose the
        starting point (default: the medoids' own vectors).
        """
        code_table = np.asarray(codes, dtype=np.uint8)
        if code_table.ndim != 2:
            raise IndexLoadError(
                f"compressed vectors must form a 2-d table, got shape {code_table.shape}"
            )
        num_points, n_chunks = code_table.shape
        if n_chunks > MAX_PQ_CHUNKS:
            raise IndexLoadError(
                "Error loading index. Ensure that max PQ bytes for in-memory PQ "
                f"data does not exceed {MAX_PQ_CHUNKS}"
            )
        if n_chunks != pq_table.num_chunks:
            raise IndexLoadError(
                f"compressed vectors have {n_chunks} chunks but the PQ table has "
                f"{pq_table.num_chunks}"
            )
        data_dim = pq_table.dim
        if disk_pq_table is not None:
            if disk_pq_table.dim != data_dim:
                raise IndexLoadError(
                    f"disk PQ table covers {disk_pq_table.dim} dimensions, "
                    f"expected {data_dim}"
                )
            disk_bytes_per_point = disk_pq_table.num_chunks
            _log.info(
                "Disk index uses PQ data compressed down to %d bytes per point",
                disk_bytes_per_point,
            )
        else:
            disk_bytes_per_point = data_dim * self.dtype.itemsize

        header = DiskIndexHeader.read(disk_index_file, num_points, disk_bytes_per_point)
        self.reader.open(disk_index_file)

        self.disk_index_file = Path(disk_index_file)
        self.header = header
        self.codes = code_table
        self.pq_table = pq_table
        self.disk_pq_table = disk_pq_table
        self.data_dim = data_dim
        self.aligned_dim = _round_up(data_dim, 8)
        self.disk_bytes_per_point = disk_bytes_per_point
        self.nhood_cache = {}
        self.coord_cache = {}
        self.node_visit_counter = np.zeros(num_points, dtype=np.int64)
        self.max_base_norm = 0.0
        self._loaded = True

        if medoids is None:
            self.medoids = np.array([header.medoid], dtype=np.uint32)
            self.use_medoids_data_as_centroids()
        else:
            self.medoids = self._check_medoids(medoids)
            if centroids is None:
                _log.info("No centroid data given; using the medoids' vectors")
                self.use_medoids_data_as_centroids()
            else:
                self.centroid_data = self._check_centroids(centroids)

        if max_base_norm and self.metric == Metric.INNER_PRODUCT:
            self.max_base_norm = float(max_base_norm)
            _log.info("Setting re-scaling factor of base vectors to %s", max_base_norm)

    def _check_medoids(self, medoids: ArrayLike) -> np.ndarray:
        array = np.asarray(medoids)
        if array.ndim == 2 and array.shape[1] == 1:
            array = array[:, 0]
        if array.ndim != 1:
            raise IndexLoadError(
                "Error loading medoids. Expected m times 1 vector of uint32."
            )
        if array.shape[0] == 0:
            raise IndexLoadError("at least one medoid is required")
        if np.any(array < 0) or np.any(array >= self.num_points):
            raise IndexLoadError("medoid ids must lie within the index")
        return array.astype(np.uint32)

    def _check_centroids(self, centroids: ArrayLike) -> np.ndarray:
        array = np.asarray(centroids, dtype=np.float32)
        if (
            array.ndim != 2
            or array.shape[0] != self.medoids.shape[0]
            or _round_up(array.shape[1], 8) != self.aligned_dim
        ):
            raise IndexLoadError(
                "Error loading centroids data. Expected m times data_dim vectors "
                "of float, where m is the number of medoids."
            )
        padded = np.zeros((array.shape[0], self.aligned_dim), dtype=np.float32)
        padded[:, : array.shape[1]] = array
        return padded

    def close(self) -> None:
        """Release the disk file and the caches."""
        self.reader.close()
        self.nhood_cache = {}
        self.coord_cache = {}
        self._loaded = False

    def __enter__(self) -> "PQFlashIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError("index is not loaded")

    def _read_nodes(self, node_ids: Iterable[int]) -> list[NodeRecord]:
        """Read and parse the records of ``node_ids`` from disk, in order."""
        header = self.header
        ids = [int(node_id) for node_id in node_ids]
        requests = [AlignedRead(header.sector_offset(node_id)) for node_id in ids]
        buffers = self.reader.read(requests)
        if self.use_disk_index_pq:
            kind, dim = np.dtype(np.uint8), self.disk_pq_table.num_chunks
        else:
            kind, dim = self.dtype, self.data_dim
        return [
            parse_node(
                header.node_record(buffer, node_id),
                self.disk_bytes_per_point,
                kind,
                dim,
            )
            for node_id, buffer in zip(ids, buffers)
        ]

    def use_medoids_data_as_centroids(self) -> None:
        """Use each medoid's stored vector as its centroid."""
        self._require_loaded()
        _log.info(
            "Loading centroid data from medoids vector data of %d medoid(s)",
            len(self.medoids),
        )
        centroids = np.zeros((len(self.medoids), self.aligned_dim), dtype=np.float32)
        for row, record in zip(centroids, self._read_nodes(self.medoids)):
            if self.use_disk_index_pq:
                row[: self.data_dim] = self.disk_pq_table.inflate_vector(record.coords)
            else:
                row[: self.data_dim] = record.coords
        self.centroid_data = centroids

    def load_cache_list(self, node_list: Iterable[int]) -> None:
        """Keep the vectors and neighbour lists of ``node_list`` in memory."""
        self._require_loaded()
        nodes = [int(node_id) for node_id in node_list]
        for start in range(0, len(nodes), _CACHE_BLOCK_SIZE):
            block = nodes[start : start + _CACHE_BLOCK_SIZE]
            for node_id, record in zip(block, self._read_nodes(block)):
                self.coord_cache[node_id] = record.coords
                self.nhood_cache[node_id] = record.neighbors

    def _full_distance(
        self, query_t: np.ndarray, query_float: np.ndarray, coords: np.ndarray
    ) -> float:
        if not self.use_disk_index_pq:
            return self.dist_cmp.compare(query_t, coords, self.data_dim)
        if self.metric == Metric.INNER_PRODUCT:
            return self.disk_pq_table.inner_product(query_float, coords)
        return self.disk_pq_table.l2_distance(query_float, coords)

    def cached_beam_search(
        self,
        query: ArrayLike,
        k_search: int,
        l_search: int,
        beam_width: int = 2,
        stats: QueryStats | None = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return the ids and distances of the ``k_search`` nearest points found.

        ``l_search`` is the candidate list size and ``beam_width`` the number
        of nodes read from disk per hop. Fewer than ``k_search`` results come
        back only when fewer nodes were expanded.
        """
        self._require_loaded()
        if l_search < 1:
            raise ValueError(f"l_search must be positive, got {l_search}")
        if not 0 <= k_search <= l_search:
            raise ValueError(
                f"k_search must lie between 0 and l_search ({l_search}), got {k_search}"
            )
        if not 1 <= beam_width <= MAX_N_SECTOR_READS:
            raise ValueError(
                f"beam_width must lie between 1 and {MAX_N_SECTOR_READS}, "
                f"got {beam_width}"
            )
        stats = stats if stats is not None else QueryStats()
        query_start = time.perf_counter()

        raw = np.asarray(query).reshape(-1)
        if raw.shape[0] < self.data_dim:
            raise ValueError(
                f"query has {raw.shape[0]} entries, fewer than {self.data_dim}"
            )
        raw = raw[: self.data_dim]
        query_float = raw.astype(np.float32)
        query_t = raw.astype(self.dtype)
        query_norm = float(np.sum(query_float * query_float, dtype=np.float32))

        if self.metric == Metric.INNER_PRODUCT:
            # Normalise the query; the last coordinate is the one added to turn
            # inner-product search into L2 search.
            query_norm = math.sqrt(query_norm)
            query_float[-1] = 0
            query_float[:-1] /= np.float32(query_norm)
            query_t = query_float.astype(self.dtype)

        padded_query = np.zeros(self.aligned_dim, dtype=np.float32)
        padded_query[: self.data_dim] = query_float

        pq_dists = self.pq_table.populate_chunk_distances(query_float)

        def compute_dists(ids) -> np.ndarray:
            return pq_dist_lookup(aggregate_coords(ids, self.codes), pq_dists)

        best_medoid, best_dist = 0, math.inf
        for medoid, centroid in zip(self.medoids, self.centroid_data):
            dist = self.dist_cmp_float.compare(padded_query, centroid, self.aligned_dim)
            if dist < best_dist:
                best_medoid, best_dist = int(medoid), dist

        retset = [_Candidate(best_medoid, float(compute_dists([best_medoid])[0]))]
        visited = {best_medoid}
        full_retset: list[tuple[int, float]] = []
        nk = 0

        def expand(node_id: int, coords: np.ndarray, neighbors: np.ndarray, count_new: bool) -> None:
            nonlocal nk
            full_retset.append(
                (node_id, self._full_distance(query_t, query_float, coords))
            )
            cpu_start = time.perf_counter()
            dists = compute_dists(neighbors)
            stats.n_cmps += len(neighbors)
            stats.cpu_us += _elapsed_us(cpu_start)
            for neighbor, dist in zip(neighbors.tolist(), dists.tolist()):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                if count_new:
                    stats.n_cmps += 1
                if len(retset) == l_search and dist >= retset[-1].distance:
                    continue
                position = bisect.bisect_right(
                    retset, dist, key=lambda candidate: candidate.distance
                )
                retset.insert(position, _Candidate(neighbor, dist))
                if len(retset) > l_search:
                    retset.pop()
                nk = min(nk, position)

        k = 0
        while k < len(retset):
            nk = len(retset)
            frontier: list[int] = []
            cached: list[int] = []
            num_seen = 0
            for candidate in itertools.islice(retset, k, None):
                if len(frontier) >= beam_width or num_seen >= beam_width + 2:
                    break
                if not candidate.fresh:
                    continue
                num_seen += 1
                if candidate.id in self.nhood_cache:
                    cached.append(candidate.id)
                    stats.n_cache_hits += 1
                else:
                    frontier.append(candidate.id)
                candidate.fresh = False
                if self.count_visited_nodes:
                    with self._visit_lock:
                        self.node_visit_counter[candidate.id] += 1

            records: list[NodeRecord] = []
            if frontier:
                stats.n_hops += 1
                stats.n_4k += len(frontier)
                stats.n_ios += len(frontier)
                io_start = time.perf_counter()
                records = self._read_nodes(frontier)
                stats.io_us += _elapsed_us(io_start)

            for node_id in cached:
                expand(node_id, self.coord_cache[node_id], self.nhood_cache[node_id], False)
            for node_id, record in zip(frontier, records):
                expand(node_id, record.coords, record.neighbors, True)

            k = nk if nk <= k else k + 1

        full_retset.sort(key=itemgetter(1))
        top = full_retset[:k_search]
        ids = np.array([node_id for node_id, _ in top], dtype=np.uint64)
        distances = np.array([dist for _, dist in top], dtype=np.float32)
        if self.metric == Metric.INNER_PRODUCT:
            distances = -distances
            if self.max_base_norm != 0:
                distances *= np.float32(self.max_base_norm * query_norm)

        stats.total_us = _elapsed_us(query_start)
        return ids, distances

    def range_search(
        self,
        query: ArrayLike,
        search_range: float,
        min_l_search: int,
        max_l_search: int,
        min_beam_width: int,
        stats: QueryStats | None = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return every point found within ``search_range`` of ``query``.

        The candidate list starts at ``min_l_search`` and doubles while at
        least half of it lies within range, up to ``max_l_search``.
        """
        limit = np.float32(search_range)
        l_search = min_l_search
        while True:
            beam_width = min(max(min_beam_width, l_search // 5), _MAX_RANGE_BEAM_WIDTH)
            ids, distances = self.cached_beam_search(
                query, l_search, l_search, beam_width, stats
            )
            outside = np.flatnonzero(distances > limit)
            res_count = int(outside[0]) if outside.size else len(distances)
            stop = res_count < int(l_search / 2.0)
            l_search *= 2
            if stop or l_search > max_l_search:
                return ids[:res_count], distances[:res_count]