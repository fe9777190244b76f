import struct

import numpy as np
import pytest

from flashann.distance import Metric
from flashann.flash_index import PQFlashIndex, QueryStats
from flashann.layout import IndexLoadError, PQTable
from flashann.reader import SECTOR_LEN

VECTORS = np.random.default_rng(7).integers(0, 50, size=(20, 4)).astype(np.float32)


def exact_pq(dim, offset=0):
    centres = np.arange(256, dtype=np.float32) - offset
    pivots = np.repeat(centres[:, None], dim, axis=1)
    return PQTable(pivots, np.arange(dim + 1))


def complete_graph(n):
    return [[j for j in range(n) if j != i] for i in range(n)]


def write_index(path, coord_records, adjacency, medoid=0):
    degree = max(1, max(len(nbrs) for nbrs in adjacency))
    max_node_len = len(coord_records[0]) + 4 + 4 * degree
    per_sector = SECTOR_LEN // max_node_len
    n = len(coord_records)
    size = (1 + -(-n // per_sector)) * SECTOR_LEN
    buf = bytearray(size)
    struct.pack_into("<5Q", buf, 0, size, n, medoid, max_node_len, per_sector)
    for node_id, (coords, nbrs) in enumerate(zip(coord_records, adjacency)):
        record = coords + struct.pack("<I", len(nbrs)) + struct.pack(f"<{len(nbrs)}I", *nbrs)
        offset = (node_id // per_sector + 1) * SECTOR_LEN + (node_id % per_sector) * max_node_len
        buf[offset : offset + len(record)] = record
    path.write_bytes(bytes(buf))


def float_index(tmp_path, vectors=VECTORS, metric=Metric.L2, **load_kwargs):
    path = tmp_path / "idx_disk.index"
    write_index(path, [v.astype("<f4").tobytes() for v in vectors], complete_graph(len(vectors)))
    index = PQFlashIndex(np.float32, metric)
    index.load(path, vectors.astype(np.uint8), exact_pq(vectors.shape[1]), **load_kwargs)
    return index


def brute(vectors, query):
    return ((vectors.astype(np.float64) - query) ** 2).sum(axis=1)


def test_top_k_matches_exhaustive(tmp_path):
    index = float_index(tmp_path)
    query = np.array([10, 20, 30, 40], dtype=np.float32)
    ids, dists = index.cached_beam_search(query, 5, 10, 4)
    expected = brute(VECTORS, query)
    assert len(ids) == 5
    np.testing.assert_allclose(dists, np.sort(expected)[:5])
    np.testing.assert_allclose(expected[ids.astype(np.int64)], dists)


@pytest.mark.parametrize("point", [0, 7, 19])
def test_query_on_a_point_finds_it(tmp_path, point):
    index = float_index(tmp_path)
    ids, dists = index.cached_beam_search(VECTORS[point], 1, 8, 2)
    assert dists[0] == 0.0
    np.testing.assert_array_equal(VECTORS[int(ids[0])], VECTORS[point])


def test_stats_are_collected(tmp_path):
    index = float_index(tmp_path)
    stats = QueryStats()
    index.cached_beam_search(VECTORS[3], 3, 6, 2, stats)
    assert stats.n_hops >= 1
    assert stats.n_ios >= 1
    assert stats.n_ios == stats.n_4k
    assert stats.n_cmps >= len(VECTORS) - 1
    assert stats.n_cache_hits == 0
    assert stats.total_us > 0


def test_cache_list_serves_hits_with_same_results(tmp_path):
    index = float_index(tmp_path)
    query = np.array([25, 5, 40, 12], dtype=np.float32)
    before = index.cached_beam_search(query, 4, 10, 3)
    index.load_cache_list([0, 1, 2])
    np.testing.assert_array_equal(index.nhood_cache[1], complete_graph(20)[1])
    np.testing.assert_array_equal(index.coord_cache[2], VECTORS[2])
    stats = QueryStats()
    after = index.cached_beam_search(query, 4, 10, 3, stats)
    assert stats.n_cache_hits >= 1
    np.testing.assert_allclose(after[1], before[1])


def test_centroid_from_header_medoid(tmp_path):
    index = float_index(tmp_path)
    np.testing.assert_array_equal(index.medoids, [0])
    assert index.centroid_data.shape == (1, 8)
    np.testing.assert_array_equal(index.centroid_data[0, :4], VECTORS[0])
    np.testing.assert_array_equal(index.centroid_data[0, 4:], 0)


def test_explicit_medoids_and_centroids(tmp_path):
    index = float_index(tmp_path, medoids=[[3], [9]], centroids=VECTORS[[3, 9]])
    np.testing.assert_array_equal(index.medoids, [3, 9])
    ids, dists = index.cached_beam_search(VECTORS[9], 1, 6, 2)
    assert dists[0] == 0.0
    np.testing.assert_array_equal(VECTORS[int(ids[0])], VECTORS[9])


def test_medoids_of_wrong_shape(tmp_path):
    with pytest.raises(IndexLoadError):
        float_index(tmp_path, medoids=[[1, 2], [3, 4]])


def test_centroids_of_wrong_count(tmp_path):
    with pytest.raises(IndexLoadError):
        float_index(tmp_path, medoids=[1, 2], centroids=VECTORS[[1]])


def test_point_count_mismatch(tmp_path):
    path = tmp_path / "idx_disk.index"
    write_index(path, [v.astype("<f4").tobytes() for v in VECTORS], complete_graph(20))
    index = PQFlashIndex(np.float32, Metric.L2)
    with pytest.raises(IndexLoadError, match="Mismatch in #points"):
        index.load(path, VECTORS[:19].astype(np.uint8), exact_pq(4))


def test_too_many_pq_chunks(tmp_path):
    index = PQFlashIndex(np.float32, Metric.L2)
    with pytest.raises(IndexLoadError, match="max PQ bytes"):
        index.load(tmp_path / "missing.index", np.zeros((3, 257), np.uint8), exact_pq(257))


def test_chunk_count_mismatch(tmp_path):
    index = PQFlashIndex(np.float32, Metric.L2)
    with pytest.raises(IndexLoadError):
        index.load(tmp_path / "missing.index", np.zeros((3, 3), np.uint8), exact_pq(4))


def test_range_search_finds_points_within_radius(tmp_path):
    vectors = np.array([[3 * i, 0, 0, 0] for i in range(20)], dtype=np.float32)
    index = float_index(tmp_path, vectors=vectors)
    ids, dists = index.range_search(np.zeros(4, np.float32), 50.0, 2, 64, 2)
    assert sorted(ids.tolist()) == [0, 1, 2]
    np.testing.assert_allclose(dists, [0, 9, 36])


def test_range_search_is_capped_by_max_l_search(tmp_path):
    vectors = np.array([[3 * i, 0, 0, 0] for i in range(20)], dtype=np.float32)
    index = float_index(tmp_path, vectors=vectors)
    ids, dists = index.range_search(np.zeros(4, np.float32), 1e9, 2, 16, 2)
    assert len(ids) == 16
    np.testing.assert_allclose(dists, [(3 * i) ** 2 for i in range(16)])


def test_inner_product_search_rescales(tmp_path):
    vectors = np.array([[10, 0, 0], [0, 10, 0], [5, 5, 0]], dtype=np.float32)
    query = np.array([3, 4, 0], dtype=np.float32)
    plain = float_index(tmp_path, vectors=vectors, metric=Metric.INNER_PRODUCT)
    ids, dists = plain.cached_beam_search(query, 1, 3, 2)
    assert ids.tolist() == [1]
    assert dists[0] == pytest.approx(8.0, rel=1e-5)
    scaled = float_index(
        tmp_path, vectors=vectors, metric=Metric.INNER_PRODUCT, max_base_norm=2.0
    )
    ids, dists = scaled.cached_beam_search(query, 1, 3, 2)
    assert ids.tolist() == [1]
    assert dists[0] == pytest.approx(80.0, rel=1e-5)


def test_byte_data_falls_back_to_l2():
    assert PQFlashIndex(np.int8, Metric.INNER_PRODUCT).metric == Metric.L2
    assert PQFlashIndex(np.uint8, Metric.INNER_PRODUCT).metric == Metric.L2


def test_unsupported_dtype():
    with pytest.raises(ValueError):
        PQFlashIndex(np.float64, Metric.L2)


def test_int8_search_matches_exhaustive(tmp_path):
    vectors = np.random.default_rng(3).integers(-20, 20, size=(16, 4)).astype(np.int8)
    path = tmp_path / "idx_disk.index"
    write_index(path, [v.tobytes() for v in vectors], complete_graph(16))
    index = PQFlashIndex(np.int8, Metric.L2)
    index.load(path, (vectors.astype(np.int16) + 128).astype(np.uint8), exact_pq(4, offset=128))
    query = np.array([5, -3, 12, 0], dtype=np.int8)
    ids, dists = index.cached_beam_search(query, 4, 8, 2)
    expected = brute(vectors, query.astype(np.float64))
    np.testing.assert_allclose(dists, np.sort(expected)[:4])
    np.testing.assert_allclose(expected[ids.astype(np.int64)], dists)


def test_disk_pq_index(tmp_path):
    codes = VECTORS.astype(np.uint8)
    path = tmp_path / "idx_disk.index"
    write_index(path, [row.tobytes() for row in codes], complete_graph(20))
    index = PQFlashIndex(np.float32, Metric.L2)
    index.load(path, codes, exact_pq(4), disk_pq_table=exact_pq(4))
    assert index.disk_bytes_per_point == 4
    np.testing.assert_array_equal(index.centroid_data[0, :4], VECTORS[0])
    ids, dists = index.cached_beam_search(VECTORS[5], 1, 8, 2)
    assert dists[0] == 0.0
    np.testing.assert_array_equal(VECTORS[int(ids[0])], VECTORS[5])


def test_search_arguments_are_checked(tmp_path):
    index = float_index(tmp_path)
    with pytest.raises(ValueError):
        index.cached_beam_search(VECTORS[0], 1, 4, 0)
    with pytest.raises(ValueError):
        index.cached_beam_search(VECTORS[0], 5, 4, 2)
    with pytest.raises(ValueError):
        index.cached_beam_search(VECTORS[0][:2], 1, 4, 2)


def test_search_needs_a_loaded_index(tmp_path):
    with pytest.raises(RuntimeError):
        PQFlashIndex(np.float32, Metric.L2).cached_beam_search(VECTORS[0], 1, 4, 2)
    with float_index(tmp_path) as index:
        ids, _ = index.cached_beam_search(VECTORS[0], 1, 4, 2)
        assert len(ids) == 1
    with pytest.raises(RuntimeError):
        index.cached_beam_search(VECTORS[0], 1, 4, 2)


def test_visit_counting(tmp_path):
    index = float_index(tmp_path)
    index.count_visited_nodes = True
    index.cached_beam_search(VECTORS[0], 1, 4, 2)
    assert index.node_visit_counter[0] == 1
    assert index.node_visit_counter.sum() >= 1