# flashann

flashann searches a graph index whose full vectors and adjacency lists are
stored on disk. Product-quantized (PQ) codes are kept in memory and steer the
search. Each hop of the beam search reads whole 4096-byte sectors from the
index file. Every node it expands is ranked by its exact distance, and the
nearest ones are returned.

## Installation

```
pip install flashann
```

numpy is the only runtime dependency. To install the test tools as well:

```
pip install "flashann[test]"
```

## Modules

### `flashann.distance`

- `Metric` is an `IntEnum` with the members `L2`, `INNER_PRODUCT`, `FAST_L2`
  and `PQ`. `Metric.parse("l2")` and `Metric.parse("mips")` turn a name into a
  metric. Any other name raises `ValueError`.
- `DistanceL2Int` gives the squared Euclidean distance over byte vectors,
  summed exactly in integers.
- `DistanceL2Float` gives the squared Euclidean distance over float32 vectors.
- `DistanceInnerProduct` gives the negated inner product, through
  `compare(a, b, length)`. `inner_product(a, b, length)` returns the plain
  product.
- `DistanceFastL2` adds `norm(a, length)` and
  `compare_with_norm(a, b, norm, length)`, which returns `norm - 2 * <a, b>`.
- `select_distances(dtype, metric)` returns `(dist_cmp, dist_cmp_float,
  metric)` for `float32`, `int8` or `uint8` data.
  - Byte data always uses L2.
  - Float data uses L2 or inner product. Any other metric falls back to L2.
  - Any other dtype raises `ValueError`.

### `flashann.reader`

- `AlignedRead(offset, length=4096, buf=None)` is one read request. The
  offset and the length must both be multiples of 4096.
- `AlignedFileReader(max_io_depth=128)` serves requests in batches of at most
  `max_io_depth`.
  - `read(requests)` fills each request's `buf` and returns the buffers in
    order.
  - A short read raises `OSError`.
  - Reading with no open file raises `RuntimeError`.
  - The reader can be shared between threads and works as a context manager.

### `flashann.layout`

- `DiskIndexHeader.read(path, num_points, disk_bytes_per_point)` reads the
  header at the start of the disk index.
  - The header is five little-endian 64-bit integers: file size, node count,
    medoid, maximum node length and nodes per sector.
  - It raises `IndexLoadError` when the file size or the node count does not
    match.
  - It also raises `IndexLoadError` when the degree exceeds `MAX_GRAPH_DEGREE`
    (512).
  - `sector_offset(node_id)` gives the offset of the sector that holds a node.
    Sector 0 is the header.
  - `node_record(sector, node_id)` slices a node's record out of that sector.
- `parse_node(record, disk_bytes_per_point, dtype, dim)` splits a record into
  a `NodeRecord`.
  - A record holds the node's coordinates first.
  - Then comes a 32-bit neighbour count, followed by the 32-bit neighbour ids.
- `PQTable(pivots, chunk_offsets, centroid=None)` is a codebook with 256
  centres and contiguous dimension chunks. It offers:
  - `populate_chunk_distances(query)`, which returns a
    `(num_chunks, 256)` array;
  - `inflate_vector(codes)`;
  - `l2_distance(query, codes)`;
  - `inner_product(query, codes)`, which returns the negated product.
- `aggregate_coords(ids, all_codes)` gathers rows of PQ codes.
- `pq_dist_lookup(codes, chunk_dists)` sums the per-chunk distances for each
  row of codes.

### `flashann.flash_index`

- `PQFlashIndex(dtype=np.float32, metric=Metric.L2)` is the search index.
  - `load(disk_index_file, codes, pq_table, *, medoids=None, centroids=None,
    max_base_norm=0.0, disk_pq_table=None)` checks the header against the
    codes and opens the file.
    - Without `medoids`, the search starts from the medoid named in the header.
    - Without `centroids`, the medoids' stored vectors are read from disk and
      used as centroids.
    - `max_base_norm` applies only with the inner-product metric.
    - If `disk_pq_table` is given, the disk holds PQ codes instead of full
      vectors.
  - `cached_beam_search(query, k_search, l_search, beam_width=2, stats=None)`
    returns `(ids, distances)`.
  - `range_search(query, search_range, min_l_search, max_l_search,
    min_beam_width, stats=None)` returns everything found within range. It
    starts with a list of `min_l_search` candidates. It doubles the list while
    at least half of it falls within range, up to `max_l_search`.
  - `load_cache_list(node_list)` keeps those nodes' vectors and neighbour
    lists in memory. Later searches then skip their disk reads.
  - `close()` releases the file and the caches. The index is also a context
    manager.
- `QueryStats` collects per-query counters and timings in microseconds.
- With the inner-product metric:
  - the query is normalized, and its last coordinate is set to zero;
  - the returned distances are negated back into similarities;
  - when a non-zero `max_base_norm` was loaded, they are also scaled by it and
    by the query norm.

### `flashann.caching`

- `cache_bfs_levels(index, num_nodes_to_cache, rng=None)` returns nodes in
  breadth-first order around the medoids. It takes whole levels while they
  fit, then samples the last level at random with `rng`.
- `generate_cache_list_from_sample_queries(index, samples, l_search,
  beam_width, num_nodes_to_cache)` runs each sample as a one-nearest-neighbour
  search. It returns the nodes that were expanded most often. When counts tie,
  the lower node id comes first.

## Example

```python
import numpy as np
from flashann.distance import Metric
from flashann.flash_index import PQFlashIndex, QueryStats
from flashann.caching import generate_cache_list_from_sample_queries

with PQFlashIndex(np.float32, Metric.L2) as index:
    # codes: (num_points, n_chunks) uint8 array; pq_table: flashann.layout.PQTable
    index.load("data_disk.index", codes, pq_table)

    hot = generate_cache_list_from_sample_queries(
        index, sample_queries, l_search=15, beam_width=6, num_nodes_to_cache=1000
    )
    index.load_cache_list(hot)

    stats = QueryStats()
    ids, dists = index.cached_beam_search(
        query, k_search=10, l_search=50, beam_width=4, stats=stats
    )
    print(ids, dists, stats.n_ios)

    ids, dists = index.range_search(
        query, search_range=0.5, min_l_search=20, max_l_search=320,
        min_beam_width=2,
    )
```

## What it does not do

- It does not build indexes. It only reads a disk index that already exists.
- It does not read PQ pivot files, compressed-vector files, medoid files or
  centroid files. The caller loads that data and passes the arrays and
  `PQTable` objects to `PQFlashIndex.load`.
- It has no command-line tool and no batch benchmarking or recall report.

## Running the tests

```
pytest
```