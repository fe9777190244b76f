"""Choosing which nodes of a flash index to keep in memory."""

from __future__ import annotations

import logging
import random

import numpy as np
from numpy.typing import ArrayLike

from flashann.flash_index import PQFlashIndex

__all__ = ["cache_bfs_levels", "generate_cache_list_from_sample_queries"]

_log = logging.getLogger(__name__)

_BFS_BLOCK_SIZE = 1024


def _check_count(num_nodes_to_cache: int) -> int:
    count = int(num_nodes_to_cache)
    if count < 0:
        raise ValueError(f"num_nodes_to_cache must not be negative, got {count}")
    return count


def cache_bfs_levels(
    index: PQFlashIndex,
    num_nodes_to_cache: int,
    rng: random.Random | None = None,
) -> list[int]:
    """Return up to ``num_nodes_to_cache`` nodes nearest the medoids by hop count.

    Whole breadth-first levels are taken while they fit; the last level is
    sampled at random with ``rng`` to fill the remaining places.
    """
    index._require_loaded()
    budget = _check_count(num_nodes_to_cache)
    rng = rng if rng is not None else random.Random()

    node_list: list[int] = []
    in_list: set[int] = set()
    cur_level: dict[int, None] = dict.fromkeys(int(m) for m in index.medoids)

    level = 1
    prev_size = 0
    while cur_level and len(node_list) + len(cur_level) < budget:
        prev_level, cur_level = cur_level, {}
        nodes_to_expand: list[int] = []
        for node_id in prev_level:
            if node_id in in_list:
                continue
            node_list.append(node_id)
            in_list.add(node_id)
            nodes_to_expand.append(node_id)
        rng.shuffle(nodes_to_expand)

        finished = False
        for start in range(0, len(nodes_to_expand), _BFS_BLOCK_SIZE):
            if finished:
                break
            block = nodes_to_expand[start : start + _BFS_BLOCK_SIZE]
            for record in index._read_nodes(block):
                for neighbor in record.neighbors.tolist():
                    if finished:
                        break
                    if neighbor not in in_list:
                        cur_level[neighbor] = None
                    if len(cur_level) + len(node_list) >= budget:
                        finished = True

        _log.info(
            "Level: %d. #nodes: %d, #nodes thus far: %d",
            level,
            len(node_list) - prev_size,
            len(node_list),
        )
        prev_size = len(node_list)
        level += 1

    last_level = list(cur_level)
    rng.shuffle(last_level)
    residual = max(0, budget - len(node_list))
    node_list.extend(last_level[:residual])
    _log.info(
        "Level: %d. #nodes: %d, #nodes thus far: %d",
        level,
        len(node_list) - prev_size,
        len(node_list),
    )
    return node_list


def generate_cache_list_from_sample_queries(
    index: PQFlashIndex,
    samples: ArrayLike,
    l_search: int,
    beam_width: int,
    num_nodes_to_cache: int,
) -> list[int]:
    """Return the ``num_nodes_to_cache`` nodes expanded most often by ``samples``.

    Each sample is searched for its nearest neighbour; ties in the visit
    counts keep the lower node id first.
    """
    index._require_loaded()
    budget = _check_count(num_nodes_to_cache)
    queries = np.asarray(samples)
    if queries.ndim == 1:
        queries = queries.reshape(1, -1)

    index.node_visit_counter = np.zeros(index.num_points, dtype=np.int64)
    index.count_visited_nodes = True
    try:
        for query in queries:
            index.cached_beam_search(query, 1, l_search, beam_width)
    finally:
        index.count_visited_nodes = False

    order = np.argsort(-index.node_visit_counter, kind="stable")
    return [int(node_id) for node_id in order[:budget]]