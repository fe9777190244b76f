"""Distance functions over fixed-length vectors of int8, uint8 or float32 values."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Sequence

import numpy as np
from numpy.typing import ArrayLike

__all__ = [
    "Metric",
    "Distance",
    "DistanceL2Int",
    "DistanceL2Float",
    "DistanceInnerProduct",
    "DistanceFastL2",
    "select_distances",
]


class Metric(enum.IntEnum):
    """Distance metric of an index."""

    L2 = 0
    INNER_PRODUCT = 1
    FAST_L2 = 2
    PQ = 3

    @classmethod
    def parse(cls, name: str) -> "Metric":
        """Map a command-line metric name (``l2`` or ``mips``) to a metric."""
        names = {"l2": cls.L2, "mips": cls.INNER_PRODUCT}
        try:
            return names[name]
        except KeyError:
            raise ValueError(
                f"unsupported distance function {name!r}; "
                "only l2 and mips are supported"
            ) from None


def _prefix(values: ArrayLike, length: int, dtype: np.dtype) -> np.ndarray:
    """Return the first ``length`` entries of ``values`` as a flat array of ``dtype``."""
    if length < 0:
        raise ValueError(f"length must not be negative, got {length}")
    array = np.asarray(values).reshape(-1)
    if array.shape[0] < length:
        raise ValueError(
            f"vector has {array.shape[0]} entries, fewer than length {length}"
        )
    return array[:length].astype(dtype, copy=False)


class Distance(ABC):
    """A comparison between two vectors; smaller means closer."""

    @abstractmethod
    def compare(self, a: ArrayLike, b: ArrayLike, length: int) -> float:
        """Compare the first ``length`` entries of ``a`` and ``b``."""


class DistanceL2Int(Distance):
    """Squared Euclidean distance over byte vectors, summed exactly in integers."""

    def compare(self, a: ArrayLike, b: ArrayLike, length: int) -> float:
        x = _prefix(a, length, np.int64)
        y = _prefix(b, length, np.int64)
        diff = x - y
        return float(np.float32(int(np.dot(diff, diff))))


class DistanceL2Float(Distance):
    """Squared Euclidean distance over float32 vectors."""

    def compare(self, a: ArrayLike, b: ArrayLike, length: int) -> float:
        x = _prefix(a, length, np.float32)
        y = _prefix(b, length, np.float32)
        diff = x - y
        return float(np.sum(diff * diff, dtype=np.float32))


class DistanceInnerProduct(Distance):
    """Negated inner product, so that the largest product is the smallest distance."""

    def inner_product(self, a: ArrayLike, b: ArrayLike, length: int) -> float:
        """Return the float32 inner product of the first ``length`` entries."""
        x = _prefix(a, length, np.float32)
        y = _prefix(b, length, np.float32)
        return float(np.sum(x * y, dtype=np.float32))

    def compare(self, a: ArrayLike, b: ArrayLike, length: int) -> float:
        return -self.inner_product(a, b, length)


class DistanceFastL2(DistanceInnerProduct):
    """L2 ranking from a precomputed norm: ``norm - 2 * <a, b>``."""

    def norm(self, a: ArrayLike, length: int) -> float:
        """Return the squared norm of the first ``length`` entries of ``a``."""
        x = _prefix(a, length, np.float32)
        return float(np.sum(x * x, dtype=np.float32))

    def compare_with_norm(
        self, a: ArrayLike, b: ArrayLike, norm: float, length: int
    ) -> float:
        """Return ``norm - 2 * <a, b>``, where ``norm`` is usually that of ``b``."""
        result = np.float32(-2.0) * np.float32(self.inner_product(a, b, length))
        return float(result + np.float32(norm))


_BYTE_TYPES: Sequence[np.dtype] = (np.dtype(np.uint8), np.dtype(np.int8))


def select_distances(dtype, metric: Metric) -> tuple[Distance, Distance, Metric]:
    """Choose the comparators for an index over ``dtype`` data.

    Returns ``(dist_cmp, dist_cmp_float, metric)``: the comparator for data
    vectors, the one for float vectors, and the metric actually used. Byte
    data supports only L2; unsupported float metrics fall back to L2.
    """
    kind = np.dtype(dtype)
    metric = Metric(metric)
    if kind in _BYTE_TYPES:
        return DistanceL2Int(), DistanceL2Float(), Metric.L2
    if kind == np.dtype(np.float32):
        if metric == Metric.L2:
            return DistanceL2Float(), DistanceL2Float(), Metric.L2
        if metric == Metric.INNER_PRODUCT:
            return DistanceInnerProduct(), DistanceInnerProduct(), Metric.INNER_PRODUCT
        return DistanceL2Float(), DistanceL2Float(), Metric.L2
    raise ValueError(f"unsupported data type {kind}; use float32, int8 or uint8")