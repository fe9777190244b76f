"""Disk-resident graph search for approximate nearest neighbours with PQ-guided beam search."""

__version__ = "0.1.0"
__all__ = ["distance", "reader", "layout", "flash_index", "caching"]