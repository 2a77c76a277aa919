"""Socket helpers, memory-mapped files and arrays, memory pools, an LRU cache and connection servers."""

__version__ = "0.1.0"

__all__ = [
    "farray",
    "greeting_bonze",
    "lru",
    "mempool",
    "mmap_mempool",
    "mmap_util",
    "net",
    "pipeline_pool",
    "simple",
]