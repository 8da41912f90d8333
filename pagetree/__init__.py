"""Copy-on-write B-tree stored in fixed-size pages of in-memory transactional storage."""

__version__ = "0.1.0"

__all__ = ["branch", "deletion", "guards", "insertion", "iters", "leaf", "memory", "mutator"]