"""Utilities for the permutohedral lattice encoding."""

from .geometry_utils import random_rotation_in_zero_sum_subspace, zero_sum_basis
from .hash_utils import (
    HASH_PRIME,
    compute_hash_collisions,
    dense_lattice_index,
    hash_lattice_keys,
    resolve_lattice_rows,
)

__all__ = [
    "random_rotation_in_zero_sum_subspace",
    "zero_sum_basis",
    "HASH_PRIME",
    "compute_hash_collisions",
    "dense_lattice_index",
    "hash_lattice_keys",
    "resolve_lattice_rows",
]
