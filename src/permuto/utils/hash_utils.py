"""
Hash utilities for the permutohedral lattice encoding.

This module maps lattice vertex keys to rows of a fixed-capacity parameter table, either through a
dense bijective index (when the whole lattice of a level fits) or through a spatial hash with
accepted collisions.
"""

from __future__ import annotations

import torch

HASH_PRIME = 2531011
_UINT32_MASK = 0xFFFFFFFF


def hash_lattice_keys(keys: torch.Tensor) -> torch.Tensor:
    """
    Multiplicative rolling hash of lattice keys, with uint32 wrap-around.

    Args:
        keys: [..., d] integer keys

    Returns:
        [...] hash values in [0, 2^32)
    """
    keys = keys.long()
    k = torch.zeros(keys.shape[:-1], dtype=torch.long, device=keys.device)
    for i in range(keys.shape[-1]):
        k = ((k + keys[..., i]) * HASH_PRIME) & _UINT32_MASK
    return k


def dense_lattice_index(keys: torch.Tensor, extents: tuple[int, ...] | list[int]) -> torch.Tensor:
    """
    Collision-free index of lattice keys inside a box of the given extents.

    All coordinates of a permutohedral lattice key are congruent modulo d+1. The key is split
    into that common remainder ``r`` and the quotients ``(key_i - r) / (d+1)``, which are wrapped
    into ``extents`` per coordinate. Any translated box of those extents maps bijectively onto
    ``[0, (d+1) * prod(extents))``.

    Args:
        keys: [..., d] integer keys
        extents: Number of distinct quotients per key coordinate

    Returns:
        [...] dense indices
    """
    keys = keys.long()
    dp1 = keys.shape[-1] + 1
    extents_t = torch.tensor(list(extents), dtype=torch.long, device=keys.device)
    strides = torch.cumprod(torch.cat([extents_t.new_ones(1), extents_t[:-1]]), dim=0)

    r = torch.remainder(keys[..., 0], dp1)
    q = torch.div(keys - r.unsqueeze(-1), dp1, rounding_mode="floor")
    q = torch.remainder(q, extents_t)
    return r + dp1 * (q * strides).sum(-1)


def resolve_lattice_rows(
    keys: torch.Tensor,
    size: int,
    dense_extents: tuple[int, ...] | list[int] | None = None,
) -> torch.Tensor:
    """
    Map lattice keys to slots of one level of the parameter table.

    Args:
        keys: [..., d] integer keys
        size: Number of addressable slots of the level
        dense_extents: Key extents if the level is indexed densely, ``None`` to hash

    Returns:
        [...] slots in [0, size)
    """
    if dense_extents is not None:
        return dense_lattice_index(keys, dense_extents)
    return torch.remainder(hash_lattice_keys(keys), size)


def compute_hash_collisions(
    keys: torch.Tensor,
    size: int,
    dense_extents: tuple[int, ...] | list[int] | None = None,
) -> float:
    """
    Compute collision rate of the resolver over a set of keys.

    Args:
        keys: [N, d] integer keys (duplicates are ignored)
        size: Number of addressable slots
        dense_extents: Key extents if the level is indexed densely

    Returns:
        Collision rate (0.0 to 1.0)
    """
    unique_keys = torch.unique(keys.reshape(-1, keys.shape[-1]), dim=0)
    if unique_keys.shape[0] == 0:
        return 0.0
    rows = resolve_lattice_rows(unique_keys, size, dense_extents)

    # Count unique rows
    unique_rows = len(torch.unique(rows))
    total_keys = unique_keys.shape[0]

    return 1.0 - (unique_rows / total_keys)
