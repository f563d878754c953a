"""
Layout planning for the permutohedral lattice encoding.

A ``PermutoEncMeta`` is computed once per encoder configuration and describes:
- the per-level lattice scales (one scalar and one multiplier per input dimension)
- the number of addressable vertices per level and whether they are indexed densely or hashed
- where each level lives in the flat parameter table
- the pseudo-level expansion used when levels have different feature widths

The meta holds no tensors and is never mutated, so it can be shared freely
between forward and backward calls.
"""

from __future__ import annotations

import functools
import logging
import math
from dataclasses import dataclass

import torch

from .errors import PermutoConfigError

logger = logging.getLogger(__name__)

Tensor = torch.Tensor

SUPPORTED_N_INPUT_DIMS = tuple(range(2, 65))
MIN_LEVELS = 2
MAX_LEVELS = 20
MIN_FEATS = 2


@functools.lru_cache(maxsize=None)
def _elevation_rows(n_dims: int) -> tuple[tuple[float, ...], ...]:
    rows = [tuple(1.0 for _ in range(n_dims))]
    for i in range(1, n_dims + 1):
        row = []
        for k in range(n_dims):
            if k >= i:
                row.append(1.0)
            elif k == i - 1:
                row.append(-float(i))
            else:
                row.append(0.0)
        rows.append(tuple(row))
    return tuple(rows)


def elevation_matrix(
    n_dims: int, device: torch.device | str | None = None, dtype: torch.dtype = torch.float32
) -> Tensor:
    """
    Matrix embedding a d-dimensional point into the (d+1)-dimensional zero-sum hyperplane.

    Combined with the per-dimension scales ``1 / sqrt((k+1)(k+2))`` its columns are
    orthonormal, i.e. the embedding is an isometry.

    Args:
        n_dims: Input dimensionality d

    Returns:
        [d+1, d] elevation matrix
    """
    return torch.tensor(_elevation_rows(n_dims), device=device, dtype=dtype)


def _level_key_extents(scales: tuple[float, ...]) -> tuple[int, ...]:
    """Number of distinct ``(key_i - r) / (d+1)`` values reachable from [-1, 1]^d, per key coordinate."""
    n_dims = len(scales)
    dp1 = n_dims + 1
    rows = _elevation_rows(n_dims)
    extents = []
    for i in range(n_dims):
        bound = sum(abs(e) * s for e, s in zip(rows[i], scales))
        # Keys stay within 2.5 * (d+1) of the elevated coordinate.
        span = 2.0 * bound + 5.0 * dp1
        extents.append(int(math.floor(span / dp1)) + 1)
    return tuple(extents)


@dataclass(frozen=True)
class PermutoEncMeta:
    """Immutable layout of a multi-level permutohedral encoding."""

    n_dims_to_encode: int
    hashmap_size: int
    res_list: tuple[float, ...]

    n_levels: int
    n_pseudo_levels: int
    n_feat_per_pseudo_lvl: int

    # Per level
    level_scales0: tuple[float, ...]
    level_scales_multidim: tuple[tuple[float, ...], ...]
    level_n_feats: tuple[int, ...]
    level_n_params: tuple[int, ...]
    level_offsets: tuple[int, ...]  # n_levels + 1 entries, in table rows
    level_sizes: tuple[int, ...]
    level_dense: tuple[bool, ...]
    level_key_extents: tuple[tuple[int, ...], ...]
    level_feat_offsets: tuple[int, ...]  # n_levels + 1 entries, in output columns

    # Per pseudo level
    map_levels: tuple[int, ...]
    map_cnt: tuple[int, ...]

    n_encoded_dims: int
    n_params: int

    def level_n_pseudo(self, level: int) -> int:
        """Number of pseudo levels the given level is split into."""
        return self.level_n_feats[level] // self.n_feat_per_pseudo_lvl

    def level_columns(self, level: int) -> slice:
        """Output columns written by the given level."""
        return slice(self.level_feat_offsets[level], self.level_feat_offsets[level + 1])

    def level_scale_tensor(
        self, level: int, device: torch.device | str | None = None, dtype: torch.dtype = torch.float32
    ) -> Tensor:
        return torch.tensor(self.level_scales_multidim[level], device=device, dtype=dtype)

    def level_rows(self, level: int, vertex_rows: Tensor) -> Tensor:
        """
        Translate per-level vertex slots into rows of the flat parameter table.

        Each level owns ``level_n_pseudo(level)`` consecutive blocks of ``level_sizes[level]`` rows,
        one block per pseudo level.

        Args:
            level: Real level index
            vertex_rows: [...] slots in [0, level_sizes[level])

        Returns:
            [..., level_n_pseudo(level)] rows of the parameter table
        """
        n_cnt = self.level_n_pseudo(level)
        cnt = torch.arange(n_cnt, device=vertex_rows.device, dtype=torch.long)
        base = self.level_offsets[level] + cnt * self.level_sizes[level]
        return vertex_rows.long().unsqueeze(-1) + base

    def describe(self) -> list[dict]:
        """Per-level summary, used for logging and the ``info`` command."""
        return [
            {
                "level": level,
                "res": self.res_list[level],
                "scale": self.level_scales0[level],
                "n_feats": self.level_n_feats[level],
                "size": self.level_sizes[level],
                "n_params": self.level_n_params[level],
                "offset": self.level_offsets[level],
                "indexing": "dense" if self.level_dense[level] else "hash",
            }
            for level in range(self.n_levels)
        ]


EncodingMeta = PermutoEncMeta


def build_meta(
    n_input_dim: int,
    hashmap_size: int,
    res_list: list[float] | tuple[float, ...],
    n_feats_list: list[int] | tuple[int, ...],
) -> PermutoEncMeta:
    """
    Plan the layout of a permutohedral encoding.

    Args:
        n_input_dim: Number of input coordinate dimensions
        hashmap_size: Maximum number of addressable vertices per level
        res_list: Resolution of each level; one lattice edge spans ``2 / res`` of the [-1, 1] domain
        n_feats_list: Feature width of each level

    Returns:
        The immutable encoding meta

    Raises:
        PermutoConfigError: On unsupported dimensionality, level count, feature widths or list lengths
    """
    if n_input_dim not in SUPPORTED_N_INPUT_DIMS:
        raise PermutoConfigError(
            f"n_input_dim={n_input_dim} is not supported, expected one of "
            f"[{SUPPORTED_N_INPUT_DIMS[0]}, {SUPPORTED_N_INPUT_DIMS[-1]}]"
        )
    if hashmap_size < 1:
        raise PermutoConfigError(f"hashmap_size must be positive, got {hashmap_size}")

    res_list = tuple(float(r) for r in res_list)
    n_feats_list = tuple(int(f) for f in n_feats_list)
    n_levels = len(res_list)

    if not MIN_LEVELS <= n_levels <= MAX_LEVELS:
        raise PermutoConfigError(
            f"n_levels must be in [{MIN_LEVELS}, {MAX_LEVELS}], got {n_levels}"
        )
    if len(n_feats_list) != n_levels:
        raise PermutoConfigError(
            f"res_list has {n_levels} entries but n_feats_list has {len(n_feats_list)}"
        )
    for level, n_feats in enumerate(n_feats_list):
        if n_feats < MIN_FEATS:
            raise PermutoConfigError(f"n_feats must be >= {MIN_FEATS}, got {n_feats} at level {level}")
    for level, res in enumerate(res_list):
        if not res > 0:
            raise PermutoConfigError(f"Resolution must be positive, got {res} at level {level}")

    d = n_input_dim
    dp1 = d + 1
    width = functools.reduce(math.gcd, n_feats_list)

    level_scales0 = []
    level_scales_multidim = []
    level_sizes = []
    level_dense = []
    level_key_extents = []
    level_n_params = []
    level_offsets = [0]
    level_feat_offsets = [0]
    map_levels = []
    map_cnt = []

    for level, (res, n_feats) in enumerate(zip(res_list, n_feats_list)):
        scale0 = res * math.sqrt(d * dp1) / 2.0
        scales = tuple(scale0 / math.sqrt((k + 1) * (k + 2)) for k in range(d))

        extents = _level_key_extents(scales)
        n_vertices = dp1 * math.prod(extents)
        dense = n_vertices <= hashmap_size
        size = n_vertices if dense else hashmap_size

        n_cnt = n_feats // width
        n_params = size * n_cnt

        level_scales0.append(scale0)
        level_scales_multidim.append(scales)
        level_key_extents.append(extents)
        level_dense.append(dense)
        level_sizes.append(size)
        level_n_params.append(n_params)
        level_offsets.append(level_offsets[-1] + n_params)
        level_feat_offsets.append(level_feat_offsets[-1] + n_feats)
        map_levels.extend([level] * n_cnt)
        map_cnt.extend(range(n_cnt))

    meta = PermutoEncMeta(
        n_dims_to_encode=d,
        hashmap_size=int(hashmap_size),
        res_list=res_list,
        n_levels=n_levels,
        n_pseudo_levels=len(map_levels),
        n_feat_per_pseudo_lvl=width,
        level_scales0=tuple(level_scales0),
        level_scales_multidim=tuple(level_scales_multidim),
        level_n_feats=n_feats_list,
        level_n_params=tuple(level_n_params),
        level_offsets=tuple(level_offsets),
        level_sizes=tuple(level_sizes),
        level_dense=tuple(level_dense),
        level_key_extents=tuple(level_key_extents),
        level_feat_offsets=tuple(level_feat_offsets),
        map_levels=tuple(map_levels),
        map_cnt=tuple(map_cnt),
        n_encoded_dims=level_feat_offsets[-1],
        n_params=level_offsets[-1],
    )

    for row in meta.describe():
        logger.debug(
            "Level %(level)d: res=%(res).1f size=%(size)d n_params=%(n_params)d "
            "offset=%(offset)d (%(indexing)s)",
            row,
        )
    return meta
