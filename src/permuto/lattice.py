"""
Permutohedral lattice traversal.

Given scaled coordinates, finds the enclosing simplex of the permutohedral lattice:
- the d+1 vertex keys (first d of the d+1 zero-sum integer coordinates)
- the barycentric weights of the query inside the simplex
- optionally, the gradient of every weight with respect to the unscaled coordinate

Reference: Adams et al., "Fast High-Dimensional Filtering Using the Permutohedral Lattice", 2010.
"""

from __future__ import annotations

from typing import NamedTuple

import torch

from .meta import elevation_matrix

Tensor = torch.Tensor


class Simplex(NamedTuple):
    """Enclosing simplex of a batch of points. ``R = d + 1`` vertices per point."""

    keys: Tensor  # [N, R, d] int64
    weights: Tensor  # [N, R]
    weight_grads: Tensor | None  # [N, R, d], d(weight)/d(position)


def _round_to_remainder_zero(elevated: Tensor) -> Tensor:
    """Closest multiple of (d+1) per coordinate, rounding down on ties."""
    dp1 = elevated.shape[-1]
    v = elevated / dp1
    up = torch.ceil(v) * dp1
    down = torch.floor(v) * dp1
    return torch.where(up - elevated < elevated - down, up, down)


def _rank(residual: Tensor) -> Tensor:
    """
    Rank of each residual, 0 for the largest.

    Ties are broken by index: of two equal residuals, the one with the larger
    coordinate index ranks as the smaller one.
    """
    n = residual.shape[-1]
    idx = torch.arange(n, device=residual.device)
    r_i = residual.unsqueeze(-1)
    r_j = residual.unsqueeze(-2)
    after = idx.view(1, n) > idx.view(n, 1)
    before = idx.view(1, n) < idx.view(n, 1)
    beats = ((r_j > r_i) & after) | ((r_j >= r_i) & before)
    return beats.sum(-1)


def locate_simplex(
    positions: Tensor,
    scales: Tensor,
    shift: Tensor | None = None,
    need_weight_grad: bool = False,
) -> Simplex:
    """
    Locate the enclosing permutohedral simplex of every query point.

    Args:
        positions: [N, d] query points
        scales: [d] per-dimension lattice scale of the level
        shift: [d] optional random shift, added before scaling
        need_weight_grad: Also compute d(weight)/d(position)

    Returns:
        Simplex with keys [N, d+1, d], weights [N, d+1] summing to one and
        optional weight gradients [N, d+1, d]
    """
    n_dims = positions.shape[-1]
    dp1 = n_dims + 1
    dtype = positions.dtype
    device = positions.device

    x = positions if shift is None else positions + shift.to(dtype)
    elevation = elevation_matrix(n_dims, device=device, dtype=dtype)
    elevated = (x * scales) @ elevation.T  # [N, d+1]

    rem0 = _round_to_remainder_zero(elevated)
    rank = _rank(elevated - rem0)

    # The rounded point may be off the zero-sum plane; bring it back by shifting ranks.
    offset = (rem0.sum(-1) / dp1).round().long().unsqueeze(-1)
    rank = rank + offset
    under = rank < 0
    over = rank > n_dims
    rank = torch.where(under, rank + dp1, torch.where(over, rank - dp1, rank))
    rem0 = rem0 + dp1 * under.to(dtype) - dp1 * over.to(dtype)

    delta = (elevated - rem0) / dp1
    bary = torch.zeros(positions.shape[0], dp1 + 1, device=device, dtype=dtype)
    bary.scatter_add_(1, n_dims - rank, delta)
    bary.scatter_add_(1, n_dims + 1 - rank, -delta)
    weights = bary[:, :dp1].clone()
    weights[:, 0] += 1.0 + bary[:, dp1]

    remainder = torch.arange(dp1, device=device)
    rem0_key = rem0[:, :n_dims].long().unsqueeze(1)  # [N, 1, d]
    wrap = rank[:, :n_dims].unsqueeze(1) > (n_dims - remainder).view(1, dp1, 1)
    keys = rem0_key + remainder.view(1, dp1, 1) - dp1 * wrap.long()

    weight_grads = None
    if need_weight_grad:
        # Weights are linear in the elevated coordinates inside a simplex.
        plus = torch.nn.functional.one_hot(n_dims - rank, dp1)
        minus = torch.nn.functional.one_hot((n_dims + 1 - rank) % dp1, dp1)
        dw_de = (plus - minus).to(dtype).transpose(-1, -2) / dp1  # [N, R, d+1]
        weight_grads = dw_de @ (elevation * scales)  # [N, R, d]

    return Simplex(keys=keys, weights=weights, weight_grads=weight_grads)
