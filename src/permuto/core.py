"""
Permutohedral lattice encoding: forward, backward and backward-of-backward passes.

For every query point and every active level, the enclosing simplex is located, its d+1 vertices
are resolved to rows of the parameter table and the features of those rows are interpolated
with barycentric weights. Outputs of all levels are concatenated.

Key properties:
- Weights are piecewise linear in the position, so the weight gradient is constant inside a
  simplex and the second derivative of the weights vanishes almost everywhere.
- The only shared mutable target is the parameter gradient, which is accumulated with
  ``index_add_`` so the result does not depend on the order of the queries.
- All inputs are validated before any buffer is allocated.
"""

from __future__ import annotations

import torch

from .errors import PermutoShapeError
from .lattice import Simplex, locate_simplex
from .meta import PermutoEncMeta
from .utils.hash_utils import resolve_lattice_rows

Tensor = torch.Tensor


def _compute_dtype(dtype: torch.dtype) -> torch.dtype:
    """Traversal and accumulation run in at least float32."""
    return torch.promote_types(dtype, torch.float32)


def _flatten_positions(meta: PermutoEncMeta, positions: Tensor) -> Tensor:
    if not torch.is_floating_point(positions):
        raise PermutoShapeError(f"positions must be a floating point tensor, got {positions.dtype}")
    if positions.dim() < 1 or positions.shape[-1] != meta.n_dims_to_encode:
        raise PermutoShapeError(
            f"Expected positions of shape [..., {meta.n_dims_to_encode}], got {tuple(positions.shape)}"
        )
    return positions.reshape(-1, meta.n_dims_to_encode)


def _check_lattice_values(meta: PermutoEncMeta, lattice_values: Tensor) -> None:
    expected = (meta.n_params, meta.n_feat_per_pseudo_lvl)
    if lattice_values.dim() not in (2, 3) or tuple(lattice_values.shape[-2:]) != expected:
        raise PermutoShapeError(
            f"Expected lattice_values of shape [{expected[0]}, {expected[1]}] or "
            f"[B, {expected[0]}, {expected[1]}], got {tuple(lattice_values.shape)}"
        )


def _check_random_shifts(meta: PermutoEncMeta, level_random_shifts: Tensor | None) -> None:
    if level_random_shifts is None:
        return
    expected = (meta.n_levels, meta.n_dims_to_encode)
    if tuple(level_random_shifts.shape) != expected:
        raise PermutoShapeError(
            f"Expected level_random_shifts of shape {list(expected)}, "
            f"got {tuple(level_random_shifts.shape)}"
        )


def _check_feature_grad(meta: PermutoEncMeta, name: str, grad: Tensor, positions: Tensor) -> Tensor:
    expected = (*positions.shape[:-1], meta.n_encoded_dims)
    if tuple(grad.shape) != expected:
        raise PermutoShapeError(f"Expected {name} of shape {list(expected)}, got {tuple(grad.shape)}")
    return grad.reshape(-1, meta.n_encoded_dims)


def _check_max_pos_dims(meta: PermutoEncMeta, max_pos_dims: int | None) -> int:
    if max_pos_dims is None:
        return meta.n_dims_to_encode
    if not 0 <= max_pos_dims <= meta.n_dims_to_encode:
        raise PermutoShapeError(
            f"max_pos_dims must be in [0, {meta.n_dims_to_encode}], got {max_pos_dims}"
        )
    return int(max_pos_dims)


def _active_levels(meta: PermutoEncMeta, max_level: int | None) -> range:
    if max_level is None:
        return range(meta.n_levels)
    if not 0 <= max_level <= meta.n_levels:
        raise PermutoShapeError(f"max_level must be in [0, {meta.n_levels}], got {max_level}")
    return range(int(max_level))


def _resolve_batch_inds(
    positions: Tensor,
    n_points: int,
    lattice_values: Tensor,
    batch_inds: Tensor | None,
    batch_offsets: Tensor | None,
    batch_data_size: int | None,
) -> Tensor | None:
    """Batch index of every point, or ``None`` for an unbatched parameter table."""
    given = [arg is not None for arg in (batch_inds, batch_offsets, batch_data_size)]
    if lattice_values.dim() == 2:
        if any(given):
            raise PermutoShapeError(
                "batch_inds, batch_offsets and batch_data_size require batched lattice_values "
                "of shape [B, n_params, n_feats]"
            )
        return None
    if sum(given) > 1:
        raise PermutoShapeError("Only one of batch_inds, batch_offsets, batch_data_size may be given")

    n_batch = lattice_values.shape[0]
    device = positions.device
    if batch_inds is not None:
        batch = batch_inds.reshape(-1).to(device=device, dtype=torch.long)
        if batch.numel() != n_points:
            raise PermutoShapeError(
                f"batch_inds has {batch.numel()} entries but there are {n_points} points"
            )
    elif batch_offsets is not None:
        offsets = batch_offsets.reshape(-1).to(device=device, dtype=torch.long)
        if offsets.numel() != n_batch:
            raise PermutoShapeError(
                f"batch_offsets has {offsets.numel()} entries but lattice_values has batch size {n_batch}"
            )
        point_ids = torch.arange(n_points, device=device)
        batch = torch.searchsorted(offsets, point_ids, right=True) - 1
    else:
        if batch_data_size is None:
            if positions.dim() < 3 or positions.shape[0] != n_batch:
                raise PermutoShapeError(
                    "Batched lattice_values need batch_inds, batch_offsets, batch_data_size "
                    f"or positions of shape [{n_batch}, ..., n_dims]"
                )
            batch_data_size = n_points // n_batch
        if int(batch_data_size) <= 0:
            raise PermutoShapeError(f"batch_data_size must be positive, got {batch_data_size}")
        batch = torch.arange(n_points, device=device) // int(batch_data_size)

    if n_points > 0 and (int(batch.min()) < 0 or int(batch.max()) >= n_batch):
        raise PermutoShapeError(f"Batch indices out of range for batch size {n_batch}")
    return batch


def _locate(
    meta: PermutoEncMeta,
    level: int,
    x: Tensor,
    level_random_shifts: Tensor | None,
    need_weight_grad: bool,
) -> tuple[Simplex, Tensor]:
    """Simplex of every point at ``level`` and the table rows of its vertices, [N, R, n_pseudo]."""
    scales = meta.level_scale_tensor(level, device=x.device, dtype=x.dtype)
    shift = None if level_random_shifts is None else level_random_shifts[level]
    simplex = locate_simplex(x, scales, shift, need_weight_grad=need_weight_grad)
    extents = meta.level_key_extents[level] if meta.level_dense[level] else None
    vertex_rows = resolve_lattice_rows(simplex.keys, meta.level_sizes[level], extents)
    return simplex, meta.level_rows(level, vertex_rows)


def _flat_rows(rows: Tensor, batch: Tensor | None, n_params: int) -> Tensor:
    if batch is None:
        return rows
    return rows + (batch * n_params).view(-1, 1, 1)


def _gather(table: Tensor, flat_rows: Tensor, acc_dtype: torch.dtype) -> Tensor:
    """Features of the simplex vertices, [N, R, n_feats] in ``acc_dtype``."""
    n_points, n_vertices = flat_rows.shape[:2]
    values = table.reshape(-1, table.shape[-1])[flat_rows]  # [N, R, n_pseudo, width]
    return values.reshape(n_points, n_vertices, flat_rows.shape[-1] * table.shape[-1]).to(acc_dtype)


def _interpolate(weights: Tensor, values: Tensor) -> Tensor:
    return (weights.unsqueeze(-1) * values).sum(1)


def _scatter(grad_table: Tensor, flat_rows: Tensor, weights: Tensor, grad_feats: Tensor) -> None:
    """Accumulate ``weight * grad_feats`` into the rows of every simplex vertex."""
    contrib = weights.unsqueeze(-1) * grad_feats.unsqueeze(1)  # [N, R, n_feats]
    grad_table.index_add_(0, flat_rows.reshape(-1), contrib.reshape(-1, grad_table.shape[-1]))


def encode_forward(
    meta: PermutoEncMeta,
    positions: Tensor,
    lattice_values: Tensor,
    level_random_shifts: Tensor | None = None,
    batch_inds: Tensor | None = None,
    batch_offsets: Tensor | None = None,
    batch_data_size: int | None = None,
    max_level: int | None = None,
) -> Tensor:
    """
    Encode positions with the permutohedral lattice.

    Args:
        meta: Encoding layout
        positions: [..., d] query points, expected in [-1, 1]
        lattice_values: [n_params, width] or batched [B, n_params, width] parameter table
        level_random_shifts: [n_levels, d] optional per-level shift
        batch_inds: [N] batch of every point (batched tables only)
        batch_offsets: [B] first point of every batch in the packed points (batched tables only)
        batch_data_size: Number of points per batch (batched tables only)
        max_level: Only the first ``max_level`` levels contribute, the rest are zero

    Returns:
        [..., n_encoded_dims] features, in the dtype of ``lattice_values``
    """
    x = _flatten_positions(meta, positions)
    _check_lattice_values(meta, lattice_values)
    _check_random_shifts(meta, level_random_shifts)
    levels = _active_levels(meta, max_level)
    n_points = x.shape[0]
    batch = _resolve_batch_inds(
        positions, n_points, lattice_values, batch_inds, batch_offsets, batch_data_size
    )

    x = x.to(_compute_dtype(x.dtype))
    acc_dtype = _compute_dtype(lattice_values.dtype)
    encoded = torch.zeros(
        n_points, meta.n_encoded_dims, device=x.device, dtype=lattice_values.dtype
    )

    for level in levels:
        simplex, rows = _locate(meta, level, x, level_random_shifts, need_weight_grad=False)
        values = _gather(lattice_values, _flat_rows(rows, batch, meta.n_params), acc_dtype)
        feats = _interpolate(simplex.weights.to(acc_dtype), values)
        encoded[:, meta.level_columns(level)] = feats.to(encoded.dtype)

    return encoded.reshape(*positions.shape[:-1], meta.n_encoded_dims)


def encode_backward(
    meta: PermutoEncMeta,
    dL_dy: Tensor,
    positions: Tensor,
    lattice_values: Tensor,
    level_random_shifts: Tensor | None = None,
    batch_inds: Tensor | None = None,
    batch_offsets: Tensor | None = None,
    batch_data_size: int | None = None,
    max_level: int | None = None,
    max_pos_dims: int | None = None,
    need_input_grad: bool | None = None,
    need_param_grad: bool | None = None,
) -> tuple[Tensor | None, Tensor | None]:
    """
    First-order backward pass.

    Args:
        dL_dy: [..., n_encoded_dims] gradient w.r.t. the encoded features
        max_pos_dims: Only the first ``max_pos_dims`` input dimensions receive a gradient
        need_input_grad: Compute dL/dpositions (default True)
        need_param_grad: Compute dL/dlattice_values (default True)
        The remaining arguments are those of ``encode_forward``.

    Returns:
        Tuple containing:
            dL_dx: [..., d] gradient w.r.t. positions, or None
            dL_dparams: gradient w.r.t. lattice_values (same shape), or None
    """
    need_input_grad = True if need_input_grad is None else bool(need_input_grad)
    need_param_grad = True if need_param_grad is None else bool(need_param_grad)

    x = _flatten_positions(meta, positions)
    _check_lattice_values(meta, lattice_values)
    _check_random_shifts(meta, level_random_shifts)
    n_points = x.shape[0]
    dy = _check_feature_grad(meta, "dL_dy", dL_dy, positions)
    max_pos_dims = _check_max_pos_dims(meta, max_pos_dims)
    levels = _active_levels(meta, max_level)
    batch = _resolve_batch_inds(
        positions, n_points, lattice_values, batch_inds, batch_offsets, batch_data_size
    )

    x = x.to(_compute_dtype(x.dtype))
    acc_dtype = _compute_dtype(lattice_values.dtype)
    width = meta.n_feat_per_pseudo_lvl

    dL_dx = torch.zeros_like(x) if need_input_grad else None
    dL_dparams = (
        torch.zeros(lattice_values.numel() // width, width, device=x.device, dtype=acc_dtype)
        if need_param_grad
        else None
    )

    for level in levels:
        if not (need_input_grad or need_param_grad):
            break
        simplex, rows = _locate(meta, level, x, level_random_shifts, need_weight_grad=need_input_grad)
        flat_rows = _flat_rows(rows, batch, meta.n_params)
        grad_feats = dy[:, meta.level_columns(level)].to(acc_dtype)

        if need_param_grad:
            _scatter(dL_dparams, flat_rows, simplex.weights.to(acc_dtype), grad_feats)

        if need_input_grad:
            values = _gather(lattice_values, flat_rows, acc_dtype)
            dL_dw = (values * grad_feats.unsqueeze(1)).sum(-1)  # [N, R]
            dL_dx += torch.einsum("nr,nrk->nk", dL_dw.to(x.dtype), simplex.weight_grads)

    if dL_dx is not None:
        dL_dx[:, max_pos_dims:] = 0
        dL_dx = dL_dx.to(positions.dtype).reshape(positions.shape)
    if dL_dparams is not None:
        dL_dparams = dL_dparams.reshape(lattice_values.shape).to(lattice_values.dtype)
    return dL_dx, dL_dparams


def encode_backward_backward_input(
    meta: PermutoEncMeta,
    dL_ddLdx: Tensor,
    dL_dy: Tensor,
    positions: Tensor,
    lattice_values: Tensor,
    level_random_shifts: Tensor | None = None,
    batch_inds: Tensor | None = None,
    batch_offsets: Tensor | None = None,
    batch_data_size: int | None = None,
    max_level: int | None = None,
    max_pos_dims: int | None = None,
    need_dL_ddLdy: bool | None = None,
    need_dL_dparams: bool | None = None,
) -> tuple[Tensor | None, Tensor | None]:
    """
    Backward pass of the input gradient produced by ``encode_backward``.

    With ``G = dL/d(dL_dx)`` and ``w_r`` the simplex weights, the first-order input gradient is
    ``dL_dx = sum_r (grad_x w_r) <V_r, dL_dy>``. Because ``w_r`` is linear inside a simplex its
    second derivative is zero, so only the directional weights ``omega_r = G . grad_x w_r`` are
    needed. They take the place of ``w_r`` in the forward gather (for dL/d(dL_dy)) and in the
    parameter scatter (for dL/dparams).

    Args:
        dL_ddLdx: [..., d] gradient w.r.t. the first-order input gradient
        dL_dy: [..., n_encoded_dims] gradient that was given to ``encode_backward``
        max_pos_dims: Same value as given to ``encode_backward``
        need_dL_ddLdy: Compute dL/d(dL_dy) (default True)
        need_dL_dparams: Compute dL/dlattice_values (default True)
        The remaining arguments are those of ``encode_forward``.

    Returns:
        Tuple containing:
            dL_ddLdy: [..., n_encoded_dims] gradient w.r.t. dL_dy, or None
            dL_dparams: gradient w.r.t. lattice_values (same shape), or None
    """
    need_dL_ddLdy = True if need_dL_ddLdy is None else bool(need_dL_ddLdy)
    need_dL_dparams = True if need_dL_dparams is None else bool(need_dL_dparams)

    x = _flatten_positions(meta, positions)
    _check_lattice_values(meta, lattice_values)
    _check_random_shifts(meta, level_random_shifts)
    n_points = x.shape[0]
    dy = _check_feature_grad(meta, "dL_dy", dL_dy, positions)
    if dL_ddLdx.shape != positions.shape:
        raise PermutoShapeError(
            f"Expected dL_ddLdx of shape {tuple(positions.shape)}, got {tuple(dL_ddLdx.shape)}"
        )
    max_pos_dims = _check_max_pos_dims(meta, max_pos_dims)
    levels = _active_levels(meta, max_level)
    batch = _resolve_batch_inds(
        positions, n_points, lattice_values, batch_inds, batch_offsets, batch_data_size
    )

    x = x.to(_compute_dtype(x.dtype))
    acc_dtype = _compute_dtype(lattice_values.dtype)
    width = meta.n_feat_per_pseudo_lvl

    upstream = dL_ddLdx.reshape(n_points, meta.n_dims_to_encode).to(x.dtype).clone()
    upstream[:, max_pos_dims:] = 0

    dL_ddLdy = (
        torch.zeros(n_points, meta.n_encoded_dims, device=x.device, dtype=acc_dtype)
        if need_dL_ddLdy
        else None
    )
    dL_dparams = (
        torch.zeros(lattice_values.numel() // width, width, device=x.device, dtype=acc_dtype)
        if need_dL_dparams
        else None
    )

    for level in levels:
        if not (need_dL_ddLdy or need_dL_dparams):
            break
        simplex, rows = _locate(meta, level, x, level_random_shifts, need_weight_grad=True)
        flat_rows = _flat_rows(rows, batch, meta.n_params)
        omega = torch.einsum("nrk,nk->nr", simplex.weight_grads, upstream).to(acc_dtype)

        if need_dL_ddLdy:
            values = _gather(lattice_values, flat_rows, acc_dtype)
            dL_ddLdy[:, meta.level_columns(level)] = _interpolate(omega, values)

        if need_dL_dparams:
            grad_feats = dy[:, meta.level_columns(level)].to(acc_dtype)
            _scatter(dL_dparams, flat_rows, omega, grad_feats)

    if dL_ddLdy is not None:
        dL_ddLdy = dL_ddLdy.to(dL_dy.dtype).reshape(dL_dy.shape)
    if dL_dparams is not None:
        dL_dparams = dL_dparams.reshape(lattice_values.shape).to(lattice_values.dtype)
    return dL_ddLdy, dL_dparams
