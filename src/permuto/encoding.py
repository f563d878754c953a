"""
Autograd wiring and ``nn.Module`` for the permutohedral lattice encoding.

``PermutoEncImpl`` runs the forward pass; its backward runs ``PermutoEncBwdImpl``, which is itself
differentiable once so that losses on spatial derivatives (e.g. eikonal terms) can be trained.
"""

from __future__ import annotations

import logging

import torch
import torch.nn as nn
from torch.autograd import Function
from torch.autograd.function import once_differentiable

from .config import PermutoEncodingConfig
from .core import encode_backward, encode_backward_backward_input, encode_forward
from .meta import PermutoEncMeta, build_meta

logger = logging.getLogger(__name__)

Tensor = torch.Tensor


class PermutoEncImpl(Function):
    @staticmethod
    def forward(
        ctx,
        meta: PermutoEncMeta,
        positions: Tensor,
        lattice_values: Tensor,
        level_random_shifts: Tensor | None = None,
        batch_inds: Tensor | None = None,
        batch_offsets: Tensor | None = None,
        batch_data_size: int | None = None,
        max_level: int | None = None,
        max_pos_dims: int | None = None,
        need_dL_dinput: bool | None = None,
    ):
        encoded = encode_forward(
            meta,
            positions,
            lattice_values,
            level_random_shifts,
            batch_inds,
            batch_offsets,
            batch_data_size,
            max_level,
        )
        ctx.save_for_backward(positions, lattice_values, level_random_shifts, batch_inds, batch_offsets)
        ctx.meta = meta
        ctx.batch_data_size = batch_data_size
        ctx.max_level = max_level
        ctx.max_pos_dims = max_pos_dims
        ctx.need_dL_dinput = need_dL_dinput
        return encoded

    @staticmethod
    def backward(ctx, dL_dy):
        positions, lattice_values, level_random_shifts, batch_inds, batch_offsets = ctx.saved_tensors
        need_dL_dinput = ctx.needs_input_grad[1] if ctx.need_dL_dinput is None else ctx.need_dL_dinput
        need_dL_dinput = bool(need_dL_dinput and ctx.needs_input_grad[1])
        need_dL_dparams = ctx.needs_input_grad[2]

        dL_dx, dL_dparams = PermutoEncBwdImpl.apply(
            dL_dy,
            positions,
            lattice_values,
            ctx.meta,
            level_random_shifts,
            batch_inds,
            batch_offsets,
            ctx.batch_data_size,
            ctx.max_level,
            ctx.max_pos_dims,
            need_dL_dinput,
            need_dL_dparams,
        )
        return None, dL_dx, dL_dparams, None, None, None, None, None, None, None


class PermutoEncBwdImpl(Function):
    @staticmethod
    def forward(
        ctx,
        dL_dy: Tensor,
        positions: Tensor,
        lattice_values: Tensor,
        meta: PermutoEncMeta,
        level_random_shifts: Tensor | None,
        batch_inds: Tensor | None,
        batch_offsets: Tensor | None,
        batch_data_size: int | None,
        max_level: int | None,
        max_pos_dims: int | None,
        need_input_grad: bool,
        need_param_grad: bool,
    ):
        dL_dx, dL_dparams = encode_backward(
            meta,
            dL_dy,
            positions,
            lattice_values,
            level_random_shifts,
            batch_inds,
            batch_offsets,
            batch_data_size,
            max_level,
            max_pos_dims,
            need_input_grad=need_input_grad,
            need_param_grad=need_param_grad,
        )
        ctx.save_for_backward(dL_dy, positions, lattice_values, level_random_shifts, batch_inds, batch_offsets)
        ctx.meta = meta
        ctx.batch_data_size = batch_data_size
        ctx.max_level = max_level
        ctx.max_pos_dims = max_pos_dims
        ctx.need_input_grad = need_input_grad
        ctx.need_param_grad = need_param_grad
        return dL_dx, dL_dparams

    @staticmethod
    @once_differentiable
    def backward(ctx, dL_ddLdx, dL_ddLdparams):
        dL_dy, positions, lattice_values, level_random_shifts, batch_inds, batch_offsets = ctx.saved_tensors
        meta = ctx.meta
        batch_kwargs = dict(
            level_random_shifts=level_random_shifts,
            batch_inds=batch_inds,
            batch_offsets=batch_offsets,
            batch_data_size=ctx.batch_data_size,
            max_level=ctx.max_level,
        )
        need_dL_ddLdy, need_dL_dinput, need_dL_dparams = ctx.needs_input_grad[:3]

        dL_ddLdy = None
        dL_dx = None
        dL_dparams = None

        # Gradient arriving on dL_dx. The second derivative of the weights is zero.
        if ctx.need_input_grad and dL_ddLdx is not None and (need_dL_ddLdy or need_dL_dparams):
            dL_ddLdy, dL_dparams = encode_backward_backward_input(
                meta,
                dL_ddLdx,
                dL_dy,
                positions,
                lattice_values,
                max_pos_dims=ctx.max_pos_dims,
                need_dL_ddLdy=need_dL_ddLdy,
                need_dL_dparams=need_dL_dparams,
                **batch_kwargs,
            )

        # Gradient arriving on dL_dparams = W(x)^T dL_dy, which is linear in both W and dL_dy.
        if ctx.need_param_grad and dL_ddLdparams is not None:
            if need_dL_ddLdy:
                dL_ddLdy_p = encode_forward(meta, positions, dL_ddLdparams, **batch_kwargs).to(dL_dy.dtype)
                dL_ddLdy = dL_ddLdy_p if dL_ddLdy is None else dL_ddLdy + dL_ddLdy_p
            if need_dL_dinput:
                dL_dx, _ = encode_backward(
                    meta,
                    dL_dy,
                    positions,
                    dL_ddLdparams,
                    max_pos_dims=ctx.max_pos_dims,
                    need_input_grad=True,
                    need_param_grad=False,
                    **batch_kwargs,
                )

        return dL_ddLdy, dL_dx, dL_dparams, None, None, None, None, None, None, None, None, None


def permuto_encode(
    meta: PermutoEncMeta,
    positions: Tensor,
    lattice_values: Tensor,
    level_random_shifts: Tensor | None = None,
    batch_inds: Tensor | None = None,
    batch_offsets: Tensor | None = None,
    batch_data_size: int | None = None,
    max_level: int | None = None,
    max_pos_dims: int | None = None,
    need_dL_dinput: bool | None = None,
) -> Tensor:
    """
    Differentiable permutohedral encoding (first and second order).

    Args:
        need_dL_dinput: Propagate gradients to ``positions``; defaults to ``positions.requires_grad``
        The remaining arguments are those of ``encode_forward`` / ``encode_backward``.

    Returns:
        [..., n_encoded_dims] features
    """
    return PermutoEncImpl.apply(
        meta,
        positions,
        lattice_values,
        level_random_shifts,
        batch_inds,
        batch_offsets,
        batch_data_size,
        max_level,
        max_pos_dims,
        need_dL_dinput,
    )


class PermutoEncoding(nn.Module):
    """Multi-resolution permutohedral lattice encoding.

    Args:
        config: Encoding configuration
    """

    def __init__(self, config: PermutoEncodingConfig):
        super().__init__()
        self.config = config

        self.meta = build_meta(
            config.n_input_dim,
            2**config.log2_hashmap_size,
            config.resolution_list(),
            config.feature_list(),
        )
        self.in_dim = self.meta.n_dims_to_encode
        self.out_dim = self.meta.n_encoded_dims
        self.max_pos_dims = config.max_pos_dims

        # Uniform initialization in [-init_scale, init_scale]
        init = torch.empty(self.meta.n_params, self.meta.n_feat_per_pseudo_lvl)
        nn.init.uniform_(init, -config.init_scale, config.init_scale)
        self.lattice_values = nn.Parameter(init.to(config.torch_dtype()))

        shifts = None
        if config.apply_random_shifts_per_level:
            shifts = torch.randn(self.meta.n_levels, self.meta.n_dims_to_encode) * config.random_shift_scale
        self.register_buffer("level_random_shifts", shifts)

        logger.info(
            f"Initialized permutohedral encoding: {self.in_dim} -> {self.out_dim} dims, "
            f"{self.meta.n_levels} levels, {self.meta.n_params:,} x {self.meta.n_feat_per_pseudo_lvl} params"
        )

    def get_out_dim(self) -> int:
        return self.out_dim

    def get_level_params(self, level: int) -> Tensor:
        """Parameter rows of one level, [level_n_params, width]."""
        start = self.meta.level_offsets[level]
        end = self.meta.level_offsets[level + 1]
        return self.lattice_values[start:end]

    def forward(
        self,
        positions: Tensor,
        batch_inds: Tensor | None = None,
        batch_offsets: Tensor | None = None,
        batch_data_size: int | None = None,
        max_level: int | None = None,
        lattice_values: Tensor | None = None,
    ) -> Tensor:
        """
        Encode positions.

        Args:
            positions: [..., in_dim] points in [-1, 1]
            batch_inds / batch_offsets / batch_data_size: Batch addressing for batched ``lattice_values``
            max_level: Only the first ``max_level`` levels contribute
            lattice_values: Optional externally owned (e.g. batched) table used instead of the parameter

        Returns:
            [..., out_dim] features
        """
        return permuto_encode(
            self.meta,
            positions,
            self.lattice_values if lattice_values is None else lattice_values,
            self.level_random_shifts,
            batch_inds=batch_inds,
            batch_offsets=batch_offsets,
            batch_data_size=batch_data_size,
            max_level=max_level,
            max_pos_dims=self.max_pos_dims,
        )

    def extra_repr(self) -> str:
        return (
            f"in_dim={self.in_dim}, out_dim={self.out_dim}, n_levels={self.meta.n_levels}, "
            f"hashmap_size={self.meta.hashmap_size}, n_params={self.meta.n_params}"
        )
