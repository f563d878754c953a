"""Geometry utilities for the permutohedral lattice encoding."""

from __future__ import annotations

import torch


def zero_sum_basis(dim: int, device=None, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Orthonormal basis of the zero-sum hyperplane of R^(dim+1), [dim+1, dim]."""
    n = dim + 1
    # QR is not implemented for float16; orthogonalize in float32 at least
    work_dtype = torch.promote_types(dtype, torch.float32)
    proj = torch.eye(n, device=device, dtype=work_dtype) - 1.0 / n
    q, _ = torch.linalg.qr(proj)
    return q[:, :dim].to(dtype)


def random_rotation_in_zero_sum_subspace(
    dim: int,
    num: int = 1,
    device=None,
    dtype: torch.dtype = torch.float32,
    generator: torch.Generator | None = None,
) -> torch.Tensor:
    """
    Random rotations of the zero-sum subspace, expressed in the (dim+1)-dimensional lattice frame.

    Each matrix maps zero-sum vectors to zero-sum vectors isometrically and sends the
    all-ones direction to zero, so applying it to elevated coordinates keeps them on the
    lattice hyperplane while changing the lattice orientation.

    Args:
        dim: Dimension of the subspace (the encoder input dimension)
        num: Number of matrices to generate
        device: Output device
        dtype: Output dtype
        generator: Optional random generator for reproducibility

    Returns:
        [num, dim+1, dim+1] rotation matrices
    """
    if dim < 1 or num < 0:
        raise ValueError(f"Expected dim >= 1 and num >= 0, got dim={dim}, num={num}")

    work_dtype = torch.promote_types(dtype, torch.float32)
    basis = zero_sum_basis(dim, device=device, dtype=work_dtype)  # [dim+1, dim]

    gaussian = torch.randn(num, dim, dim, generator=generator, dtype=work_dtype)
    if device is not None:
        gaussian = gaussian.to(device)
    rot, _ = torch.linalg.qr(gaussian)  # [num, dim, dim]

    rotations = basis.unsqueeze(0) @ rot @ basis.T.unsqueeze(0)
    return rotations.to(dtype)
