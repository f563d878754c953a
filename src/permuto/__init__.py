"""
Permuto: multi-resolution permutohedral lattice encoding for neural fields.

Each level of the encoding embeds query points into a permutohedral lattice, finds the d+1 vertices
of the enclosing simplex and interpolates their learned features, so a lookup costs O(d) instead of
the O(2^d) corners of a grid encoding.

Key Components:
    - Meta: immutable parameter-table layout (levels, pseudo levels, dense vs hashed indexing)
    - Lattice: simplex traversal with barycentric weights and their spatial gradients
    - Core: forward, backward and backward-of-backward passes
    - Encoding: autograd functions and the ``PermutoEncoding`` module

Example Usage:
    ```python
    import permuto

    config = permuto.PermutoEncodingConfig(n_input_dim=3, n_levels=16, min_res=16, max_res=2048)
    encoding = permuto.PermutoEncoding(config)

    x = torch.rand(4096, 3) * 2 - 1
    features = encoding(x)  # [4096, encoding.out_dim]
    ```
"""

__version__ = "1.0.0"

from .config import PermutoEncodingConfig, load_config, save_config
from .core import encode_backward, encode_backward_backward_input, encode_forward
from .encoding import PermutoEncBwdImpl, PermutoEncImpl, PermutoEncoding, permuto_encode
from .errors import PermutoConfigError, PermutoShapeError
from .lattice import Simplex, locate_simplex
from .meta import SUPPORTED_N_INPUT_DIMS, EncodingMeta, PermutoEncMeta, build_meta, elevation_matrix
from .utils.geometry_utils import random_rotation_in_zero_sum_subspace

__all__ = [
    "PermutoEncodingConfig",
    "load_config",
    "save_config",
    "encode_forward",
    "encode_backward",
    "encode_backward_backward_input",
    "PermutoEncImpl",
    "PermutoEncBwdImpl",
    "PermutoEncoding",
    "permuto_encode",
    "PermutoConfigError",
    "PermutoShapeError",
    "Simplex",
    "locate_simplex",
    "SUPPORTED_N_INPUT_DIMS",
    "EncodingMeta",
    "PermutoEncMeta",
    "build_meta",
    "elevation_matrix",
    "random_rotation_in_zero_sum_subspace",
]
