"""
Configuration for the permutohedral lattice encoding.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import numpy as np
import torch
import yaml

from .errors import PermutoConfigError
from .meta import MAX_LEVELS, MIN_FEATS, MIN_LEVELS, SUPPORTED_N_INPUT_DIMS

logger = logging.getLogger(__name__)

_PARAM_DTYPES = {"float32": torch.float32, "float16": torch.float16}
_DEVICES = ("auto", "cpu", "cuda")


@dataclass
class PermutoEncodingConfig:
    """Configuration for a multi-resolution permutohedral encoding."""

    # Lattice settings
    n_input_dim: int = 3
    n_levels: int = 16
    min_res: float = 16.0
    max_res: float = 2048.0
    res_list: list[float] | None = None  # Overrides min_res / max_res
    n_feats: int = 2
    n_feats_list: list[int] | None = None  # Overrides n_feats
    log2_hashmap_size: int = 18

    # Initialization
    apply_random_shifts_per_level: bool = True
    random_shift_scale: float = 10.0
    init_scale: float = 1e-4
    param_dtype: str = "float32"

    # Gradient settings
    max_pos_dims: int | None = None  # Only the first max_pos_dims inputs receive gradients

    # Device settings
    device: str = "auto"

    def __post_init__(self):
        """Validate settings."""
        if self.n_input_dim not in SUPPORTED_N_INPUT_DIMS:
            raise PermutoConfigError(
                f"n_input_dim must be in [{SUPPORTED_N_INPUT_DIMS[0]}, {SUPPORTED_N_INPUT_DIMS[-1]}], "
                f"got {self.n_input_dim}"
            )
        if self.res_list is not None:
            self.res_list = [float(r) for r in self.res_list]
            self.n_levels = len(self.res_list)
        if self.n_feats_list is not None:
            self.n_feats_list = [int(f) for f in self.n_feats_list]
            if self.res_list is None:
                self.n_levels = len(self.n_feats_list)
        if not MIN_LEVELS <= self.n_levels <= MAX_LEVELS:
            raise PermutoConfigError(f"n_levels must be in [{MIN_LEVELS}, {MAX_LEVELS}], got {self.n_levels}")
        if self.n_feats_list is None and self.n_feats < MIN_FEATS:
            raise PermutoConfigError(f"n_feats must be >= {MIN_FEATS}, got {self.n_feats}")
        if self.res_list is None and not 0 < self.min_res <= self.max_res:
            raise PermutoConfigError(
                f"Expected 0 < min_res <= max_res, got min_res={self.min_res}, max_res={self.max_res}"
            )
        if not 0 < self.log2_hashmap_size <= 30:
            raise PermutoConfigError(f"log2_hashmap_size must be in [1, 30], got {self.log2_hashmap_size}")
        if self.param_dtype not in _PARAM_DTYPES:
            raise PermutoConfigError(
                f"param_dtype must be one of {sorted(_PARAM_DTYPES)}, got {self.param_dtype!r}"
            )
        if self.device not in _DEVICES:
            raise PermutoConfigError(f"device must be one of {list(_DEVICES)}, got {self.device!r}")
        if self.max_pos_dims is not None and not 0 <= self.max_pos_dims <= self.n_input_dim:
            raise PermutoConfigError(
                f"max_pos_dims must be in [0, {self.n_input_dim}], got {self.max_pos_dims}"
            )
        if self.init_scale < 0:
            raise PermutoConfigError(f"init_scale must be non-negative, got {self.init_scale}")

    def resolution_list(self) -> list[float]:
        """Per-level resolutions; a geometric series from min_res to max_res unless res_list is set."""
        if self.res_list is not None:
            return list(self.res_list)
        growth = math.exp((math.log(self.max_res) - math.log(self.min_res)) / (self.n_levels - 1))
        return [float(r) for r in self.min_res * growth ** np.arange(self.n_levels)]

    def feature_list(self) -> list[int]:
        if self.n_feats_list is not None:
            return list(self.n_feats_list)
        return [self.n_feats] * self.n_levels

    def torch_dtype(self) -> torch.dtype:
        return _PARAM_DTYPES[self.param_dtype]

    def torch_device(self) -> torch.device:
        if self.device == "auto":
            return torch.device("cuda" if torch.cuda.is_available() else "cpu")
        return torch.device(self.device)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> PermutoEncodingConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise PermutoConfigError(f"Unknown config keys: {unknown}")
        return cls(**dict(config))


def load_config(config_path: str | Path) -> PermutoEncodingConfig:
    """Load configuration from file.

    Args:
        config_path: Path to config file (yaml or json)

    Returns:
        PermutoEncodingConfig: Parsed configuration
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        if config_path.suffix in (".yaml", ".yml"):
            config = yaml.safe_load(f)
        elif config_path.suffix == ".json":
            config = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {config_path.suffix}")

    logger.info(f"Loaded config from {config_path}")
    return PermutoEncodingConfig.from_dict(config or {})


def save_config(config: PermutoEncodingConfig, save_path: str | Path) -> None:
    """Save configuration to file.

    Args:
        config: Encoding configuration
        save_path: Path to save config file
    """
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    with open(save_path, "w") as f:
        if save_path.suffix in (".yaml", ".yml"):
            yaml.dump(config.to_dict(), f, default_flow_style=False)
        elif save_path.suffix == ".json":
            json.dump(config.to_dict(), f, indent=2)
        else:
            raise ValueError(f"Unsupported config file format: {save_path.suffix}")
