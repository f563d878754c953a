"""
Command Line Interface for the permutohedral lattice encoding.

Provides tools to inspect the parameter layout of an encoding and to benchmark its passes.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

import torch
from tqdm import tqdm

from .config import PermutoEncodingConfig, load_config
from .encoding import PermutoEncoding
from .errors import PermutoConfigError
from .meta import build_meta

logger = logging.getLogger(__name__)


def _build_config(args: argparse.Namespace) -> PermutoEncodingConfig:
    config = load_config(args.config) if args.config else PermutoEncodingConfig()
    overrides = {}
    if getattr(args, "n_input_dim", None) is not None:
        overrides["n_input_dim"] = args.n_input_dim
    if getattr(args, "log2_hashmap_size", None) is not None:
        overrides["log2_hashmap_size"] = args.log2_hashmap_size
    if getattr(args, "device", None) is not None:
        overrides["device"] = args.device
    if overrides:
        config = PermutoEncodingConfig.from_dict({**config.to_dict(), **overrides})
    return config


def info_cmd(args: argparse.Namespace) -> None:
    """Print the per-level layout of an encoding."""
    config = _build_config(args)
    meta = build_meta(
        config.n_input_dim,
        2**config.log2_hashmap_size,
        config.resolution_list(),
        config.feature_list(),
    )

    print(f"Input dims: {meta.n_dims_to_encode}, output dims: {meta.n_encoded_dims}")
    print(f"Parameter table: {meta.n_params:,} x {meta.n_feat_per_pseudo_lvl}")
    print(f"{'level':>5} {'res':>10} {'n_feats':>7} {'size':>10} {'n_params':>10} {'offset':>10}  indexing")
    for row in meta.describe():
        print(
            f"{row['level']:>5} {row['res']:>10.1f} {row['n_feats']:>7} {row['size']:>10} "
            f"{row['n_params']:>10} {row['offset']:>10}  {row['indexing']}"
        )


def benchmark_cmd(args: argparse.Namespace) -> None:
    """Time the forward, backward and double-backward passes."""
    config = _build_config(args)
    device = config.torch_device()
    logger.info(f"Using device: {device}")

    encoding = PermutoEncoding(config).to(device)
    positions = torch.rand(args.num_points, config.n_input_dim, device=device) * 2 - 1

    timings = {"forward": 0.0, "backward": 0.0, "double_backward": 0.0}
    for _ in tqdm(range(args.iters), desc="Benchmark"):
        x = positions.clone().requires_grad_(True)

        start = time.perf_counter()
        features = encoding(x)
        _synchronize(device)
        timings["forward"] += time.perf_counter() - start

        start = time.perf_counter()
        (dL_dx,) = torch.autograd.grad(features.float().sum(), x, create_graph=True)
        _synchronize(device)
        timings["backward"] += time.perf_counter() - start

        start = time.perf_counter()
        dL_dx.norm(dim=-1).sum().backward()
        _synchronize(device)
        timings["double_backward"] += time.perf_counter() - start
        encoding.zero_grad(set_to_none=True)

    for name, total in timings.items():
        per_iter = total / max(args.iters, 1)
        logger.info(f"{name}: {per_iter * 1e3:.3f} ms/iter ({args.num_points / max(per_iter, 1e-12):,.0f} points/s)")


def _synchronize(device: torch.device) -> None:
    if device.type == "cuda":
        torch.cuda.synchronize(device)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="permuto-enc", description="Permutohedral lattice encoding tools")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    info = subparsers.add_parser("info", help="Print the parameter layout of an encoding")
    info.add_argument("--config", type=str, help="Path to encoding config (yaml or json)")
    info.add_argument("--n-input-dim", type=int, help="Number of input dimensions")
    info.add_argument("--log2-hashmap-size", type=int, help="Log2 of the per-level hashmap size")
    info.set_defaults(func=info_cmd)

    bench = subparsers.add_parser("benchmark", help="Benchmark forward and backward passes")
    bench.add_argument("--config", type=str, help="Path to encoding config (yaml or json)")
    bench.add_argument("--num-points", type=int, default=2**18, help="Number of query points")
    bench.add_argument("--iters", type=int, default=10, help="Number of timed iterations")
    bench.add_argument(
        "--device", type=str, default=None, choices=["auto", "cuda", "cpu"], help="Device to use"
    )
    bench.set_defaults(func=benchmark_cmd)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        args.func(args)
    except (PermutoConfigError, FileNotFoundError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
