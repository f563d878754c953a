"""
Permuto 测试配置和夹具

提供测试所需的通用配置、编码布局和测试夹具。
"""

import tempfile
from pathlib import Path

import pytest
import torch

from permuto import PermutoEncodingConfig, build_meta


def pytest_configure(config):
    """配置 pytest 标记"""
    config.addinivalue_line("markers", "cuda: 需要 CUDA 的测试")
    config.addinivalue_line("markers", "slow: 运行较慢的测试")


@pytest.fixture(scope="session")
def device():
    """获取测试设备"""
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


@pytest.fixture(autouse=True)
def seed():
    """固定随机种子"""
    torch.manual_seed(0)


@pytest.fixture(scope="session")
def scenario_meta():
    """3D 四层布局 (res 16..128, hashmap 2^14)"""
    return build_meta(3, 2**14, [16, 32, 64, 128], [2, 2, 2, 2])


@pytest.fixture(scope="session")
def dense_meta_2d():
    """2D 布局，低分辨率层为稠密索引"""
    return build_meta(2, 2**14, [4, 16], [2, 2])


@pytest.fixture(scope="session")
def mixed_meta():
    """不同层特征宽度不同的布局 (伪层)"""
    return build_meta(3, 2**10, [8, 16, 32], [2, 4, 6])


@pytest.fixture
def small_config():
    """小型编码配置，用于快速测试"""
    return PermutoEncodingConfig(
        n_input_dim=3,
        n_levels=4,
        min_res=8,
        max_res=64,
        n_feats=2,
        log2_hashmap_size=12,
        init_scale=0.5,
    )


@pytest.fixture
def temp_dir():
    """临时目录夹具"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def make_table():
    """随机参数表工厂"""

    def _make(meta, batch_size=None, dtype=torch.float64, device="cpu"):
        shape = (meta.n_params, meta.n_feat_per_pseudo_lvl)
        if batch_size is not None:
            shape = (batch_size,) + shape
        return torch.randn(*shape, dtype=dtype, device=device)

    return _make


@pytest.fixture
def make_positions():
    """[-bound, bound] 内随机查询点工厂"""

    def _make(n_points, n_dims, dtype=torch.float64, device="cpu", bound=0.9):
        return (torch.rand(n_points, n_dims, dtype=dtype, device=device) * 2 - 1) * bound

    return _make
