"""
编码前向传播测试

测试 encode_forward 的插值结果、逐层截断、批处理寻址、半精度以及形状错误。
"""

import pytest
import torch

from permuto import (
    PermutoShapeError,
    build_meta,
    encode_backward,
    encode_backward_backward_input,
    encode_forward,
    locate_simplex,
)
from permuto.utils.hash_utils import resolve_lattice_rows


def _reference_forward(meta, positions, table):
    """逐层逐顶点的参考实现"""
    out = []
    for level in range(meta.n_levels):
        scales = meta.level_scale_tensor(level, dtype=positions.dtype)
        simplex = locate_simplex(positions, scales)
        extents = meta.level_key_extents[level] if meta.level_dense[level] else None
        slots = resolve_lattice_rows(simplex.keys, meta.level_sizes[level], extents)
        feats = []
        for cnt in range(meta.level_n_pseudo(level)):
            rows = meta.level_offsets[level] + cnt * meta.level_sizes[level] + slots
            feats.append((simplex.weights.unsqueeze(-1) * table[rows]).sum(1))
        out.append(torch.cat(feats, dim=-1))
    return torch.cat(out, dim=-1)


class TestEncodeForward:
    """测试前向传播"""

    def test_scenario_origin(self, scenario_meta, make_table):
        """原点的特征等于每层键 0 所在行"""
        meta = scenario_meta
        table = make_table(meta)
        origin = torch.zeros(1, 3, dtype=torch.float64)

        encoded = encode_forward(meta, origin, table)
        assert encoded.shape == (1, 8)

        # Key (0, 0, 0) hashes to slot 0 on every level
        expected = torch.cat([table[meta.level_offsets[level]] for level in range(meta.n_levels)])
        assert torch.allclose(encoded[0], expected)

    def test_scenario_near_origin(self, scenario_meta, make_table):
        """原点附近的点是四个顶点行的加权和"""
        meta = scenario_meta
        table = make_table(meta)
        x = torch.tensor([[0.01, -0.02, 0.015]], dtype=torch.float64)
        encoded = encode_forward(meta, x, table)

        for level in range(meta.n_levels):
            simplex = locate_simplex(x, meta.level_scale_tensor(level, dtype=torch.float64))
            slots = resolve_lattice_rows(simplex.keys, meta.level_sizes[level])
            rows = meta.level_offsets[level] + slots[0]
            assert rows.shape == (4,)
            expected = (simplex.weights[0].unsqueeze(-1) * table[rows]).sum(0)
            assert torch.allclose(encoded[0, 2 * level : 2 * level + 2], expected)

    @pytest.mark.parametrize("meta_name", ["scenario_meta", "dense_meta_2d", "mixed_meta"])
    def test_matches_reference(self, meta_name, request, make_table, make_positions):
        """与参考实现一致 (含伪层)"""
        meta = request.getfixturevalue(meta_name)
        table = make_table(meta)
        x = make_positions(200, meta.n_dims_to_encode)
        assert torch.allclose(encode_forward(meta, x, table), _reference_forward(meta, x, table))

    def test_arbitrary_leading_dims(self, mixed_meta, make_table, make_positions):
        """任意前导维度"""
        table = make_table(mixed_meta)
        x = make_positions(24, 3)
        flat = encode_forward(mixed_meta, x, table)
        shaped = encode_forward(mixed_meta, x.reshape(2, 3, 4, 3), table)
        assert shaped.shape == (2, 3, 4, mixed_meta.n_encoded_dims)
        assert torch.allclose(shaped.reshape(24, -1), flat)

    @pytest.mark.parametrize("max_level", [0, 1, 2, 3])
    def test_progressive_masking(self, mixed_meta, make_table, make_positions, max_level):
        """max_level 之后的层输出为零"""
        meta = mixed_meta
        table = make_table(meta)
        x = make_positions(50, 3)
        full = encode_forward(meta, x, table)
        masked = encode_forward(meta, x, table, max_level=max_level)

        expected = full.clone()
        expected[:, meta.level_feat_offsets[max_level] :] = 0
        assert torch.equal(masked, expected)

    def test_random_shifts(self, dense_meta_2d, make_table, make_positions):
        """每层随机平移"""
        meta = dense_meta_2d
        table = make_table(meta)
        x = make_positions(40, 2)
        shifts = torch.randn(meta.n_levels, 2, dtype=torch.float64)
        encoded = encode_forward(meta, x, table, shifts)

        for level in range(meta.n_levels):
            shifted = encode_forward(meta, x + shifts[level], table)
            cols = meta.level_columns(level)
            assert torch.allclose(encoded[:, cols], shifted[:, cols])

    def test_order_independence(self, scenario_meta, make_table, make_positions):
        """打乱查询顺序不改变结果"""
        meta = scenario_meta
        table = make_table(meta)
        x = make_positions(300, 3)
        dy = torch.randn(300, meta.n_encoded_dims, dtype=torch.float64)
        perm = torch.randperm(300)

        encoded = encode_forward(meta, x, table)
        assert torch.allclose(encode_forward(meta, x[perm], table), encoded[perm], atol=1e-12)

        _, dL_dparams = encode_backward(meta, dy, x, table, need_input_grad=False)
        _, dL_dparams_perm = encode_backward(meta, dy[perm], x[perm], table, need_input_grad=False)
        assert torch.allclose(dL_dparams, dL_dparams_perm, atol=1e-12)

    def test_half_precision_table(self, dense_meta_2d, make_table, make_positions):
        """半精度参数表，内部以 float32 累加"""
        meta = dense_meta_2d
        table = make_table(meta, dtype=torch.float32)
        x = make_positions(64, 2, dtype=torch.float32)
        encoded = encode_forward(meta, x, table.half())
        assert encoded.dtype == torch.float16
        reference = encode_forward(meta, x, table.half().float())
        assert torch.allclose(encoded.float(), reference, atol=1e-2)

    def test_half_precision_positions(self, dense_meta_2d, make_table, make_positions):
        meta = dense_meta_2d
        table = make_table(meta, dtype=torch.float32)
        x = make_positions(64, 2, dtype=torch.float32).half()
        encoded = encode_forward(meta, x, table)
        assert encoded.dtype == torch.float32
        assert torch.allclose(encoded, encode_forward(meta, x.float(), table))


class TestEmptyBatch:
    """测试空查询批"""

    @pytest.mark.parametrize("meta_name", ["scenario_meta", "dense_meta_2d", "mixed_meta"])
    def test_forward_empty(self, meta_name, request, make_table):
        meta = request.getfixturevalue(meta_name)
        x = torch.zeros(0, meta.n_dims_to_encode, dtype=torch.float64)
        encoded = encode_forward(meta, x, make_table(meta))
        assert encoded.shape == (0, meta.n_encoded_dims)

    def test_forward_empty_leading_dims(self, mixed_meta, make_table):
        x = torch.zeros(2, 0, 3, dtype=torch.float64)
        encoded = encode_forward(mixed_meta, x, make_table(mixed_meta))
        assert encoded.shape == (2, 0, mixed_meta.n_encoded_dims)


class TestBatchedTables:
    """测试批处理参数表"""

    def test_batch_inds(self, dense_meta_2d, make_table, make_positions):
        """显式批索引"""
        meta = dense_meta_2d
        tables = make_table(meta, batch_size=3)
        x = make_positions(30, 2)
        batch_inds = torch.randint(0, 3, (30,))
        encoded = encode_forward(meta, x, tables, batch_inds=batch_inds)
        for b in range(3):
            mask = batch_inds == b
            assert torch.allclose(encoded[mask], encode_forward(meta, x[mask], tables[b]))

    def test_batch_offsets(self, dense_meta_2d, make_table, make_positions):
        """不等长批 (起始偏移)"""
        meta = dense_meta_2d
        tables = make_table(meta, batch_size=3)
        x = make_positions(20, 2)
        offsets = torch.tensor([0, 5, 12])
        encoded = encode_forward(meta, x, tables, batch_offsets=offsets)
        bounds = [0, 5, 12, 20]
        for b in range(3):
            part = slice(bounds[b], bounds[b + 1])
            assert torch.allclose(encoded[part], encode_forward(meta, x[part], tables[b]))

    def test_batch_offsets_with_empty_sample(self, dense_meta_2d, make_table, make_positions):
        """不等长批中包含空样本"""
        meta = dense_meta_2d
        tables = make_table(meta, batch_size=3)
        x = make_positions(10, 2)
        offsets = torch.tensor([0, 4, 4])
        encoded = encode_forward(meta, x, tables, batch_offsets=offsets)
        assert torch.allclose(encoded[:4], encode_forward(meta, x[:4], tables[0]))
        assert torch.allclose(encoded[4:], encode_forward(meta, x[4:], tables[2]))

    def test_batch_data_size(self, dense_meta_2d, make_table, make_positions):
        """固定大小的批"""
        meta = dense_meta_2d
        tables = make_table(meta, batch_size=2)
        x = make_positions(16, 2)
        encoded = encode_forward(meta, x, tables, batch_data_size=8)
        assert torch.allclose(encoded[:8], encode_forward(meta, x[:8], tables[0]))
        assert torch.allclose(encoded[8:], encode_forward(meta, x[8:], tables[1]))

    def test_batch_from_leading_dim(self, dense_meta_2d, make_table, make_positions):
        """由 positions 的首维推断批"""
        meta = dense_meta_2d
        tables = make_table(meta, batch_size=2)
        x = make_positions(16, 2).reshape(2, 8, 2)
        encoded = encode_forward(meta, x, tables)
        assert encoded.shape == (2, 8, meta.n_encoded_dims)
        assert torch.allclose(encoded[1], encode_forward(meta, x[1], tables[1]))

    def test_batched_param_grad(self, dense_meta_2d, make_table, make_positions):
        """批参数梯度只落在对应批"""
        meta = dense_meta_2d
        tables = make_table(meta, batch_size=2)
        x = make_positions(16, 2)
        dy = torch.randn(16, meta.n_encoded_dims, dtype=torch.float64)
        _, dL_dparams = encode_backward(meta, dy, x, tables, batch_data_size=8, need_input_grad=False)
        assert dL_dparams.shape == tables.shape
        _, first = encode_backward(meta, dy[:8], x[:8], tables[0], need_input_grad=False)
        assert torch.allclose(dL_dparams[0], first)


class TestShapeErrors:
    """测试形状错误"""

    def test_wrong_position_dims(self, scenario_meta, make_table):
        with pytest.raises(PermutoShapeError):
            encode_forward(scenario_meta, torch.zeros(4, 2, dtype=torch.float64), make_table(scenario_meta))

    def test_integer_positions(self, scenario_meta, make_table):
        with pytest.raises(PermutoShapeError):
            encode_forward(scenario_meta, torch.zeros(4, 3, dtype=torch.long), make_table(scenario_meta))

    def test_wrong_table_rows(self, scenario_meta):
        table = torch.zeros(scenario_meta.n_params - 1, 2)
        with pytest.raises(PermutoShapeError):
            encode_forward(scenario_meta, torch.zeros(4, 3), table)

    def test_wrong_shift_shape(self, scenario_meta, make_table):
        with pytest.raises(PermutoShapeError):
            encode_forward(
                scenario_meta,
                torch.zeros(4, 3, dtype=torch.float64),
                make_table(scenario_meta),
                level_random_shifts=torch.zeros(3, 3),
            )

    @pytest.mark.parametrize("max_level", [-1, 5])
    def test_max_level_out_of_range(self, scenario_meta, make_table, max_level):
        with pytest.raises(PermutoShapeError):
            encode_forward(
                scenario_meta, torch.zeros(4, 3, dtype=torch.float64), make_table(scenario_meta), max_level=max_level
            )

    def test_batch_args_without_batched_table(self, scenario_meta, make_table):
        with pytest.raises(PermutoShapeError):
            encode_forward(
                scenario_meta,
                torch.zeros(4, 3, dtype=torch.float64),
                make_table(scenario_meta),
                batch_inds=torch.zeros(4, dtype=torch.long),
            )

    def test_batch_inds_out_of_range(self, dense_meta_2d, make_table):
        with pytest.raises(PermutoShapeError):
            encode_forward(
                dense_meta_2d,
                torch.zeros(4, 2, dtype=torch.float64),
                make_table(dense_meta_2d, batch_size=2),
                batch_inds=torch.tensor([0, 1, 2, 0]),
            )

    def test_batched_table_needs_batch_info(self, dense_meta_2d, make_table):
        with pytest.raises(PermutoShapeError):
            encode_forward(dense_meta_2d, torch.zeros(4, 2, dtype=torch.float64), make_table(dense_meta_2d, batch_size=2))

    def test_wrong_grad_shape(self, scenario_meta, make_table):
        x = torch.zeros(4, 3, dtype=torch.float64)
        with pytest.raises(PermutoShapeError):
            encode_backward(scenario_meta, torch.zeros(4, 7, dtype=torch.float64), x, make_table(scenario_meta))

    def test_grad_leading_dims_mismatch(self, scenario_meta, make_table):
        """dL_dy 的前导维度必须与 positions 一致"""
        x = torch.zeros(4, 3, dtype=torch.float64)
        dy = torch.zeros(2, 2, 8, dtype=torch.float64)
        table = make_table(scenario_meta)
        with pytest.raises(PermutoShapeError, match="dL_dy"):
            encode_backward(scenario_meta, dy, x, table)
        with pytest.raises(PermutoShapeError, match="dL_dy"):
            encode_backward_backward_input(scenario_meta, torch.zeros_like(x), dy, x, table)

    def test_second_order_grad_shape_mismatch(self, scenario_meta, make_table):
        x = torch.zeros(4, 3, dtype=torch.float64)
        dy = torch.zeros(4, 8, dtype=torch.float64)
        with pytest.raises(PermutoShapeError, match="dL_ddLdx"):
            encode_backward_backward_input(
                scenario_meta, torch.zeros(2, 2, 3, dtype=torch.float64), dy, x, make_table(scenario_meta)
            )

    def test_bad_max_pos_dims(self, scenario_meta, make_table):
        x = torch.zeros(4, 3, dtype=torch.float64)
        dy = torch.zeros(4, 8, dtype=torch.float64)
        with pytest.raises(PermutoShapeError):
            encode_backward(scenario_meta, dy, x, make_table(scenario_meta), max_pos_dims=4)

    def test_shape_error_is_value_error(self, scenario_meta, make_table):
        with pytest.raises(ValueError):
            encode_forward(scenario_meta, torch.zeros(4, 5), make_table(scenario_meta))
