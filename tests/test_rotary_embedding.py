import math

import numpy as np
import pytest

from nanoinfer.rotary_embedding import (
    OptimizedRotaryEmbedding,
    RotaryEmbedding,
    apply_rotary_emb,
    apply_rotary_emb_single,
)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


def test_rotary_embedding_creation():
    rope = RotaryEmbedding(64, 2048, 10000.0)
    assert rope.head_dim == 64
    assert rope.max_position_embeddings == 2048
    assert rope.base == 10000.0
    assert rope.cos_cache.shape == (2048, 32)
    assert rope.sin_cache.shape == (2048, 32)


def test_apply_rotary_emb_single_identity(rng):
    x = rng.standard_normal((2, 4)).astype(np.float32)
    cos = np.ones((2, 2), dtype=np.float32)
    sin = np.zeros((2, 2), dtype=np.float32)
    result = apply_rotary_emb_single(x, cos, sin)
    assert result.shape == x.shape
    assert np.abs(result - x).sum() < 1e-6


def test_apply_rotary_emb_quarter_turn():
    x = np.array([[1.0, 2.0, 3.0, 4.0]])
    cos = np.zeros((1, 2))
    sin = np.ones((1, 2))
    result = apply_rotary_emb_single(x, cos, sin)
    np.testing.assert_allclose(result, [[-3.0, -4.0, 1.0, 2.0]])


def test_apply_rotary_emb_rotates_both(rng):
    q = rng.standard_normal((3, 4))
    k = rng.standard_normal((3, 4))
    cos = np.zeros((3, 2))
    sin = np.ones((3, 2))
    rq, rk = apply_rotary_emb(q, k, cos, sin)
    np.testing.assert_allclose(rq, apply_rotary_emb_single(q, cos, sin))
    np.testing.assert_allclose(rk, apply_rotary_emb_single(k, cos, sin))


def test_rotary_embedding_forward(rng):
    rope = RotaryEmbedding(4, 10, 10000.0)
    q = rng.standard_normal((2, 4)).astype(np.float32)
    k = rng.standard_normal((2, 4)).astype(np.float32)
    positions = np.array([0, 1], dtype=np.uint32)
    rq, rk = rope.forward(q, k, positions)
    assert rq.shape == q.shape
    assert rk.shape == k.shape
    q_diff = np.abs(rq - q).sum()
    k_diff = np.abs(rk - k).sum()
    assert q_diff > 1e-6 or k_diff > 1e-6
    # Position 0 is not rotated.
    np.testing.assert_allclose(rq[0], q[0], atol=1e-6)


def test_forward_preserves_pair_norms(rng):
    rope = RotaryEmbedding(8, 16, 10000.0, dtype=np.float64)
    q = rng.standard_normal((5, 3, 8))
    k = rng.standard_normal((5, 3, 8))
    rq, _ = rope.forward(q, k, np.arange(5))
    before = q[..., :4] ** 2 + q[..., 4:] ** 2
    after = rq[..., :4] ** 2 + rq[..., 4:] ** 2
    np.testing.assert_allclose(after, before, rtol=1e-10)


def test_get_cos_sin():
    rope = RotaryEmbedding(4, 10, 10000.0)
    cos, sin = rope.get_cos_sin(np.array([0, 1, 2], dtype=np.uint32))
    assert cos.shape == (3, 2)
    assert sin.shape == (3, 2)
    assert abs(cos[0, 0] - 1.0) < 1e-6
    assert abs(sin[0, 0]) < 1e-6


def test_get_cos_sin_values_at_position_one():
    rope = RotaryEmbedding(4, 10, 10000.0, dtype=np.float64)
    cos, sin = rope.get_cos_sin(np.array([1]))
    np.testing.assert_allclose(cos[0], [math.cos(1.0), math.cos(0.01)])
    np.testing.assert_allclose(sin[0], [math.sin(1.0), math.sin(0.01)])


def test_get_cos_sin_out_of_range():
    rope = RotaryEmbedding(4, 10, 10000.0)
    with pytest.raises(IndexError):
        rope.get_cos_sin(np.array([10]))


def test_get_cos_sin_rejects_float_positions():
    rope = RotaryEmbedding(4, 10, 10000.0)
    with pytest.raises(TypeError):
        rope.get_cos_sin(np.array([0.5]))


def test_odd_head_dim_rejected():
    with pytest.raises(ValueError):
        RotaryEmbedding(5, 10, 10000.0)
    with pytest.raises(ValueError):
        OptimizedRotaryEmbedding(3, 10, 10000.0)


def test_optimized_rotary_embedding(rng):
    rope = OptimizedRotaryEmbedding(4, 10, 10000.0)
    q = rng.standard_normal((2, 4)).astype(np.float32)
    k = rng.standard_normal((2, 4)).astype(np.float32)
    rq, rk = rope.forward(q, k, np.array([0, 1], dtype=np.uint32))
    assert rq.shape == q.shape
    assert rk.shape == k.shape
    np.testing.assert_allclose(rk[0], k[0], atol=1e-6)


def test_rotary_embedding_with_scaling():
    rope = RotaryEmbedding.with_scaling(4, 10, 10000.0, 2.0)
    assert rope.base == 20000.0
    cos, sin = rope.get_cos_sin(np.array([0, 1], dtype=np.uint32))
    assert cos.shape == (2, 2)
    assert sin.shape == (2, 2)


def test_expand_for_attention():
    rope = RotaryEmbedding(4, 10, 10000.0)
    table = np.ones((2, 2), dtype=np.float32)
    expanded = rope.expand_for_attention(table, np.zeros((2, 8, 4), dtype=np.float32))
    assert expanded.shape == (2, 8, 2)
    expanded = rope.expand_for_attention(table, np.zeros((1, 2, 8, 4), dtype=np.float32))
    assert expanded.shape == (1, 2, 8, 2)


def test_expand_for_attention_unsupported_rank():
    rope = RotaryEmbedding(4, 10, 10000.0)
    table = np.ones((2, 2), dtype=np.float32)
    with pytest.raises(ValueError):
        rope.expand_for_attention(table, np.zeros((4,)))
    with pytest.raises(ValueError):
        rope.expand_for_attention(table, np.zeros((1, 1, 2, 8, 4)))


def test_expand_for_attention_mismatched_seq_len():
    rope = OptimizedRotaryEmbedding(4, 10, 10000.0)
    table = np.ones((3, 2), dtype=np.float32)
    with pytest.raises(ValueError):
        rope.expand_for_attention(table, np.zeros((1, 2, 8, 4)))


def test_rotary_embedding_consistency(rng):
    regular = RotaryEmbedding(4, 10, 10000.0)
    optimized = OptimizedRotaryEmbedding(4, 10, 10000.0)
    q = rng.standard_normal((2, 4)).astype(np.float32)
    k = rng.standard_normal((2, 4)).astype(np.float32)
    positions = np.array([0, 1], dtype=np.uint32)
    q1, k1 = regular.forward(q, k, positions)
    q2, k2 = optimized.forward(q, k, positions)
    assert np.abs(q1 - q2).max() < 1e-5
    assert np.abs(k1 - k2).max() < 1e-5


def test_consistency_with_heads(rng):
    regular = RotaryEmbedding(8, 32, 500.0)
    optimized = OptimizedRotaryEmbedding(8, 32, 500.0)
    q = rng.standard_normal((4, 2, 8)).astype(np.float32)
    k = rng.standard_normal((4, 2, 8)).astype(np.float32)
    positions = np.array([3, 7, 11, 31])
    q1, k1 = regular(q, k, positions)
    q2, k2 = optimized(q, k, positions)
    np.testing.assert_allclose(q1, q2, atol=1e-5)
    np.testing.assert_allclose(k1, k2, atol=1e-5)