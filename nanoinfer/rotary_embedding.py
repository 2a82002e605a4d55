"""Rotary position embedding (RoPE) for query and key tensors."""

from __future__ import annotations

import numpy as np


def _inverse_frequencies(head_dim: int, base: float, dtype) -> np.ndarray:
    if head_dim <= 0 or head_dim % 2 != 0:
        raise ValueError(f"Head dimension must be a positive even number, got {head_dim}")
    exponents = np.arange(0, head_dim, 2, dtype=np.float64) / float(head_dim)
    return (1.0 / np.power(float(base), exponents)).astype(dtype)


def _as_positions(positions) -> np.ndarray:
    arr = np.asarray(positions)
    if not np.issubdtype(arr.dtype, np.integer):
        raise TypeError(f"Positions must be integers, got dtype {arr.dtype}")
    if arr.ndim != 1:
        raise ValueError(f"Positions must be a 1-D array, got shape {list(arr.shape)}")
    return arr


def _expand_for_attention(tensor, reference) -> np.ndarray:
    """Broadcast a [seq_len, head_dim/2] table against an attention tensor's layout."""
    table = np.asarray(tensor)
    ref_shape = np.shape(reference)
    if table.ndim != 2:
        raise ValueError(f"Expected a 2-D cos/sin table, got shape {list(table.shape)}")
    half = table.shape[1]
    try:
        if len(ref_shape) == 2:
            # [seq_len, head_dim]: the table already lines up.
            return np.broadcast_to(table, (ref_shape[0], half))
        if len(ref_shape) == 3:
            # [seq_len, num_heads, head_dim]
            return np.broadcast_to(table[:, None, :], (ref_shape[0], ref_shape[1], half))
        if len(ref_shape) == 4:
            # [batch, seq_len, num_heads, head_dim]
            return np.broadcast_to(
                table[None, :, None, :], (ref_shape[0], ref_shape[1], ref_shape[2], half)
            )
    except ValueError as exc:
        raise ValueError(
            f"Cannot expand table of shape {list(table.shape)} to match {list(ref_shape)}"
        ) from exc
    raise ValueError(f"Unsupported tensor dimensions for rotary embedding: {list(ref_shape)}")


def apply_rotary_emb_single(x, cos, sin) -> np.ndarray:
    """Rotate the two halves of x's last axis by the given cos/sin values."""
    arr = np.asarray(x)
    half = arr.shape[-1] // 2
    x1 = arr[..., :half]
    x2 = arr[..., half : 2 * half]
    cos = np.asarray(cos)
    sin = np.asarray(sin)
    rotated_1 = x1 * cos - x2 * sin
    rotated_2 = x2 * cos + x1 * sin
    return np.concatenate([rotated_1, rotated_2], axis=-1)


def apply_rotary_emb(q, k, cos, sin) -> tuple[np.ndarray, np.ndarray]:
    """Apply the same rotation to query and key."""
    return apply_rotary_emb_single(q, cos, sin), apply_rotary_emb_single(k, cos, sin)


class RotaryEmbedding:
    """RoPE with cos/sin tables precomputed for every position."""

    def __init__(
        self,
        head_dim: int,
        max_position_embeddings: int,
        base: float = 10000.0,
        dtype=np.float32,
    ):
        self.head_dim = head_dim
        self.max_position_embeddings = max_position_embeddings
        self.base = base
        inv_freq = _inverse_frequencies(head_dim, base, dtype)
        positions = np.arange(max_position_embeddings, dtype=np.float64).astype(dtype)
        freqs = positions[:, None] * inv_freq[None, :]
        self.cos_cache = np.cos(freqs)
        self.sin_cache = np.sin(freqs)

    @classmethod
    def with_scaling(
        cls,
        head_dim: int,
        max_position_embeddings: int,
        base: float,
        scaling_factor: float,
        dtype=np.float32,
    ) -> "RotaryEmbedding":
        """Build an embedding whose base frequency is multiplied by scaling_factor."""
        return cls(head_dim, max_position_embeddings, base * scaling_factor, dtype)

    def get_cos_sin(self, positions) -> tuple[np.ndarray, np.ndarray]:
        """Look up the cos and sin rows for the given positions."""
        idx = _as_positions(positions)
        try:
            cos = np.take(self.cos_cache, idx, axis=0, mode="raise")
            sin = np.take(self.sin_cache, idx, axis=0, mode="raise")
        except IndexError as exc:
            raise IndexError(
                f"Position out of range for {self.max_position_embeddings} positions"
            ) from exc
        return cos, sin

    def forward(self, q, k, positions) -> tuple[np.ndarray, np.ndarray]:
        """Rotate query and key according to their positions."""
        cos, sin = self.get_cos_sin(positions)
        cos = self.expand_for_attention(cos, q)
        sin = self.expand_for_attention(sin, q)
        return apply_rotary_emb(q, k, cos, sin)

    __call__ = forward

    def expand_for_attention(self, tensor, reference) -> np.ndarray:
        """Broadcast a cos/sin table to the layout of an attention tensor."""
        return _expand_for_attention(tensor, reference)

    def __repr__(self) -> str:
        return (
            f"RotaryEmbedding(head_dim={self.head_dim}, "
            f"max_position_embeddings={self.max_position_embeddings}, base={self.base})"
        )


class OptimizedRotaryEmbedding:
    """RoPE that keeps only inverse frequencies and computes cos/sin on demand."""

    def __init__(
        self,
        head_dim: int,
        max_position_embeddings: int,
        base: float = 10000.0,
        dtype=np.float32,
    ):
        self.head_dim = head_dim
        self.max_position_embeddings = max_position_embeddings
        self.base = base
        self.inv_freq = _inverse_frequencies(head_dim, base, dtype)

    def compute_cos_sin(self, positions) -> tuple[np.ndarray, np.ndarray]:
        """Compute cos and sin rows for the given positions."""
        pos = np.asarray(positions)
        if pos.ndim != 1:
            raise ValueError(f"Positions must be a 1-D array, got shape {list(pos.shape)}")
        freqs = pos.astype(self.inv_freq.dtype)[:, None] * self.inv_freq[None, :]
        return np.cos(freqs), np.sin(freqs)

    def forward(self, q, k, positions) -> tuple[np.ndarray, np.ndarray]:
        """Rotate query and key according to their positions."""
        cos, sin = self.compute_cos_sin(positions)
        cos = self.expand_for_attention(cos, q)
        sin = self.expand_for_attention(sin, q)
        return apply_rotary_emb(q, k, cos, sin)

    __call__ = forward

    def expand_for_attention(self, tensor, reference) -> np.ndarray:
        """Broadcast a cos/sin table to the layout of an attention tensor."""
        return _expand_for_attention(tensor, reference)

    def __repr__(self) -> str:
        return (
            f"OptimizedRotaryEmbedding(head_dim={self.head_dim}, "
            f"max_position_embeddings={self.max_position_embeddings}, base={self.base})"
        )