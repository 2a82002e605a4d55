"""Scaled dot-product attention over variable-length batches with a paged KV cache."""

from __future__ import annotations

import math
from itertools import pairwise
from typing import Optional

import numpy as np

from nanoinfer.context import Context, get_context


def _causal_mask(q_len: int, k_len: int) -> np.ndarray:
    """Additive mask letting query i see keys up to i + (k_len - q_len)."""
    mask = np.full((q_len, k_len), -np.inf, dtype=np.float32)
    return np.triu(mask, k=1 + k_len - q_len)


def _boundaries(cu_seqlens) -> list[tuple[int, int]]:
    values = [int(v) for v in np.asarray(cu_seqlens).reshape(-1)]
    return list(pairwise(values))


class Attention:
    """Multi-head attention with grouped-query support and an optional paged KV cache.

    The cache arrays have shape [num_blocks, block_size, num_kv_heads, head_dim];
    a slot number s addresses block s // block_size at offset s % block_size.
    """

    def __init__(self, num_heads: int, num_kv_heads: int, head_dim: int):
        if num_heads <= 0 or num_kv_heads <= 0 or head_dim <= 0:
            raise ValueError("Head counts and head dimension must be positive")
        if num_heads % num_kv_heads != 0:
            raise ValueError(
                f"Number of heads ({num_heads}) must be divisible by "
                f"number of KV heads ({num_kv_heads})"
            )
        self.num_heads = num_heads
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.scale = 1.0 / math.sqrt(head_dim)
        self.k_cache: Optional[np.ndarray] = None
        self.v_cache: Optional[np.ndarray] = None

    def set_kv_cache(self, k_cache, v_cache) -> None:
        """Attach shared key and value cache arrays; they are written in place."""
        k_cache = np.asarray(k_cache)
        v_cache = np.asarray(v_cache)
        if k_cache.shape != v_cache.shape:
            raise ValueError(
                f"Key and value caches differ in shape: {list(k_cache.shape)} "
                f"vs {list(v_cache.shape)}"
            )
        if k_cache.ndim != 4 or k_cache.shape[2:] != (self.num_kv_heads, self.head_dim):
            raise ValueError(
                "KV cache must have shape [num_blocks, block_size, "
                f"{self.num_kv_heads}, {self.head_dim}], got {list(k_cache.shape)}"
            )
        self.k_cache = k_cache
        self.v_cache = v_cache

    def forward(self, query, key, value) -> np.ndarray:
        """Attend according to the current global context; returns [tokens, hidden]."""
        context = get_context()
        q = self._split_heads(query, self.num_heads)
        k = self._split_heads(key, self.num_kv_heads)
        v = self._split_heads(value, self.num_kv_heads)
        if k.shape[0] != v.shape[0]:
            raise ValueError(
                f"Key and value token counts differ: {k.shape[0]} vs {v.shape[0]}"
            )

        if self.k_cache is not None and context.slot_mapping is not None:
            self._store_kv_cache(k, v, context.slot_mapping)

        if context.is_prefill:
            if context.block_tables is not None:
                out = self._prefill_with_cache(q, context)
            else:
                out = self._prefill(q, k, v, context)
        else:
            out = self._decode(q, context)
        return out.reshape(out.shape[0], self.num_heads * self.head_dim)

    __call__ = forward

    def create_causal_mask(self, seq_len: int) -> np.ndarray:
        """Square additive mask with -inf above the diagonal."""
        return _causal_mask(seq_len, seq_len)

    def _split_heads(self, tensor, num_heads: int) -> np.ndarray:
        arr = np.asarray(tensor)
        if arr.ndim == 2:
            expected = num_heads * self.head_dim
            if arr.shape[1] != expected:
                raise ValueError(
                    f"Hidden size mismatch: expected {expected}, got {arr.shape[1]}"
                )
            return arr.reshape(arr.shape[0], num_heads, self.head_dim)
        if arr.ndim == 3:
            if arr.shape[1:] != (num_heads, self.head_dim):
                raise ValueError(
                    f"Expected [tokens, {num_heads}, {self.head_dim}], got {list(arr.shape)}"
                )
            return arr
        raise ValueError(f"Unsupported tensor dimensions for attention: {list(arr.shape)}")

    def _require_cache(self) -> tuple[np.ndarray, np.ndarray]:
        if self.k_cache is None or self.v_cache is None:
            raise RuntimeError("Attention over cached blocks requires a KV cache")
        return self.k_cache, self.v_cache

    def _store_kv_cache(self, k: np.ndarray, v: np.ndarray, slot_mapping) -> None:
        k_cache, v_cache = self._require_cache()
        slots = np.asarray(slot_mapping).astype(np.int64).reshape(-1)
        if slots.shape[0] != k.shape[0]:
            raise ValueError(
                f"Slot mapping has {slots.shape[0]} entries for {k.shape[0]} tokens"
            )
        valid = slots >= 0
        blocks, offsets = np.divmod(slots[valid], k_cache.shape[1])
        if blocks.size and blocks.max() >= k_cache.shape[0]:
            raise IndexError(f"Slot out of range for a cache of {k_cache.shape[0]} blocks")
        k_cache[blocks, offsets] = k[valid]
        v_cache[blocks, offsets] = v[valid]

    def _gather_cached_kv(self, block_row, length: int) -> tuple[np.ndarray, np.ndarray]:
        k_cache, v_cache = self._require_cache()
        ids = [int(b) for b in np.asarray(block_row).reshape(-1) if b >= 0]
        keys = k_cache[ids].reshape(-1, self.num_kv_heads, self.head_dim)
        values = v_cache[ids].reshape(-1, self.num_kv_heads, self.head_dim)
        if length > keys.shape[0]:
            raise ValueError(
                f"Context length {length} exceeds the {keys.shape[0]} cached slots"
            )
        return keys[:length], values[:length]

    def _empty_output(self, q: np.ndarray) -> np.ndarray:
        dtype = np.result_type(q.dtype, np.float32)
        return np.zeros((0, self.num_heads, self.head_dim), dtype=dtype)

    def _prefill(self, q, k, v, context: Context) -> np.ndarray:
        outputs = [
            self._attend(q[qs:qe], k[ks:ke], v[ks:ke], causal=True)
            for (qs, qe), (ks, ke) in zip(
                _boundaries(context.cu_seqlens_q), _boundaries(context.cu_seqlens_k)
            )
        ]
        return np.concatenate(outputs, axis=0) if outputs else self._empty_output(q)

    def _prefill_with_cache(self, q, context: Context) -> np.ndarray:
        self._require_cache()
        block_tables = np.asarray(context.block_tables)
        outputs = []
        for row, ((qs, qe), (ks, ke)) in zip(
            block_tables,
            zip(_boundaries(context.cu_seqlens_q), _boundaries(context.cu_seqlens_k)),
        ):
            keys, values = self._gather_cached_kv(row, ke - ks)
            outputs.append(self._attend(q[qs:qe], keys, values, causal=True))
        return np.concatenate(outputs, axis=0) if outputs else self._empty_output(q)

    def _decode(self, q, context: Context) -> np.ndarray:
        self._require_cache()
        if context.block_tables is None or context.context_lens is None:
            raise RuntimeError("Decode attention requires block tables and context lengths")
        block_tables = np.asarray(context.block_tables)
        lengths = np.asarray(context.context_lens).reshape(-1)
        if not (q.shape[0] == block_tables.shape[0] == lengths.shape[0]):
            raise ValueError(
                f"Decode batch mismatch: {q.shape[0]} queries, {block_tables.shape[0]} "
                f"block tables, {lengths.shape[0]} context lengths"
            )
        outputs = []
        for i, (row, length) in enumerate(zip(block_tables, lengths)):
            keys, values = self._gather_cached_kv(row, int(length))
            outputs.append(self._attend(q[i : i + 1], keys, values, causal=False))
        return np.concatenate(outputs, axis=0) if outputs else self._empty_output(q)

    def _attend(self, q, k, v, causal: bool) -> np.ndarray:
        q_len, k_len = q.shape[0], k.shape[0]
        if k_len == 0:
            raise ValueError("Cannot attend over an empty key sequence")
        if causal and k_len < q_len:
            raise ValueError(
                f"Causal attention needs at least as many keys ({k_len}) as queries ({q_len})"
            )
        dtype = np.result_type(q.dtype, k.dtype, v.dtype, np.float32)
        group = self.num_heads // self.num_kv_heads
        k = np.repeat(k.astype(dtype), group, axis=1)
        v = np.repeat(v.astype(dtype), group, axis=1)
        scores = np.einsum("qhd,khd->hqk", q.astype(dtype), k) * dtype.type(self.scale)
        if causal:
            scores = scores + _causal_mask(q_len, k_len)[None].astype(dtype)
        scores = scores - scores.max(axis=-1, keepdims=True)
        weights = np.exp(scores)
        weights /= weights.sum(axis=-1, keepdims=True)
        return np.einsum("hqk,khd->qhd", weights, v)

    def __repr__(self) -> str:
        return (
            f"Attention(num_heads={self.num_heads}, num_kv_heads={self.num_kv_heads}, "
            f"head_dim={self.head_dim})"
        )


class MultiHeadAttention:
    """Attention that replicates KV heads to match the query heads before attending."""

    def __init__(self, num_heads: int, num_kv_heads: int, head_dim: int):
        if num_heads <= 0 or num_kv_heads <= 0 or head_dim <= 0:
            raise ValueError("Head counts and head dimension must be positive")
        if num_heads % num_kv_heads != 0:
            raise ValueError(
                f"Number of heads ({num_heads}) must be divisible by "
                f"number of KV heads ({num_kv_heads})"
            )
        self.num_heads = num_heads
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.attention = Attention(num_heads, num_heads, head_dim)

    def forward(self, query, key, value) -> np.ndarray:
        """Expand KV heads if needed, then attend."""
        if self.num_kv_heads < self.num_heads:
            key = self.expand_kv_heads(key)
            value = self.expand_kv_heads(value)
        return self.attention.forward(query, key, value)

    __call__ = forward

    def expand_kv_heads(self, tensor) -> np.ndarray:
        """Repeat each KV head num_heads // num_kv_heads times; returns [tokens, hidden]."""
        arr = np.asarray(tensor)
        if arr.ndim == 0:
            raise ValueError("Cannot expand heads of a scalar")
        seq_len = arr.shape[0]
        try:
            heads = arr.reshape(seq_len, self.num_kv_heads, self.head_dim)
        except ValueError as exc:
            raise ValueError(
                f"Cannot view shape {list(arr.shape)} as "
                f"[{seq_len}, {self.num_kv_heads}, {self.head_dim}]"
            ) from exc
        expanded = np.repeat(heads, self.num_heads // self.num_kv_heads, axis=1)
        return expanded.reshape(seq_len, self.num_heads * self.head_dim)

    def set_kv_cache(self, k_cache, v_cache) -> None:
        """Attach caches laid out with num_heads (expanded) heads."""
        self.attention.set_kv_cache(k_cache, v_cache)

    def __repr__(self) -> str:
        return (
            f"MultiHeadAttention(num_heads={self.num_heads}, "
            f"num_kv_heads={self.num_kv_heads}, head_dim={self.head_dim})"
        )