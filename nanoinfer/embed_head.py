"""Token embeddings and language-model heads, with vocabulary sharding across ranks."""

from __future__ import annotations

from typing import Optional

import numpy as np

from nanoinfer.context import Context, get_context
from nanoinfer.linear import ReplicatedLinear


def _check_partitioning(vocab_size: int, tp_rank: int, tp_size: int) -> None:
    if tp_size <= 0:
        raise ValueError(f"Tensor parallel size must be positive, got {tp_size}")
    if vocab_size % tp_size != 0:
        raise ValueError("Vocabulary size must be divisible by tensor parallel size")
    if not 0 <= tp_rank < tp_size:
        raise ValueError(f"Tensor parallel rank {tp_rank} out of range for size {tp_size}")


def _as_ids(input_ids) -> np.ndarray:
    ids = np.asarray(input_ids)
    if not np.issubdtype(ids.dtype, np.integer):
        raise TypeError(f"Token ids must be integers, got dtype {ids.dtype}")
    return ids.astype(np.int64, copy=False)


def _lookup(table: np.ndarray, ids: np.ndarray) -> np.ndarray:
    try:
        return np.take(table, ids, axis=0, mode="raise")
    except IndexError as exc:
        raise IndexError(f"Token id out of range for a table of {table.shape[0]} rows") from exc


def _last_tokens(hidden_states, context: Context) -> np.ndarray:
    """Pick the final token of each sequence in a packed prefill batch."""
    hidden = np.asarray(hidden_states)
    if context.cu_seqlens_q is None:
        raise RuntimeError("Prefill context has no cumulative sequence lengths")
    ends = np.asarray(context.cu_seqlens_q).astype(np.int64).reshape(-1)[1:]
    if ends.size and (ends.min() < 1 or ends.max() > hidden.shape[0]):
        raise IndexError(
            f"Sequence boundaries {ends.tolist()} exceed {hidden.shape[0]} hidden states"
        )
    return hidden[ends - 1]


class VocabParallelEmbedding:
    """Embedding table whose vocabulary is split evenly across tensor-parallel ranks."""

    def __init__(
        self,
        vocab_size: int,
        embedding_dim: int,
        tp_rank: int = 0,
        tp_size: int = 1,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        _check_partitioning(vocab_size, tp_rank, tp_size)
        self.vocab_size = vocab_size
        self.embedding_dim = embedding_dim
        self.tp_rank = tp_rank
        self.tp_size = tp_size
        self.vocab_size_per_partition = vocab_size // tp_size
        self.vocab_start_idx = self.vocab_size_per_partition * tp_rank
        self.vocab_end_idx = self.vocab_start_idx + self.vocab_size_per_partition
        rng = rng if rng is not None else np.random.default_rng()
        self.weight = rng.standard_normal(
            (self.vocab_size_per_partition, embedding_dim)
        ).astype(dtype)

    def forward(self, input_ids) -> np.ndarray:
        """Embed token ids; ids owned by other ranks contribute zero vectors.

        Summing the outputs of all ranks gives the full embedding; within one
        process only this rank's share is returned.
        """
        ids = _as_ids(input_ids)
        if self.tp_size == 1:
            return _lookup(self.weight, ids)
        mask = self.create_vocab_mask(ids)
        embeddings = _lookup(self.weight, self.map_to_local_vocab(ids))
        return embeddings * mask[..., None].astype(embeddings.dtype)

    __call__ = forward

    def create_vocab_mask(self, input_ids) -> np.ndarray:
        """Boolean mask of the ids that fall in this rank's vocabulary range."""
        ids = _as_ids(input_ids)
        return (ids >= self.vocab_start_idx) & (ids < self.vocab_end_idx)

    def map_to_local_vocab(self, input_ids) -> np.ndarray:
        """Shift ids into this rank's local range, clamped to valid rows."""
        ids = _as_ids(input_ids)
        return np.clip(ids - self.vocab_start_idx, 0, self.vocab_size_per_partition - 1)

    def load_weight(self, weight) -> None:
        """Load this rank's rows of a full [vocab_size, embedding_dim] table."""
        weight = np.asarray(weight)
        if weight.ndim != 2:
            raise ValueError(f"Expected a 2-D weight, got shape {list(weight.shape)}")
        start = self.tp_rank * self.vocab_size_per_partition
        end = start + self.vocab_size_per_partition
        if end > weight.shape[0]:
            raise ValueError(
                f"Weight has {weight.shape[0]} rows; rank {self.tp_rank} needs rows "
                f"{start} to {end}"
            )
        shard = weight[start:end]
        expected = (self.vocab_size_per_partition, self.embedding_dim)
        if shard.shape != expected:
            raise ValueError(
                f"Partition weight shape mismatch: expected {list(expected)}, "
                f"got {list(shard.shape)}"
            )
        self.weight = shard.astype(self.weight.dtype, copy=True)

    def __repr__(self) -> str:
        return (
            f"VocabParallelEmbedding(vocab_size={self.vocab_size}, "
            f"embedding_dim={self.embedding_dim}, rank {self.tp_rank}/{self.tp_size})"
        )


class ParallelLMHead:
    """Logits over this rank's vocabulary slice, computed from embedding weights."""

    def __init__(
        self,
        vocab_size: int,
        embedding_dim: int,
        bias: bool = False,
        tp_rank: int = 0,
        tp_size: int = 1,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        embedding = VocabParallelEmbedding(
            vocab_size, embedding_dim, tp_rank, tp_size, dtype=dtype, rng=rng
        )
        self._setup(embedding, bias)

    @classmethod
    def from_embedding(cls, embedding: VocabParallelEmbedding, bias: bool = False) -> "ParallelLMHead":
        """Build a head that shares (ties) the given embedding's weights."""
        head = cls.__new__(cls)
        head._setup(embedding, bias)
        return head

    def _setup(self, embedding: VocabParallelEmbedding, bias: bool) -> None:
        self.embedding = embedding
        self.use_bias = bias
        self.bias: Optional[np.ndarray] = (
            np.zeros((embedding.vocab_size_per_partition,), dtype=embedding.weight.dtype)
            if bias
            else None
        )

    @property
    def vocab_size(self) -> int:
        return self.embedding.vocab_size

    @property
    def embedding_dim(self) -> int:
        return self.embedding.embedding_dim

    def forward(self, hidden_states) -> np.ndarray:
        """Logits for the current step; in prefill only each sequence's last token."""
        context = get_context()
        hidden = (
            _last_tokens(hidden_states, context)
            if context.is_prefill
            else np.asarray(hidden_states)
        )
        logits = hidden @ self.embedding.weight.T
        if self.bias is not None:
            logits = logits + self.bias
        return logits

    __call__ = forward

    def load_bias(self, bias) -> None:
        """Load this rank's slice of a full [vocab_size] bias."""
        if not self.use_bias:
            raise ValueError("Bias is not enabled for this LM head")
        bias = np.asarray(bias)
        per_part = self.embedding.vocab_size_per_partition
        start = self.embedding.tp_rank * per_part
        if bias.ndim != 1 or start + per_part > bias.shape[0]:
            raise ValueError(
                f"Bias of shape {list(bias.shape)} does not cover rows {start} to "
                f"{start + per_part}"
            )
        self.bias = bias[start : start + per_part].copy()

    def load_weight(self, weight) -> None:
        """Load weights into the underlying embedding table."""
        self.embedding.load_weight(weight)

    def __repr__(self) -> str:
        return (
            f"ParallelLMHead(vocab_size={self.vocab_size}, "
            f"embedding_dim={self.embedding_dim}, bias={self.use_bias})"
        )


class StandardEmbedding:
    """Single-device embedding table."""

    def __init__(
        self,
        vocab_size: int,
        embedding_dim: int,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        self.vocab_size = vocab_size
        self.embedding_dim = embedding_dim
        rng = rng if rng is not None else np.random.default_rng()
        self.weight = rng.standard_normal((vocab_size, embedding_dim)).astype(dtype)

    def forward(self, input_ids) -> np.ndarray:
        return _lookup(self.weight, _as_ids(input_ids))

    __call__ = forward

    def load_weight(self, weight) -> None:
        """Replace the table; its shape must be [vocab_size, embedding_dim]."""
        weight = np.asarray(weight)
        expected = (self.vocab_size, self.embedding_dim)
        if weight.shape != expected:
            raise ValueError(
                f"Weight shape mismatch: expected {list(expected)}, got {list(weight.shape)}"
            )
        self.weight = weight.astype(self.weight.dtype, copy=True)

    def __repr__(self) -> str:
        return f"StandardEmbedding({self.vocab_size}, {self.embedding_dim})"


class StandardLMHead:
    """Single-device language-model head: a linear map from hidden size to vocabulary."""

    def __init__(
        self,
        vocab_size: int,
        embedding_dim: int,
        bias: bool = False,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        self.vocab_size = vocab_size
        self.embedding_dim = embedding_dim
        self.linear = ReplicatedLinear(embedding_dim, vocab_size, bias, dtype=dtype, rng=rng)

    def forward(self, hidden_states) -> np.ndarray:
        """Logits for the current step; in prefill only each sequence's last token."""
        context = get_context()
        hidden = (
            _last_tokens(hidden_states, context)
            if context.is_prefill
            else np.asarray(hidden_states)
        )
        return self.linear.forward(hidden)

    __call__ = forward

    def load_weight(self, weight) -> None:
        """Replace the projection; its shape must be [vocab_size, embedding_dim]."""
        weight = np.asarray(weight)
        expected = (self.vocab_size, self.embedding_dim)
        if weight.shape != expected:
            raise ValueError(
                f"Weight shape mismatch: expected {list(expected)}, got {list(weight.shape)}"
            )
        self.linear.load_weight(weight)

    def __repr__(self) -> str:
        return f"StandardLMHead({self.embedding_dim} -> {self.vocab_size})"