"""Linear layers, including column- and row-sharded variants for tensor parallelism."""

from __future__ import annotations

import abc
from collections.abc import Sequence
from typing import Optional

import numpy as np


def _check_divisible(value: int, parts: int, what: str) -> None:
    if parts <= 0:
        raise ValueError(f"Tensor parallel size must be positive, got {parts}")
    if value % parts != 0:
        raise ValueError(f"{what} must be divisible by tensor parallel size")


def _check_rank(tp_rank: int, tp_size: int) -> None:
    if not 0 <= tp_rank < tp_size:
        raise ValueError(f"Tensor parallel rank {tp_rank} out of range for size {tp_size}")


def _narrow(arr: np.ndarray, axis: int, start: int, length: int) -> np.ndarray:
    """Take `length` entries from `start` along `axis`, raising if out of range."""
    axis = axis % arr.ndim
    size = arr.shape[axis]
    if start < 0 or length < 0 or start + length > size:
        raise ValueError(
            f"Cannot take {length} entries from index {start} of axis {axis} with size {size}"
        )
    index = [slice(None)] * arr.ndim
    index[axis] = slice(start, start + length)
    return arr[tuple(index)]


class LinearBase(abc.ABC):
    """A dense layer computing x @ weight.T + bias on this rank's partition."""

    input_size: int
    output_size: int
    weight: np.ndarray
    bias: Optional[np.ndarray]

    def _init_params(
        self,
        in_features: int,
        out_features: int,
        bias: bool,
        dtype,
        rng: Optional[np.random.Generator],
    ) -> None:
        rng = rng if rng is not None else np.random.default_rng()
        bound = 1.0 / np.sqrt(in_features) if in_features > 0 else 0.0
        self.weight = rng.uniform(-bound, bound, size=(out_features, in_features)).astype(dtype)
        self.bias = (
            rng.uniform(-bound, bound, size=(out_features,)).astype(dtype) if bias else None
        )

    def _project(self, x) -> np.ndarray:
        arr = np.asarray(x)
        if arr.ndim == 0 or arr.shape[-1] != self.weight.shape[1]:
            raise ValueError(
                f"Input feature size mismatch: expected {self.weight.shape[1]}, "
                f"got {arr.shape[-1] if arr.ndim else 'a scalar'}"
            )
        out = arr @ self.weight.T
        if self.bias is not None:
            out = out + self.bias
        return out

    def _set_weight(self, weight: np.ndarray) -> None:
        if weight.shape != self.weight.shape:
            raise ValueError(
                f"Weight shape mismatch: expected {list(self.weight.shape)}, "
                f"got {list(weight.shape)}"
            )
        self.weight = weight.astype(self.weight.dtype, copy=True)

    @abc.abstractmethod
    def forward(self, x) -> np.ndarray:
        """Apply the layer to x."""

    @abc.abstractmethod
    def load_weight(self, weight) -> None:
        """Load this rank's share of a full weight matrix."""

    def __call__(self, x) -> np.ndarray:
        return self.forward(x)


class ReplicatedLinear(LinearBase):
    """A plain linear layer held whole on every rank."""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        bias: bool = True,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        self.input_size = input_size
        self.output_size = output_size
        self._init_params(input_size, output_size, bias, dtype, rng)

    def forward(self, x) -> np.ndarray:
        return self._project(x)

    def load_weight(self, weight) -> None:
        weight = np.asarray(weight)
        expected = (self.output_size, self.input_size)
        if weight.shape != expected:
            raise ValueError(
                f"Weight shape mismatch: expected {list(expected)}, got {list(weight.shape)}"
            )
        self._set_weight(weight)

    def __repr__(self) -> str:
        return f"ReplicatedLinear({self.input_size} -> {self.output_size})"


class ColumnParallelLinear(LinearBase):
    """Output features are split across ranks; each rank computes its slice."""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        bias: bool = False,
        tp_rank: int = 0,
        tp_size: int = 1,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        _check_divisible(output_size, tp_size, "Output size")
        _check_rank(tp_rank, tp_size)
        self.input_size = input_size
        self.output_size = output_size
        self.partition_size = output_size // tp_size
        self.tp_rank = tp_rank
        self.tp_size = tp_size
        self._init_params(input_size, self.partition_size, bias, dtype, rng)

    def forward(self, x) -> np.ndarray:
        return self._project(x)

    def load_weight(self, weight) -> None:
        weight = np.asarray(weight)
        if weight.ndim != 2:
            raise ValueError(f"Expected a 2-D weight, got shape {list(weight.shape)}")
        start = self.tp_rank * self.partition_size
        shard = _narrow(weight, 0, start, self.partition_size)
        expected = (self.partition_size, self.input_size)
        if shard.shape != expected:
            raise ValueError(
                f"Partition weight shape mismatch: expected {list(expected)}, "
                f"got {list(shard.shape)}"
            )
        self._set_weight(shard)

    def __repr__(self) -> str:
        return (
            f"ColumnParallelLinear({self.input_size} -> {self.output_size}, "
            f"rank {self.tp_rank}/{self.tp_size})"
        )


class RowParallelLinear(LinearBase):
    """Input features are split across ranks; only rank 0 carries the bias."""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        bias: bool = False,
        tp_rank: int = 0,
        tp_size: int = 1,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        _check_divisible(input_size, tp_size, "Input size")
        _check_rank(tp_rank, tp_size)
        self.input_size = input_size
        self.output_size = output_size
        self.partition_size = input_size // tp_size
        self.tp_rank = tp_rank
        self.tp_size = tp_size
        self._init_params(self.partition_size, output_size, bias and tp_rank == 0, dtype, rng)

    def forward(self, x) -> np.ndarray:
        """Project this rank's slice of the full input; partial sums are not reduced."""
        arr = np.asarray(x)
        start = self.tp_rank * self.partition_size
        return self._project(_narrow(arr, -1, start, self.partition_size))

    def load_weight(self, weight) -> None:
        weight = np.asarray(weight)
        if weight.ndim != 2:
            raise ValueError(f"Expected a 2-D weight, got shape {list(weight.shape)}")
        start = self.tp_rank * self.partition_size
        shard = _narrow(weight, 1, start, self.partition_size)
        expected = (self.output_size, self.partition_size)
        if shard.shape != expected:
            raise ValueError(
                f"Partition weight shape mismatch: expected {list(expected)}, "
                f"got {list(shard.shape)}"
            )
        self._set_weight(shard)

    def __repr__(self) -> str:
        return (
            f"RowParallelLinear({self.input_size} -> {self.output_size}, "
            f"rank {self.tp_rank}/{self.tp_size})"
        )


class QKVParallelLinear(LinearBase):
    """Packed query, key and value projections, sharded by attention head."""

    def __init__(
        self,
        hidden_size: int,
        head_size: int,
        total_num_heads: int,
        total_num_kv_heads: int,
        bias: bool = False,
        tp_rank: int = 0,
        tp_size: int = 1,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        _check_divisible(total_num_heads, tp_size, "Number of heads")
        _check_divisible(total_num_kv_heads, tp_size, "Number of KV heads")
        _check_rank(tp_rank, tp_size)
        self.hidden_size = hidden_size
        self.head_size = head_size
        self.total_num_heads = total_num_heads
        self.total_num_kv_heads = total_num_kv_heads
        self.num_heads = total_num_heads // tp_size
        self.num_kv_heads = total_num_kv_heads // tp_size
        self.tp_rank = tp_rank
        self.tp_size = tp_size
        self.input_size = hidden_size
        self.output_size = (total_num_heads + 2 * total_num_kv_heads) * head_size
        local_out = (self.num_heads + 2 * self.num_kv_heads) * head_size
        self._init_params(hidden_size, local_out, bias, dtype, rng)

    def forward(self, x) -> np.ndarray:
        return self._project(x)

    def split_qkv(self, qkv) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Split a packed projection into its query, key and value parts."""
        arr = np.asarray(qkv)
        q_size = self.num_heads * self.head_size
        kv_size = self.num_kv_heads * self.head_size
        q = _narrow(arr, -1, 0, q_size)
        k = _narrow(arr, -1, q_size, kv_size)
        v = _narrow(arr, -1, q_size + kv_size, kv_size)
        return q, k, v

    def load_weight(self, weight) -> None:
        """Load a full packed [Q; K; V] weight, keeping this rank's heads of each."""
        weight = np.asarray(weight)
        expected = (self.output_size, self.hidden_size)
        if weight.shape != expected:
            raise ValueError(
                f"Weight shape mismatch: expected {list(expected)}, got {list(weight.shape)}"
            )
        total_q = self.total_num_heads * self.head_size
        total_kv = self.total_num_kv_heads * self.head_size
        q_len = self.num_heads * self.head_size
        kv_len = self.num_kv_heads * self.head_size
        q = _narrow(weight, 0, self.tp_rank * q_len, q_len)
        k = _narrow(weight, 0, total_q + self.tp_rank * kv_len, kv_len)
        v = _narrow(weight, 0, total_q + total_kv + self.tp_rank * kv_len, kv_len)
        self._set_weight(np.concatenate([q, k, v], axis=0))

    def __repr__(self) -> str:
        return (
            f"QKVParallelLinear(hidden={self.hidden_size}, heads={self.num_heads}, "
            f"kv_heads={self.num_kv_heads}, head_size={self.head_size})"
        )


class MergedColumnParallelLinear(LinearBase):
    """Several column-parallel projections stacked into one matrix."""

    def __init__(
        self,
        input_size: int,
        output_sizes: Sequence[int],
        bias: bool = False,
        tp_rank: int = 0,
        tp_size: int = 1,
        *,
        dtype=np.float32,
        rng: Optional[np.random.Generator] = None,
    ):
        self.output_sizes = list(output_sizes)
        total = sum(self.output_sizes)
        _check_divisible(total, tp_size, "Total output size")
        _check_rank(tp_rank, tp_size)
        self.input_size = input_size
        self.output_size = total
        self.tp_rank = tp_rank
        self.tp_size = tp_size
        self._init_params(input_size, total // tp_size, bias, dtype, rng)

    def forward(self, x) -> np.ndarray:
        return self._project(x)

    def split_output(self, output) -> list[np.ndarray]:
        """Split the merged output back into one array per projection."""
        arr = np.asarray(output)
        parts = []
        start = 0
        for size in self.output_sizes:
            length = size // self.tp_size
            parts.append(_narrow(arr, -1, start, length))
            start += length
        return parts

    def load_weight(self, weight) -> None:
        """Load a full stacked weight, keeping this rank's slice of each projection."""
        weight = np.asarray(weight)
        expected = (self.output_size, self.input_size)
        if weight.shape != expected:
            raise ValueError(
                f"Weight shape mismatch: expected {list(expected)}, got {list(weight.shape)}"
            )
        shards = []
        offset = 0
        for size in self.output_sizes:
            length = size // self.tp_size
            shards.append(_narrow(weight, 0, offset + self.tp_rank * length, length))
            offset += size
        self._set_weight(np.concatenate(shards, axis=0))

    def __repr__(self) -> str:
        return f"MergedColumnParallelLinear({self.input_size} -> {self.output_sizes})"