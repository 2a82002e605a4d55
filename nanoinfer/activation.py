"""Activation functions, including fused gate-and-multiply variants."""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable

import numpy as np


def _as_float(x) -> np.ndarray:
    arr = np.asarray(x)
    if not np.issubdtype(arr.dtype, np.floating):
        arr = arr.astype(np.float64)
    return arr


def silu(x) -> np.ndarray:
    """SiLU(x) = x * sigmoid(x)."""
    arr = _as_float(x)
    sigmoid = 0.5 * (1.0 + np.tanh(0.5 * arr))
    return (arr * sigmoid).astype(arr.dtype, copy=False)


def gelu(x) -> np.ndarray:
    """GELU using the tanh approximation."""
    arr = _as_float(x)
    coeff = math.sqrt(2.0 / math.pi)
    result = 0.5 * arr * (1.0 + np.tanh(coeff * (arr + 0.044715 * arr**3)))
    return result.astype(arr.dtype, copy=False)


def relu(x) -> np.ndarray:
    """ReLU(x) = max(x, 0)."""
    arr = np.asarray(x)
    return np.maximum(arr, np.zeros((), dtype=arr.dtype))


def _split_halves(x, name: str) -> tuple[np.ndarray, np.ndarray]:
    arr = _as_float(x)
    size = arr.shape[-1]
    if size % 2 != 0:
        raise ValueError(f"Input dimension must be even for {name}, got {size}")
    half = size // 2
    return arr[..., :half], arr[..., half:]


class SiluAndMul:
    """Split the last axis in half and return silu(first) * second."""

    def forward(self, x) -> np.ndarray:
        gate, up = _split_halves(x, "SiluAndMul")
        return silu(gate) * up

    __call__ = forward


class GeluAndMul:
    """Split the last axis in half and return gelu(first) * second."""

    def forward(self, x) -> np.ndarray:
        gate, up = _split_halves(x, "GeluAndMul")
        return gelu(gate) * up

    __call__ = forward


class ActivationType(enum.Enum):
    SILU = "silu"
    GELU = "gelu"
    RELU = "relu"
    SILU_AND_MUL = "silu_and_mul"
    GELU_AND_MUL = "gelu_and_mul"

    @classmethod
    def from_name(cls, name: str) -> "ActivationType":
        """Parse a case-insensitive activation name."""
        try:
            return _ALIASES[name.lower()]
        except KeyError:
            raise ValueError(f"Unknown activation function: {name}") from None


_ALIASES = {
    "silu": ActivationType.SILU,
    "swish": ActivationType.SILU,
    "gelu": ActivationType.GELU,
    "relu": ActivationType.RELU,
    "silu_and_mul": ActivationType.SILU_AND_MUL,
    "siluandmul": ActivationType.SILU_AND_MUL,
    "gelu_and_mul": ActivationType.GELU_AND_MUL,
    "geluandmul": ActivationType.GELU_AND_MUL,
}

_DISPATCH = {
    ActivationType.SILU: silu,
    ActivationType.GELU: gelu,
    ActivationType.RELU: relu,
    ActivationType.SILU_AND_MUL: SiluAndMul().forward,
    ActivationType.GELU_AND_MUL: GeluAndMul().forward,
}


class Activation:
    """An activation chosen by type at construction time."""

    def __init__(self, activation_type: ActivationType | str):
        if isinstance(activation_type, str):
            activation_type = ActivationType.from_name(activation_type)
        self.activation_type = activation_type
        self._fn = _DISPATCH[activation_type]

    def forward(self, x) -> np.ndarray:
        return self._fn(x)

    __call__ = forward

    def __repr__(self) -> str:
        return f"Activation({self.activation_type.name})"


def silu_and_mul(x) -> np.ndarray:
    """Fused silu(gate) * up over the halves of the last axis."""
    return SiluAndMul().forward(x)


def batch_silu(tensors: Iterable) -> list[np.ndarray]:
    """Apply SiLU to each tensor."""
    return [silu(t) for t in tensors]