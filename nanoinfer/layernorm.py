"""Root-mean-square normalization layers."""

from __future__ import annotations

import numpy as np


def _rms_normalize(x: np.ndarray, weight: np.ndarray, eps: float) -> np.ndarray:
    """Normalize along the last axis in float32 and scale by weight."""
    x32 = x.astype(np.float32)
    mean_sq = np.mean(np.square(x32), axis=-1, keepdims=True)
    inv_rms = 1.0 / np.sqrt(mean_sq + np.float32(eps))
    return (x32 * inv_rms * weight.astype(np.float32)).astype(x.dtype)


class RMSNorm:
    """RMS normalization with a learnable per-feature scale and no bias."""

    def __init__(self, hidden_size: int, eps: float = 1e-6, dtype=np.float32):
        self.hidden_size = hidden_size
        self.eps = eps
        self.weight = np.ones((hidden_size,), dtype=dtype)

    def forward(self, x, residual=None) -> np.ndarray:
        """Normalize x, adding the residual first when one is given."""
        if residual is None:
            return self.forward_simple(x)
        return self.forward_with_residual(x, residual)

    __call__ = forward

    def forward_simple(self, x) -> np.ndarray:
        """Normalize x without a residual connection."""
        arr = np.asarray(x)
        return _rms_normalize(arr, self.weight, self.eps)

    def forward_with_residual(self, x, residual) -> np.ndarray:
        """Add the residual to x, then normalize."""
        arr = np.asarray(x)
        combined = (arr + np.asarray(residual)).astype(arr.dtype, copy=False)
        return _rms_normalize(combined, self.weight, self.eps)

    def load_weight(self, weight) -> None:
        """Replace the scale vector; its shape must be (hidden_size,)."""
        weight = np.asarray(weight)
        if weight.shape != (self.hidden_size,):
            raise ValueError(
                f"Weight shape mismatch: expected [{self.hidden_size}], got {list(weight.shape)}"
            )
        self.weight = weight

    def __repr__(self) -> str:
        return f"RMSNorm(hidden_size={self.hidden_size}, eps={self.eps})"


class OptimizedRMSNorm:
    """RMS normalization computed with a reciprocal square root."""

    def __init__(self, hidden_size: int, eps: float = 1e-6, dtype=np.float32):
        self.hidden_size = hidden_size
        self.eps = float(np.float32(eps))
        self.weight = np.ones((hidden_size,), dtype=dtype)

    def forward(self, x) -> np.ndarray:
        """Normalize x along its last axis."""
        arr = np.asarray(x)
        x32 = arr.astype(np.float32)
        variance = np.mean(np.square(x32), axis=-1, keepdims=True)
        rsqrt = np.power(variance + np.float32(self.eps), np.float32(-0.5))
        return (x32 * rsqrt * self.weight.astype(np.float32)).astype(arr.dtype)

    __call__ = forward

    def forward_with_residual(self, x, residual) -> tuple[np.ndarray, np.ndarray]:
        """Return the normalized sum and the sum itself, for the next residual."""
        arr = np.asarray(x)
        combined = (arr + np.asarray(residual)).astype(arr.dtype, copy=False)
        return self.forward(combined), combined

    def __repr__(self) -> str:
        return f"OptimizedRMSNorm(hidden_size={self.hidden_size}, eps={self.eps})"