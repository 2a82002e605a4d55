"""Process-wide inference context: attention metadata for the current step."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import numpy as np


class ContextError(ValueError):
    """Raised when a context is missing the data its phase requires."""


@dataclass(frozen=True)
class Context:
    """Metadata describing the current prefill or decode step."""

    is_prefill: bool = False
    cu_seqlens_q: Optional[np.ndarray] = None
    cu_seqlens_k: Optional[np.ndarray] = None
    max_seqlen_q: int = 0
    max_seqlen_k: int = 0
    slot_mapping: Optional[np.ndarray] = None
    context_lens: Optional[np.ndarray] = None
    block_tables: Optional[np.ndarray] = None

    @classmethod
    def prefill(
        cls,
        cu_seqlens_q,
        cu_seqlens_k,
        max_seqlen_q,
        max_seqlen_k,
        slot_mapping,
        block_tables=None,
    ) -> "Context":
        """Build a prefill context."""
        return cls(
            is_prefill=True,
            cu_seqlens_q=np.asarray(cu_seqlens_q),
            cu_seqlens_k=np.asarray(cu_seqlens_k),
            max_seqlen_q=max_seqlen_q,
            max_seqlen_k=max_seqlen_k,
            slot_mapping=np.asarray(slot_mapping),
            block_tables=None if block_tables is None else np.asarray(block_tables),
        )

    @classmethod
    def decode(cls, slot_mapping, context_lens, block_tables) -> "Context":
        """Build a decode context."""
        return cls(
            is_prefill=False,
            slot_mapping=np.asarray(slot_mapping),
            context_lens=np.asarray(context_lens),
            block_tables=np.asarray(block_tables),
        )

    def has_prefix_cache(self) -> bool:
        """True for a prefill step that reads from cached blocks."""
        return self.is_prefill and self.block_tables is not None

    def batch_size(self) -> int:
        """Number of sequences described by this context."""
        if self.is_prefill:
            if self.cu_seqlens_q is None or self.cu_seqlens_q.ndim == 0:
                return 0
            return max(self.cu_seqlens_q.shape[0] - 1, 0)
        if self.context_lens is None or self.context_lens.ndim == 0:
            return 0
        return int(self.context_lens.shape[0])

    def validate(self) -> None:
        """Raise ContextError if required fields for the phase are missing."""
        if self.is_prefill:
            if self.cu_seqlens_q is None or self.cu_seqlens_k is None:
                raise ContextError("Prefill context missing cumulative sequence lengths")
            if self.slot_mapping is None:
                raise ContextError("Prefill context missing slot mapping")
            if self.max_seqlen_q == 0 or self.max_seqlen_k == 0:
                raise ContextError("Prefill context has zero max sequence lengths")
        else:
            if self.slot_mapping is None:
                raise ContextError("Decode context missing slot mapping")
            if self.context_lens is None:
                raise ContextError("Decode context missing context lengths")
            if self.block_tables is None:
                raise ContextError("Decode context missing block tables")


_lock = threading.Lock()
_current = Context()


def _replace_current(context: Context) -> None:
    global _current
    with _lock:
        _current = context


def get_context() -> Context:
    """Return the current global context."""
    with _lock:
        return _current


def set_context(context: Context) -> None:
    """Validate and install a context as the global one."""
    context.validate()
    _replace_current(context)


def set_prefill_context(
    cu_seqlens_q,
    cu_seqlens_k,
    max_seqlen_q,
    max_seqlen_k,
    slot_mapping,
    block_tables=None,
) -> None:
    """Install a prefill context."""
    set_context(
        Context.prefill(
            cu_seqlens_q, cu_seqlens_k, max_seqlen_q, max_seqlen_k, slot_mapping, block_tables
        )
    )


def set_decode_context(slot_mapping, context_lens, block_tables) -> None:
    """Install a decode context."""
    set_context(Context.decode(slot_mapping, context_lens, block_tables))


def reset_context() -> None:
    """Restore the empty default context."""
    _replace_current(Context())


@contextmanager
def use_context(context: Context) -> Iterator[Context]:
    """Install a context for the duration of a block, then restore the previous one."""
    previous = get_context()
    set_context(context)
    try:
        yield context
    finally:
        _replace_current(previous)