# nanoinfer

Layers and bookkeeping for transformer language-model inference, built on
NumPy arrays. Every layer takes and returns `numpy.ndarray` values.

## Modules

- `nanoinfer.activation`: `silu`, `gelu` (tanh approximation) and `relu`;
  the fused gated forms `SiluAndMul` and `GeluAndMul`, which split the last
  axis in half and raise `ValueError` when it is odd; `silu_and_mul` and
  `batch_silu`; and an `Activation` wrapper picked by `ActivationType` or by
  name through `ActivationType.from_name` (`"silu"`, `"swish"`, `"gelu"`,
  `"relu"`, `"silu_and_mul"`, `"gelu_and_mul"` and their spellings without
  underscores, in any case).
- `nanoinfer.layernorm`: `RMSNorm`, with an optional residual that is added
  before normalising, and `OptimizedRMSNorm`, whose `forward_with_residual`
  returns both the normalised output and the summed residual. Both normalise
  in float32 and return the input's dtype.
- `nanoinfer.linear`: `ReplicatedLinear`, `ColumnParallelLinear`,
  `RowParallelLinear`, the packed `QKVParallelLinear` (with `split_qkv`) and
  `MergedColumnParallelLinear` (with `split_output`). The parallel layers hold
  only the weight partition for their `tp_rank`; `load_weight` takes the full
  matrix and keeps that rank's share.
- `nanoinfer.rotary_embedding`: `RotaryEmbedding`, which precomputes cos/sin
  tables for every position (`with_scaling` multiplies the base frequency),
  `OptimizedRotaryEmbedding`, which computes them for the positions given, and
  the functions `apply_rotary_emb` and `apply_rotary_emb_single`.
- `nanoinfer.attention`: `Attention`, with causal masking, variable-length
  prefill, a paged KV cache of shape
  `[num_blocks, block_size, num_kv_heads, head_dim]` and decode over cached
  blocks, and `MultiHeadAttention`, which repeats KV heads to match the query
  heads.
- `nanoinfer.embed_head`: the vocabulary-partitioned `VocabParallelEmbedding`
  and `ParallelLMHead` (which can share an embedding's table through
  `from_embedding`), and single-device `StandardEmbedding` and
  `StandardLMHead`. In a prefill step the heads compute logits only for the
  last token of each sequence.
- `nanoinfer.context`: a process-wide `Context` describing the current
  prefill or decode batch, set with `set_context`, `set_prefill_context` or
  `set_decode_context`, cleared with `reset_context`, or installed for one
  block with `use_context`. A context missing what its phase needs raises
  `ContextError`.
- `nanoinfer.loader`: `ModelLoader` loads `.safetensors` files, or every such
  file in a directory in sorted order, into a mapping of names to
  `WeightLoader` objects such as `Parameter`. `read_safetensors` and
  `write_safetensors` handle the file format directly.

## Installation

```
pip install nanoinfer
```

With the test dependencies:

```
pip install "nanoinfer[test]"
```

## Examples

### Fused activation

```python
import numpy as np
from nanoinfer.activation import SiluAndMul

x = np.array([[1.0, 2.0, 3.0, 0.5, 1.5, 2.5]], dtype=np.float32)
y = SiluAndMul().forward(x)   # silu(first half) * second half, shape (1, 3)
```

### RMS normalisation

```python
import numpy as np
from nanoinfer.layernorm import RMSNorm

norm = RMSNorm(4, 1e-6)
out = norm.forward(np.array([[1.0, 2.0, 3.0, 4.0]], dtype=np.float32), None)
```

### Rotary embeddings

```python
import numpy as np
from nanoinfer.rotary_embedding import RotaryEmbedding

rope = RotaryEmbedding(4, 10, 10000.0)
q = np.random.randn(2, 4).astype(np.float32)
k = np.random.randn(2, 4).astype(np.float32)
q_rot, k_rot = rope.forward(q, k, np.array([0, 1]))
```

### A decode context for one block of code

```python
import numpy as np
from nanoinfer.context import Context, get_context, use_context

ctx = Context.decode(
    slot_mapping=np.array([0], dtype=np.int32),
    context_lens=np.array([5], dtype=np.int32),
    block_tables=np.array([[0]], dtype=np.int32),
)
with use_context(ctx):
    assert get_context().batch_size() == 1
```

When the `with` block ends, the previous context is back in place.

### Loading weights

```python
import numpy as np
from nanoinfer.loader import Parameter, create_standard_loader

loader = create_standard_loader()
params = {"model.norm.weight": Parameter(np.zeros((4096,), dtype=np.float32))}
loader.load_safetensors_dir("/path/to/model", params)
```

`create_standard_loader` maps `q_proj`, `k_proj` and `v_proj` onto
`qkv_proj`, and `gate_proj` and `up_proj` onto `gate_up_proj`; the shard id is
passed to `load_weight_with_metadata`. Tensors with no matching parameter are
skipped with a logged warning. A shape mismatch raises `WeightLoadError`.

## What the package does not do

- There is no communication between ranks. A parallel layer computes only its
  own rank's share: `RowParallelLinear` returns partial sums without reducing
  them, `VocabParallelEmbedding` returns zero vectors for ids owned by other
  ranks, and `ParallelLMHead` returns logits for its own vocabulary slice only.
- There is no complete model, tokenizer, sampler, scheduler or generation
  loop, and no command-line program; the package supplies the layers such a
  program would be built from.

## Running the tests

```
pytest
```