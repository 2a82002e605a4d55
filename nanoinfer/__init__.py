"""NumPy layers for transformer inference: activations, RMSNorm, linear, rotary, attention, embeddings, context and safetensors loading."""

__version__ = "0.1.0"

__all__ = [
    "activation",
    "attention",
    "context",
    "embed_head",
    "layernorm",
    "linear",
    "loader",
    "rotary_embedding",
]