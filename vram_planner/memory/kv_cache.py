"""Key/value cache sizing."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType

from vram_planner.errors import UnsupportedFormatError
from vram_planner.validation import require_choice, require_positive

GIB = 1024**3

KV_CACHE_PRECISIONS: MappingProxyType[str, int] = MappingProxyType({
    "fp32": 4,
    "fp16": 2,
    "bf16": 2,
    "int8": 1,
})


def kv_bytes_per_element(precision: str) -> int:
    try:
        return KV_CACHE_PRECISIONS[precision]
    except KeyError:
        raise UnsupportedFormatError(precision, list(KV_CACHE_PRECISIONS)) from None


def kv_cache_memory(
    batch_size: float,
    max_seq_len: float,
    layers: float,
    hidden_size: float,
    num_heads: float,
    precision: str = "fp16",
) -> float:
    """GB of K and V tensors for *batch_size* sequences of *max_seq_len* tokens.

    ``num_heads`` is validated but does not change the result: heads split
    the hidden dimension, they do not add to it.
    """
    b = require_positive("batch_size", batch_size)
    s = require_positive("max_seq_len", max_seq_len)
    n_layers = require_positive("layers", layers)
    h = require_positive("hidden_size", hidden_size)
    require_positive("num_heads", num_heads)
    return 2 * b * s * n_layers * h * kv_bytes_per_element(precision) / GIB


@dataclass(frozen=True)
class KVCacheBreakdown:
    total_gb: float
    per_sequence_gb: float
    per_token_mb: float
    per_layer_gb: float
    precision: str
    head_dim: float


def kv_cache_breakdown(
    batch_size: float,
    max_seq_len: float,
    layers: float,
    hidden_size: float,
    num_heads: float,
    precision: str = "fp16",
) -> KVCacheBreakdown:
    total = kv_cache_memory(batch_size, max_seq_len, layers, hidden_size, num_heads, precision)
    per_sequence = total / batch_size
    return KVCacheBreakdown(
        total_gb=total,
        per_sequence_gb=per_sequence,
        per_token_mb=per_sequence / max_seq_len * 1024,
        per_layer_gb=total / layers,
        precision=precision,
        head_dim=hidden_size / num_heads,
    )


# target -> block size for (< 4 GB, < 16 GB, larger) KV pools
BLOCK_SIZE_TIERS: MappingProxyType[str, tuple[int, int, int]] = MappingProxyType({
    "latency": (8, 16, 16),
    "throughput": (16, 32, 32),
    "balanced": (16, 16, 32),
})


def kv_block_size(total_kv_gb: float, target: str = "balanced") -> int:
    """Paged-attention block size for a KV pool of *total_kv_gb*."""
    total = require_positive("total_kv_gb", total_kv_gb)
    small, medium, large = BLOCK_SIZE_TIERS[require_choice("target", target, BLOCK_SIZE_TIERS)]
    if total < 4:
        return small
    if total < 16:
        return medium
    return large
