"""Activation memory.

``activation_memory`` is the full-depth estimate. Inference frees each
layer's intermediates before the next layer runs, so the breakdown and the
strategies size the resident working set with ``layers=1`` through
``resident_activation_memory``.
"""

from __future__ import annotations

from types import MappingProxyType

from vram_planner import config
from vram_planner.errors import UnsupportedFormatError
from vram_planner.validation import require_positive

GIB = 1024**3

ACTIVATION_PRECISIONS: MappingProxyType[str, int] = MappingProxyType({
    "fp32": 4,
    "fp16": 2,
    "bf16": 2,
})


def activation_memory(
    batch_size: float,
    seq_len: float,
    hidden_size: float,
    layers: float,
    precision: str = "fp16",
    *,
    multiplier: float | None = None,
) -> float:
    b = require_positive("batch_size", batch_size)
    s = require_positive("seq_len", seq_len)
    h = require_positive("hidden_size", hidden_size)
    n_layers = require_positive("layers", layers)
    if precision not in ACTIVATION_PRECISIONS:
        raise UnsupportedFormatError(precision, list(ACTIVATION_PRECISIONS))
    factor = require_positive(
        "multiplier", config.ACTIVATION_MULTIPLIER if multiplier is None else multiplier
    )
    return b * s * h * n_layers * ACTIVATION_PRECISIONS[precision] * factor / GIB


def resident_activation_memory(
    batch_size: float,
    seq_len: float,
    hidden_size: float,
    precision: str = "fp16",
    *,
    multiplier: float | None = None,
) -> float:
    return activation_memory(batch_size, seq_len, hidden_size, 1, precision, multiplier=multiplier)


def activation_precision_for(quantization: str) -> str:
    """Weight-only formats still compute activations in half precision."""
    if quantization in ("fp32", "bf16"):
        return quantization
    return "fp16"
