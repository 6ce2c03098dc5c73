"""Model weight memory under each quantization format."""

from __future__ import annotations

from dataclasses import dataclass

from vram_planner.quantization import get_format
from vram_planner.validation import require_positive

FP16_BYTES_PER_PARAM = 2.0


def weights_memory(num_params_b: float, fmt: str = "fp16") -> float:
    """GB needed for *num_params_b* billion weights stored as *fmt*.

    1e9 params at one byte each is counted as 1 GB, matching how model
    cards quote sizes.
    """
    params = require_positive("num_params_b", num_params_b)
    spec = get_format(fmt)
    return params * spec.bytes_per_param + params * spec.overhead


@dataclass(frozen=True)
class WeightsMemory:
    quantization: str
    base_gb: float  # fp16 size
    quantized_gb: float
    overhead_gb: float
    total_gb: float
    quantization_savings_gb: float
    savings_percent: float


def weights_from_size(base_size_gb: float, fmt: str = "fp16") -> WeightsMemory:
    """Re-quantize a model whose fp16 checkpoint is *base_size_gb*."""
    base = require_positive("model_size_gb", base_size_gb)
    spec = get_format(fmt)
    fp32_equivalent = base / get_format("fp16").memory_efficiency
    quantized = fp32_equivalent * spec.memory_efficiency
    overhead = quantized * spec.overhead
    total = quantized + overhead
    return _summarize(spec.key, base, quantized, overhead, total)


def fp16_size_for(serving_size_gb: float, fmt: str = "fp16") -> float:
    """fp16 checkpoint size that ``weights_from_size`` serves at *serving_size_gb*."""
    size = require_positive("model_size_gb", serving_size_gb)
    spec = get_format(fmt)
    return size * get_format("fp16").memory_efficiency / (spec.memory_efficiency * (1 + spec.overhead))


def weights_breakdown(num_params_b: float, fmt: str = "fp16") -> WeightsMemory:
    params = require_positive("num_params_b", num_params_b)
    spec = get_format(fmt)
    quantized = params * spec.bytes_per_param
    overhead = params * spec.overhead
    return _summarize(spec.key, params * FP16_BYTES_PER_PARAM, quantized, overhead, quantized + overhead)


def _summarize(key: str, base: float, quantized: float, overhead: float, total: float) -> WeightsMemory:
    savings = max(0.0, base - total)
    return WeightsMemory(
        quantization=key,
        base_gb=base,
        quantized_gb=quantized,
        overhead_gb=overhead,
        total_gb=total,
        quantization_savings_gb=savings,
        savings_percent=savings / base * 100,
    )
