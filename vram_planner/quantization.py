"""Quantization format catalog and memory-factor calculations.

The catalog is a read-only table of the numeric formats vLLM can serve.
Memory factors are expressed relative to fp32 weights, so fp32 is 1.0 and a
4-bit format is 0.125 before format overhead (scales, zero points, group
metadata) is added on top.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from types import MappingProxyType

from vram_planner.errors import UnsupportedFormatError
from vram_planner.validation import clamp, require_positive

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuantizationFormat:
    key: str
    bits_per_param: int
    bytes_per_param: float
    memory_efficiency: float  # fraction of fp32 size
    quality_loss: float  # 0 = lossless, 1 = unusable
    description: str
    overhead: float = 0.0  # extra fraction for scales / zero points
    group_size: int | None = None
    recommended_for_size: str | None = None


QUANTIZATION_FORMATS: MappingProxyType[str, QuantizationFormat] = MappingProxyType({
    "fp32": QuantizationFormat(
        key="fp32", bits_per_param=32, bytes_per_param=4.0,
        memory_efficiency=1.0, quality_loss=0.0,
        description="Full 32-bit floating point precision",
    ),
    "fp16": QuantizationFormat(
        key="fp16", bits_per_param=16, bytes_per_param=2.0,
        memory_efficiency=0.5, quality_loss=0.02,
        description="16-bit floating point (recommended default)",
    ),
    "bf16": QuantizationFormat(
        key="bf16", bits_per_param=16, bytes_per_param=2.0,
        memory_efficiency=0.5, quality_loss=0.01,
        description="Brain Float 16 (better numerical stability than fp16)",
    ),
    "int8": QuantizationFormat(
        key="int8", bits_per_param=8, bytes_per_param=1.0,
        memory_efficiency=0.25, quality_loss=0.05, overhead=0.02,
        description="Dynamic 8-bit integer quantization",
    ),
    "int4": QuantizationFormat(
        key="int4", bits_per_param=4, bytes_per_param=0.5,
        memory_efficiency=0.125, quality_loss=0.15, overhead=0.03,
        description="Static 4-bit integer quantization",
    ),
    "awq": QuantizationFormat(
        key="awq", bits_per_param=4, bytes_per_param=0.5,
        memory_efficiency=0.125, quality_loss=0.03, overhead=0.01,
        description="Activation-aware Weight Quantization (4-bit)",
        group_size=128, recommended_for_size="7B+",
    ),
    "gptq": QuantizationFormat(
        key="gptq", bits_per_param=4, bytes_per_param=0.5,
        memory_efficiency=0.125, quality_loss=0.05, overhead=0.02,
        description="GPTQ post-training quantization (4-bit)",
        group_size=32, recommended_for_size="3B+",
    ),
    "ggml": QuantizationFormat(
        key="ggml", bits_per_param=4, bytes_per_param=0.5,
        memory_efficiency=0.125, quality_loss=0.08, overhead=0.02,
        description="GGML quantization format",
    ),
})

DEFAULT_FORMAT = "fp16"


def supported_formats() -> list[str]:
    return list(QUANTIZATION_FORMATS)


def get_format(key: str) -> QuantizationFormat:
    """Look up a format by key, case-insensitively."""
    normalized = key.strip().lower() if isinstance(key, str) else key
    try:
        return QUANTIZATION_FORMATS[normalized]
    except (KeyError, TypeError):
        raise UnsupportedFormatError(key, supported_formats()) from None


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuantizationFactor:
    format: str
    bits: int
    bytes_per_param: float
    memory_factor: float
    quality_loss: float
    description: str
    overhead: float


def factor_of(fmt: str, *, include_overhead: bool = True) -> QuantizationFactor:
    """Memory factor of *fmt* relative to fp32, optionally including overhead."""
    spec = get_format(fmt)
    memory_factor = spec.memory_efficiency + (spec.overhead if include_overhead else 0.0)
    return QuantizationFactor(
        format=spec.key,
        bits=spec.bits_per_param,
        bytes_per_param=spec.bytes_per_param,
        memory_factor=round(memory_factor, 3),
        quality_loss=spec.quality_loss,
        description=spec.description,
        overhead=spec.overhead,
    )


def compare_formats(formats: Iterable[str]) -> list[QuantizationFactor]:
    """Factors for *formats*, smallest memory footprint first."""
    return sorted((factor_of(f) for f in formats), key=lambda f: f.memory_factor)


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

# (upper bound on adjusted loss, severity), checked in order
SEVERITY_BANDS: tuple[tuple[float, str], ...] = (
    (0.02, "minimal"),
    (0.05, "low"),
    (0.10, "moderate"),
)


@dataclass(frozen=True)
class QualityImpact:
    format: str
    base_loss: float
    adjusted_loss: float
    severity: str
    size_adjustment: float


def quality_impact(fmt: str, model_size_b: float) -> QualityImpact:
    """Estimate quality loss for *fmt* on a model of *model_size_b* billion params.

    Smaller models have less redundancy to absorb quantization error, so the
    base loss is scaled up to 2x as the model shrinks below 7B.
    """
    spec = get_format(fmt)
    size = require_positive("model_size_b", model_size_b)
    size_adjustment = clamp(size / 7, 0.5, 1.0)
    adjusted = spec.quality_loss * (2 - size_adjustment)

    severity = "high"
    for bound, label in SEVERITY_BANDS:
        if adjusted <= bound:
            severity = label
            break

    return QualityImpact(
        format=spec.key,
        base_loss=spec.quality_loss,
        adjusted_loss=round(adjusted, 4),
        severity=severity,
        size_adjustment=size_adjustment,
    )


def recommendation_text(factor: QuantizationFactor, model_size_b: float) -> str:
    """One-line rationale for choosing *factor* on a model of the given size."""
    savings = (1 - factor.memory_factor) * 100
    if factor.format == "fp32":
        return "Use only for research or when maximum precision is required"
    if factor.format in ("fp16", "bf16"):
        return "Recommended for most production deployments with good balance of speed and quality"
    if factor.format == "awq":
        band = "large" if model_size_b >= 7 else "smaller"
        return f"Excellent for {band} models, ~{savings:.0f}% memory savings with minimal quality loss"
    if factor.format == "gptq":
        return f"Good for memory-constrained environments, {savings:.0f}% memory reduction"
    if factor.format == "int8":
        return "Use when memory is very limited, may impact quality on smaller models"
    if factor.format == "int4":
        return "Extreme memory savings but significant quality trade-offs for most models"
    return f"{savings:.0f}% memory savings - evaluate quality trade-offs for your use case"
