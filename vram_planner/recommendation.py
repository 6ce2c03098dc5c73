"""Pick the least aggressive quantization that fits a GPU."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from vram_planner.architecture import estimate_architecture
from vram_planner.memory.activations import resident_activation_memory
from vram_planner.memory.kv_cache import kv_cache_memory
from vram_planner.memory.overhead import system_overhead
from vram_planner.memory.weights import weights_memory
from vram_planner.quantization import QualityImpact, factor_of, quality_impact, recommendation_text
from vram_planner.validation import require_positive

logger = logging.getLogger(__name__)

# Least to most aggressive; the first format that fits wins.
RECOMMENDATION_ORDER = ("fp16", "awq", "gptq", "int8", "int4")
VRAM_HEADROOM = 0.9


@dataclass(frozen=True)
class QuantizationRecommendation:
    recommended_format: str
    can_fit: bool
    memory_usage_gb: float
    utilization_percent: float
    reason: str
    quality_impact: QualityImpact
    breakdown: dict[str, float]


def _total_memory(
    fmt: str, model_params_b: float, batch_size: int, max_seq_len: int
) -> dict[str, float]:
    arch = estimate_architecture(model_params_b)
    weights = weights_memory(model_params_b, fmt)
    parts = {
        "weights": weights,
        "kvCache": kv_cache_memory(
            batch_size, max_seq_len, arch.layers, arch.hidden_size, arch.num_heads, "fp16"
        ),
        "activations": resident_activation_memory(batch_size, max_seq_len, arch.hidden_size, "fp16"),
        "overhead": system_overhead(weights, batch_size),
    }
    parts["total"] = sum(parts.values())
    return parts


def recommend_quantization(
    vram_gb: float,
    model_params_b: float,
    *,
    batch_size: int = 1,
    max_seq_len: int = 2048,
) -> QuantizationRecommendation:
    """Recommend a format for serving *model_params_b* billion params in *vram_gb*.

    A model that does not fit at all is an expected answer, not an error: the
    result then carries ``can_fit=False`` with the most aggressive format and
    a reason stating the shortfall.
    """
    vram = require_positive("vram_gb", vram_gb)
    params = require_positive("model_params_b", model_params_b)
    budget = vram * VRAM_HEADROOM

    for fmt in RECOMMENDATION_ORDER:
        parts = _total_memory(fmt, params, batch_size, max_seq_len)
        if parts["total"] <= budget:
            logger.debug("%.1fB params fit %.1f GB as %s (%.2f GB)", params, vram, fmt, parts["total"])
            return QuantizationRecommendation(
                recommended_format=fmt,
                can_fit=True,
                memory_usage_gb=parts["total"],
                utilization_percent=parts["total"] / vram * 100,
                reason=recommendation_text(factor_of(fmt), params),
                quality_impact=quality_impact(fmt, params),
                breakdown=parts,
            )

    fmt = RECOMMENDATION_ORDER[-1]
    logger.debug("%.1fB params do not fit %.1f GB with any format", params, vram)
    return QuantizationRecommendation(
        recommended_format=fmt,
        can_fit=False,
        memory_usage_gb=parts["total"],
        utilization_percent=parts["total"] / vram * 100,
        reason=(
            f"Model too large for available VRAM even with maximum quantization "
            f"({parts['total']:.1f} GB needed, {budget:.1f} GB usable). "
            "Consider model parallelism or larger GPU."
        ),
        quality_impact=quality_impact(fmt, params),
        breakdown=parts,
    )
