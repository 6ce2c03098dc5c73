"""Full VRAM breakdown: seven memory components plus fit and pressure analysis.

Accounting identities held by every result::

    used_memory     = model_weights + kv_cache + activations
                      + system_overhead + fragmentation
    total_allocated = used_memory + swap + reserved
    supports_model  = total_allocated <= total_vram_gb

Component sizes are kept unrounded so the identities hold exactly;
``MemoryBreakdown.to_dict`` rounds for display.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from vram_planner.architecture import ModelArchitecture
from vram_planner.errors import ValidationError
from vram_planner.inputs import BreakdownRequest, parse_model
from vram_planner.memory.activations import activation_precision_for, resident_activation_memory
from vram_planner.memory.kv_cache import kv_cache_breakdown
from vram_planner.memory.overhead import (
    fragmentation,
    optimal_swap_space,
    reserved_memory,
    system_overhead,
)
from vram_planner.memory.weights import WeightsMemory, weights_breakdown, weights_from_size
from vram_planner.quantization import QuantizationFormat, get_format
from vram_planner.validation import clamp

logger = logging.getLogger(__name__)

COMPONENT_ORDER = (
    "modelWeights",
    "kvCache",
    "activations",
    "systemOverhead",
    "fragmentation",
    "swap",
    "reserved",
)

# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryComponent:
    size_gb: float
    percentage: float
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MemorySummary:
    used_memory_gb: float
    total_allocated_gb: float
    available_memory_gb: float
    utilization_percent: float
    allocation_percent: float


@dataclass(frozen=True)
class Compatibility:
    supports_model: bool
    safety_margin_gb: float
    recommended_batch_size: int
    max_concurrent_sequences: int


@dataclass(frozen=True)
class Efficiency:
    overall: float
    utilization: float
    model: float
    batch: float
    quantization: float
    rating: str


@dataclass(frozen=True)
class MemoryPressure:
    level: str
    description: str
    is_stable: bool
    has_headroom: bool
    recommendations: tuple[str, ...]


@dataclass(frozen=True)
class QuantizationBenefit:
    format: str
    savings_gb: float
    savings_percent: float
    quality_loss: float
    description: str
    recommendation: str
    is_recommended: bool


@dataclass(frozen=True)
class OptimizationRecommendation:
    priority: str
    category: str
    title: str
    description: str


@dataclass(frozen=True)
class MemoryBreakdown:
    total_vram_gb: float
    components: dict[str, MemoryComponent]
    summary: MemorySummary
    compatibility: Compatibility
    efficiency: Efficiency
    pressure: MemoryPressure
    quantization_benefit: QuantizationBenefit
    recommendations: tuple[OptimizationRecommendation, ...]
    architecture: ModelArchitecture

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready camelCase view, sizes rounded to 2 decimals."""
        return {
            "totalVRAMGB": self.total_vram_gb,
            "components": {
                name: {
                    "sizeGB": round(c.size_gb, 2),
                    "percentage": c.percentage,
                    "details": c.details,
                }
                for name, c in self.components.items()
            },
            "summary": {
                "usedMemory": round(self.summary.used_memory_gb, 2),
                "totalAllocated": round(self.summary.total_allocated_gb, 2),
                "availableMemory": round(self.summary.available_memory_gb, 2),
                "utilizationPercent": round(self.summary.utilization_percent, 1),
                "allocationPercent": round(self.summary.allocation_percent, 1),
            },
            "compatibility": {
                "supportsModel": self.compatibility.supports_model,
                "safetyMargin": round(self.compatibility.safety_margin_gb, 2),
                "recommendedBatchSize": self.compatibility.recommended_batch_size,
                "maxConcurrentSequences": self.compatibility.max_concurrent_sequences,
            },
            "efficiency": {
                "overall": round(self.efficiency.overall, 3),
                "utilization": round(self.efficiency.utilization, 3),
                "model": round(self.efficiency.model, 3),
                "batch": round(self.efficiency.batch, 3),
                "quantization": round(self.efficiency.quantization, 3),
                "rating": self.efficiency.rating,
            },
            "memoryPressure": {
                "level": self.pressure.level,
                "description": self.pressure.description,
                "isStable": self.pressure.is_stable,
                "hasHeadroom": self.pressure.has_headroom,
                "recommendations": list(self.pressure.recommendations),
            },
            "quantizationBenefit": {
                "format": self.quantization_benefit.format,
                "savingsGB": round(self.quantization_benefit.savings_gb, 2),
                "savingsPercent": round(self.quantization_benefit.savings_percent, 1),
                "qualityLoss": self.quantization_benefit.quality_loss,
                "description": self.quantization_benefit.description,
                "recommendation": self.quantization_benefit.recommendation,
                "isRecommended": self.quantization_benefit.is_recommended,
            },
            "recommendations": [
                {
                    "priority": r.priority,
                    "category": r.category,
                    "title": r.title,
                    "description": r.description,
                }
                for r in self.recommendations
            ],
            "architecture": {
                "name": self.architecture.name,
                "layers": self.architecture.layers,
                "hiddenSize": self.architecture.hidden_size,
                "numHeads": self.architecture.num_heads,
            },
        }


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

# (min utilization %, level, description, stable, recommendations)
PRESSURE_LEVELS: tuple[tuple[float, str, str, bool, tuple[str, ...]], ...] = (
    (
        95, "Critical", "Memory usage is at critical levels. System instability likely.", False,
        (
            "Reduce batch size immediately",
            "Use more aggressive quantization",
            "Consider model sharding across multiple GPUs",
            "Reduce maximum sequence length",
        ),
    ),
    (
        90, "High", "High memory pressure. Performance degradation possible.", False,
        (
            "Reduce batch size for stability",
            "Monitor for OOM errors",
            "Consider using int8 or 4-bit quantization",
            "Implement gradual scaling",
        ),
    ),
    (
        80, "Moderate", "Moderate memory usage. Generally safe for production.", True,
        (
            "Monitor memory usage during peak loads",
            "Have scaling plans ready",
            "Consider memory optimizations for efficiency",
        ),
    ),
    (
        60, "Low", "Comfortable memory usage with good headroom.", True,
        (
            "Consider increasing batch size for better throughput",
            "Opportunity to use higher precision if quality is important",
            "Room for handling traffic spikes",
        ),
    ),
    (
        0, "Very Low", "Memory is underutilized. Efficiency could be improved.", True,
        (
            "Increase batch size significantly",
            "Consider using higher precision formats",
            "Optimize for throughput rather than memory conservation",
            "Consider running multiple models or larger model variants",
        ),
    ),
)

HEADROOM_THRESHOLD_GB = 2.0

# (min score, rating)
EFFICIENCY_RATINGS: tuple[tuple[float, str], ...] = (
    (0.9, "Excellent"),
    (0.8, "Very Good"),
    (0.7, "Good"),
    (0.6, "Fair"),
    (0.5, "Poor"),
)

# (min savings %, description, recommendation)
BENEFIT_BANDS: tuple[tuple[float, str, str], ...] = (
    (75, "Excellent memory savings with acceptable quality trade-off",
     "Highly recommended for memory-constrained deployments"),
    (50, "Good memory savings with moderate quality impact",
     "Recommended for most production deployments"),
    (25, "Moderate savings with minimal quality loss",
     "Good balance for quality-sensitive applications"),
    (0, "Minimal savings - consider higher precision if memory allows",
     "Higher precision may be worthwhile if VRAM is sufficient"),
)

# VRAM ceiling (GB) -> batch size cap
BATCH_SIZE_CAPS: tuple[tuple[float, int], ...] = ((16, 16), (24, 32), (48, 64))
MAX_BATCH_SIZE_CAP = 256

PER_SEQUENCE_SLACK_GB = 0.1

_PRIORITY_RANK = {"High": 0, "Medium": 1, "Low": 2}


def classify_pressure(utilization_percent: float, available_gb: float) -> MemoryPressure:
    for threshold, level, description, stable, recommendations in PRESSURE_LEVELS:
        if utilization_percent >= threshold:
            break
    return MemoryPressure(
        level=level,
        description=description,
        is_stable=stable,
        has_headroom=available_gb > HEADROOM_THRESHOLD_GB,
        recommendations=recommendations,
    )


def efficiency_rating(score: float) -> str:
    for threshold, rating in EFFICIENCY_RATINGS:
        if score >= threshold:
            return rating
    return "Very Poor"


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def breakdown(config: Mapping[str, Any] | BreakdownRequest) -> MemoryBreakdown:
    """Compose every memory component for one model/GPU/batch configuration.

    Accepts a ``BreakdownRequest`` or a plain dict with camelCase or
    snake_case keys. Raises ``ValidationError`` for missing or non-positive
    sizes and ``UnsupportedFormatError`` for unknown formats.
    """
    request = config if isinstance(config, BreakdownRequest) else parse_model(BreakdownRequest, config)
    if request.model_size_gb is None and request.num_params is None:
        raise ValidationError("model_size_gb", None, "Either modelSizeGB or numParams must be provided")

    fmt = get_format(request.quantization)
    arch = request.resolve_architecture()
    vram = request.total_vram_gb
    batch = request.batch_size

    if request.model_size_gb is not None:
        weights = weights_from_size(request.model_size_gb, fmt.key)
    else:
        weights = weights_breakdown(request.num_params, fmt.key)
    kv = kv_cache_breakdown(
        batch, request.max_seq_len, arch.layers, arch.hidden_size, arch.num_heads,
        request.kv_cache_precision,
    )
    activation_precision = activation_precision_for(fmt.key)
    activations = resident_activation_memory(batch, request.seq_len, arch.hidden_size, activation_precision)
    overhead = system_overhead(weights.total_gb, batch)
    frag = fragmentation(vram, batch, request.max_seq_len, quantization=fmt.key)
    if request.swap_space_gb is not None:
        swap = request.swap_space_gb
    else:
        swap = optimal_swap_space(
            vram, weights.total_gb, priority=request.priority, workload_type=request.workload_type
        )
    reserved = reserved_memory(vram, priority=request.priority)

    sizes = {
        "modelWeights": weights.total_gb,
        "kvCache": kv.total_gb,
        "activations": activations,
        "systemOverhead": overhead,
        "fragmentation": frag,
        "swap": swap,
        "reserved": reserved,
    }
    details: dict[str, dict[str, Any]] = {
        "modelWeights": {
            "quantization": fmt.key,
            "baseSizeGB": round(weights.base_gb, 2),
            "overheadGB": round(weights.overhead_gb, 3),
        },
        "kvCache": {
            "precision": request.kv_cache_precision,
            "perSequenceGB": round(kv.per_sequence_gb, 4),
            "perTokenMB": round(kv.per_token_mb, 4),
        },
        "activations": {"precision": activation_precision, "seqLen": request.seq_len},
        "systemOverhead": {"batchSize": batch},
        "fragmentation": {"maxSeqLen": request.max_seq_len},
        "swap": {"explicit": request.swap_space_gb is not None},
        "reserved": {"priority": request.priority},
    }
    components = {
        name: MemoryComponent(
            size_gb=sizes[name],
            percentage=round(sizes[name] / vram * 100, 1),
            details=details[name],
        )
        for name in COMPONENT_ORDER
    }

    used = weights.total_gb + kv.total_gb + activations + overhead + frag
    allocated = used + swap + reserved
    available = max(0.0, vram - allocated)
    utilization = used / vram * 100
    summary = MemorySummary(
        used_memory_gb=used,
        total_allocated_gb=allocated,
        available_memory_gb=available,
        utilization_percent=utilization,
        allocation_percent=allocated / vram * 100,
    )

    compatibility = Compatibility(
        supports_model=allocated <= vram,
        safety_margin_gb=available,
        recommended_batch_size=_recommended_batch_size(vram, weights.total_gb, kv.per_sequence_gb),
        max_concurrent_sequences=_max_concurrent_sequences(vram, weights.total_gb, kv.per_sequence_gb),
    )
    efficiency = _efficiency(utilization, weights.total_gb, vram, batch, fmt)
    pressure = classify_pressure(utilization, available)
    benefit = _quantization_benefit(weights, fmt)
    recommendations = _optimization_recommendations(
        utilization=utilization,
        fmt=fmt,
        batch_size=batch,
        kv_percent=components["kvCache"].percentage,
        fragmentation_percent=frag / vram * 100,
        vram=vram,
    )

    logger.debug(
        "Breakdown %.1f GB VRAM: used %.2f GB, allocated %.2f GB, pressure %s",
        vram, used, allocated, pressure.level,
    )
    return MemoryBreakdown(
        total_vram_gb=vram,
        components=components,
        summary=summary,
        compatibility=compatibility,
        efficiency=efficiency,
        pressure=pressure,
        quantization_benefit=benefit,
        recommendations=recommendations,
        architecture=arch,
    )


def _recommended_batch_size(vram: float, model_gb: float, kv_per_seq_gb: float) -> int:
    usable = 0.85 * vram - model_gb
    if usable <= 0:
        return 1
    size = math.floor(usable / (kv_per_seq_gb + PER_SEQUENCE_SLACK_GB))
    cap = MAX_BATCH_SIZE_CAP
    for ceiling, tier_cap in BATCH_SIZE_CAPS:
        if vram <= ceiling:
            cap = tier_cap
            break
    return max(1, min(size, cap))


def _max_concurrent_sequences(vram: float, model_gb: float, kv_per_seq_gb: float) -> int:
    usable = 0.9 * vram - model_gb
    if usable <= 0:
        return 1
    return max(1, math.floor(usable / (kv_per_seq_gb + PER_SEQUENCE_SLACK_GB)))


def _efficiency(
    utilization_percent: float,
    model_gb: float,
    vram: float,
    batch_size: int,
    fmt: QuantizationFormat,
) -> Efficiency:
    utilization_eff = clamp((utilization_percent / 100 - 0.5) / 0.4, 0.0, 1.0)
    model_eff = clamp(2 * model_gb / vram, 0.0, 1.0)
    batch_eff = clamp(math.log(batch_size + 1) / math.log(128), 0.0, 1.0)
    quantization_bonus = 1 - fmt.memory_efficiency
    overall = 0.4 * utilization_eff + 0.3 * model_eff + 0.2 * batch_eff + 0.1 * quantization_bonus
    return Efficiency(
        overall=overall,
        utilization=utilization_eff,
        model=model_eff,
        batch=batch_eff,
        quantization=quantization_bonus,
        rating=efficiency_rating(overall),
    )


def _quantization_benefit(weights: WeightsMemory, fmt: QuantizationFormat) -> QuantizationBenefit:
    percent = weights.savings_percent
    for threshold, description, recommendation in BENEFIT_BANDS:
        if percent >= threshold:
            break
    return QuantizationBenefit(
        format=fmt.key,
        savings_gb=weights.quantization_savings_gb,
        savings_percent=percent,
        quality_loss=fmt.quality_loss,
        description=description,
        recommendation=recommendation,
        is_recommended=percent >= 25 and fmt.quality_loss <= 0.05,
    )


def _optimization_recommendations(
    *,
    utilization: float,
    fmt: QuantizationFormat,
    batch_size: int,
    kv_percent: float,
    fragmentation_percent: float,
    vram: float,
) -> tuple[OptimizationRecommendation, ...]:
    recs: list[OptimizationRecommendation] = []
    if utilization > 90:
        recs.append(OptimizationRecommendation(
            "High", "memory", "Reduce Memory Usage",
            f"Memory utilization is {utilization:.1f}%. Reduce batch size or sequence length "
            "to avoid out-of-memory errors.",
        ))
    if fmt.memory_efficiency > 0.5:
        recs.append(OptimizationRecommendation(
            "Medium", "quantization", "Consider More Aggressive Quantization",
            f"{fmt.key} keeps full-size weights. fp16, AWQ or GPTQ would free most of that memory.",
        ))
    if batch_size < 16 and utilization < 70:
        recs.append(OptimizationRecommendation(
            "Medium", "performance", "Increase Batch Size",
            f"Only {utilization:.1f}% of memory is used. A larger batch would raise throughput.",
        ))
    if kv_percent > 30:
        recs.append(OptimizationRecommendation(
            "Medium", "kv-cache", "Optimize KV Cache Usage",
            f"KV cache takes {kv_percent:.1f}% of VRAM. Consider a shorter max sequence length "
            "or an int8 KV cache.",
        ))
    if fragmentation_percent > 3:
        recs.append(OptimizationRecommendation(
            "Low", "memory", "Reduce Memory Fragmentation",
            "Use more uniform sequence lengths or a larger block size to reduce fragmentation.",
        ))
    if vram >= 80:
        recs.append(OptimizationRecommendation(
            "Low", "capacity", "Leverage High VRAM Capacity",
            "This GPU can host a larger model or serve several models side by side.",
        ))
    recs.sort(key=lambda r: _PRIORITY_RANK[r.priority])
    return tuple(recs)
