"""Approximate transformer shapes from a parameter count.

Nothing is interpolated: a parameter count maps to the nearest reference
size in ``ARCHITECTURE_PRESETS``. That is good enough for memory sizing,
where layer count and hidden size only enter the KV-cache and activation
formulas linearly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType

from vram_planner.validation import require_positive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelArchitecture:
    layers: int
    hidden_size: int
    num_heads: int
    vocab_size: int | None = None
    intermediate_size: int | None = None
    name: str | None = None

    @property
    def head_dim(self) -> float:
        return self.hidden_size / self.num_heads


# Keyed by parameter count in billions, ascending.
ARCHITECTURE_PRESETS: MappingProxyType[float, ModelArchitecture] = MappingProxyType({
    0.5: ModelArchitecture(12, 768, 12, vocab_size=50257, intermediate_size=3072, name="small"),
    1: ModelArchitecture(16, 1024, 16, vocab_size=50257, intermediate_size=4096, name="medium-1b"),
    3: ModelArchitecture(24, 1536, 24, vocab_size=50257, intermediate_size=6144, name="medium-3b"),
    7: ModelArchitecture(32, 4096, 32, vocab_size=32000, intermediate_size=11008, name="large-7b"),
    13: ModelArchitecture(40, 5120, 40, vocab_size=32000, intermediate_size=13824, name="large-13b"),
    30: ModelArchitecture(60, 6656, 52, vocab_size=32000, intermediate_size=17920, name="xl-30b"),
    65: ModelArchitecture(80, 8192, 64, vocab_size=32000, intermediate_size=22016, name="xl-65b"),
    175: ModelArchitecture(96, 12288, 96, vocab_size=50257, intermediate_size=49152, name="xxl-175b"),
})


def estimate_architecture(num_params_b: float) -> ModelArchitecture:
    """Nearest preset to *num_params_b*; ties go to the smaller preset."""
    target = require_positive("num_params_b", num_params_b)
    best_size = None
    best_distance = float("inf")
    for size in ARCHITECTURE_PRESETS:
        distance = abs(size - target)
        if distance < best_distance:
            best_size, best_distance = size, distance
    arch = ARCHITECTURE_PRESETS[best_size]
    logger.debug("Estimated %.2fB params as %s preset", target, arch.name)
    return arch


def similar_architectures(num_params_b: float, limit: int = 3) -> list[tuple[float, ModelArchitecture]]:
    """The *limit* presets closest in size, nearest first."""
    target = require_positive("num_params_b", num_params_b)
    ranked = sorted(ARCHITECTURE_PRESETS.items(), key=lambda item: abs(item[0] - target))
    return ranked[:limit]


def architecture_considerations(num_params_b: float, arch: ModelArchitecture) -> list[str]:
    size = require_positive("num_params_b", num_params_b)
    if size < 1:
        notes = ["Small model: Good for testing and development, limited capability"]
    elif size < 7:
        notes = ["Medium model: Good balance of performance and resource usage"]
    elif size < 30:
        notes = ["Large model: High capability, requires significant resources"]
    else:
        notes = ["Very large model: Cutting-edge capability, requires substantial infrastructure"]

    if arch.hidden_size >= 8192:
        notes.append("Large hidden size: Consider tensor parallelism for memory distribution")
    if arch.layers >= 80:
        notes.append("Deep model: May benefit from pipeline parallelism")
    if arch.num_heads >= 64:
        notes.append("Many attention heads: Excellent for complex reasoning tasks")
    return notes


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArchitectureValidation:
    is_valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    recommendations: tuple[str, ...]


def validate_architecture(arch: ModelArchitecture) -> ArchitectureValidation:
    """Sanity-check a user supplied shape. Reports problems instead of raising."""
    errors: list[str] = []
    warnings: list[str] = []
    recommendations: list[str] = []

    if arch.layers < 1:
        errors.append("Number of layers must be at least 1")
    elif arch.layers > 200:
        warnings.append("Very deep model (>200 layers) may have training/inference challenges")

    if arch.hidden_size < 64:
        errors.append("Hidden size must be at least 64")
    elif arch.hidden_size % 64 != 0:
        warnings.append("Hidden size should be divisible by 64 for optimal performance")

    if arch.num_heads < 1:
        errors.append("Number of attention heads must be at least 1")
    elif arch.hidden_size % arch.num_heads != 0:
        errors.append("Hidden size must be divisible by number of attention heads")

    if not errors:
        head_dim = arch.hidden_size // arch.num_heads
        if head_dim < 32:
            warnings.append("Very small attention head size may reduce model quality")
        elif head_dim > 256:
            warnings.append("Very large attention head size may be inefficient")
        elif head_dim == 64:
            recommendations.append("Standard head size (64) - good balance of quality and efficiency")
        if arch.hidden_size >= 4096:
            recommendations.append("Large model - consider tensor parallelism for multi-GPU deployment")
        if arch.layers >= 32:
            recommendations.append("Deep model - ensure adequate memory for layer-wise operations")

    return ArchitectureValidation(
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        recommendations=tuple(recommendations),
    )
