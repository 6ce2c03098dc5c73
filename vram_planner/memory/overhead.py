"""Runtime overhead, fragmentation, swap and reserved memory."""

from __future__ import annotations

from types import MappingProxyType

from vram_planner import config
from vram_planner.quantization import get_format
from vram_planner.validation import clamp, require_positive


def system_overhead(model_memory_gb: float, batch_size: float = 1) -> float:
    """CUDA context, allocator and scheduler bookkeeping, in GB."""
    model = require_positive("model_memory_gb", model_memory_gb)
    batch = require_positive("batch_size", batch_size)
    return 0.5 + 0.05 * model + 0.1 * (batch - 1)


def fragmentation_rate(total_vram_gb: float) -> float:
    if total_vram_gb <= 16:
        return config.FRAGMENTATION_RATE_SMALL
    if total_vram_gb >= 40:
        return config.FRAGMENTATION_RATE_LARGE
    return config.FRAGMENTATION_RATE_DEFAULT


def fragmentation(
    total_vram_gb: float,
    batch_size: float,
    max_seq_len: float,
    *,
    quantization: str = "fp16",
) -> float:
    """Memory lost to allocator fragmentation, never below 0.1 GB."""
    vram = require_positive("total_vram_gb", total_vram_gb)
    batch = require_positive("batch_size", batch_size)
    seq = require_positive("max_seq_len", max_seq_len)
    batch_factor = clamp(batch / 32, 0.5, 2.0)
    seq_factor = clamp(seq / 2048, 0.8, 1.5)
    alignment_factor = 1 + get_format(quantization).overhead
    return max(0.1, vram * fragmentation_rate(vram) * batch_factor * seq_factor * alignment_factor)


RESERVATION_RATES: MappingProxyType[str, float] = MappingProxyType({
    "throughput": 0.03,
    "balanced": 0.05,
    "latency": 0.08,
    "conservative": 0.10,
})


def reserved_memory(total_vram_gb: float, *, priority: str = "balanced") -> float:
    """Headroom kept back from vLLM, scaled by how much latency matters."""
    vram = require_positive("total_vram_gb", total_vram_gb)
    rate = RESERVATION_RATES.get(priority, RESERVATION_RATES["balanced"])
    ceiling = min(8.0, vram * 0.15)
    return min(ceiling, max(0.5, vram * rate))


def swap_ratio(priority: str, workload_type: str) -> float:
    if priority == "throughput":
        return 0.20 if workload_type == "batch" else 0.15
    if priority == "latency":
        return 0.05
    return 0.10


def optimal_swap_space(
    total_vram_gb: float,
    model_size_gb: float,
    *,
    priority: str = "balanced",
    workload_type: str = "serving",
) -> float:
    """CPU swap space in GB for preempted sequences."""
    vram = require_positive("total_vram_gb", total_vram_gb)
    model = require_positive("model_size_gb", model_size_gb)
    wanted = vram * swap_ratio(priority, workload_type)
    floor = max(1.0, model * 0.1)
    ceiling = min(16.0, vram * 0.25)
    return min(ceiling, max(floor, wanted))
