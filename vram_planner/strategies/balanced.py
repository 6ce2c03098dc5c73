"""Balanced strategy: batch sizes between the latency and throughput extremes.

Each named target carries its own priority label, memory utilization and
sequence ceiling. Performance is summarised as a balance score in [0, 1],
the mean of a throughput score and a latency score.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from vram_planner.inputs import GPUSpec, NormalizedRequest, WorkloadSpec
from vram_planner.strategies.base import (
    BatchConfiguration,
    BatchSizingInput,
    LatencyPercentiles,
    MemoryAllocationStrategy,
    MetricsInput,
    OptimizationStrategy,
    OptimizationSummary,
    PerformanceEstimate,
    StrategyProfile,
    TargetTuning,
    frozen_targets,
)
from vram_planner.validation import clamp, require_positive

PROFILE = StrategyProfile(
    name="balanced",
    targets=frozen_targets({
        "general": TargetTuning(0.85, 128, 4096, "balanced"),
        "web-api": TargetTuning(0.80, 96, 3072, "latency-focused"),
        "multi-user": TargetTuning(0.90, 160, 4096, "throughput-focused"),
        "cost-optimized": TargetTuning(0.85, 64, 4096, "efficiency"),
        "production": TargetTuning(0.80, 96, 4096, "reliability"),
    }),
    default_target="general",
    seq_floor=32,
    token_floor=1024,
    batch_memory_fraction=0.8,
    kv_allocation_fraction=0.75,
)

# target -> performance level used when estimating metrics
TARGET_LEVELS = {"multi-user": "performance", "web-api": "conservative", "production": "conservative"}
BANDWIDTH_UTILIZATION = {"performance": 0.75, "conservative": 0.55, "balanced": 0.65}

OUTPUT_TOKENS_PER_REQUEST = 100
# Throughput is scored against this many sequences at full bandwidth.
THROUGHPUT_REFERENCE_SEQS = 32
LATENCY_BUDGET_MS = 10_000

BALANCE_CLASSES = ((0.8, "excellent"), (0.6, "good"), (0.4, "fair"))


def balance_class(score: float) -> str:
    for threshold, label in BALANCE_CLASSES:
        if score > threshold:
            return label
    return "poor"


class BalancedStrategy(OptimizationStrategy):
    profile = PROFILE

    def target_for(self, workload: WorkloadSpec) -> str:
        return workload.balance_target

    def batched_tokens(
        self, seqs: int, sizing: BatchSizingInput, tuning: TargetTuning, remaining_gb: float
    ) -> int:
        return max(self.profile.token_floor, min(tuning.token_ceiling, seqs * sizing.avg_seq_len))

    def swap_space(self, total_vram_gb: float, target: str, workload_type: str) -> float:
        return min(4.0, total_vram_gb * 0.1)

    def block_size(self, kv_allocation_gb: float, target: str) -> int:
        return 32 if target == "multi-user" else 16

    def chunked_prefill(self, kv_allocation_gb: float, target: str) -> bool:
        return self.profile.tuning(target).seq_ceiling > 64

    def memory_flags(self, target: str) -> dict[str, bool]:
        return {
            "moderatePreemption": True,
            "adaptiveBatching": True,
            "stableAllocation": target == "production",
        }

    def extra_parameters(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
    ) -> dict[str, Any]:
        max_len = request.workload.max_sequence_length
        chunked = memory.enable_chunked_prefill or max_len > batch.max_num_batched_tokens
        extras: dict[str, Any] = {"enableChunkedPrefill": chunked}
        if chunked and max_len > 2048:
            extras["maxChunkedPrefillTokens"] = 1024
        return extras

    def estimate_metrics(
        self, config: MetricsInput, gpu: GPUSpec | Mapping[str, Any], level: str | None = None
    ) -> PerformanceEstimate:
        gpu = self._gpu(gpu)
        model = require_positive("model_size_gb", config.model_size_gb)
        seqs = int(require_positive("max_num_seqs", config.max_num_seqs))
        seq_len = require_positive("max_seq_len", config.max_seq_len)
        target = self.resolve_target(config.target)
        level = level or TARGET_LEVELS.get(target, "balanced")

        utilization = BANDWIDTH_UTILIZATION.get(level, BANDWIDTH_UTILIZATION["balanced"])
        effective_bandwidth = gpu.memory_bandwidth_gbps * utilization
        decode = effective_bandwidth / model * seqs * 0.8
        tensor_factor = 1.3 if gpu.tensor_cores else 1.0

        ttft = max(75, seq_len * model / (effective_bandwidth * tensor_factor * 80) * 1000)
        itl = max(10, model / effective_bandwidth * (1 + (seqs - 32) * 0.05) * 1000)
        total = ttft + itl * OUTPUT_TOKENS_PER_REQUEST
        rps = min(decode / OUTPUT_TOKENS_PER_REQUEST, 1000 / total * seqs)

        reference_decode = gpu.memory_bandwidth_gbps / model * THROUGHPUT_REFERENCE_SEQS
        throughput_score = clamp(decode / reference_decode, 0.0, 1.0)
        latency_score = clamp(1 - total / LATENCY_BUDGET_MS, 0.0, 1.0)
        balance_score = (throughput_score + latency_score) / 2

        bottlenecks = []
        if ttft > 300:
            bottlenecks.append("prefill_latency")
        if itl > 75:
            bottlenecks.append("decode_latency")
        if rps < seqs * 2:
            bottlenecks.append("memory_bandwidth")
        if balance_score < 0.5:
            bottlenecks.append("configuration_balance")

        return PerformanceEstimate(
            tokens_per_second=round(decode, 1),
            requests_per_second=round(rps, 2),
            latency=LatencyPercentiles(
                p50=math.ceil(total),
                p95=math.ceil(total * 1.3),
                p99=math.ceil(total * 1.6),
            ),
            bottlenecks=tuple(bottlenecks),
            time_to_first_token_ms=math.ceil(ttft),
            inter_token_latency_ms=math.ceil(itl),
            extras={
                "level": level,
                "throughputScore": round(throughput_score, 3),
                "latencyScore": round(latency_score, 3),
                "balanceScore": round(balance_score, 3),
                "balanceClass": balance_class(balance_score),
            },
        )

    def summarize(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
        performance: PerformanceEstimate,
    ) -> OptimizationSummary:
        score = performance.extras["balanceScore"]
        if memory.enable_chunked_prefill:
            chunking = "Chunked prefill smooths latency for long prompts at a small throughput cost"
        else:
            chunking = "Chunked prefill left off to keep scheduling simple"
        return OptimizationSummary(
            primary_optimizations=(
                f"Batch size balanced at {batch.max_num_seqs} sequences for {batch.priority_label} operation",
                f"Memory utilization set to {round(batch.memory_utilization * 100)}% for stable performance",
                f"Balance target: {batch.target}",
                f"Quantization: {request.quantization}",
            ),
            tradeoffs=(
                "Moderate batch sizes trade peak throughput for predictable latency",
                f"Balance score {score:.2f} ({performance.extras['balanceClass']})",
                chunking,
            ),
            expected_improvements={
                "throughputVsBaseline": f"{round(batch.max_num_seqs / 32 * 100)}%",
                "balanceScore": f"{score:.2f}",
                "p95Latency": f"{performance.latency.p95:.0f}ms",
            },
        )


STRATEGY = BalancedStrategy()

optimal_batch_size = STRATEGY.optimal_batch_size
memory_strategy = STRATEGY.memory_strategy
estimate_metrics = STRATEGY.estimate_metrics
optimized_config = STRATEGY.optimized_config
