"""Latency-first strategy: small batches sized by a named latency tier.

The performance model centres on two numbers:

* time to first token, compute bound and proportional to prompt length
* inter-token latency, memory bound, growing 10% for every concurrent
  sequence beyond the first
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
from vram_planner.validation import require_positive

PROFILE = StrategyProfile(
    name="latency",
    targets=frozen_targets({
        "ultra-low": TargetTuning(0.75, 8, 512, "ultra-high"),
        "low": TargetTuning(0.80, 32, 2048, "high"),
        "balanced": TargetTuning(0.85, 64, 4096, "medium"),
    }),
    default_target="low",
    seq_floor=1,
    token_floor=256,
    batch_memory_fraction=0.7,
    kv_allocation_fraction=0.7,
)

TIER_DESCRIPTIONS = {
    "ultra-low": "Ultra-low latency tier: minimal batching for fastest response",
    "low": "Low latency tier: small batches with fast first token",
    "balanced": "Balanced latency tier: moderate batching with bounded latency",
}

OUTPUT_TOKENS_PER_REQUEST = 100
MIN_TTFT_MS = 50
PER_SEQUENCE_PENALTY = 0.1


class LatencyStrategy(OptimizationStrategy):
    profile = PROFILE

    def target_for(self, workload: WorkloadSpec) -> str:
        return workload.latency_target

    def batched_tokens(
        self, seqs: int, sizing: BatchSizingInput, tuning: TargetTuning, remaining_gb: float
    ) -> int:
        return max(self.profile.token_floor, tuning.token_ceiling)

    def swap_space(self, total_vram_gb: float, target: str, workload_type: str) -> float:
        return min(2.0, total_vram_gb * 0.05)

    def block_size(self, kv_allocation_gb: float, target: str) -> int:
        return 8 if target == "ultra-low" else 16

    def chunked_prefill(self, kv_allocation_gb: float, target: str) -> bool:
        return False

    def memory_flags(self, target: str) -> dict[str, bool]:
        return {
            "aggressiveCaching": target == "ultra-low",
            "preemptiveEviction": False,
            "prioritizeFirstToken": True,
        }

    def extra_parameters(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
    ) -> dict[str, Any]:
        # Prompts longer than the token budget can only be admitted in chunks.
        needs_chunking = request.workload.max_sequence_length > batch.max_num_batched_tokens
        return {
            "enableChunkedPrefill": needs_chunking,
            "disableLogStats": True,
            "enforceEager": False,
            "disableChunkedPrefill": not needs_chunking and request.workload.max_sequence_length <= 4096,
        }

    def estimate_metrics(
        self, config: MetricsInput, gpu: GPUSpec | Mapping[str, Any], level: str | None = None
    ) -> PerformanceEstimate:
        """Latency percentiles for one request of ``OUTPUT_TOKENS_PER_REQUEST`` tokens.

        *level* overrides the latency tier carried by *config*.
        """
        gpu = self._gpu(gpu)
        model = require_positive("model_size_gb", config.model_size_gb)
        seqs = int(require_positive("max_num_seqs", config.max_num_seqs))
        seq_len = require_positive("max_seq_len", config.max_seq_len)
        tier = self.resolve_target(level or config.target)

        bandwidth_utilization = 0.5 if tier == "ultra-low" else 0.6
        effective_bandwidth = gpu.memory_bandwidth_gbps * bandwidth_utilization
        tensor_factor = 1.5 if gpu.tensor_cores else 1.0

        ttft = max(MIN_TTFT_MS, seq_len * model / (effective_bandwidth * tensor_factor * 100) * 1000)
        itl = model / effective_bandwidth * 1000 * (1 + (seqs - 1) * PER_SEQUENCE_PENALTY)
        total = ttft + itl * OUTPUT_TOKENS_PER_REQUEST
        variance = 1.2 if tier == "ultra-low" else 1.5

        bottlenecks = []
        if ttft > 200:
            bottlenecks.append("prefill_compute")
        if itl > 50:
            bottlenecks.append("memory_bandwidth")
        if seqs > 32:
            bottlenecks.append("batch_size")

        return PerformanceEstimate(
            tokens_per_second=round(seqs * 1000 / itl, 1),
            requests_per_second=round(seqs * 1000 / total, 2),
            latency=LatencyPercentiles(
                p50=math.ceil(total),
                p95=math.ceil(total * variance),
                p99=math.ceil(total * variance * 1.3),
            ),
            bottlenecks=tuple(bottlenecks),
            time_to_first_token_ms=math.ceil(ttft),
            inter_token_latency_ms=math.ceil(itl),
            extras={
                "latencyTier": tier,
                "bandwidthUtilization": bandwidth_utilization,
                "recommendations": {
                    "reduceSequenceLength": ttft > 500,
                    "enableSpeculation": itl > 100,
                    "reduceBatchSize": seqs > 16 and tier == "ultra-low",
                },
            },
        )

    def summarize(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
        performance: PerformanceEstimate,
    ) -> OptimizationSummary:
        ttft = performance.time_to_first_token_ms
        itl = performance.inter_token_latency_ms
        return OptimizationSummary(
            primary_optimizations=(
                f"Batch size reduced to {batch.max_num_seqs} for lower latency",
                f"Memory utilization set to {round(batch.memory_utilization * 100)}% to avoid pressure",
                f"Block size {memory.recommended_block_size} for cache locality",
                f"Quantization: {request.quantization} for speed-quality balance",
                TIER_DESCRIPTIONS[batch.target],
            ),
            tradeoffs=(
                "Smaller batches lower latency but reduce total throughput",
                "Lower memory utilization trades KV cache capacity for stability",
                f"Estimated TTFT: {ttft:.0f}ms, ITL: {itl:.0f}ms",
            ),
            expected_improvements={
                "latencyReduction": f"{round((1 - batch.max_num_seqs / 128) * 100)}%",
                "timeToFirstToken": f"{ttft:.0f}ms",
                "p99Latency": f"{performance.latency.p99:.0f}ms",
            },
        )


STRATEGY = LatencyStrategy()

optimal_batch_size = STRATEGY.optimal_batch_size
memory_strategy = STRATEGY.memory_strategy
estimate_metrics = STRATEGY.estimate_metrics
optimized_config = STRATEGY.optimized_config
