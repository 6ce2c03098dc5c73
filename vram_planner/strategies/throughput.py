"""Throughput-first strategy: large batches, high memory utilization.

Decode is modelled as memory-bandwidth bound (every step streams the weights
once and emits one token per running sequence); prefill as compute bound,
faster on GPUs with tensor cores.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from vram_planner.inputs import GPUSpec, NormalizedRequest, WorkloadSpec
from vram_planner.strategies.base import (
    GIB,
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

TOKEN_CEILING = 8192

PROFILE = StrategyProfile(
    name="throughput",
    targets=frozen_targets({
        "mixed": TargetTuning(0.85, 256, TOKEN_CEILING, "mixed"),
        "serving": TargetTuning(0.90, 256, TOKEN_CEILING, "serving"),
        "batch": TargetTuning(0.95, 256, TOKEN_CEILING, "batch"),
    }),
    default_target="serving",
    seq_floor=32,
    token_floor=512,
    batch_memory_fraction=1.0,
    kv_allocation_fraction=1.0,
)

# level -> share of peak bandwidth reached during decode
BANDWIDTH_EFFICIENCY = {"conservative": 0.6, "default": 0.7, "aggressive": 0.8}

QUANTIZATION_SPEEDUP = {"fp16": 1.0, "int8": 1.2, "int4": 1.5}

OUTPUT_TOKENS_PER_REQUEST = 100


class ThroughputStrategy(OptimizationStrategy):
    profile = PROFILE

    def target_for(self, workload: WorkloadSpec) -> str:
        return workload.workload_type

    def batched_tokens(
        self, seqs: int, sizing: BatchSizingInput, tuning: TargetTuning, remaining_gb: float
    ) -> int:
        # Remaining memory caps the prefill working set at 4 bytes per hidden unit.
        memory_limit = remaining_gb * GIB / (4 * sizing.architecture.hidden_size)
        tokens = min(seqs * sizing.avg_seq_len, tuning.token_ceiling, memory_limit)
        return max(self.profile.token_floor, int(tokens))

    def swap_space(self, total_vram_gb: float, target: str, workload_type: str) -> float:
        if target == "batch":
            return min(16.0, total_vram_gb * 0.5)
        if target == "mixed":
            return min(4.0, total_vram_gb * 0.15)
        return min(8.0, total_vram_gb * 0.25)

    def block_size(self, kv_allocation_gb: float, target: str) -> int:
        return 32 if kv_allocation_gb > 8 else 16

    def chunked_prefill(self, kv_allocation_gb: float, target: str) -> bool:
        return kv_allocation_gb > 4

    def memory_flags(self, target: str) -> dict[str, bool]:
        return {"aggressivePreemption": target == "batch", "maximizeKVCache": True}

    def extra_parameters(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
    ) -> dict[str, Any]:
        # vLLM rejects a token budget below max-model-len unless prefill is chunked.
        max_len = request.workload.max_sequence_length
        return {"enableChunkedPrefill": max_len > TOKEN_CEILING or max_len > batch.max_num_batched_tokens}

    def estimate_metrics(
        self, config: MetricsInput, gpu: GPUSpec | Mapping[str, Any], level: str | None = None
    ) -> PerformanceEstimate:
        gpu = self._gpu(gpu)
        model = require_positive("model_size_gb", config.model_size_gb)
        seqs = int(require_positive("max_num_seqs", config.max_num_seqs))
        tokens = int(require_positive("max_num_batched_tokens", config.max_num_batched_tokens))

        efficiency = BANDWIDTH_EFFICIENCY.get(level or "default", BANDWIDTH_EFFICIENCY["default"])
        effective_bandwidth = gpu.memory_bandwidth_gbps * efficiency
        per_sequence_rate = effective_bandwidth / model
        decode = per_sequence_rate * seqs
        if gpu.tensor_cores:
            prefill = min(tokens * 100, effective_bandwidth * 50)
        else:
            prefill = min(tokens * 50, effective_bandwidth * 25)

        ttft = math.ceil(1000 / prefill * config.max_seq_len)
        itl = math.ceil(1000 / per_sequence_rate)

        bottlenecks = ["memory_bandwidth"]
        if not gpu.tensor_cores or tokens > TOKEN_CEILING:
            bottlenecks.append("compute_capacity")
        if seqs < 64:
            bottlenecks.append("batch_size")

        return PerformanceEstimate(
            tokens_per_second=round(decode, 1),
            requests_per_second=round(decode / OUTPUT_TOKENS_PER_REQUEST, 2),
            latency=LatencyPercentiles(
                p50=math.ceil(ttft + itl * 50),
                p95=math.ceil(ttft + itl * 95),
                p99=math.ceil(ttft + itl * 99),
            ),
            bottlenecks=tuple(bottlenecks),
            time_to_first_token_ms=ttft,
            inter_token_latency_ms=itl,
            extras={
                "prefillTokensPerSecond": round(prefill, 1),
                "bandwidthEfficiency": efficiency,
                "quantizationSpeedup": QUANTIZATION_SPEEDUP.get(config.quantization, 1.0),
            },
        )

    def summarize(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
        performance: PerformanceEstimate,
    ) -> OptimizationSummary:
        workload_line = {
            "batch": "Optimized for high-throughput batch processing",
            "serving": "Balanced optimization for serving workload",
        }.get(batch.target, "Mixed workload optimization")
        if request.quantization == "fp16":
            quantization_tradeoff = "Using fp16 for best quality"
        else:
            quantization_tradeoff = "Quantization improves speed but may reduce quality"
        return OptimizationSummary(
            primary_optimizations=(
                f"Batch size optimized to {batch.max_num_seqs} concurrent sequences",
                f"Memory utilization set to {round(batch.memory_utilization * 100)}%",
                f"Quantization: {request.quantization}",
                workload_line,
            ),
            tradeoffs=(
                "Higher batch sizes increase throughput but may increase latency",
                quantization_tradeoff,
                f"Memory utilization of {round(batch.memory_utilization * 100)}% leaves "
                f"{memory.reserved_memory_gb:.1f} GB of headroom",
            ),
            expected_improvements={
                "throughputIncrease": f"{round(batch.max_num_seqs / 32 * 100)}%",
                "tokensPerSecond": f"{performance.tokens_per_second:.0f}",
                "requestsPerSecond": f"{performance.requests_per_second:.1f}",
            },
        )


STRATEGY = ThroughputStrategy()

optimal_batch_size = STRATEGY.optimal_batch_size
memory_strategy = STRATEGY.memory_strategy
estimate_metrics = STRATEGY.estimate_metrics
optimized_config = STRATEGY.optimized_config
