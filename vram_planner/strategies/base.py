"""Shared skeleton for the throughput, latency and balanced strategies.

Every strategy sizes batches and memory the same way and differs only in its
``StrategyProfile`` tunables and in how it estimates performance:

* usable memory is ``total_vram * gpu_memory_utilization``
* per-sequence cost is the fp16 KV cache at the max sequence length plus the
  resident activations at the average sequence length
* ``max_num_seqs`` is the number of sequences that fit in
  ``(usable - model) * batch_memory_fraction``, clamped to the profile's
  ``[seq_floor, seq_ceiling]`` for the selected target

Because utilization, fraction, floor and ceiling are ordered latency <=
balanced <= throughput for the default targets, the resulting batch sizes
and utilizations are ordered the same way for any model and GPU.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any

from vram_planner.architecture import ModelArchitecture
from vram_planner.command import serialize_command
from vram_planner.errors import ConfigurationError
from vram_planner.inputs import GPUSpec, NormalizedRequest, WorkloadSpec, normalize, parse_model
from vram_planner.memory.activations import resident_activation_memory
from vram_planner.memory.kv_cache import kv_cache_memory
from vram_planner.validation import require_positive

logger = logging.getLogger(__name__)

GIB = 1024**3
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TargetTuning:
    """Tunables for one named target (workload type, latency tier, balance target)."""

    gpu_memory_utilization: float
    seq_ceiling: int
    token_ceiling: int
    label: str


@dataclass(frozen=True)
class StrategyProfile:
    name: str
    targets: Mapping[str, TargetTuning]
    default_target: str
    seq_floor: int
    token_floor: int
    batch_memory_fraction: float  # share of post-weights memory given to sequences
    kv_allocation_fraction: float  # share of post-weights memory reported as KV pool

    def tuning(self, target: str) -> TargetTuning:
        return self.targets[target]


# ---------------------------------------------------------------------------
# Inputs and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchSizingInput:
    available_memory_gb: float
    model_memory_gb: float
    architecture: ModelArchitecture
    max_seq_len: int = 2048
    avg_seq_len: int = 512
    target: str | None = None


@dataclass(frozen=True)
class MetricsInput:
    model_size_gb: float
    max_num_seqs: int
    max_num_batched_tokens: int
    max_seq_len: int = 2048
    quantization: str = "fp16"
    target: str | None = None


@dataclass(frozen=True)
class BatchConfiguration:
    max_num_seqs: int
    max_num_batched_tokens: int
    memory_utilization: float
    target: str
    priority_label: str
    kv_cache_memory_gb: float
    activation_memory_gb: float
    kv_cache_per_seq_gb: float
    memory_based_limit: int
    reasoning: str


@dataclass(frozen=True)
class MemoryAllocationStrategy:
    gpu_memory_utilization: float
    allocated_vram_gb: float
    kv_cache_allocation_gb: float
    reserved_memory_gb: float
    swap_space_gb: float
    recommended_block_size: int
    enable_chunked_prefill: bool
    target: str
    flags: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class LatencyPercentiles:
    p50: float
    p95: float
    p99: float


@dataclass(frozen=True)
class PerformanceEstimate:
    tokens_per_second: float
    requests_per_second: float
    latency: LatencyPercentiles
    bottlenecks: tuple[str, ...]
    time_to_first_token_ms: float
    inter_token_latency_ms: float
    extras: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OptimizationSummary:
    primary_optimizations: tuple[str, ...]
    tradeoffs: tuple[str, ...]
    expected_improvements: dict[str, str]


@dataclass(frozen=True)
class OptimizedConfig:
    strategy: str
    batch: BatchConfiguration
    memory: MemoryAllocationStrategy
    performance: PerformanceEstimate
    parameters: dict[str, Any]
    command: str
    summary: OptimizationSummary
    model_size_gb: float
    architecture: ModelArchitecture

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class OptimizationStrategy(ABC):
    profile: StrategyProfile

    # -- target selection ---------------------------------------------------

    @abstractmethod
    def target_for(self, workload: WorkloadSpec) -> str:
        """Name of the workload field value that selects this strategy's target."""

    def resolve_target(self, target: str | None) -> str:
        if target is None:
            return self.profile.default_target
        if target not in self.profile.targets:
            logger.debug(
                "%s: unknown target %r, using %r", self.profile.name, target, self.profile.default_target
            )
            return self.profile.default_target
        return target

    # -- batch sizing -------------------------------------------------------

    def per_sequence_memory(self, arch: ModelArchitecture, max_seq_len: int, avg_seq_len: int) -> tuple[float, float]:
        kv = kv_cache_memory(1, max_seq_len, arch.layers, arch.hidden_size, arch.num_heads, "fp16")
        activations = resident_activation_memory(1, avg_seq_len, arch.hidden_size, "fp16")
        return kv, activations

    def optimal_batch_size(self, sizing: BatchSizingInput) -> BatchConfiguration:
        available = require_positive("available_memory_gb", sizing.available_memory_gb)
        model = require_positive("model_memory_gb", sizing.model_memory_gb)
        require_positive("max_seq_len", sizing.max_seq_len)
        require_positive("avg_seq_len", sizing.avg_seq_len)
        if available <= model:
            raise ConfigurationError(
                f"Available memory ({available:.1f} GB) must exceed model memory ({model:.1f} GB)",
                required=model,
                available=available,
            )

        target = self.resolve_target(sizing.target)
        tuning = self.profile.tuning(target)
        kv_per_seq, act_per_seq = self.per_sequence_memory(
            sizing.architecture, sizing.max_seq_len, sizing.avg_seq_len
        )
        per_seq = kv_per_seq + act_per_seq
        budget = (available - model) * self.profile.batch_memory_fraction
        capacity = math.floor(budget / per_seq)
        seqs = min(max(capacity, self.profile.seq_floor), tuning.seq_ceiling)
        remaining = max(0.0, budget - seqs * per_seq)
        tokens = self.batched_tokens(seqs, sizing, tuning, remaining)

        logger.debug(
            "%s batch for %s: %d seqs (capacity %d, %.3f GB each), %d batched tokens",
            self.profile.name, target, seqs, capacity, per_seq, tokens,
        )
        return BatchConfiguration(
            max_num_seqs=seqs,
            max_num_batched_tokens=tokens,
            memory_utilization=tuning.gpu_memory_utilization,
            target=target,
            priority_label=tuning.label,
            kv_cache_memory_gb=kv_per_seq * seqs,
            activation_memory_gb=act_per_seq * seqs,
            kv_cache_per_seq_gb=kv_per_seq,
            memory_based_limit=capacity,
            reasoning=(
                f"{capacity} sequences fit in {budget:.1f} GB at {per_seq * 1024:.0f} MB each; "
                f"bounded to {self.profile.seq_floor}-{tuning.seq_ceiling} for {target} "
                f"({tuning.label})"
            ),
        )

    @abstractmethod
    def batched_tokens(
        self, seqs: int, sizing: BatchSizingInput, tuning: TargetTuning, remaining_gb: float
    ) -> int:
        ...

    # -- memory allocation --------------------------------------------------

    def memory_strategy(
        self,
        total_vram_gb: float,
        model_size_gb: float,
        *,
        target: str | None = None,
        workload_type: str = "serving",
    ) -> MemoryAllocationStrategy:
        total = require_positive("total_vram_gb", total_vram_gb)
        model = require_positive("model_size_gb", model_size_gb)
        if total <= model:
            raise ConfigurationError(
                f"Model ({model:.1f} GB) does not fit in {total:.1f} GB of VRAM",
                required=model,
                available=total,
            )

        target = self.resolve_target(target)
        utilization = self.profile.tuning(target).gpu_memory_utilization
        allocated = total * utilization
        if allocated <= model:
            raise ConfigurationError(
                f"At {utilization:.0%} memory utilization only {allocated:.1f} GB is usable, "
                f"not enough for a {model:.1f} GB model",
                required=model,
                available=allocated,
            )
        kv_allocation = (allocated - model) * self.profile.kv_allocation_fraction

        return MemoryAllocationStrategy(
            gpu_memory_utilization=utilization,
            allocated_vram_gb=allocated,
            kv_cache_allocation_gb=kv_allocation,
            reserved_memory_gb=total - allocated,
            swap_space_gb=self.swap_space(total, target, workload_type),
            recommended_block_size=self.block_size(kv_allocation, target),
            enable_chunked_prefill=self.chunked_prefill(kv_allocation, target),
            target=target,
            flags=self.memory_flags(target),
        )

    @abstractmethod
    def swap_space(self, total_vram_gb: float, target: str, workload_type: str) -> float:
        ...

    @abstractmethod
    def block_size(self, kv_allocation_gb: float, target: str) -> int:
        ...

    @abstractmethod
    def chunked_prefill(self, kv_allocation_gb: float, target: str) -> bool:
        ...

    def memory_flags(self, target: str) -> dict[str, bool]:
        return {}

    # -- performance --------------------------------------------------------

    @abstractmethod
    def estimate_metrics(
        self, config: MetricsInput, gpu: GPUSpec | Mapping[str, Any], level: str | None = None
    ) -> PerformanceEstimate:
        ...

    @staticmethod
    def _gpu(gpu: GPUSpec | Mapping[str, Any]) -> GPUSpec:
        return gpu if isinstance(gpu, GPUSpec) else parse_model(GPUSpec, gpu)

    # -- deployment ---------------------------------------------------------

    def deployment_parameters(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": request.model.model_path,
            "gpuMemoryUtilization": batch.memory_utilization,
            "maxNumSeqs": batch.max_num_seqs,
            "maxNumBatchedTokens": batch.max_num_batched_tokens,
            "maxModelLen": request.workload.max_sequence_length,
            "blockSize": memory.recommended_block_size,
        }
        if memory.swap_space_gb > 0:
            params["swapSpace"] = f"{round(memory.swap_space_gb, 1):g}GB"
        if request.quantization in ("bf16", "fp32"):
            params["dtype"] = "bfloat16" if request.quantization == "bf16" else "float32"
        elif request.quantization != "fp16":
            params["quantization"] = request.quantization
        if request.gpu.gpu_count > 1:
            params["tensorParallelSize"] = request.gpu.gpu_count
        params["enableChunkedPrefill"] = self.chunked_prefill_argument(request, memory)
        params["disableLogStats"] = request.workload.workload_type == "batch"
        params.update(self.extra_parameters(request, batch, memory))
        params["host"] = DEFAULT_HOST
        params["port"] = DEFAULT_PORT
        return params

    def chunked_prefill_argument(self, request: NormalizedRequest, memory: MemoryAllocationStrategy) -> bool:
        return memory.enable_chunked_prefill

    def extra_parameters(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
    ) -> dict[str, Any]:
        return {}

    @abstractmethod
    def summarize(
        self,
        request: NormalizedRequest,
        batch: BatchConfiguration,
        memory: MemoryAllocationStrategy,
        performance: PerformanceEstimate,
    ) -> OptimizationSummary:
        ...

    def optimized_config(self, params: Mapping[str, Any]) -> OptimizedConfig:
        """Normalize *params* and run sizing, allocation and estimation end to end."""
        request = normalize(params)
        target = self.resolve_target(self.target_for(request.workload))
        total_vram = request.gpu.total_vram_gb * request.gpu.gpu_count

        memory = self.memory_strategy(
            total_vram,
            request.model_size_gb,
            target=target,
            workload_type=request.workload.workload_type,
        )
        batch = self.optimal_batch_size(BatchSizingInput(
            available_memory_gb=memory.allocated_vram_gb,
            model_memory_gb=request.model_size_gb,
            architecture=request.architecture,
            max_seq_len=request.workload.max_sequence_length,
            avg_seq_len=request.workload.average_sequence_length,
            target=target,
        ))
        performance = self.estimate_metrics(
            MetricsInput(
                model_size_gb=request.model_size_gb,
                max_num_seqs=batch.max_num_seqs,
                max_num_batched_tokens=batch.max_num_batched_tokens,
                max_seq_len=request.workload.max_sequence_length,
                quantization=request.quantization,
                target=target,
            ),
            request.gpu,
        )
        parameters = self.deployment_parameters(request, batch, memory)
        command = serialize_command(parameters)
        summary = self.summarize(request, batch, memory, performance)

        logger.info(
            "%s config: %d seqs, %.0f%% utilization, %.0f tok/s estimated",
            self.profile.name, batch.max_num_seqs, batch.memory_utilization * 100,
            performance.tokens_per_second,
        )
        return OptimizedConfig(
            strategy=self.profile.name,
            batch=batch,
            memory=memory,
            performance=performance,
            parameters=parameters,
            command=command,
            summary=summary,
            model_size_gb=request.model_size_gb,
            architecture=request.architecture,
        )


def frozen_targets(targets: dict[str, TargetTuning]) -> MappingProxyType[str, TargetTuning]:
    return MappingProxyType(targets)
