"""Map named workload profiles onto vLLM settings.

Three kinds of profile are understood:

* ``workload``: generic traffic shapes (chat, completion, code-generation,
  batch, serving)
* ``latency``: latency-sensitive shapes (interactive, realtime, streaming,
  api, serving)
* ``balance``: deployment targets (general, web-api, multi-user,
  cost-optimized, production, serving)

Unknown workload names fall back to ``serving``. Special flags are keyed by
their vLLM kebab-case name.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from vram_planner.inputs import WorkloadProfile, parse_model
from vram_planner.validation import require_choice

logger = logging.getLogger(__name__)

FALLBACK_WORKLOAD = "serving"


@dataclass(frozen=True)
class BatchingStrategy:
    max_model_len: int
    max_num_seqs: int
    max_num_batched_tokens: int | None
    enable_chunked_prefill: bool
    block_size: int | None = None
    swap_space_gb: float | None = None


@dataclass(frozen=True)
class WorkloadRecommendation:
    kind: str
    workload_type: str
    quantization: str
    memory_strategy: str
    gpu_memory_utilization: float
    batching: BatchingStrategy
    special_flags: dict[str, Any] = field(default_factory=dict)
    considerations: tuple[str, ...] = ()

    def parameters(self) -> dict[str, Any]:
        """vLLM argument map (without ``model``) for ``serialize_command``."""
        params: dict[str, Any] = {
            "gpuMemoryUtilization": self.gpu_memory_utilization,
            "maxNumSeqs": self.batching.max_num_seqs,
            "maxModelLen": self.batching.max_model_len,
        }
        if self.batching.max_num_batched_tokens is not None:
            params["maxNumBatchedTokens"] = self.batching.max_num_batched_tokens
        if self.batching.block_size is not None:
            params["blockSize"] = self.batching.block_size
        if self.batching.swap_space_gb is not None:
            params["swapSpace"] = f"{self.batching.swap_space_gb:g}GB"
        if self.quantization != "fp16":
            params["quantization"] = self.quantization
        params["enableChunkedPrefill"] = self.batching.enable_chunked_prefill
        params.update(self.special_flags)
        return params


# ---------------------------------------------------------------------------
# Generic workloads
# ---------------------------------------------------------------------------

WORKLOAD_CONSIDERATIONS = {
    "chat": (
        "Prefix caching reuses shared system prompts across conversations",
        "A 4K+ context leaves room for multi-turn history",
        "Chunked prefill keeps time to first token stable under load",
    ),
    "completion": (
        "Short prompts allow large batches",
        "AWQ raises throughput when quality requirements allow",
    ),
    "code-generation": (
        "Code prompts need long contexts for multi-file input",
        "Smaller batches keep long generations responsive",
        "Prefix caching reuses shared file headers and instructions",
    ),
    "batch": (
        "Offline jobs can run at maximum memory utilization",
        "AWQ quantization maximizes sequences per GPU",
        "Stats logging is disabled to reduce scheduler overhead",
    ),
    "serving": (
        "General serving defaults balance latency and throughput",
        "Monitor memory utilization under peak load",
    ),
}

STRATEGY_UTILIZATION = {"aggressive": 0.95, "conservative": 0.85, "balanced": 0.90}
INTERACTIVE_WORKLOADS = ("chat", "code-generation")


def _for_workload(profile: WorkloadProfile) -> WorkloadRecommendation:
    input_len = profile.average_input_length or 512
    output_len = profile.average_output_length or 100
    peak = profile.peak_concurrency or 100
    latency = profile.latency_requirement or "balanced"
    throughput = profile.throughput_priority or "high"
    workload = _known(profile.workload_type, WORKLOAD_CONSIDERATIONS)

    total = input_len + output_len
    max_len = min(2 * total, 8192)
    seqs = min(peak, 256)
    tokens: int | None = None
    quantization = "fp16"
    strategy = "balanced"
    chunked = False
    flags: dict[str, Any] = {}

    if latency == "low":
        seqs = min(seqs, 64)
        strategy = "conservative"
        flags["enforce-eager"] = False
    elif throughput == "high" and workload not in INTERACTIVE_WORKLOADS:
        seqs = max(seqs, 256)
        strategy = "aggressive"

    if workload == "chat":
        max_len = max(max_len, 4096)
        seqs = min(seqs, 128)
        chunked = True
        flags["enable-prefix-caching"] = True
    elif workload == "completion":
        quantization = "awq" if throughput == "high" else "fp16"
        tokens = seqs * total
    elif workload == "code-generation":
        max_len = max(max_len, 8192)
        seqs = min(seqs, 64)
        chunked = True
        flags["enable-prefix-caching"] = True
    elif workload == "batch":
        quantization = "awq"
        strategy = "aggressive"
        seqs = max(seqs, 512)
        tokens = 16384
        flags["disable-log-stats"] = True

    return WorkloadRecommendation(
        kind="workload",
        workload_type=workload,
        quantization=quantization,
        memory_strategy=strategy,
        gpu_memory_utilization=STRATEGY_UTILIZATION[strategy],
        batching=BatchingStrategy(
            max_model_len=max_len,
            max_num_seqs=seqs,
            max_num_batched_tokens=tokens,
            enable_chunked_prefill=chunked,
        ),
        special_flags=flags,
        considerations=WORKLOAD_CONSIDERATIONS[workload],
    )


# ---------------------------------------------------------------------------
# Latency workloads
# ---------------------------------------------------------------------------

LATENCY_CONSIDERATIONS = {
    "interactive": (
        "Users notice delays above 200ms for the first token",
        "Prefix caching shortens repeated prompts",
    ),
    "realtime": (
        "Chunked prefill is disabled so every prompt is processed in one pass",
        "Keep prompts short to hold time to first token down",
    ),
    "streaming": (
        "Tokens are streamed one at a time for the smoothest output",
        "Inter-token latency matters more than time to first token",
    ),
    "api": (
        "API clients expect consistent response times",
        "Responses use the assistant role for chat completions",
    ),
    "serving": (
        "Small batches keep latency low for general serving",
    ),
}

LATENCY_BATCH_CAPS = {"ultra-low": 8, "low": 16, "balanced": 32}
LATENCY_STRATEGY_TAGS = {"ultra-low": "ultra-low-latency", "low": "low-latency", "balanced": "balanced-latency"}


def _for_latency(profile: WorkloadProfile) -> WorkloadRecommendation:
    input_len = profile.average_input_length or 256
    output_len = profile.average_output_length or 50
    peak = profile.peak_concurrency or 16
    requirement = profile.latency_requirement if profile.latency_requirement in LATENCY_BATCH_CAPS else "low"
    target_ms = profile.response_time_target_ms or 200
    workload = _known(profile.workload_type, LATENCY_CONSIDERATIONS)

    total = input_len + output_len
    max_len = min(int(total * 1.5), 2048)
    seqs = min(LATENCY_BATCH_CAPS[requirement], peak)
    tokens = min(seqs * total, 2048)
    chunked = tokens > 1024
    flags: dict[str, Any] = {}

    if workload == "interactive":
        flags["enable-prefix-caching"] = True
    elif workload == "realtime":
        chunked = False
        flags["disable-chunked-prefill"] = True
    elif workload == "streaming":
        flags["stream-interval"] = 1
    elif workload == "api":
        flags["response-role"] = "assistant"

    considerations = LATENCY_CONSIDERATIONS[workload]
    if target_ms < 100:
        considerations = considerations + (
            "Targets below 100ms usually need speculative decoding or a smaller model",
        )

    return WorkloadRecommendation(
        kind="latency",
        workload_type=workload,
        quantization="fp16",
        memory_strategy=LATENCY_STRATEGY_TAGS[requirement],
        gpu_memory_utilization=0.75 if requirement == "ultra-low" else 0.80,
        batching=BatchingStrategy(
            max_model_len=max_len,
            max_num_seqs=seqs,
            max_num_batched_tokens=tokens,
            enable_chunked_prefill=chunked,
            block_size=8 if requirement == "ultra-low" else 16,
        ),
        special_flags=flags,
        considerations=considerations,
    )


# ---------------------------------------------------------------------------
# Balance targets
# ---------------------------------------------------------------------------

# target -> (max_num_seqs, gpu_memory_utilization, memory strategy tag)
BALANCE_TARGETS = {
    "general": (128, 0.85, "balanced"),
    "web-api": (96, 0.80, "latency-focused"),
    "multi-user": (160, 0.90, "throughput-focused"),
    "cost-optimized": (64, 0.85, "efficiency"),
    "production": (96, 0.80, "reliability"),
    "serving": (128, 0.85, "balanced"),
}

BALANCE_CONSIDERATIONS = {
    "general": (
        "General-purpose settings suit mixed traffic",
        "Revisit batch size once real traffic is measured",
    ),
    "web-api": (
        "Set a real API key before exposing the endpoint",
        "Request logging stays on for auditing",
    ),
    "multi-user": (
        "Prefix caching helps when many users share prompts",
        "Higher utilization supports more concurrent sessions",
    ),
    "cost-optimized": (
        "Fewer concurrent sequences reduce the GPU size needed",
        "Stats logging is disabled to save CPU",
    ),
    "production": (
        "Conservative utilization leaves headroom for traffic spikes",
        "Request logs are truncated to keep log volume manageable",
    ),
    "serving": (
        "Balanced defaults for general serving",
    ),
}


def _for_balance(profile: WorkloadProfile) -> WorkloadRecommendation:
    input_len = profile.average_input_length or 256
    output_len = profile.average_output_length or 100
    priority = profile.performance_priority or "balanced"
    cost = profile.cost_sensitivity or "medium"
    reliability = profile.reliability_requirement or "standard"
    target = _known(profile.workload_type, BALANCE_TARGETS)

    total = input_len + output_len
    max_len = min(2 * total, 4096)
    seqs, utilization, strategy = BALANCE_TARGETS[target]
    quantization = "fp16"
    flags: dict[str, Any] = {}

    if priority == "throughput":
        seqs = min(192, int(seqs * 1.5))
        utilization = min(0.95, utilization + 0.05)
    elif priority == "latency":
        seqs = max(32, int(seqs * 0.7))
        utilization = max(0.75, utilization - 0.05)

    if cost == "high":
        quantization = "awq"
        utilization = min(0.90, utilization + 0.05)
    if reliability == "high":
        utilization = max(0.75, utilization - 0.05)
        flags["enforce-eager"] = False

    if target == "web-api":
        flags["api-key"] = "PLACEHOLDER"
        flags["disable-log-requests"] = False
    elif target == "multi-user":
        flags["enable-prefix-caching"] = True
    elif target == "cost-optimized":
        flags["disable-log-stats"] = True
    elif target == "production":
        flags["disable-log-requests"] = True
        flags["max-log-len"] = 100

    return WorkloadRecommendation(
        kind="balance",
        workload_type=target,
        quantization=quantization,
        memory_strategy=strategy,
        gpu_memory_utilization=round(utilization, 2),
        batching=BatchingStrategy(
            max_model_len=max_len,
            max_num_seqs=seqs,
            max_num_batched_tokens=min(int(seqs * total * 0.8), 6144),
            enable_chunked_prefill=max_len > 2048,
            swap_space_gb=2 if cost == "high" else 4,
        ),
        special_flags=flags,
        considerations=BALANCE_CONSIDERATIONS[target],
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_BUILDERS: dict[str, Callable[[WorkloadProfile], WorkloadRecommendation]] = {
    "workload": _for_workload,
    "latency": _for_latency,
    "balance": _for_balance,
}


def _known(name: str | None, table: Mapping[str, Any]) -> str:
    if name in table:
        return name
    if name is not None:
        logger.debug("Unknown workload %r, falling back to %s", name, FALLBACK_WORKLOAD)
    return FALLBACK_WORKLOAD


def optimize_for(kind: str, profile: Mapping[str, Any] | WorkloadProfile | None = None) -> WorkloadRecommendation:
    """Recommend settings for *profile* under one of the three profile kinds."""
    require_choice("kind", kind, _BUILDERS)
    if profile is None:
        profile = WorkloadProfile()
    elif not isinstance(profile, WorkloadProfile):
        profile = parse_model(WorkloadProfile, profile)
    return _BUILDERS[kind](profile)
