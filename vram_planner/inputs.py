"""Input models and the single normalization step in front of the engine.

Callers send either a structured ``{gpuSpecs, modelSpecs, workloadSpecs}``
payload or a flat dictionary (optionally with legacy ``gpu`` / ``workload``
sub-objects). ``normalize`` folds every accepted shape into one
``NormalizedRequest``, resolving each field independently:

=====================  ==================================================
precedence             source
=====================  ==================================================
1 (wins)               ``gpuSpecs`` / ``modelSpecs`` / ``workloadSpecs``
2                      flat top-level keys (camelCase or snake_case)
3                      legacy ``gpu.memory``, ``gpu.count``,
                       ``workload.concurrentRequests``,
                       ``workload.averageTokensPerRequest``,
                       ``workload.maxSeqLen``
4                      model defaults
=====================  ==================================================

``None`` is treated as absent at every level.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from vram_planner.architecture import ModelArchitecture, estimate_architecture
from vram_planner.errors import ValidationError
from vram_planner.memory.weights import weights_memory
from vram_planner.quantization import get_format

logger = logging.getLogger(__name__)

_SPEC_CONFIG = ConfigDict(frozen=True, extra="ignore", protected_namespaces=())

ModelT = TypeVar("ModelT", bound=BaseModel)


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------


class ArchitectureSpec(BaseModel):
    model_config = _SPEC_CONFIG

    layers: int = Field(gt=0, validation_alias=_aliases("layers", "numLayers", "num_hidden_layers"))
    hidden_size: int = Field(gt=0, validation_alias=_aliases("hidden_size", "hiddenSize"))
    num_heads: int = Field(
        gt=0, validation_alias=_aliases("num_heads", "numHeads", "num_attention_heads")
    )
    vocab_size: int | None = Field(None, gt=0, validation_alias=_aliases("vocab_size", "vocabSize"))
    intermediate_size: int | None = Field(
        None, gt=0, validation_alias=_aliases("intermediate_size", "intermediateSize")
    )

    def to_architecture(self) -> ModelArchitecture:
        return ModelArchitecture(
            layers=self.layers,
            hidden_size=self.hidden_size,
            num_heads=self.num_heads,
            vocab_size=self.vocab_size,
            intermediate_size=self.intermediate_size,
            name="custom",
        )


class GPUSpec(BaseModel):
    model_config = _SPEC_CONFIG

    total_vram_gb: float = Field(
        80.0, gt=0, allow_inf_nan=False,
        validation_alias=_aliases("total_vram_gb", "totalVRAMGB", "totalVramGB", "vram_gb"),
        description="Memory per GPU in GB",
    )
    memory_bandwidth_gbps: float = Field(
        900.0, gt=0, allow_inf_nan=False,
        validation_alias=_aliases("memory_bandwidth_gbps", "memoryBandwidthGBps", "memoryBandwidth"),
    )
    compute_capability: float = Field(
        8.0, gt=0, validation_alias=_aliases("compute_capability", "computeCapability")
    )
    tensor_cores: bool = Field(True, validation_alias=_aliases("tensor_cores", "tensorCores"))
    gpu_count: int = Field(1, gt=0, validation_alias=_aliases("gpu_count", "gpuCount"))
    name: str | None = Field(None, validation_alias=_aliases("name", "gpuName"))


class ModelSpec(BaseModel):
    model_config = _SPEC_CONFIG

    model_size_gb: float | None = Field(
        None, gt=0, allow_inf_nan=False,
        validation_alias=_aliases("model_size_gb", "modelSizeGB", "sizeGB", "size_gb"),
        description="Serving size of the weights; derived from num_params when absent",
    )
    num_params: float | None = Field(
        None, gt=0, allow_inf_nan=False,
        validation_alias=_aliases("num_params", "numParams"),
        description="Parameter count in billions",
    )
    quantization: str = Field("fp16", validation_alias=_aliases("quantization", "quantizationFormat"))
    architecture: ArchitectureSpec | None = Field(None, validation_alias=_aliases("architecture"))
    model_path: str = Field("MODEL_PATH", validation_alias=_aliases("model_path", "modelPath", "model"))


class WorkloadSpec(BaseModel):
    model_config = _SPEC_CONFIG

    expected_concurrent_users: int = Field(
        100, gt=0, validation_alias=_aliases("expected_concurrent_users", "expectedConcurrentUsers")
    )
    average_sequence_length: int = Field(
        512, gt=0, validation_alias=_aliases("average_sequence_length", "averageSequenceLength")
    )
    max_sequence_length: int = Field(
        2048, gt=0,
        validation_alias=_aliases("max_sequence_length", "maxSequenceLength", "maxSeqLen", "max_seq_len"),
    )
    workload_type: str = Field("serving", validation_alias=_aliases("workload_type", "workloadType"))
    latency_target: str = Field("low", validation_alias=_aliases("latency_target", "latencyTarget"))
    balance_target: str = Field("general", validation_alias=_aliases("balance_target", "balanceTarget"))


class WorkloadProfile(BaseModel):
    """Traffic description for the workload optimizer. Unset fields take per-kind defaults."""

    model_config = _SPEC_CONFIG

    workload_type: str | None = Field(None, validation_alias=_aliases("workload_type", "workloadType"))
    average_input_length: int | None = Field(
        None, gt=0, validation_alias=_aliases("average_input_length", "averageInputLength")
    )
    average_output_length: int | None = Field(
        None, gt=0, validation_alias=_aliases("average_output_length", "averageOutputLength")
    )
    peak_concurrency: int | None = Field(
        None, gt=0, validation_alias=_aliases("peak_concurrency", "peakConcurrency")
    )
    latency_requirement: str | None = Field(
        None, validation_alias=_aliases("latency_requirement", "latencyRequirement")
    )
    throughput_priority: str | None = Field(
        None, validation_alias=_aliases("throughput_priority", "throughputPriority")
    )
    performance_priority: str | None = Field(
        None, validation_alias=_aliases("performance_priority", "performancePriority", "priority")
    )
    cost_sensitivity: str | None = Field(
        None, validation_alias=_aliases("cost_sensitivity", "costSensitivity")
    )
    reliability_requirement: str | None = Field(
        None, validation_alias=_aliases("reliability_requirement", "reliabilityRequirement")
    )
    response_time_target_ms: float | None = Field(
        None, gt=0, validation_alias=_aliases("response_time_target_ms", "responseTimeTarget")
    )


class BreakdownRequest(BaseModel):
    model_config = _SPEC_CONFIG

    total_vram_gb: float = Field(
        gt=0, allow_inf_nan=False,
        validation_alias=_aliases("total_vram_gb", "totalVRAMGB", "totalVramGB", "vram_gb"),
    )
    model_size_gb: float | None = Field(
        None, gt=0, allow_inf_nan=False,
        validation_alias=_aliases("model_size_gb", "modelSizeGB", "sizeGB"),
        description="fp16 checkpoint size; re-quantized to `quantization`",
    )
    num_params: float | None = Field(
        None, gt=0, allow_inf_nan=False, validation_alias=_aliases("num_params", "numParams")
    )
    quantization: str = Field("fp16", validation_alias=_aliases("quantization"))
    batch_size: int = Field(32, gt=0, validation_alias=_aliases("batch_size", "batchSize"))
    max_seq_len: int = Field(2048, gt=0, validation_alias=_aliases("max_seq_len", "maxSeqLen"))
    seq_len: int = Field(512, gt=0, validation_alias=_aliases("seq_len", "seqLen", "sequenceLength"))
    kv_cache_precision: str = Field(
        "fp16", validation_alias=_aliases("kv_cache_precision", "kvCachePrecision")
    )
    swap_space_gb: float | None = Field(
        None, ge=0, validation_alias=_aliases("swap_space_gb", "swapSpaceGB")
    )
    priority: str = Field("balanced", validation_alias=_aliases("priority"))
    workload_type: str = Field("serving", validation_alias=_aliases("workload_type", "workloadType"))
    architecture: ArchitectureSpec | None = Field(None, validation_alias=_aliases("architecture"))
    layers: int | None = Field(None, gt=0, validation_alias=_aliases("layers", "numLayers"))
    hidden_size: int | None = Field(None, gt=0, validation_alias=_aliases("hidden_size", "hiddenSize"))
    num_heads: int | None = Field(None, gt=0, validation_alias=_aliases("num_heads", "numHeads"))

    def resolve_architecture(self) -> ModelArchitecture:
        if self.architecture is not None:
            return self.architecture.to_architecture()
        if self.layers and self.hidden_size and self.num_heads:
            return ModelArchitecture(self.layers, self.hidden_size, self.num_heads, name="custom")
        if self.num_params is not None:
            return estimate_architecture(self.num_params)
        return estimate_architecture(self.model_size_gb / 2)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_model(model_cls: type[ModelT], data: Mapping[str, Any]) -> ModelT:
    """Validate *data* into *model_cls*, surfacing failures as ValidationError."""
    try:
        return model_cls.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or model_cls.__name__
        raise ValidationError(field, first.get("input"), first["msg"]) from exc


def _canonical(model_cls: type[BaseModel], data: Mapping[str, Any] | None) -> dict[str, Any]:
    """Re-key *data* by field name, dropping None and unknown keys."""
    if not isinstance(data, Mapping):
        return {}
    canonical: dict[str, Any] = {}
    for name, field in model_cls.model_fields.items():
        choices = field.validation_alias.choices if field.validation_alias else [name]
        for alias in choices:
            if isinstance(alias, str) and data.get(alias) is not None:
                canonical[name] = data[alias]
                break
    return canonical


# (legacy container, legacy key, field name)
_LEGACY_GPU_KEYS = (("gpu", "memory", "total_vram_gb"), ("gpu", "count", "gpu_count"))
_LEGACY_WORKLOAD_KEYS = (
    ("workload", "concurrentRequests", "expected_concurrent_users"),
    ("workload", "averageTokensPerRequest", "average_sequence_length"),
    ("workload", "maxSeqLen", "max_sequence_length"),
)


def _legacy(params: Mapping[str, Any], keys: tuple[tuple[str, str, str], ...]) -> dict[str, Any]:
    found: dict[str, Any] = {}
    for container, key, field in keys:
        section = params.get(container)
        if isinstance(section, Mapping) and section.get(key) is not None:
            found[field] = section[key]
    return found


def _structured(params: Mapping[str, Any], *keys: str) -> Mapping[str, Any] | None:
    for key in keys:
        value = params.get(key)
        if isinstance(value, Mapping):
            return value
    return None


def _merge(*layers: dict[str, Any]) -> dict[str, Any]:
    """Merge lowest-precedence first."""
    merged: dict[str, Any] = {}
    for layer in layers:
        merged.update(layer)
    return merged


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedRequest:
    gpu: GPUSpec
    model: ModelSpec
    workload: WorkloadSpec
    quantization: str
    model_size_gb: float
    architecture: ModelArchitecture
    architecture_estimated: bool


def normalize(params: Mapping[str, Any]) -> NormalizedRequest:
    """Fold any accepted input shape into a NormalizedRequest."""
    if not isinstance(params, Mapping):
        raise ValidationError("params", params, "must be a mapping")

    gpu_fields = _merge(
        _legacy(params, _LEGACY_GPU_KEYS),
        _canonical(GPUSpec, params),
        _canonical(GPUSpec, _structured(params, "gpuSpecs", "gpu_specs")),
    )
    model_fields = _merge(
        _canonical(ModelSpec, params),
        _canonical(ModelSpec, _structured(params, "modelSpecs", "model_specs")),
    )
    workload_fields = _merge(
        _legacy(params, _LEGACY_WORKLOAD_KEYS),
        _canonical(WorkloadSpec, params),
        _canonical(WorkloadSpec, _structured(params, "workloadSpecs", "workload_specs")),
    )

    if "architecture" not in model_fields:
        flat_arch = _canonical(ArchitectureSpec, params)
        if {"layers", "hidden_size", "num_heads"} <= flat_arch.keys():
            model_fields["architecture"] = flat_arch

    gpu = parse_model(GPUSpec, gpu_fields)
    model = parse_model(ModelSpec, model_fields)
    workload = parse_model(WorkloadSpec, workload_fields)

    if model.model_size_gb is None and model.num_params is None:
        raise ValidationError(
            "model_size_gb", None, "Either modelSizeGB or numParams must be provided"
        )

    quantization = get_format(model.quantization).key
    if model.model_size_gb is not None:
        model_size_gb = model.model_size_gb
    else:
        model_size_gb = weights_memory(model.num_params, quantization)

    if model.architecture is not None:
        architecture = model.architecture.to_architecture()
    else:
        architecture = estimate_architecture(
            model.num_params if model.num_params is not None else model_size_gb / 2
        )

    logger.debug(
        "Normalized request: %.1f GB x%d GPU, %.2f GB model (%s), %s architecture",
        gpu.total_vram_gb, gpu.gpu_count, model_size_gb, quantization, architecture.name,
    )
    return NormalizedRequest(
        gpu=gpu,
        model=model,
        workload=workload,
        quantization=quantization,
        model_size_gb=model_size_gb,
        architecture=architecture,
        architecture_estimated=model.architecture is None,
    )
