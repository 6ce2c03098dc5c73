"""vLLM command serialization, configuration validation and templates.

Serialization is deterministic and order-preserving. For every entry of the
argument map, in insertion order:

* ``True`` renders as a bare ``--flag``
* ``False`` and ``None`` are omitted
* anything else renders as ``--flag value``

Keys are accepted in camelCase, snake_case or kebab-case and always emitted
as kebab-case.
"""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from vram_planner.errors import ConfigurationError
from vram_planner.quantization import supported_formats

logger = logging.getLogger(__name__)

VLLM_ENTRYPOINT = "python -m vllm.entrypoints.openai.api_server"
DOCKER_IMAGE = "vllm/vllm-openai:latest"

_UPPER = re.compile(r"([A-Z])")
_SIZE = re.compile(r"^\d+(\.\d+)?\s*GB$")


def to_kebab(key: str) -> str:
    return _UPPER.sub(r"-\1", key).lower().replace("_", "-")


def format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(format_value(v) for v in value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(round(value, 4))
    return shlex.quote(str(value))


def serialize_command(args: Mapping[str, Any], *, entrypoint: str = VLLM_ENTRYPOINT) -> str:
    parts = [entrypoint]
    for key, value in args.items():
        if value is None or value is False:
            continue
        flag = f"--{to_kebab(key)}"
        if value is True:
            parts.append(flag)
        else:
            parts.extend((flag, format_value(value)))
    return " ".join(parts)


def docker_command(
    args: Mapping[str, Any],
    *,
    image: str = DOCKER_IMAGE,
    port: int = 8000,
    volumes: Iterable[str] = ("~/.cache/huggingface:/root/.cache/huggingface",),
    env: Mapping[str, str] | None = None,
) -> str:
    """``docker run`` line for the official vLLM image, which runs the API server."""
    prefix = ["docker run --runtime nvidia --gpus all"]
    prefix.extend(f"-v {volume}" for volume in volumes)
    prefix.extend(f"--env {shlex.quote(f'{k}={v}')}" for k, v in (env or {}).items())
    prefix.append(f"-p {port}:{port} --ipc=host {image}")
    container_args = {k: v for k, v in args.items() if to_kebab(k) != "host"}
    container_args["port"] = port
    return serialize_command(container_args, entrypoint=" ".join(prefix))


# ---------------------------------------------------------------------------
# Parameter table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParameterSpec:
    type: str  # string | integer | float | boolean | size
    description: str
    minimum: float | None = None
    maximum: float | None = None
    options: tuple[Any, ...] | None = None


VLLM_PARAMETERS: MappingProxyType[str, ParameterSpec] = MappingProxyType({
    "model": ParameterSpec("string", "Model name or path"),
    "tokenizer": ParameterSpec("string", "Tokenizer name or path"),
    "served-model-name": ParameterSpec("string", "Model name exposed by the API"),
    "host": ParameterSpec("string", "Bind address"),
    "port": ParameterSpec("integer", "Bind port", minimum=1, maximum=65535),
    "api-key": ParameterSpec("string", "API key required from clients"),
    "dtype": ParameterSpec(
        "string", "Weight and activation dtype",
        options=("auto", "half", "float16", "bfloat16", "float", "float32"),
    ),
    "quantization": ParameterSpec(
        "string", "Weight quantization method",
        options=tuple(supported_formats()) + ("fp8", "squeezellm"),
    ),
    "kv-cache-dtype": ParameterSpec(
        "string", "KV cache dtype", options=("auto", "fp8", "fp8_e5m2", "fp8_e4m3")
    ),
    "max-model-len": ParameterSpec("integer", "Model context length", minimum=1),
    "gpu-memory-utilization": ParameterSpec(
        "float", "Fraction of GPU memory vLLM may use", minimum=0.1, maximum=1.0
    ),
    "max-num-seqs": ParameterSpec("integer", "Maximum sequences per iteration", minimum=1),
    "max-num-batched-tokens": ParameterSpec("integer", "Maximum tokens per iteration", minimum=1),
    "block-size": ParameterSpec("integer", "Paged attention block size", options=(8, 16, 32, 64, 128)),
    "swap-space": ParameterSpec("size", "CPU swap space per GPU", minimum=0),
    "cpu-offload-gb": ParameterSpec("float", "Weights offloaded to CPU", minimum=0),
    "tensor-parallel-size": ParameterSpec("integer", "Tensor parallel GPUs", minimum=1),
    "pipeline-parallel-size": ParameterSpec("integer", "Pipeline parallel stages", minimum=1),
    "enable-chunked-prefill": ParameterSpec("boolean", "Split long prefills into chunks"),
    "disable-chunked-prefill": ParameterSpec("boolean", "Never chunk prefills"),
    "max-chunked-prefill-tokens": ParameterSpec("integer", "Chunk size for chunked prefill", minimum=1),
    "enable-prefix-caching": ParameterSpec("boolean", "Reuse KV cache across shared prefixes"),
    "preemption-mode": ParameterSpec("string", "Preemption mode", options=("recompute", "swap")),
    "enforce-eager": ParameterSpec("boolean", "Disable CUDA graphs"),
    "disable-log-stats": ParameterSpec("boolean", "Disable periodic stats logging"),
    "disable-log-requests": ParameterSpec("boolean", "Disable per-request logging"),
    "max-log-len": ParameterSpec("integer", "Prompt characters printed in logs", minimum=0),
    "stream-interval": ParameterSpec("integer", "Tokens between streamed chunks", minimum=1),
    "response-role": ParameterSpec("string", "Role name for chat responses"),
    "trust-remote-code": ParameterSpec("boolean", "Allow custom model code from the hub"),
    "seed": ParameterSpec("integer", "Random seed", minimum=0),
})

MAX_SAFE_UTILIZATION = 0.95
MAX_PARALLELISM = 8


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]


def _type_error(key: str, spec: ParameterSpec, value: Any) -> str | None:
    if spec.type == "boolean":
        return None if isinstance(value, bool) else f"{key} must be a boolean"
    if spec.type == "string":
        return None if isinstance(value, str) else f"{key} must be a string"
    if isinstance(value, bool):
        return f"{key} must be a number"
    if spec.type == "integer":
        return None if isinstance(value, int) else f"{key} must be an integer"
    if spec.type == "float":
        return None if isinstance(value, (int, float)) else f"{key} must be a number"
    if spec.type == "size":
        if isinstance(value, (int, float)) or (isinstance(value, str) and _SIZE.match(value)):
            return None
        return f"{key} must be a number of GB such as 4 or '4GB'"
    return None


def _numeric(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _SIZE.match(value):
        return float(value[:-2].strip())
    return None


def validate_configuration(config: Mapping[str, Any]) -> ValidationResult:
    """Check a vLLM argument map. Problems are reported, never raised."""
    params = {to_kebab(k): v for k, v in config.items()}
    errors: list[str] = []
    warnings: list[str] = []

    if not params.get("model"):
        errors.append("Model parameter is required")

    for key, value in params.items():
        if value is None:
            continue
        spec = VLLM_PARAMETERS.get(key)
        if spec is None:
            warnings.append(f"Unknown parameter: {key}")
            continue
        problem = _type_error(key, spec, value)
        if problem:
            errors.append(problem)
            continue
        if spec.options is not None and spec.type != "boolean" and value not in spec.options:
            errors.append(f"{key} must be one of: {', '.join(str(o) for o in spec.options)}")
            continue
        number = _numeric(value)
        if number is not None:
            if spec.minimum is not None and number < spec.minimum:
                errors.append(f"{key} must be at least {spec.minimum:g}")
            if spec.maximum is not None and number > spec.maximum:
                errors.append(f"{key} must be at most {spec.maximum:g}")

    utilization = _numeric(params.get("gpu-memory-utilization"))
    if utilization is not None and utilization > MAX_SAFE_UTILIZATION:
        warnings.append("GPU memory utilization above 95% may cause OOM errors")

    tensor = _numeric(params.get("tensor-parallel-size")) or 1
    pipeline = _numeric(params.get("pipeline-parallel-size")) or 1
    if tensor * pipeline > MAX_PARALLELISM:
        warnings.append("High parallelism may impact performance on smaller models")

    batched = _numeric(params.get("max-num-batched-tokens"))
    model_len = _numeric(params.get("max-model-len"))
    if (
        batched is not None
        and model_len is not None
        and batched < model_len
        and params.get("enable-chunked-prefill") is not True
    ):
        warnings.append(
            "max-num-batched-tokens is smaller than max-model-len; "
            "enable chunked prefill or long prompts will be rejected"
        )

    return ValidationResult(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


# ---------------------------------------------------------------------------
# Deployment configuration and templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeploymentConfiguration:
    strategy: str
    parameters: dict[str, Any]
    command: str
    validation: ValidationResult
    optimized: Any = None  # OptimizedConfig when produced by a strategy


def build_deployment(strategy: str, parameters: Mapping[str, Any], optimized: Any = None) -> DeploymentConfiguration:
    params = dict(parameters)
    return DeploymentConfiguration(
        strategy=strategy,
        parameters=params,
        command=serialize_command(params),
        validation=validate_configuration(params),
        optimized=optimized,
    )


_COMMON = {"model": "MODEL_PATH", "host": "0.0.0.0", "port": 8000}

COMMAND_TEMPLATES: MappingProxyType[str, MappingProxyType[str, Any]] = MappingProxyType({
    "development": MappingProxyType({
        **_COMMON,
        "gpuMemoryUtilization": 0.8,
        "maxNumSeqs": 16,
        "maxModelLen": 2048,
        "enforceEager": True,
    }),
    "production": MappingProxyType({
        **_COMMON,
        "gpuMemoryUtilization": 0.9,
        "maxNumSeqs": 128,
        "maxModelLen": 4096,
        "swapSpace": "4GB",
        "enablePrefixCaching": True,
        "disableLogRequests": True,
    }),
    "debugging": MappingProxyType({
        **_COMMON,
        "gpuMemoryUtilization": 0.7,
        "maxNumSeqs": 4,
        "maxModelLen": 2048,
        "enforceEager": True,
        "seed": 0,
    }),
    "high-throughput": MappingProxyType({
        **_COMMON,
        "gpuMemoryUtilization": 0.95,
        "maxNumSeqs": 256,
        "maxNumBatchedTokens": 8192,
        "maxModelLen": 4096,
        "blockSize": 32,
        "enableChunkedPrefill": True,
        "disableLogStats": True,
    }),
    "low-latency": MappingProxyType({
        **_COMMON,
        "gpuMemoryUtilization": 0.8,
        "maxNumSeqs": 32,
        "maxNumBatchedTokens": 2048,
        "maxModelLen": 2048,
        "blockSize": 16,
        "swapSpace": "2GB",
    }),
})


def generate_configuration(
    template: str, overrides: Mapping[str, Any] | None = None
) -> DeploymentConfiguration:
    """Start from a named template and apply *overrides* key by key."""
    try:
        base = COMMAND_TEMPLATES[template]
    except KeyError:
        raise ConfigurationError(
            f"Unknown template {template!r}; available: {', '.join(COMMAND_TEMPLATES)}"
        ) from None
    merged = dict(base)
    for key, value in (overrides or {}).items():
        existing = next((k for k in merged if to_kebab(k) == to_kebab(key)), key)
        merged[existing] = value
    logger.debug("Generated %s template with %d overrides", template, len(overrides or {}))
    return build_deployment(f"template:{template}", merged)
