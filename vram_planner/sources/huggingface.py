"""Hugging Face Hub model metadata: HF API + config.json."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import BaseModel, Field

from vram_planner import config as settings
from vram_planner.architecture import ModelArchitecture
from vram_planner.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SIZE_IN_NAME = re.compile(r"(\d+(?:\.\d+)?)[bB](?![a-zA-Z])")


class HubModelInfo(BaseModel):
    success: bool
    model_id: str
    config: dict[str, Any] | None = Field(None, description="Parsed config.json")
    tags: list[str] = Field(default_factory=list, description="Hub tags")
    param_count_b: float | None = Field(None, description="Safetensors parameter count in billions")
    error: str | None = None


def _headers() -> dict[str, str]:
    if settings.HF_TOKEN:
        return {"Authorization": f"Bearer {settings.HF_TOKEN}"}
    return {}


def fetch_hf_config(model_id: str) -> dict | None:
    """Fetch a model's config.json, or None if unavailable."""
    url = f"{settings.HF_API_BASE}/{model_id}/raw/main/config.json"
    try:
        response = httpx.get(
            url, headers=_headers(), timeout=settings.HTTP_TIMEOUT, follow_redirects=True
        )
        response.raise_for_status()
        config = response.json()
        logger.info("Fetched config.json for %s", model_id)
        return config
    except Exception:
        logger.debug("No config.json available for %s", model_id)
        return None


def fetch_hf_model_api(model_id: str) -> dict | None:
    """Fetch the HF API model record (tags, safetensors metadata)."""
    url = f"{settings.HF_API_BASE}/api/models/{model_id}"
    try:
        response = httpx.get(
            url, headers=_headers(), timeout=settings.HTTP_TIMEOUT, follow_redirects=True
        )
        response.raise_for_status()
        return response.json()
    except Exception:
        logger.debug("Could not fetch HF API record for %s", model_id)
        return None


def fetch_model_info(model_id: str) -> HubModelInfo:
    """Collect config, tags and parameter count for *model_id*.

    Never raises for network problems: ``success`` is False when neither
    endpoint answered.
    """
    api = fetch_hf_model_api(model_id)
    config = fetch_hf_config(model_id)
    if api is None and config is None:
        return HubModelInfo(success=False, model_id=model_id, error=f"No metadata available for {model_id}")

    param_count_b = None
    if api is not None:
        per_dtype = (api.get("safetensors") or {}).get("parameters") or {}
        if per_dtype:
            # Sum all dtypes to get total param count
            param_count_b = round(sum(per_dtype.values()) / 1e9, 1)
            logger.info("HF API param count for %s: %.1fB", model_id, param_count_b)

    return HubModelInfo(
        success=True,
        model_id=model_id,
        config=config,
        tags=list((api or {}).get("tags") or []),
        param_count_b=param_count_b,
    )


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------


def resolve_text_config(config: Mapping[str, Any]) -> Mapping[str, Any]:
    """Unwrap multimodal configs to get the text backbone."""
    text_config = config.get("text_config")
    if isinstance(text_config, Mapping):
        return text_config
    return config


def extract_size(info: HubModelInfo) -> float | None:
    """Parameter count in billions from config, safetensors, or the repo name."""
    if info.config:
        config = resolve_text_config(info.config)
        for key in ("n_parameters", "num_parameters"):
            if config.get(key):
                return round(config[key] / 1e9, 2)
    if info.param_count_b:
        return info.param_count_b
    match = _SIZE_IN_NAME.search(info.model_id.split("/")[-1])
    if match:
        return float(match.group(1))
    return None


# (tag, format) checked in order
_QUANT_TAGS = (
    ("awq", "awq"), ("4-bit-awq", "awq"),
    ("gptq", "gptq"), ("4-bit-gptq", "gptq"),
    ("ggml", "ggml"), ("gguf", "ggml"),
    ("8-bit", "int8"), ("int8", "int8"),
    ("4-bit", "int4"), ("int4", "int4"),
)
# (name fragment, format) checked in order
_QUANT_NAME_HINTS = (
    ("-awq", "awq"), ("_awq", "awq"),
    ("-gptq", "gptq"), ("_gptq", "gptq"),
    ("ggml", "ggml"), ("gguf", "ggml"),
    ("8bit", "int8"), ("int8", "int8"),
    ("4bit", "int4"), ("int4", "int4"),
)
_DTYPE_FORMATS = {"bfloat16": "bf16", "float32": "fp32", "float16": "fp16"}


def detect_quantization(info: HubModelInfo) -> str:
    """Best guess of the catalog format a hub checkpoint is stored in."""
    tags = {t.lower() for t in info.tags}
    for tag, fmt in _QUANT_TAGS:
        if tag in tags:
            return fmt

    name = info.model_id.lower()
    for fragment, fmt in _QUANT_NAME_HINTS:
        if fragment in name:
            return fmt
    if "quant" in name:
        for fmt in ("awq", "gptq"):
            if fmt in name:
                return fmt
        return "int4"

    config = resolve_text_config(info.config or {})
    quant_config = config.get("quantization_config") or {}
    method = str(quant_config.get("quant_method", "")).lower()
    if method in ("awq", "gptq"):
        return method
    if method == "bitsandbytes":
        return "int8" if quant_config.get("load_in_8bit") else "int4"

    dtype = config.get("torch_dtype") or config.get("dtype")
    return _DTYPE_FORMATS.get(dtype, "fp16")


def _first(config: Mapping[str, Any], *keys: str) -> int | None:
    for key in keys:
        if config.get(key) is not None:
            return int(config[key])
    return None


def architecture_from_config(config: Mapping[str, Any]) -> ModelArchitecture | None:
    """Transformer shape from config.json, or None when a core field is missing."""
    config = resolve_text_config(config)
    layers = _first(config, "num_hidden_layers", "n_layer", "num_layers")
    hidden = _first(config, "hidden_size", "n_embd", "d_model")
    heads = _first(config, "num_attention_heads", "n_head")
    if not (layers and hidden and heads):
        logger.debug("config.json lacks layer/hidden/head fields (model_type=%s)", config.get("model_type"))
        return None
    return ModelArchitecture(
        layers=layers,
        hidden_size=hidden,
        num_heads=heads,
        vocab_size=_first(config, "vocab_size"),
        intermediate_size=_first(config, "intermediate_size", "n_inner"),
        name=config.get("model_type"),
    )


def model_params_from_hub(model_id: str) -> dict[str, Any]:
    """Flat planner input (numParams, quantization, architecture) for a hub model."""
    info = fetch_model_info(model_id)
    if not info.success:
        raise ConfigurationError(info.error or f"Could not fetch {model_id}")
    size = extract_size(info)
    if size is None:
        raise ConfigurationError(f"Could not determine parameter count for {model_id}")

    params: dict[str, Any] = {
        "numParams": size,
        "quantization": detect_quantization(info),
        "modelPath": model_id,
    }
    arch = architecture_from_config(info.config or {})
    if arch is not None:
        params["architecture"] = {
            "layers": arch.layers,
            "hiddenSize": arch.hidden_size,
            "numHeads": arch.num_heads,
            "vocabSize": arch.vocab_size,
            "intermediateSize": arch.intermediate_size,
        }
    logger.info("%s: %.1fB params, %s", model_id, size, params["quantization"])
    return params
