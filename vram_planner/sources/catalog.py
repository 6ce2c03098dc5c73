"""Bundled GPU and model catalogs (``gpus.json`` / ``models.json``).

Catalog entries are plain dicts so they can be shown in a picker as-is:

* GPU: ``{"name": str, "vram_gb": number}``
* model: ``{"name": str, "hf_id": str, "size_gb": number, "quantization": str,
  "memory_factor": number in (0, 1]}``

A missing or unreadable catalog falls back to a small built-in list.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any

from vram_planner import config
from vram_planner.quantization import get_format

logger = logging.getLogger(__name__)

FALLBACK_GPUS: tuple[dict[str, Any], ...] = (
    {"name": "NVIDIA A100 (80GB)", "vram_gb": 80},
    {"name": "NVIDIA H100 (80GB)", "vram_gb": 80},
    {"name": "NVIDIA RTX 4090", "vram_gb": 24},
    {"name": "NVIDIA V100 (32GB)", "vram_gb": 32},
)

FALLBACK_MODELS: tuple[dict[str, Any], ...] = (
    {
        "name": "Llama 2 7B",
        "hf_id": "meta-llama/Llama-2-7b-hf",
        "size_gb": 13.5,
        "quantization": "fp16",
        "memory_factor": 1.0,
    },
    {
        "name": "Llama 2 13B",
        "hf_id": "meta-llama/Llama-2-13b-hf",
        "size_gb": 26.0,
        "quantization": "fp16",
        "memory_factor": 1.0,
    },
)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _has_name(entry: Any) -> bool:
    return isinstance(entry, dict) and isinstance(entry.get("name"), str) and bool(entry["name"].strip())


def is_valid_gpu(gpu: Any) -> bool:
    return _has_name(gpu) and _is_number(gpu.get("vram_gb")) and gpu["vram_gb"] > 0


def is_valid_model(model: Any) -> bool:
    return (
        _has_name(model)
        and _is_number(model.get("size_gb"))
        and model["size_gb"] > 0
        and _is_number(model.get("memory_factor"))
        and 0 < model["memory_factor"] <= 1.0
    )


def _load(path: Path, validator, fallback: tuple[dict[str, Any], ...], kind: str) -> list[dict[str, Any]]:
    try:
        entries = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not load %s catalog from %s (%s); using built-in list", kind, path, e)
        return [dict(entry) for entry in fallback]
    if not isinstance(entries, list):
        logger.warning("%s catalog %s is not a list; using built-in list", kind, path)
        return [dict(entry) for entry in fallback]

    valid = []
    for entry in entries:
        if validator(entry):
            valid.append(entry)
        else:
            logger.warning("Skipping invalid %s catalog entry: %r", kind, entry)
    logger.debug("Loaded %d %s entries from %s", len(valid), kind, path)
    return valid


def load_gpu_catalog(path: Path | None = None) -> list[dict[str, Any]]:
    return _load(path or config.CATALOG_DIR / "gpus.json", is_valid_gpu, FALLBACK_GPUS, "GPU")


def load_model_catalog(path: Path | None = None) -> list[dict[str, Any]]:
    return _load(path or config.CATALOG_DIR / "models.json", is_valid_model, FALLBACK_MODELS, "model")


def find_entry(entries: list[dict[str, Any]], name: str) -> dict[str, Any] | None:
    """Case-insensitive lookup by name (or ``hf_id`` for models)."""
    wanted = name.strip().lower()
    for entry in entries:
        if entry["name"].lower() == wanted or str(entry.get("hf_id", "")).lower() == wanted:
            return entry
    return None


def create_custom_gpu(name: str, vram_gb: float) -> dict[str, Any]:
    return {"name": name.strip(), "vram_gb": vram_gb, "custom": True}


def create_custom_model(
    name: str, size_gb: float, quantization: str = "fp16", memory_factor: float = 1.0
) -> dict[str, Any]:
    return {
        "name": name.strip(),
        "size_gb": size_gb,
        "quantization": get_format(quantization).key,
        "memory_factor": memory_factor,
        "custom": True,
    }
