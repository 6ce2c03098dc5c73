"""GPU hardware specs sourced from dbgpu (TechPowerUp database).

Turns a catalog GPU name into the ``GPUSpec`` the strategies consume:
memory per GPU, memory bandwidth, tensor-core support and CUDA compute
capability.
"""

import logging

from dbgpu import GPUDatabase

from vram_planner.errors import FormatBreakingChange
from vram_planner.inputs import GPUSpec, parse_model

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# GPU name mapping: our key → dbgpu specification key (slug)
#
# These slugs correspond to db.specifications[key].
# ---------------------------------------------------------------------------
GPU_TO_DBGPU_KEY: dict[str, str] = {
    "A10": "a10-pcie",
    "A10G": "a10g",
    "A100": "a100-pcie-40gb",
    "A100_80G": "a100-sxm4-80gb",
    "A40": "a40-pcie",
    "A6000": "rtx-a6000",
    "B200": "b200",
    "H100": "h100-sxm5-80gb",
    "H100NVL": "h100-nvl-94gb",
    "H200": "h200-sxm-141gb",
    "L4": "l4",
    "L40S": "l40s",
    "RTX3090": "geforce-rtx-3090",
    "RTX4090": "geforce-rtx-4090",
    "RTX5090": "geforce-rtx-5090",
    "RTX6000Ada": "rtx-6000-ada-generation",
    "V100": "tesla-v100-sxm2-16gb",
}

# ---------------------------------------------------------------------------
# Dual-die packaging: dbgpu reports per-die specs; multiply by die count.
# ---------------------------------------------------------------------------
MULTI_DIE_CHIPS: dict[str, int] = {
    "GB100": 2,  # B200
    "GB110": 2,  # B300
}

ARCH_NORMALIZATION: dict[str, str] = {
    "Blackwell 2.0": "Blackwell",
    "Blackwell Ultra": "Blackwell",
}

# Architecture → CUDA compute capability of its datacenter part
ARCH_COMPUTE_CAPABILITY: dict[str, float] = {
    "Pascal": 6.0,
    "Volta": 7.0,
    "Turing": 7.5,
    "Ampere": 8.0,
    "Ada Lovelace": 8.9,
    "Hopper": 9.0,
    "Blackwell": 10.0,
}

# Chips whose compute capability differs from their architecture's default
CHIP_COMPUTE_CAPABILITY: dict[str, float] = {
    "GA102": 8.6,
    "GA104": 8.6,
    "GA107": 8.6,
    "GB202": 12.0,
}

TENSOR_CORE_ARCHITECTURES = {"Volta", "Turing", "Ampere", "Ada Lovelace", "Hopper", "Blackwell"}


def _to_spec(name: str, gpu) -> GPUSpec:
    mem_gb = gpu.memory_size_gb or 0
    bw_gb_s = gpu.memory_bandwidth_gb_s or 0
    if not mem_gb or not bw_gb_s:
        raise FormatBreakingChange(
            source="dbgpu",
            details=f"GPU '{name}' has no memory size or bandwidth (got {mem_gb!r}, {bw_gb_s!r})",
        )

    chip = gpu.gpu_name
    arch = ARCH_NORMALIZATION.get(gpu.architecture, gpu.architecture)

    # Apply multi-die correction (B200/B300 are dual-die)
    die_count = MULTI_DIE_CHIPS.get(chip, 1)
    mem_gb *= die_count
    bw_gb_s *= die_count

    capability = CHIP_COMPUTE_CAPABILITY.get(chip, ARCH_COMPUTE_CAPABILITY.get(arch, 7.0))
    logger.debug("  %s: %.0f GB, bw=%.0f GB/s, arch=%s, cc=%.1f", name, mem_gb, bw_gb_s, arch, capability)
    return parse_model(GPUSpec, {
        "name": name,
        "total_vram_gb": round(mem_gb, 1),
        "memory_bandwidth_gbps": round(bw_gb_s, 1),
        "compute_capability": capability,
        "tensor_cores": arch in TENSOR_CORE_ARCHITECTURES,
    })


def fetch_gpu_spec(name: str) -> GPUSpec:
    """Spec for one GPU in GPU_TO_DBGPU_KEY.

    Raises KeyError for unknown names or slugs missing from dbgpu.
    """
    if name not in GPU_TO_DBGPU_KEY:
        raise KeyError(f"Unknown GPU '{name}'. Known GPUs: {', '.join(GPU_TO_DBGPU_KEY)}")
    dbgpu_key = GPU_TO_DBGPU_KEY[name]
    specs_map = GPUDatabase.default().specifications
    if dbgpu_key not in specs_map:
        raise KeyError(
            f"GPU '{name}' not found in dbgpu (key='{dbgpu_key}'). "
            f"Update GPU_TO_DBGPU_KEY or upgrade dbgpu."
        )
    return _to_spec(name, specs_map[dbgpu_key])


def fetch_gpu_specs() -> list[GPUSpec]:
    """Specs for every GPU in GPU_TO_DBGPU_KEY. No silent fallbacks."""
    specs_map = GPUDatabase.default().specifications
    results: list[GPUSpec] = []
    for name, dbgpu_key in GPU_TO_DBGPU_KEY.items():
        if dbgpu_key not in specs_map:
            raise KeyError(
                f"GPU '{name}' not found in dbgpu (key='{dbgpu_key}'). "
                f"Update GPU_TO_DBGPU_KEY or upgrade dbgpu."
            )
        results.append(_to_spec(name, specs_map[dbgpu_key]))
    logger.info("Fetched specs for %d GPUs from dbgpu", len(results))
    return results
