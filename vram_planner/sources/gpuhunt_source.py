"""GPU catalog entries from the gpuhunt cloud offering catalog."""

import logging

from gpuhunt import Catalog

from vram_planner.errors import FormatBreakingChange

logger = logging.getLogger(__name__)

# GPUs not suitable for LLM serving (too little VRAM, old arch)
EXCLUDED_GPUS = {
    "P100",
    "T4",
    "RTX2000Ada",
    "RTX3070",
    "RTX3080",
    "RTX3080Ti",
}

# A10 MIG slices (4/8/12 GB) are not full GPUs
MIN_VRAM_GB = 16

_EXPECTED_ATTRS = ("gpu_name", "gpu_memory", "gpu_count", "price", "provider")


def fetch_gpu_catalog() -> list[dict]:
    """Distinct NVIDIA GPUs offered on demand, as ``{name, vram_gb}`` entries.

    The result has the same shape as the bundled ``gpus.json`` catalog.
    """
    catalog = Catalog(balance_resources=False, auto_reload=True)
    logger.info("Querying gpuhunt catalog for NVIDIA on-demand offerings")

    items = catalog.query(
        gpu_vendor="nvidia",
        spot=False,
        min_gpu_count=1,
    )

    # Catch gpuhunt API changes before reading attributes off every item
    if items:
        first = items[0]
        missing = [a for a in _EXPECTED_ATTRS if not hasattr(first, a)]
        if missing:
            raise FormatBreakingChange(
                source="gpuhunt",
                details=(
                    f"Query results are missing expected attributes: {missing}. "
                    f"The gpuhunt Catalog API may have changed. "
                    f"Available attributes: {sorted(vars(first).keys())}"
                ),
            )

    seen: dict[tuple[str, float], dict] = {}
    for item in items:
        if item.gpu_name in EXCLUDED_GPUS or item.gpu_memory < MIN_VRAM_GB:
            continue
        key = (item.gpu_name, item.gpu_memory)
        if key not in seen:
            seen[key] = {"name": item.gpu_name, "vram_gb": item.gpu_memory}

    gpus = [seen[key] for key in sorted(seen)]
    logger.info("Found %d distinct GPUs in gpuhunt", len(gpus))
    return gpus
