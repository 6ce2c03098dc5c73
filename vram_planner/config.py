"""Environment variable loading and configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def get_env(key: str, default: str | None = None) -> str:
    """Get an environment variable or raise if missing and no default."""
    value = os.getenv(key, default)
    if value is None:
        raise ValueError(f"Missing required environment variable: {key}")
    return value


def get_float_env(key: str, default: float) -> float:
    """Get a numeric environment variable, raising if it does not parse."""
    raw = get_env(key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be numeric, got {raw!r}") from None


# Calibration constants. Empirical, so every one can be overridden from .env.
# Multiplier on hidden-state size approximating attention/MLP intermediates.
ACTIVATION_MULTIPLIER = get_float_env("VRAM_PLANNER_ACTIVATION_MULTIPLIER", 12.0)
# Fragmentation rate tiers: VRAM <= 16 GB, default, VRAM >= 40 GB.
FRAGMENTATION_RATE_SMALL = get_float_env("VRAM_PLANNER_FRAGMENTATION_SMALL", 0.025)
FRAGMENTATION_RATE_DEFAULT = get_float_env("VRAM_PLANNER_FRAGMENTATION_DEFAULT", 0.02)
FRAGMENTATION_RATE_LARGE = get_float_env("VRAM_PLANNER_FRAGMENTATION_LARGE", 0.018)

# Paths
CATALOG_DIR = Path(get_env("VRAM_PLANNER_CATALOG_DIR", str(Path(__file__).resolve().parent / "data")))

# Hugging Face Hub (token optional, only needed for gated repos)
HF_API_BASE = get_env("HF_API_BASE", "https://huggingface.co")
HF_TOKEN = os.getenv("HF_TOKEN")
HTTP_TIMEOUT = get_float_env("VRAM_PLANNER_HTTP_TIMEOUT", 30.0)
