"""
Configuration module for the stat kernels package.

Options are read from YAML (``config.yaml`` in the working directory, falling
back to ``config/config.yaml``) after loading ``.env``:
  • Global log-level used by utils.logging_utils.
  • Numerical defaults for the std/mean reduction (epsilon, small-sample policy).
  • Whether the CUDA kernel is compiled and dispatched to.
  • Benchmark repetition knobs.

Every accessor falls back to its default when the YAML value is malformed, so
a broken config file never prevents the kernels from importing.
"""

from __future__ import annotations

import yaml
from pathlib import Path
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Load configuration from YAML and .env
# ---------------------------------------------------------------------------

_CONFIG_PATH = (
    Path("config.yaml") if Path("config.yaml").exists() else Path("config/config.yaml")
)
_YAML_CONFIG: dict = {}

if _CONFIG_PATH.exists():
    try:
        _YAML_CONFIG = yaml.safe_load(_CONFIG_PATH.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:  # pragma: no cover
        print(f"⚠️  Failed to parse {_CONFIG_PATH}: {e}")

load_dotenv()

SMALL_SAMPLE_POLICIES = ("raise", "biased")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _yaml(key: str, default=None):
    """Read a key from YAML with a default."""
    return _YAML_CONFIG.get(key, default)


def _yaml_float(key: str, default: float) -> float:
    try:
        return float(_yaml(key, default))
    except (TypeError, ValueError):
        return default


def _yaml_int(key: str, default: int) -> int:
    try:
        return int(_yaml(key, default))
    except (TypeError, ValueError):
        return default


def _yaml_bool(key: str, default: bool) -> bool:
    value = _yaml(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    return default


# ---------------------------------------------------------------------------
# Public configuration object
# ---------------------------------------------------------------------------

class StatKernelsConfig:
    """Light-weight configuration accessor."""

    # === Logging ===
    @property
    def log_level(self) -> str:
        """Return the configured log-level name (upper-case)."""
        return str(_yaml("LOG_LEVEL", "INFO")).upper()

    # === Reduction defaults ===
    @property
    def std_mean_eps(self) -> float:
        """Epsilon added to the variance before the square root (>= 0)."""
        eps = _yaml_float("STD_MEAN_EPS", 0.0)
        return eps if eps >= 0.0 else 0.0

    @property
    def small_sample_policy(self) -> str:
        """What to do when fewer than ``correction + 1`` elements are reduced.

        ``raise`` rejects the call, ``biased`` drops the correction to zero.
        """
        policy = str(_yaml("SMALL_SAMPLE_POLICY", "raise")).strip().lower()
        return policy if policy in SMALL_SAMPLE_POLICIES else "raise"

    @property
    def use_cuda_kernel(self) -> bool:
        """Compile and dispatch to the inline CUDA kernel when CUDA is present."""
        return _yaml_bool("USE_CUDA_KERNEL", True)

    # === Benchmarks ===
    @property
    def benchmark_warmup_runs(self) -> int:
        """Number of warm-up iterations before timing."""
        return _yaml_int("BENCHMARK_WARMUP_RUNS", 5)

    @property
    def benchmark_rep_ms(self) -> int:
        """Target measuring window handed to ``triton.testing.do_bench``."""
        return _yaml_int("BENCHMARK_REP_MS", 500)


# ---------------------------------------------------------------------------
# Singleton instance
# ---------------------------------------------------------------------------

config = StatKernelsConfig()
