import argparse
import csv
import functools
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

import torch

QUANTILES = [0.5, 0.2, 0.8]

BENCHMARK_DATA_DIR = os.path.join(os.path.dirname(__file__), "..", "benchmarks", "data")
BENCHMARK_DATA_FILENAME = "all_benchmark_data.csv"


def infer_device() -> str:
    """Pick the most capable device available in this process."""
    if torch.cuda.is_available():
        return "cuda"
    if hasattr(torch, "xpu") and torch.xpu.is_available():
        return "xpu"
    if torch.backends.mps.is_available():
        return "mps"
    return "cpu"


def ensure_contiguous(fn):
    """Make every tensor argument contiguous before calling ``fn``."""

    @functools.wraps(fn)
    def wrapper(ctx, *args, **kwargs):
        def maybe_to_contiguous(x):
            return x.contiguous() if isinstance(x, torch.Tensor) else x

        args = [maybe_to_contiguous(arg) for arg in args]
        kwargs = {k: maybe_to_contiguous(v) for k, v in kwargs.items()}
        return fn(ctx, *args, **kwargs)

    return wrapper


# -----------------------------------------------------------------------------
# Benchmark harness
# -----------------------------------------------------------------------------

@dataclass
class SingleBenchmarkRunInput:
    x: Any
    kernel_provider: str
    kernel_operation_mode: Optional[str] = ""
    extra_benchmark_config: Optional[Dict[str, Any]] = None


@dataclass
class SingleBenchmarkRunOutput:
    y_20: float
    y_50: float
    y_80: float


@dataclass
class BenchmarkData:
    kernel_name: str
    kernel_provider: str
    metric_name: str
    metric_unit: str
    gpu_name: str
    x_name: str
    x_label: str
    x_values: List[Any]
    y_values_50: List[float]
    y_values_20: List[float]
    y_values_80: List[float]
    timestamp: str
    kernel_operation_mode: Optional[str] = None
    extra_benchmark_config_str: Optional[str] = None


def _test_memory(func: Callable, quantiles: List[float] = QUANTILES, _iter: int = 10) -> List[float]:
    """Peak allocated CUDA memory (MB) of ``func`` at the given quantiles."""
    total_mem = []
    for _ in range(_iter):
        torch.cuda.memory.reset_peak_memory_stats()
        func()
        total_mem.append(torch.cuda.max_memory_allocated() / 2**20)

    mem = torch.tensor(total_mem, dtype=torch.float)
    return torch.quantile(mem, torch.tensor(quantiles, dtype=torch.float)).tolist()


def get_gpu_name() -> str:
    if torch.cuda.is_available():
        return torch.cuda.get_device_name()
    return "cpu"


def parse_benchmark_script_args():
    parser = argparse.ArgumentParser(description="Benchmark stat kernels")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing rows for the same kernel/provider/mode/gpu",
    )
    return parser.parse_args()


def _write_benchmark_rows(rows: List[Dict[str, Any]], overwrite: bool) -> str:
    os.makedirs(BENCHMARK_DATA_DIR, exist_ok=True)
    path = os.path.join(BENCHMARK_DATA_DIR, BENCHMARK_DATA_FILENAME)
    key_fields = ("kernel_name", "kernel_provider", "kernel_operation_mode", "metric_name", "gpu_name", "x_value")

    existing: List[Dict[str, Any]] = []
    if os.path.exists(path):
        with open(path, newline="") as f:
            existing = list(csv.DictReader(f))

    if overwrite:
        new_keys = {tuple(str(row[k]) for k in key_fields) for row in rows}
        existing = [row for row in existing if tuple(str(row.get(k)) for k in key_fields) not in new_keys]

    fieldnames = list(rows[0].keys()) if rows else []
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in existing + rows:
            writer.writerow({k: row.get(k) for k in fieldnames})
    return path


def run_benchmarks(
    bench_test_fn: Callable[[SingleBenchmarkRunInput], SingleBenchmarkRunOutput],
    kernel_name: str,
    metric_name: str,
    metric_unit: str,
    x_name: str,
    x_label: str,
    x_values: List[Any],
    kernel_providers: List[str],
    kernel_operation_modes: Optional[List[str]] = None,
    extra_benchmark_configs: Optional[List[Dict[str, Any]]] = None,
    overwrite: bool = False,
):
    """Run ``bench_test_fn`` over the full provider/mode/config grid and append to CSV."""
    kernel_operation_modes = kernel_operation_modes or [None]
    extra_benchmark_configs = extra_benchmark_configs or [{}]
    gpu_name = get_gpu_name()
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S")

    rows: List[Dict[str, Any]] = []
    for extra_config in extra_benchmark_configs:
        for mode in kernel_operation_modes:
            for provider in kernel_providers:
                data = BenchmarkData(
                    kernel_name=kernel_name,
                    kernel_provider=provider,
                    metric_name=metric_name,
                    metric_unit=metric_unit,
                    gpu_name=gpu_name,
                    x_name=x_name,
                    x_label=x_label,
                    x_values=[],
                    y_values_50=[],
                    y_values_20=[],
                    y_values_80=[],
                    timestamp=timestamp,
                    kernel_operation_mode=mode,
                    extra_benchmark_config_str=str(extra_config),
                )
                for x in x_values:
                    out = bench_test_fn(
                        SingleBenchmarkRunInput(
                            x=x,
                            kernel_provider=provider,
                            kernel_operation_mode=mode,
                            extra_benchmark_config=extra_config,
                        )
                    )
                    data.x_values.append(x)
                    data.y_values_20.append(out.y_20)
                    data.y_values_50.append(out.y_50)
                    data.y_values_80.append(out.y_80)

                print(
                    f"[{kernel_name}] {provider} {mode or ''} {metric_name}: "
                    + ", ".join(f"{x}={y:.4f}{metric_unit}" for x, y in zip(data.x_values, data.y_values_50))
                )
                summary = asdict(data)
                for x, y20, y50, y80 in zip(data.x_values, data.y_values_20, data.y_values_50, data.y_values_80):
                    rows.append(
                        {
                            "kernel_name": summary["kernel_name"],
                            "kernel_provider": summary["kernel_provider"],
                            "kernel_operation_mode": summary["kernel_operation_mode"],
                            "metric_name": summary["metric_name"],
                            "metric_unit": summary["metric_unit"],
                            "x_name": summary["x_name"],
                            "x_label": summary["x_label"],
                            "x_value": x,
                            "y_value_50": y50,
                            "y_value_20": y20,
                            "y_value_80": y80,
                            "extra_benchmark_config_str": summary["extra_benchmark_config_str"],
                            "gpu_name": summary["gpu_name"],
                            "timestamp": summary["timestamp"],
                        }
                    )

    if rows:
        path = _write_benchmark_rows(rows, overwrite)
        print(f"Benchmark results written to {path}")
