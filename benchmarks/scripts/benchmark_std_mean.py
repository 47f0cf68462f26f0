import torch
import triton
import sys
import os

# Add project root to Python path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from utils.config import config
from utils.utils import QUANTILES
from utils.utils import SingleBenchmarkRunInput
from utils.utils import SingleBenchmarkRunOutput
from utils.utils import _test_memory
from utils.utils import parse_benchmark_script_args
from utils.utils import run_benchmarks
from utils.utils import infer_device

from stat_kernels.std_mean.Functional.std_mean import StdMean

device = infer_device()


def _make_fwd(input: SingleBenchmarkRunInput):
    N = input.x
    provider = input.kernel_provider
    extra_benchmark_config = input.extra_benchmark_config
    M = extra_benchmark_config["M"]
    dtype = extra_benchmark_config["dtype"]

    custom_std_mean = StdMean(dim=-1)

    x = torch.randn((M, N), dtype=dtype, device=device, requires_grad=True)

    def y_fwd():
        if provider == "custom":
            std, mean = custom_std_mean(x)
        elif provider == "torch":
            std, mean = torch.std_mean(x, dim=-1)
        else:
            raise ValueError(f"Unknown provider {provider}")
        return std + mean

    dy = torch.randn(M, dtype=dtype, device=device)
    return x, dy, y_fwd


def bench_speed_std_mean(input: SingleBenchmarkRunInput) -> SingleBenchmarkRunOutput:
    mode = input.kernel_operation_mode
    x, dy, y_fwd = _make_fwd(input)
    rep = config.benchmark_rep_ms

    # Warm-up run to deal with GPU initialization overhead
    for _ in range(config.benchmark_warmup_runs):
        y_fwd()
    torch.cuda.synchronize()

    if mode == "forward":
        ms_50, ms_20, ms_80 = triton.testing.do_bench(
            y_fwd,
            quantiles=QUANTILES,
            grad_to_none=[x],
            rep=rep,
        )
    elif mode == "backward":
        y = y_fwd()
        ms_50, ms_20, ms_80 = triton.testing.do_bench(
            lambda: y.backward(dy, retain_graph=True),
            quantiles=QUANTILES,
            grad_to_none=[x],
            rep=rep,
        )
    elif mode == "full":
        def full():
            y = y_fwd()
            y.backward(dy)

        ms_50, ms_20, ms_80 = triton.testing.do_bench(
            full,
            quantiles=QUANTILES,
            grad_to_none=[x],
            rep=rep,
        )
    else:
        raise ValueError(f"Unknown kernel operation mode {mode}")

    # Fail fast if Triton produced any None metrics
    if any(val is None for val in (ms_20, ms_50, ms_80)):
        raise RuntimeError(
            f"Benchmark speed result is None: ms_20={ms_20}, ms_50={ms_50}, ms_80={ms_80}"
        )

    return SingleBenchmarkRunOutput(y_20=ms_20, y_50=ms_50, y_80=ms_80)


def bench_memory_std_mean(input: SingleBenchmarkRunInput) -> SingleBenchmarkRunOutput:
    x, dy, y_fwd = _make_fwd(input)

    def full():
        y = y_fwd()
        y.backward(dy)

    mem_50, mem_20, mem_80 = _test_memory(full, quantiles=QUANTILES)
    return SingleBenchmarkRunOutput(
        y_20=mem_20,
        y_50=mem_50,
        y_80=mem_80,
    )


if __name__ == "__main__":
    if device != "cuda":
        raise SystemExit("benchmark_std_mean requires a CUDA device")

    args = parse_benchmark_script_args()

    common_configs = {
        "kernel_name": "std_mean",
        "x_name": "N",
        "x_label": "reduced size",
        "x_values": [2**i for i in range(10, 15)],
        "kernel_providers": ["custom", "torch"],
        "extra_benchmark_configs": [{"M": 4096, "dtype": torch.float32}],
        "overwrite": args.overwrite,
    }

    run_benchmarks(
        bench_test_fn=bench_speed_std_mean,
        kernel_operation_modes=["forward", "backward", "full"],
        metric_name="speed",
        metric_unit="ms",
        **common_configs,
    )
    run_benchmarks(
        bench_test_fn=bench_memory_std_mean,
        kernel_operation_modes=["full"],
        metric_name="memory",
        metric_unit="MB",
        **common_configs,
    )
