# Reduction kernels that stay on the accelerator where fused ops would fall back to CPU
from .exceptions import InvalidAxis, InvalidReductionSize, StatKernelError
from .std_mean.Functional.std_mean import (
    StdMean,
    StdMeanResult,
    VarMeanResult,
    compute_mean_and_std,
    compute_std_only,
    compute_var_and_mean,
)

__all__ = [
    "InvalidAxis",
    "InvalidReductionSize",
    "StatKernelError",
    "StdMean",
    "StdMeanResult",
    "VarMeanResult",
    "compute_mean_and_std",
    "compute_std_only",
    "compute_var_and_mean",
]
