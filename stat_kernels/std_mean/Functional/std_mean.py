from typing import NamedTuple, Optional, Tuple

import torch
import torch.nn as nn

from stat_kernels.std_mean.std_mean import (
    Axes,
    StdFromVarFunction,
    kernel_var_mean,
    normalize_axes,
    output_shape,
    reduced_numel,
    resolve_correction,
)
from utils.config import SMALL_SAMPLE_POLICIES, config
from utils.logging_utils import get_logger

logger = get_logger(__name__)


class StdMeanResult(NamedTuple):
    std: torch.Tensor
    mean: torch.Tensor


class VarMeanResult(NamedTuple):
    var: torch.Tensor
    mean: torch.Tensor


def _decomposed_var_mean(
    x: torch.Tensor,
    dims: Tuple[int, ...],
    correction: int,
    keep_dims: bool,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Variance and mean from primitives every backend implements natively.

    mean -> subtract -> square -> sum -> divide. No fused std/var kernel is
    involved, so nothing is routed to the CPU on backends that lack one.
    """
    n = reduced_numel(x.shape, dims)
    compute_dtype = torch.float32 if x.dtype in [torch.float16, torch.bfloat16] else x.dtype
    xc = x.to(compute_dtype)

    mean = torch.mean(xc, dim=dims, keepdim=True)
    centered = xc - mean
    var = torch.sum(centered * centered, dim=dims, keepdim=True) / (n - correction)

    if not keep_dims:
        shape = output_shape(x.shape, dims, keep_dims=False)
        var = var.reshape(shape)
        mean = mean.reshape(shape)
    return var, mean


def _var_mean(
    tensor: torch.Tensor,
    axes: Axes,
    keep_dims: bool,
    correction: int,
    small_sample: Optional[str],
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Validated ``(var, mean)``, float32 for half-precision inputs, else the input dtype."""
    if not isinstance(tensor, torch.Tensor):
        raise TypeError(f"Expected a torch.Tensor, got {type(tensor).__name__}")
    if not tensor.is_floating_point():
        raise TypeError(f"std/mean needs a floating-point tensor, got {tensor.dtype}")
    if isinstance(correction, bool) or not isinstance(correction, int) or correction < 0:
        raise ValueError(f"correction must be a non-negative int, got {correction!r}")

    policy = config.small_sample_policy if small_sample is None else small_sample
    if policy not in SMALL_SAMPLE_POLICIES:
        raise ValueError(f"small_sample must be one of {SMALL_SAMPLE_POLICIES}, got {policy!r}")

    dims = normalize_axes(axes, tensor.dim())
    correction = resolve_correction(reduced_numel(tensor.shape, dims), correction, policy)

    out = kernel_var_mean(tensor, dims, correction, keep_dims)
    if out is not None:
        return out

    logger.debug("std/mean on %s via decomposed path, dims=%s", tensor.device, dims)
    return _decomposed_var_mean(tensor, dims, correction, keep_dims)


def _std_mean(var: torch.Tensor, mean: torch.Tensor, eps: Optional[float], dtype: torch.dtype) -> StdMeanResult:
    eps = config.std_mean_eps if eps is None else eps
    if eps < 0:
        raise ValueError(f"eps must be non-negative, got {eps}")
    if eps:
        var = var + eps
    # sqrt before the cast: var overflows float16 well before std does
    std = StdFromVarFunction.apply(var)
    return StdMeanResult(std.to(dtype), mean.to(dtype))


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def compute_var_and_mean(
    tensor: torch.Tensor,
    axes: Axes,
    keep_dims: bool = False,
    unbiased: bool = True,
    small_sample: Optional[str] = None,
) -> VarMeanResult:
    """Variance and mean of ``tensor`` over ``axes`` – replacement for ``torch.var_mean``."""
    var, mean = _var_mean(tensor, axes, keep_dims, 1 if unbiased else 0, small_sample)
    return VarMeanResult(var.to(tensor.dtype), mean.to(tensor.dtype))


def compute_mean_and_std(
    tensor: torch.Tensor,
    axes: Axes,
    keep_dims: bool = False,
    unbiased: bool = True,
    eps: Optional[float] = None,
    small_sample: Optional[str] = None,
) -> StdMeanResult:
    """Standard deviation and mean of ``tensor`` over ``axes``.

    Equivalent to ``torch.std_mean(tensor, dim=axes, correction=int(unbiased),
    keepdim=keep_dims)`` but built from mean/sum/sqrt only, so it stays on
    the tensor's device for backends without a fused std/mean operator.

    Args:
        tensor: floating-point tensor.
        axes: dimension or dimensions to reduce; ``None`` reduces all of them.
        keep_dims: keep reduced dimensions with size 1 for broadcasting.
        unbiased: divide by ``N - 1`` instead of ``N``.
        eps: added to the variance before the square root. Defaults to the
            ``STD_MEAN_EPS`` config value.
        small_sample: ``"raise"`` or ``"biased"``, applied when too few
            elements are reduced for an unbiased estimate. Defaults to the
            ``SMALL_SAMPLE_POLICY`` config value.

    Returns:
        ``StdMeanResult(std, mean)``, both of the same shape and dtype.

    Raises:
        InvalidAxis: an axis is out of range or repeated.
        InvalidReductionSize: too few elements for the requested estimate.
    """
    var, mean = _var_mean(tensor, axes, keep_dims, 1 if unbiased else 0, small_sample)
    return _std_mean(var, mean, eps, tensor.dtype)


def compute_std_only(
    tensor: torch.Tensor,
    axes: Axes,
    keep_dims: bool = False,
    unbiased: bool = True,
    eps: Optional[float] = None,
    small_sample: Optional[str] = None,
) -> torch.Tensor:
    """Standard deviation only, e.g. when the spread is used as a threshold."""
    return compute_mean_and_std(tensor, axes, keep_dims, unbiased, eps, small_sample).std


def std_mean(
    input: torch.Tensor,
    dim: Axes = None,
    *,
    correction: int = 1,
    keepdim: bool = False,
    eps: float = 0.0,
) -> StdMeanResult:
    """Drop-in for ``torch.std_mean`` with PyTorch's argument names."""
    var, mean = _var_mean(input, dim, keepdim, correction, small_sample=None)
    return _std_mean(var, mean, eps, input.dtype)


class StdMean(nn.Module):
    def __init__(self, dim: Axes, unbiased: bool = True, keepdim: bool = False, eps: float = 0.0):
        super().__init__()
        if eps < 0:
            raise ValueError(f"eps must be non-negative, got {eps}")
        self.dim = dim
        self.unbiased = unbiased
        self.keepdim = keepdim
        self.eps = eps

    def forward(self, x: torch.Tensor) -> StdMeanResult:
        """Returns ``(std, mean)`` of ``x`` over ``self.dim``.

        On CUDA the custom two-pass kernel computes the statistics; on every
        other device they are decomposed into mean/sum/sqrt primitives.
        """
        return compute_mean_and_std(
            x,
            self.dim,
            keep_dims=self.keepdim,
            unbiased=self.unbiased,
            eps=self.eps,
        )

    def extra_repr(self):
        return f"dim={self.dim}, unbiased={self.unbiased}, keepdim={self.keepdim}, eps={self.eps}"
