import math
import operator
import torch
from utils.config import config
from utils.logging_utils import get_logger
from utils.utils import ensure_contiguous
from torch.utils.cpp_extension import load_inline
from typing import Optional, Sequence, Tuple, Union

from stat_kernels.exceptions import InvalidAxis, InvalidReductionSize

logger = get_logger(__name__)

Axes = Union[int, Sequence[int], None]

# -----------------------------------------------------------------------------
# Inline CUDA kernel – two-pass row-wise variance + mean (forward only)
# -----------------------------------------------------------------------------

_CUDA_SRC = r"""
#include <torch/extension.h>
#include <ATen/cuda/CUDAContext.h>  // for at::cuda::getCurrentCUDAStream
#include <cuda.h>
#include <cuda_runtime.h>
// ---------------------------------- utils ----------------------------------
template <typename T>
__inline__ __device__ T warp_reduce_sum(T val) {
    for (int offset = 16; offset > 0; offset >>= 1)
        val += __shfl_down_sync(0xffffffff, val, offset);
    return val;
}

// Sum across the whole block. Every thread receives the total.
// `shared` must hold 32 floats; it is free again when this returns.
__inline__ __device__ float block_reduce_sum(float val, float *shared) {
    const int lane = threadIdx.x & 31;
    const int warp_id = threadIdx.x >> 5;
    const int n_warp = blockDim.x >> 5;

    val = warp_reduce_sum(val);
    if (lane == 0) shared[warp_id] = val;
    __syncthreads();

    if (warp_id == 0) {
        val = (lane < n_warp) ? shared[lane] : 0.f;
        val = warp_reduce_sum(val);
        if (lane == 0) shared[0] = val;
    }
    __syncthreads();

    const float total = shared[0];
    __syncthreads();
    return total;
}

// --------------------------------- forward ---------------------------------

template <typename scalar_t>
__global__ void var_mean_forward_kernel(
        const scalar_t * __restrict__ X,
        float * __restrict__ var,
        float * __restrict__ mean,
        const int N,
        const int correction) {
    const int row = blockIdx.x;                     // one row per block
    const int tid = threadIdx.x;

    extern __shared__ float shared[];             // 32 floats
    const scalar_t *row_x = X + row * (long)N;

    // 1) mean
    float sum = 0.0f;
    for (int col = tid; col < N; col += blockDim.x) {
        sum += static_cast<float>(row_x[col]);
    }
    sum = block_reduce_sum(sum, shared);
    const float mu = sum / N;

    // 2) squared deviations from the mean (second pass, no cancellation)
    float sq = 0.0f;
    for (int col = tid; col < N; col += blockDim.x) {
        const float d = static_cast<float>(row_x[col]) - mu;
        sq += d * d;
    }
    sq = block_reduce_sum(sq, shared);

    if (tid == 0) {
        mean[row] = mu;
        var[row]  = sq / static_cast<float>(N - correction);
    }
}

// ----------------------------- C++ launchers -------------------------------

void var_mean_forward(
        torch::Tensor X,
        torch::Tensor var,
        torch::Tensor mean,
        const int correction) {
    const int rows = X.size(0);
    const int N = X.size(1);
    const int BLOCK = 256;
    const int SHMEM = 32 * sizeof(float);

    dim3 grid(rows);
    dim3 block(BLOCK);

    AT_DISPATCH_FLOATING_TYPES_AND2(at::ScalarType::Half, at::ScalarType::BFloat16,
                                    X.scalar_type(), "var_mean_forward_kernel", ([&] {
        var_mean_forward_kernel<scalar_t><<<grid, block, SHMEM, at::cuda::getCurrentCUDAStream()>>>(
            X.data_ptr<scalar_t>(),
            var.data_ptr<float>(),
            mean.data_ptr<float>(),
            N,
            correction);
    }));
}

// ----------------------------- PyBind bindings -----------------------------

PYBIND11_MODULE(TORCH_EXTENSION_NAME, m) {
    m.def("var_mean_forward", &var_mean_forward, "Two-pass variance + mean (CUDA)");
}
"""


def _compile_extension():
    if not torch.cuda.is_available():
        # No compilation without CUDA; callers take the decomposed path.
        return None
    if not config.use_cuda_kernel:
        logger.debug("USE_CUDA_KERNEL is off, skipping std/mean kernel compilation")
        return None
    try:
        module = load_inline(
            name="stat_kernels_var_mean_cuda",
            cpp_sources="",
            cuda_sources=_CUDA_SRC,
            extra_cuda_cflags=["-O3"],
            verbose=False,
        )
    except (RuntimeError, OSError) as e:
        logger.warning("Failed to compile std/mean CUDA kernel, using decomposed path: %s", e)
        return None
    logger.debug("Compiled std/mean CUDA kernel")
    return module


# Compile & load the extension exactly once per process
_var_mean_cuda = _compile_extension()


def kernel_available() -> bool:
    return _var_mean_cuda is not None


# -----------------------------------------------------------------------------
# Reduction geometry
# -----------------------------------------------------------------------------

def normalize_axes(axes: Axes, ndim: int) -> Tuple[int, ...]:
    """Map ``axes`` onto sorted, non-negative dimension indices.

    ``None`` selects every dimension. Negative indices count from the end, as
    in PyTorch. Raises :class:`InvalidAxis` on out-of-range, repeated or
    missing axes.
    """
    if axes is None:
        if ndim == 0:
            raise InvalidAxis("cannot reduce a 0-dimensional tensor", axes=axes, ndim=ndim)
        return tuple(range(ndim))

    if isinstance(axes, (list, tuple, range)):
        axes = tuple(axes)
    else:
        axes = (axes,)
    if not axes:
        raise InvalidAxis("at least one reduction axis is required", axes=axes, ndim=ndim)

    normalized = []
    for axis in axes:
        if isinstance(axis, (bool, torch.Tensor)):
            raise InvalidAxis(f"axis must be an int, got {type(axis).__name__}", axes=axes, ndim=ndim)
        try:
            axis = operator.index(axis)
        except TypeError:
            raise InvalidAxis(
                f"axis must be an int, got {type(axis).__name__}", axes=axes, ndim=ndim
            ) from None
        if not -ndim <= axis < ndim:
            raise InvalidAxis(
                f"axis {axis} is out of range for a tensor of rank {ndim}", axes=axes, ndim=ndim
            )
        normalized.append(axis % ndim)

    if len(set(normalized)) != len(normalized):
        raise InvalidAxis(f"axes {axes} contain a repeated dimension", axes=axes, ndim=ndim)
    return tuple(sorted(normalized))


def reduced_numel(shape: Sequence[int], dims: Sequence[int]) -> int:
    return math.prod(shape[d] for d in dims)


def output_shape(shape: Sequence[int], dims: Sequence[int], keep_dims: bool) -> Tuple[int, ...]:
    if keep_dims:
        return tuple(1 if d in dims else size for d, size in enumerate(shape))
    return tuple(size for d, size in enumerate(shape) if d not in dims)


def resolve_correction(n: int, correction: int, small_sample: str) -> int:
    """Return the correction to use for ``n`` reduced elements.

    With fewer than ``correction + 1`` elements the ``small_sample`` policy
    decides: ``raise`` rejects the call, ``biased`` falls back to ``0``.
    """
    if n == 0:
        raise InvalidReductionSize("cannot reduce over zero elements", n=n, correction=correction)
    if n - correction > 0:
        return correction
    if small_sample == "biased":
        logger.warning(
            "Reducing %d element(s) with correction=%d; falling back to biased estimate", n, correction
        )
        return 0
    raise InvalidReductionSize(
        f"unbiased estimate with correction={correction} needs more than {correction} "
        f"element(s), got {n}",
        n=n,
        correction=correction,
    )


def _flatten_reduction(x: torch.Tensor, dims: Tuple[int, ...]) -> torch.Tensor:
    """Move reduced dims last and flatten to ``(rows, N)`` – one row per output element."""
    kept = [d for d in range(x.dim()) if d not in dims]
    n = reduced_numel(x.shape, dims)
    return x.permute(*kept, *dims).contiguous().view(-1, n)


# -----------------------------------------------------------------------------
# Python helpers wrapping the compiled kernel
# -----------------------------------------------------------------------------

def _var_mean_forward(x_2d: torch.Tensor, correction: int) -> Tuple[torch.Tensor, torch.Tensor]:
    rows = x_2d.size(0)
    var = torch.empty(rows, device=x_2d.device, dtype=torch.float32)
    mean = torch.empty_like(var)

    _var_mean_cuda.var_mean_forward(x_2d, var, mean, int(correction))
    return var, mean


def _var_mean_backward(
    grad_var: torch.Tensor,
    grad_mean: torch.Tensor,
    x_2d: torch.Tensor,
    mean: torch.Tensor,
    correction: int,
) -> torch.Tensor:
    """
    For var = sum((x - mu)^2) / (N - c) and mu = sum(x) / N:
    - d var / d x_i = 2 (x_i - mu) / (N - c)   (the mu term sums to zero)
    - d mu  / d x_i = 1 / N
    """
    n = x_2d.size(1)
    compute_dtype = torch.float32 if x_2d.dtype in [torch.float16, torch.bfloat16] else x_2d.dtype

    centered = x_2d.to(compute_dtype) - mean.to(compute_dtype).unsqueeze(1)
    grad_x = grad_var.to(compute_dtype).unsqueeze(1) * centered * (2.0 / (n - correction))
    grad_x = grad_x + grad_mean.to(compute_dtype).unsqueeze(1) / n
    return grad_x.to(x_2d.dtype)


# -----------------------------------------------------------------------------
# Autograd interface
# -----------------------------------------------------------------------------

class VarMeanFunction(torch.autograd.Function):
    """Row-wise ``(var, mean)`` of a contiguous 2-D CUDA tensor, in float32."""

    @staticmethod
    @ensure_contiguous
    def forward(ctx, x_2d: torch.Tensor, correction: int):
        var, mean = _var_mean_forward(x_2d, correction)
        ctx.save_for_backward(x_2d, mean)
        ctx.correction = correction
        return var, mean

    @staticmethod
    @ensure_contiguous
    def backward(ctx, grad_var: torch.Tensor, grad_mean: torch.Tensor):
        x_2d, mean = ctx.saved_tensors
        grad_x = _var_mean_backward(grad_var, grad_mean, x_2d, mean, ctx.correction)
        return grad_x, None


class StdFromVarFunction(torch.autograd.Function):
    """``sqrt(var)`` whose gradient is zero where the result is zero.

    Matches the std backward of ``torch.std_mean``: constant rows get a zero
    gradient instead of ``inf * 0``.
    """

    @staticmethod
    def forward(ctx, var: torch.Tensor):
        std = torch.sqrt(var)
        ctx.save_for_backward(std)
        return std

    @staticmethod
    def backward(ctx, grad_std: torch.Tensor):
        std, = ctx.saved_tensors
        grad_var = grad_std / (2 * std)
        return grad_var.masked_fill(std == 0, 0)


def kernel_var_mean(
    x: torch.Tensor,
    dims: Tuple[int, ...],
    correction: int,
    keep_dims: bool,
) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
    """Run the CUDA kernel over ``dims``; ``None`` when it cannot serve the call."""
    if _var_mean_cuda is None or not x.is_cuda or x.dtype == torch.float64:
        return None
    x_2d = _flatten_reduction(x, dims)
    if x_2d.size(0) == 0:
        return None

    var, mean = VarMeanFunction.apply(x_2d, correction)
    shape = output_shape(x.shape, dims, keep_dims)
    return var.view(shape), mean.view(shape)
