import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import logging

import numpy as np
import pytest
import torch

import utils.config as config_module
from evals.utils import assert_verbose_allclose
from evals.utils import set_seed
from evals.utils import supports_bfloat16

from stat_kernels.exceptions import InvalidAxis, InvalidReductionSize, StatKernelError
from stat_kernels.std_mean.std_mean import kernel_available, normalize_axes
from stat_kernels.std_mean.Functional.std_mean import (
    StdMean,
    _decomposed_var_mean,
    compute_mean_and_std,
    compute_std_only,
    compute_var_and_mean,
    std_mean,
)
from utils.utils import infer_device

device = infer_device()
set_seed()


@pytest.mark.parametrize(
    "shape, axes",
    [
        ((2, 8, 64), (2,)),
        ((4, 16, 32), (1, 2)),
        ((3, 7, 5), (0,)),  # Prime sizes, reduce the leading dim
        ((1, 4, 2, 2), (1, 2, 3)),
        ((2, 3, 4, 5), (-1, 0)),  # Negative + non-adjacent axes
        ((17,), (0,)),  # Full reduction to a scalar
        ((1, 1023), (1,)),  # Near power-of-2 row
    ],
)
@pytest.mark.parametrize("keep_dims", [True, False])
@pytest.mark.parametrize("unbiased", [True, False])
@pytest.mark.parametrize(
    "dtype, atol, rtol",
    [
        (torch.float32, 1e-5, 1e-5),
    ],
)
def test_std_mean_matches_torch(shape, axes, keep_dims, unbiased, dtype, atol, rtol) -> None:
    """Values and gradients agree with the fused torch.std_mean reference."""
    torch.manual_seed(0)

    x = torch.randn(*shape, dtype=dtype)
    custom_x = x.clone().to(device).requires_grad_(True)
    torch_x = x.clone().requires_grad_(True)

    std, mean = compute_mean_and_std(custom_x, axes, keep_dims=keep_dims, unbiased=unbiased)
    ref_std, ref_mean = torch.std_mean(torch_x, dim=axes, correction=int(unbiased), keepdim=keep_dims)

    assert std.shape == ref_std.shape
    assert mean.shape == ref_mean.shape
    assert_verbose_allclose(std, ref_std, atol=atol, rtol=rtol, extra_info=f"std mismatch for {shape}, axes={axes}")
    assert_verbose_allclose(mean, ref_mean, atol=atol, rtol=rtol, extra_info=f"mean mismatch for {shape}, axes={axes}")

    grad_std = torch.randn_like(ref_std)
    grad_mean = torch.randn_like(ref_mean)
    ((std * grad_std.to(device)).sum() + (mean * grad_mean.to(device)).sum()).backward()
    ((ref_std * grad_std).sum() + (ref_mean * grad_mean).sum()).backward()

    assert_verbose_allclose(
        custom_x.grad,
        torch_x.grad,
        atol=1e-5,
        rtol=1e-4,
        extra_info=f"input gradient mismatch for {shape}, axes={axes}",
    )


@pytest.mark.parametrize(
    "dtype, atol, rtol",
    [
        (torch.float16, 1e-2, 1e-2),
        pytest.param(
            torch.bfloat16,
            5e-2,
            5e-2,
            marks=pytest.mark.skipif(
                not supports_bfloat16(),
                reason="bfloat16 not supported on this device",
            ),
        ),
    ],
)
def test_std_mean_low_precision(dtype, atol, rtol) -> None:
    torch.manual_seed(0)
    x = torch.randn(4, 16, 128)

    std, mean = compute_mean_and_std(x.to(dtype).to(device), (1, 2))
    ref_std, ref_mean = torch.std_mean(x.to(dtype).float(), dim=(1, 2))

    assert std.dtype == dtype
    assert mean.dtype == dtype
    assert_verbose_allclose(std.float(), ref_std, atol=atol, rtol=rtol)
    assert_verbose_allclose(mean.float(), ref_mean, atol=atol, rtol=rtol)


@pytest.mark.parametrize("axes", [(0,), (1, 2), (0, 1, 2), (2,)])
@pytest.mark.parametrize("unbiased", [True, False])
def test_mathematical_properties(axes, unbiased) -> None:
    """Mean and variance agree with an independent NumPy two-pass computation."""
    x = torch.randn(5, 6, 7, dtype=torch.float64)
    x_np = x.numpy()
    ddof = 1 if unbiased else 0

    std, mean = compute_mean_and_std(x, axes, keep_dims=False, unbiased=unbiased)

    expected_mean = x_np.mean(axis=axes)
    expected_var = ((x_np - x_np.mean(axis=axes, keepdims=True)) ** 2).sum(axis=axes) / (
        np.prod([x_np.shape[a] for a in axes]) - ddof
    )

    np.testing.assert_allclose(mean.numpy(), expected_mean, rtol=1e-6, atol=1e-12)
    np.testing.assert_allclose((std ** 2).numpy(), expected_var, rtol=1e-6, atol=1e-12)
    np.testing.assert_allclose((std ** 2).numpy(), np.var(x_np, axis=axes, ddof=ddof), rtol=1e-6)


def test_unbiased_is_rescaled_biased() -> None:
    x = torch.randn(3, 10, dtype=torch.float64)
    n = 10

    var_unbiased, _ = compute_var_and_mean(x, 1, unbiased=True)
    var_biased, _ = compute_var_and_mean(x, 1, unbiased=False)

    assert_verbose_allclose(var_unbiased, var_biased * n / (n - 1), rtol=1e-12, atol=1e-12)


@pytest.mark.parametrize(
    "shape, axes, keep_shape, drop_shape",
    [
        ((2, 3, 4), (1,), (2, 1, 4), (2, 4)),
        ((2, 3, 4), (0, 2), (1, 3, 1), (3,)),
        ((2, 3, 4), (0, 1, 2), (1, 1, 1), ()),
        ((5,), (0,), (1,), ()),
    ],
)
def test_output_shapes(shape, axes, keep_shape, drop_shape) -> None:
    x = torch.randn(*shape, device=device)

    kept = compute_mean_and_std(x, axes, keep_dims=True)
    dropped = compute_mean_and_std(x, axes, keep_dims=False)

    assert kept.std.shape == kept.mean.shape == keep_shape
    assert dropped.std.shape == dropped.mean.shape == drop_shape
    assert len(kept.std.shape) == x.dim()
    assert len(dropped.std.shape) == x.dim() - len(axes)


def test_constant_input_has_zero_spread() -> None:
    x = torch.full((1, 4, 2, 2), 3.0, device=device)

    std, mean = compute_mean_and_std(x, (1, 2, 3), eps=0.0)
    var, _ = compute_var_and_mean(x, (1, 2, 3))

    assert mean.shape == (1,)
    assert torch.all(mean.cpu() == 3.0)
    assert torch.all(var.cpu() == 0.0)
    assert torch.all(std.cpu() == 0.0)


def test_constant_input_gradient_is_finite() -> None:
    x = torch.full((2, 4), 3.0)
    custom_x = x.clone().to(device).requires_grad_(True)
    torch_x = x.clone().requires_grad_(True)

    std, mean = std_mean(custom_x, dim=1)
    (std.sum() + mean.sum()).backward()
    ref_std, ref_mean = torch.std_mean(torch_x, dim=1)
    (ref_std.sum() + ref_mean.sum()).backward()

    assert torch.all(torch.isfinite(custom_x.grad.cpu()))
    assert_verbose_allclose(custom_x.grad, torch_x.grad, atol=1e-6, rtol=1e-6)

    other_x = x.clone().to(device).requires_grad_(True)
    compute_std_only(other_x, (0, 1), eps=0.0).backward()
    assert torch.all(other_x.grad.cpu() == 0.0)


def test_constant_input_with_eps_guard() -> None:
    eps = 1e-5
    x = torch.full((1, 4, 2, 2), 3.0, device=device)

    std, mean = compute_mean_and_std(x, (1, 2, 3), keep_dims=True, eps=eps)

    assert std.shape == (1, 1, 1, 1)
    assert torch.all(std.cpu() > 0)
    assert_verbose_allclose(std, torch.full((1, 1, 1, 1), eps ** 0.5), atol=1e-7, rtol=1e-5)
    assert_verbose_allclose(mean, torch.full((1, 1, 1, 1), 3.0))


def test_small_vector_unbiased() -> None:
    x = torch.tensor([1.0, 2.0, 3.0, 4.0], device=device)

    std, mean = compute_mean_and_std(x, 0)
    var, _ = compute_var_and_mean(x, 0)

    assert mean.item() == pytest.approx(2.5)
    assert var.item() == pytest.approx(5.0 / 3.0, rel=1e-6)
    assert std.item() == pytest.approx(1.2909944, rel=1e-6)


def test_float16_large_spread_does_not_overflow() -> None:
    x = torch.tensor([-300.0, 300.0], dtype=torch.float16)

    std, mean = compute_mean_and_std(x.to(device), 0)
    drop_in_std, _ = std_mean(x.to(device), dim=0)
    ref_std, ref_mean = torch.std_mean(x.float(), dim=0)

    assert std.dtype == torch.float16
    assert torch.isfinite(std.cpu())
    assert_verbose_allclose(std.float(), ref_std, atol=0.0, rtol=1e-3)
    assert_verbose_allclose(drop_in_std.float(), ref_std, atol=0.0, rtol=1e-3)
    assert_verbose_allclose(mean.float(), ref_mean, atol=1e-3, rtol=0.0)


def test_repeated_calls_are_identical() -> None:
    torch.manual_seed(0)
    x = torch.randn(8, 32, 16, device=device)

    first = compute_mean_and_std(x, (0, 2), keep_dims=True)
    second = compute_mean_and_std(x, (0, 2), keep_dims=True)

    assert torch.equal(first.std, second.std)
    assert torch.equal(first.mean, second.mean)
    assert torch.equal(compute_std_only(x, (0, 2), keep_dims=True), first.std)


def test_std_only_matches_pair() -> None:
    x = torch.randn(4, 9, device=device)

    std = compute_std_only(x, 1, unbiased=False, eps=1e-6)
    pair = compute_mean_and_std(x, 1, unbiased=False, eps=1e-6)

    assert torch.equal(std, pair.std)


@pytest.mark.parametrize("correction", [0, 1, 2])
def test_drop_in_std_mean(correction) -> None:
    torch.manual_seed(0)
    x = torch.randn(6, 10)

    std, mean = std_mean(x.to(device), dim=1, correction=correction, keepdim=True)
    ref_std, ref_mean = torch.std_mean(x, dim=1, correction=correction, keepdim=True)

    assert_verbose_allclose(std, ref_std, atol=1e-5, rtol=1e-5)
    assert_verbose_allclose(mean, ref_mean, atol=1e-5, rtol=1e-5)


def test_reduce_all_axes_when_none() -> None:
    x = torch.randn(3, 4, 5)

    std, mean = compute_mean_and_std(x, None)
    ref_std, ref_mean = torch.std_mean(x)

    assert std.shape == ()
    assert_verbose_allclose(std, ref_std, atol=1e-6, rtol=1e-5)
    assert_verbose_allclose(mean, ref_mean, atol=1e-6, rtol=1e-5)


def test_empty_output_rows() -> None:
    x = torch.randn(0, 4, device=device)

    std, mean = compute_mean_and_std(x, 1)

    assert std.shape == mean.shape == (0,)


def test_decomposed_path_avoids_fused_primitives(monkeypatch) -> None:
    """CPU path must not touch the fused std/var ops that trigger backend fallbacks."""

    def _fused_called(*args, **kwargs):
        raise AssertionError("fused std/var primitive was called")

    for name in ("std_mean", "var_mean", "std", "var"):
        monkeypatch.setattr(torch, name, _fused_called)

    x = torch.randn(4, 8, 3)
    std, mean = compute_mean_and_std(x, (1, 2), keep_dims=True)
    assert std.shape == mean.shape == (4, 1, 1)


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "axes",
    [
        (3,),  # Out of range
        (-4,),  # Out of range, negative
        (0, 0),  # Repeated
        (1, -2),  # Repeated after normalisation
        (),  # Empty
        (1.0,),  # Not an int
        5.5,  # Scalar float
        torch.tensor(1),  # 0-d tensor
        np.float64(1.0),
        True,  # bool is not an axis
    ],
)
def test_invalid_axis(axes) -> None:
    x = torch.randn(2, 3, 4)
    with pytest.raises(InvalidAxis):
        compute_mean_and_std(x, axes)


def test_invalid_axis_on_scalar_tensor() -> None:
    with pytest.raises(InvalidAxis):
        compute_mean_and_std(torch.tensor(1.0), 0)
    with pytest.raises(InvalidAxis):
        compute_mean_and_std(torch.tensor(1.0), None)


def test_errors_are_value_errors() -> None:
    assert issubclass(InvalidAxis, StatKernelError)
    assert issubclass(InvalidReductionSize, ValueError)


def test_unbiased_single_element_raises() -> None:
    x = torch.randn(1, 5, device=device)
    with pytest.raises(InvalidReductionSize) as excinfo:
        compute_mean_and_std(x, 0, unbiased=True, small_sample="raise")
    assert excinfo.value.n == 1
    assert excinfo.value.correction == 1


def test_unbiased_single_element_biased_fallback(caplog) -> None:
    x = torch.randn(1, 5, device=device)

    with caplog.at_level(logging.WARNING, logger="stat_kernels"):
        std, mean = compute_mean_and_std(x, 0, unbiased=True, small_sample="biased")

    assert torch.all(std.cpu() == 0.0)
    assert_verbose_allclose(mean, x[0])
    assert any("biased" in record.getMessage() for record in caplog.records)


def test_biased_single_element_is_valid() -> None:
    x = torch.randn(1, 5, device=device)
    std, _ = compute_mean_and_std(x, 0, unbiased=False)
    assert torch.all(std.cpu() == 0.0)


def test_zero_elements_always_raise() -> None:
    x = torch.randn(3, 0)
    with pytest.raises(InvalidReductionSize):
        compute_mean_and_std(x, 1, unbiased=False, small_sample="biased")


def test_invalid_arguments() -> None:
    x = torch.randn(2, 3)
    with pytest.raises(TypeError):
        compute_mean_and_std(torch.arange(6).view(2, 3), 1)
    with pytest.raises(TypeError):
        compute_mean_and_std([1.0, 2.0], 0)
    with pytest.raises(ValueError):
        compute_mean_and_std(x, 1, eps=-1.0)
    with pytest.raises(ValueError):
        compute_mean_and_std(x, 1, small_sample="ignore")
    with pytest.raises(ValueError):
        std_mean(x, 1, correction=-1)


def test_normalize_axes() -> None:
    assert normalize_axes(-1, 3) == (2,)
    assert normalize_axes((2, 0), 3) == (0, 2)
    assert normalize_axes(None, 2) == (0, 1)
    assert normalize_axes(np.int64(1), 3) == (1,)
    assert normalize_axes([np.int32(-1), 0], 3) == (0, 2)
    assert normalize_axes(range(2), 3) == (0, 1)


def test_numpy_integer_axis() -> None:
    x = torch.randn(3, 5)

    std, mean = compute_mean_and_std(x, np.int64(1))
    ref_std, ref_mean = torch.std_mean(x, dim=1)

    assert_verbose_allclose(std, ref_std, atol=1e-6, rtol=1e-5)
    assert_verbose_allclose(mean, ref_mean, atol=1e-6, rtol=1e-5)


# -----------------------------------------------------------------------------
# Config integration
# -----------------------------------------------------------------------------

def test_eps_default_comes_from_config(monkeypatch) -> None:
    monkeypatch.setitem(config_module._YAML_CONFIG, "STD_MEAN_EPS", 1e-4)
    x = torch.full((2, 8), 1.5, device=device)

    std = compute_std_only(x, 1)

    assert_verbose_allclose(std, torch.full((2,), 1e-2), atol=1e-7, rtol=1e-5)


def test_small_sample_policy_from_config(monkeypatch) -> None:
    monkeypatch.setitem(config_module._YAML_CONFIG, "SMALL_SAMPLE_POLICY", "biased")
    x = torch.randn(1, 3, device=device)

    std, _ = compute_mean_and_std(x, 0)

    assert torch.all(std.cpu() == 0.0)


def test_malformed_config_values_fall_back(monkeypatch) -> None:
    monkeypatch.setitem(config_module._YAML_CONFIG, "STD_MEAN_EPS", "not-a-number")
    monkeypatch.setitem(config_module._YAML_CONFIG, "SMALL_SAMPLE_POLICY", "sometimes")
    monkeypatch.setitem(config_module._YAML_CONFIG, "USE_CUDA_KERNEL", "maybe")

    assert config_module.config.std_mean_eps == 0.0
    assert config_module.config.small_sample_policy == "raise"
    assert config_module.config.use_cuda_kernel is True


# -----------------------------------------------------------------------------
# Module + CUDA kernel
# -----------------------------------------------------------------------------

def test_std_mean_module() -> None:
    x = torch.randn(2, 6, 4, device=device)
    module = StdMean(dim=(1, 2), unbiased=False, keepdim=True, eps=1e-6)

    std, mean = module(x)
    ref = compute_mean_and_std(x, (1, 2), keep_dims=True, unbiased=False, eps=1e-6)

    assert torch.equal(std, ref.std)
    assert torch.equal(mean, ref.mean)
    assert module.extra_repr() == "dim=(1, 2), unbiased=False, keepdim=True, eps=1e-06"


def test_std_mean_module_rejects_negative_eps() -> None:
    with pytest.raises(ValueError):
        StdMean(dim=0, eps=-1e-3)


@pytest.mark.skipif(not kernel_available(), reason="CUDA kernel requires CUDA")
@pytest.mark.parametrize(
    "shape, axes",
    [
        ((4096, 1024), (1,)),
        ((2, 100_000), (1,)),  # Long rows, many loop iterations per thread
        ((64, 3), (1,)),  # Rows shorter than a warp
        ((8, 32, 16), (0, 2)),
    ],
)
def test_cuda_kernel_matches_decomposed_path(shape, axes) -> None:
    torch.manual_seed(0)
    x = torch.randn(*shape, device="cuda") * 3.0 + 10.0

    var, mean = compute_var_and_mean(x, axes)
    ref_var, ref_mean = _decomposed_var_mean(x, normalize_axes(axes, x.dim()), 1, keep_dims=False)

    assert_verbose_allclose(var, ref_var, atol=1e-4, rtol=1e-4)
    assert_verbose_allclose(mean, ref_mean, atol=1e-5, rtol=1e-5)


@pytest.mark.skipif(not kernel_available(), reason="CUDA kernel requires CUDA")
def test_cuda_kernel_non_contiguous_input() -> None:
    torch.manual_seed(0)
    x = torch.randn(32, 64, device="cuda").t()

    std, mean = compute_mean_and_std(x, 1)
    ref_std, ref_mean = torch.std_mean(x, dim=1)

    assert_verbose_allclose(std, ref_std, atol=1e-5, rtol=1e-5)
    assert_verbose_allclose(mean, ref_mean, atol=1e-5, rtol=1e-5)
