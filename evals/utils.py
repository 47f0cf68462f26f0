import os
import random

import numpy as np
import torch

from utils.utils import infer_device

device = infer_device()


def set_seed(seed: int = 42):
    """Seed python, numpy and torch RNGs so eval inputs are reproducible."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)


def supports_bfloat16() -> bool:
    if device == "cuda":
        return torch.cuda.get_device_capability() >= (8, 0)
    return device in ("cpu", "xpu")


def assert_verbose_allclose(tensor1, tensor2, rtol=1e-05, atol=1e-08, max_print=5, extra_info=""):
    """
    Like ``torch.allclose`` but reports which elements mismatched.

    NaNs in matching positions compare equal. Mismatching NaN/Inf positions
    count as failures.
    """
    if tensor1.shape != tensor2.shape:
        raise AssertionError(f"Input shapes do not match: {tensor1.shape} vs {tensor2.shape}. {extra_info}")

    t1 = tensor1.detach().cpu().to(torch.float64)
    t2 = tensor2.detach().cpu().to(torch.float64)

    diff = torch.abs(t1 - t2)
    tolerance = atol + rtol * torch.abs(t2)

    nan_mismatch = torch.isnan(t1) ^ torch.isnan(t2)
    inf_mismatch = (torch.isinf(t1) | torch.isinf(t2)) & (t1 != t2)
    tolerance_mismatch = (diff > tolerance) & torch.isfinite(t1) & torch.isfinite(t2)

    mismatched = nan_mismatch | inf_mismatch | tolerance_mismatch
    num_mismatched = int(mismatched.sum().item())
    if num_mismatched == 0:
        return

    mismatched_indices = torch.nonzero(mismatched)
    lines = [f"Number of mismatched elements: {num_mismatched}"]
    for index in mismatched_indices[:max_print]:
        i = tuple(index.tolist())
        lines.append(f"Mismatch at index {i}: tensor1[{i}] = {t1[i].item()}, tensor2[{i}] = {t2[i].item()}")
    if num_mismatched > max_print:
        lines.append(f"... and {num_mismatched - max_print} more mismatched elements.")
    if extra_info:
        lines.append(extra_info)
    raise AssertionError("\n".join(lines))
