"""Errors raised by the reduction kernels."""

from __future__ import annotations


class StatKernelError(ValueError):
    """Base class for invalid reduction requests."""


class InvalidAxis(StatKernelError):
    """A reduction axis is out of range, repeated, or no axis was given."""

    def __init__(self, message: str, axes=None, ndim: int | None = None):
        super().__init__(message)
        self.axes = axes
        self.ndim = ndim


class InvalidReductionSize(StatKernelError):
    """Too few elements are reduced for the requested correction."""

    def __init__(self, message: str, n: int, correction: int):
        super().__init__(message)
        self.n = n
        self.correction = correction
