"""
bnorm_types.py - Data model for batch-normalization verification.

Defines:
  - TensorShape:         logical (mb, c, d, h, w) shape, 2-D / 4-D / 5-D
  - NormalizationFlags:  USE_GLOBAL_STATS / USE_SCALE_SHIFT bit flags
  - PropagationKind:     forward training/inference, backward data/full
  - ElementKind:         f32 or s8 (quantized) element storage
  - ComputationContext:  everything that selects a reference computation
  - ScaleShift, ChannelStatistics, GradientAccumulators: per-channel buffers

Flag values match the C API (use_global_stats = 1, use_scale_shift = 2).
"""

from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import Tuple

import numpy as np


@dataclass(frozen=True)
class TensorShape:
    """Logical tensor shape. Unused spatial dims are 1."""
    mb: int
    c: int
    d: int = 1
    h: int = 1
    w: int = 1
    ndims: int = 4

    @property
    def spatial(self) -> int:
        return self.d * self.h * self.w

    @property
    def reduction_size(self) -> int:
        """Elements reduced per channel (N in the normalization formulas)."""
        return self.mb * self.spatial

    @property
    def nelems(self) -> int:
        return self.mb * self.c * self.spatial

    @property
    def dims(self) -> Tuple[int, int, int, int, int]:
        return (self.mb, self.c, self.d, self.h, self.w)

    def unravel(self, k: int) -> Tuple[int, int, int, int]:
        """Split a within-channel element number into (n, d, h, w)."""
        hw = self.h * self.w
        n, s = divmod(k, self.spatial)
        d, s = divmod(s, hw)
        h, w = divmod(s, self.w)
        return (n, d, h, w)

    def __str__(self) -> str:
        if self.ndims == 2:
            return f"mb={self.mb}, c={self.c}"
        if self.ndims == 4:
            return f"mb={self.mb}, c={self.c}, h={self.h}, w={self.w}"
        return f"mb={self.mb}, c={self.c}, d={self.d}, h={self.h}, w={self.w}"


class NormalizationFlags(IntFlag):
    NONE = 0
    USE_GLOBAL_STATS = 1
    USE_SCALE_SHIFT = 2

    def describe(self) -> str:
        names = []
        if self & NormalizationFlags.USE_GLOBAL_STATS:
            names.append("global_stats")
        if self & NormalizationFlags.USE_SCALE_SHIFT:
            names.append("scale_shift")
        return "|".join(names) if names else "none"


class PropagationKind(Enum):
    FORWARD_TRAINING = "fwd_training"
    FORWARD_INFERENCE = "fwd_inference"
    BACKWARD_DATA = "bwd_data"
    BACKWARD = "bwd"

    @property
    def is_forward(self) -> bool:
        return self in (PropagationKind.FORWARD_TRAINING, PropagationKind.FORWARD_INFERENCE)


class ElementKind(Enum):
    F32 = "f32"
    S8 = "s8"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(np.float32) if self is ElementKind.F32 else np.dtype(np.int8)

    @property
    def is_quantized(self) -> bool:
        return self is ElementKind.S8


@dataclass(frozen=True)
class ComputationContext:
    """Fully determines which reference computation applies."""
    shape: TensorShape
    epsilon: float
    flags: NormalizationFlags = NormalizationFlags.NONE
    propagation: PropagationKind = PropagationKind.FORWARD_TRAINING
    element_kind: ElementKind = ElementKind.F32

    @property
    def use_scale_shift(self) -> bool:
        return bool(self.flags & NormalizationFlags.USE_SCALE_SHIFT)

    @property
    def use_global_stats(self) -> bool:
        return bool(self.flags & NormalizationFlags.USE_GLOBAL_STATS)

    @property
    def calculate_stats(self) -> bool:
        return not self.use_global_stats

    @property
    def is_training(self) -> bool:
        return self.propagation is PropagationKind.FORWARD_TRAINING

    @property
    def is_forward(self) -> bool:
        return self.propagation.is_forward

    @property
    def epsilon_scale(self) -> np.float32:
        # Summation error grows with the reduction size.
        return np.float32(1e-4 * self.shape.reduction_size)

    @property
    def name(self) -> str:
        return f"{self.propagation.value}[{self.flags.describe()}]"


@dataclass
class ScaleShift:
    """Packed per-channel affine parameters: [gamma_0..gamma_c-1, beta_0..beta_c-1]."""
    weights: np.ndarray

    @property
    def channels(self) -> int:
        return self.weights.shape[0] // 2

    @property
    def scale(self) -> np.ndarray:
        return self.weights[:self.channels]

    @property
    def shift(self) -> np.ndarray:
        return self.weights[self.channels:]


@dataclass
class ChannelStatistics:
    mean: np.ndarray
    variance: np.ndarray


@dataclass
class GradientAccumulators:
    diff_scale: np.ndarray
    diff_shift: np.ndarray
    diff_src: np.ndarray  # logical (mb, c, d, h, w)

    @property
    def diff_weights(self) -> np.ndarray:
        """Packed like ScaleShift.weights."""
        return np.concatenate([self.diff_scale, self.diff_shift])
