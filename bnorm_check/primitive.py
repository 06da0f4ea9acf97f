"""
primitive.py - Compute backend interface and a PyTorch implementation.

The verifier never looks inside a primitive. A backend only has to:
  1. create_descriptor  - validate a context + layouts (may raise PrimitiveError)
  2. instantiate        - build an executable primitive from the descriptor
  3. execute            - run it on named buffers and block until done
  4. read_output        - hand back a named output buffer

Buffer names: src, dst, mean, variance, weights, diff_dst, diff_src, diff_weights.
All buffers are flat numpy arrays in the physical layout of their descriptor
(weights/diff_weights: 2*C floats, mean/variance: C floats).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np
import torch
import torch.nn.functional as F

from .bnorm_types import ComputationContext, ElementKind, PropagationKind
from .errors import PrimitiveError, Status
from .layout import MemoryLayout

Buffers = Dict[str, np.ndarray]

REDUCE_DIMS = (0, 2, 3, 4)


@dataclass
class PrimitiveDescriptor:
    context: ComputationContext
    data_layout: MemoryLayout
    diff_layout: Optional[MemoryLayout] = None

    @property
    def weights_size(self) -> int:
        return 2 * self.context.shape.c

    @property
    def stats_size(self) -> int:
        return self.context.shape.c

    @property
    def has_stats(self) -> bool:
        """Whether mean/variance buffers take part (as inputs or outputs)."""
        ctx = self.context
        return not ctx.is_forward or ctx.is_training or ctx.use_global_stats

    def required_args(self) -> List[str]:
        ctx = self.context
        if ctx.is_forward:
            names = ["src", "dst"]
        else:
            names = ["src", "diff_dst", "diff_src"]
            if ctx.propagation is PropagationKind.BACKWARD:
                names.append("diff_weights")
        if self.has_stats:
            names += ["mean", "variance"]
        if ctx.use_scale_shift:
            names.append("weights")
        return names


@dataclass
class Primitive:
    descriptor: PrimitiveDescriptor
    kernel: Callable[[PrimitiveDescriptor, Buffers], None]


class ComputeBackend(ABC):
    """A batch-normalization implementation under test."""
    name = "backend"

    @abstractmethod
    def create_descriptor(self, ctx: ComputationContext, data_layout: MemoryLayout,
                          diff_layout: Optional[MemoryLayout] = None) -> PrimitiveDescriptor:
        ...

    @abstractmethod
    def instantiate(self, descriptor: PrimitiveDescriptor) -> Primitive:
        ...

    @abstractmethod
    def execute(self, primitive: Primitive, args: Buffers) -> None:
        ...

    def read_output(self, args: Buffers, name: str) -> np.ndarray:
        return args[name]


# ═══════════════════════════════════════════════════════════════════════════════
# PyTorch backend
# ═══════════════════════════════════════════════════════════════════════════════

class TorchBackend(ComputeBackend):
    """
    Batch normalization on CPU tensors.

    Float forward goes through torch.nn.functional.batch_norm; the int8 path
    and backward are written out with tensor ops so the supplied statistics
    are used as given.
    """
    name = "torch"

    def create_descriptor(self, ctx, data_layout, diff_layout=None):
        if ctx.epsilon < 0:
            raise PrimitiveError(Status.INVALID_ARGUMENTS, f"epsilon={ctx.epsilon}")
        if data_layout.shape != ctx.shape:
            raise PrimitiveError(Status.INVALID_ARGUMENTS, "data layout does not match shape")
        if not ctx.is_forward:
            if diff_layout is None or diff_layout.shape != ctx.shape:
                raise PrimitiveError(Status.INVALID_ARGUMENTS, "backward needs a diff layout of the same shape")
        if ctx.element_kind is ElementKind.S8:
            if ctx.propagation is not PropagationKind.FORWARD_INFERENCE or not ctx.use_global_stats:
                raise PrimitiveError(
                    Status.UNIMPLEMENTED,
                    f"s8 supports inference with global stats only, got {ctx.name}",
                )
        return PrimitiveDescriptor(ctx, data_layout, diff_layout)

    def instantiate(self, descriptor):
        kernel = self._forward if descriptor.context.is_forward else self._backward
        return Primitive(descriptor, kernel)

    def execute(self, primitive, args):
        missing = [name for name in primitive.descriptor.required_args() if name not in args]
        if missing:
            raise PrimitiveError(Status.INVALID_ARGUMENTS, f"missing buffers: {', '.join(missing)}")
        with torch.no_grad():
            primitive.kernel(primitive.descriptor, args)

    # -------------------------------------------------------------------------

    @staticmethod
    def _channel_view(t: torch.Tensor) -> torch.Tensor:
        return t.view(1, -1, 1, 1, 1)

    def _forward(self, pd: PrimitiveDescriptor, args: Buffers) -> None:
        ctx = pd.context
        C = ctx.shape.c
        writes_stats = ctx.is_training and ctx.calculate_stats

        if ctx.shape.nelems == 0:
            if writes_stats:
                args["mean"][:] = 0
                args["variance"][:] = 0
            return

        x = torch.from_numpy(pd.data_layout.to_logical(args["src"])).float()
        if ctx.use_global_stats:
            mean = torch.from_numpy(args["mean"])
            var = torch.from_numpy(args["variance"])
        else:
            mean = x.mean(dim=REDUCE_DIMS)
            var = ((x - self._channel_view(mean)) ** 2).mean(dim=REDUCE_DIMS)

        weight = bias = None
        if ctx.use_scale_shift:
            w = torch.from_numpy(args["weights"])
            weight, bias = w[:C], w[C:]

        if ctx.element_kind is ElementKind.S8:
            y = self._quantized_forward(x, mean, var, weight, bias, ctx.epsilon)
        else:
            y = F.batch_norm(x, mean, var, weight, bias, training=False, eps=ctx.epsilon)

        pd.data_layout.from_logical(y.numpy(), args["dst"])
        if writes_stats:
            args["mean"][:] = mean.numpy()
            args["variance"][:] = var.numpy()

    def _quantized_forward(self, x, mean, var, weight, bias, epsilon: float) -> torch.Tensor:
        cv = self._channel_view
        eps = torch.tensor(epsilon, dtype=torch.float32)
        rsqrt = 1.0 / torch.sqrt(var + eps)
        if weight is not None:
            y = cv(weight) * (x - cv(mean)) * cv(rsqrt) + cv(bias)
        else:
            y = (x - cv(mean)) * cv(rsqrt)
        info = torch.iinfo(torch.int8)
        return torch.clamp(torch.round(y), info.min, info.max).to(torch.int8)

    def _backward(self, pd: PrimitiveDescriptor, args: Buffers) -> None:
        ctx = pd.context
        C = ctx.shape.c
        full = ctx.propagation is PropagationKind.BACKWARD
        cv = self._channel_view

        if ctx.shape.nelems == 0:
            if full:
                args["diff_weights"][:] = 0
            return

        x = torch.from_numpy(pd.data_layout.to_logical(args["src"])).float()
        dy = torch.from_numpy(pd.diff_layout.to_logical(args["diff_dst"])).float()
        mean = torch.from_numpy(args["mean"])
        var = torch.from_numpy(args["variance"])

        eps = torch.tensor(ctx.epsilon, dtype=torch.float32)
        rsqrt = 1.0 / torch.sqrt(var + eps)
        xm = x - cv(mean)
        diff_gamma = (xm * dy).sum(dim=REDUCE_DIMS) * rsqrt
        diff_beta = dy.sum(dim=REDUCE_DIMS)

        dx = dy
        if ctx.calculate_stats:
            n = float(ctx.shape.reduction_size)
            dx = dy - (cv(diff_beta) / n + xm * cv(diff_gamma) * cv(rsqrt) / n)
        if ctx.use_scale_shift:
            gamma = torch.from_numpy(args["weights"])[:C]
        else:
            gamma = torch.ones(C, dtype=torch.float32)
        dx = dx * cv(gamma * rsqrt)

        pd.diff_layout.from_logical(dx.numpy(), args["diff_src"])
        if full:
            args["diff_weights"][:C] = diff_gamma.numpy()
            args["diff_weights"][C:] = diff_beta.numpy()
