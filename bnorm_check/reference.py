"""
reference.py - Reference batch normalization (forward and backward).

Recomputes, channel by channel, what a batch-normalization primitive should
produce from the same raw input buffers it consumed, and compares against
the primitive's output buffers.

Forward, per channel c (N = mb*d*h*w):
    mean     = sum(src) / N                      (unless global stats)
    variance = sum((src - mean)^2) / N           (unless global stats)
    dst      = gamma * (src - mean) / sqrt(variance + eps) + beta

Backward, per channel c:
    diff_gamma = rsqrt * sum((src - mean) * diff_dst)
    diff_beta  = sum(diff_dst)
    diff_src   = gamma * rsqrt * (diff_dst - diff_beta/N - (src - mean) * diff_gamma * rsqrt / N)
                 (correction term only when statistics were computed from data)

Sums accumulate in float64; everything element-wise is float32.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from .bnorm_types import (
    ChannelStatistics, ComputationContext, GradientAccumulators, PropagationKind,
    ScaleShift, TensorShape,
)
from .compare import Comparison
from .layout import MemoryLayout
from .parallel import parallel_nd

# Denominator floors for the relative-error check
DST_FLOOR = 1e-2
DIFF_WEIGHTS_FLOOR = 1e-2

_S8 = np.iinfo(np.int8)


@dataclass
class ForwardReference:
    stats: ChannelStatistics
    dst: np.ndarray  # logical (mb, c, d, h, w)


def saturate_round(values: np.ndarray) -> np.ndarray:
    """Round half to even and saturate into int8."""
    return np.clip(np.rint(values), _S8.min, _S8.max).astype(np.int8)


def _rsqrt(variance, epsilon: float) -> np.float32:
    return np.float32(1.0) / np.sqrt(np.float32(variance) + np.float32(epsilon))


def _locate(shape: TensorShape, c: int):
    def locate(k: int) -> Tuple[int, ...]:
        n, d, h, w = shape.unravel(k)
        return (n, c, d, h, w)
    return locate


def _check_args(ctx: ComputationContext, weights, stats) -> None:
    if ctx.use_scale_shift and weights is None:
        raise ValueError(f"{ctx.name}: scale/shift weights required")
    if ctx.use_global_stats and stats is None:
        raise ValueError(f"{ctx.name}: global statistics required")


# ═══════════════════════════════════════════════════════════════════════════════
# Forward
# ═══════════════════════════════════════════════════════════════════════════════

def _forward_channel(ctx: ComputationContext, c: int, src: np.ndarray,
                     src_layout: MemoryLayout, stats: Optional[ChannelStatistics],
                     weights: Optional[np.ndarray]):
    n = ctx.shape.reduction_size
    x = src[src_layout.channel_offsets(c)].astype(np.float32)

    if ctx.calculate_stats:
        acc = x.astype(np.float64)
        mean = np.float32(acc.sum() / n)
        variance = np.float32(np.square(acc - np.float64(mean)).sum() / n)
    else:
        mean = np.float32(stats.mean[c])
        variance = np.float32(stats.variance[c])

    rsqrt = _rsqrt(variance, ctx.epsilon)
    if ctx.use_scale_shift:
        gamma = np.float32(weights[c])
        beta = np.float32(weights[ctx.shape.c + c])
        out = gamma * (x - mean) * rsqrt + beta
    else:
        out = (x - mean) * rsqrt

    if ctx.element_kind.is_quantized:
        out = saturate_round(out)
    return mean, variance, out


def compute_forward(ctx: ComputationContext, src: np.ndarray, src_layout: MemoryLayout,
                    scale_shift: Optional[ScaleShift] = None,
                    stats: Optional[ChannelStatistics] = None,
                    num_threads: Optional[int] = None) -> ForwardReference:
    """Expected statistics and logical dst for a forward pass."""
    weights = scale_shift.weights if scale_shift is not None else None
    _check_args(ctx, weights, stats)
    shape = ctx.shape
    mean = np.zeros(shape.c, dtype=np.float32)
    variance = np.zeros(shape.c, dtype=np.float32)
    dst = np.zeros(shape.dims, dtype=ctx.element_kind.dtype)

    if shape.nelems == 0:
        if stats is not None and ctx.use_global_stats:
            mean[:], variance[:] = stats.mean, stats.variance
        return ForwardReference(ChannelStatistics(mean, variance), dst)

    results = parallel_nd(
        shape.c,
        lambda c: _forward_channel(ctx, c, src, src_layout, stats, weights),
        num_threads,
    )
    for c, (m, v, out) in enumerate(results):
        mean[c] = m
        variance[c] = v
        dst[:, c] = out.reshape(shape.mb, shape.d, shape.h, shape.w)
    return ForwardReference(ChannelStatistics(mean, variance), dst)


def check_forward(ctx: ComputationContext, src: np.ndarray, src_layout: MemoryLayout,
                  dst: np.ndarray, dst_layout: MemoryLayout,
                  mean: Optional[np.ndarray] = None, variance: Optional[np.ndarray] = None,
                  weights: Optional[np.ndarray] = None,
                  num_threads: Optional[int] = None) -> Dict[str, Comparison]:
    """
    Compare a primitive's forward outputs against the reference.

    mean/variance are the primitive's reported statistics when training
    without global stats, and the supplied statistics with global stats.
    """
    stats = ChannelStatistics(mean, variance) if mean is not None else None
    _check_args(ctx, weights, stats)
    eps = float(ctx.epsilon_scale)
    verify_stats = ctx.is_training and ctx.calculate_stats
    names = ["mean", "variance", "dst"] if verify_stats else ["dst"]
    results = {name: Comparison(name, eps) for name in names}
    if verify_stats and stats is None:
        raise ValueError(f"{ctx.name}: primitive statistics required")

    if ctx.shape.nelems == 0:
        return results

    def channel(c: int) -> Dict[str, Comparison]:
        ref_mean, ref_variance, expected = _forward_channel(ctx, c, src, src_layout, stats, weights)
        local = {name: Comparison(name, eps) for name in names}
        if verify_stats:
            local["mean"].update(mean[c], ref_mean, floor=eps, channel=c)
            local["variance"].update(variance[c], ref_variance, floor=eps, channel=c)
        local["dst"].update(
            dst[dst_layout.channel_offsets(c)], expected,
            floor=DST_FLOOR, channel=c,
            force_floor=ctx.element_kind.is_quantized,
            locate=_locate(ctx.shape, c),
        )
        return local

    for local in parallel_nd(ctx.shape.c, channel, num_threads):
        for name, cmp in local.items():
            results[name].merge(cmp)
    return results


# ═══════════════════════════════════════════════════════════════════════════════
# Backward
# ═══════════════════════════════════════════════════════════════════════════════

def _backward_channel(ctx: ComputationContext, c: int,
                      src: np.ndarray, src_layout: MemoryLayout,
                      diff_dst: np.ndarray, diff_dst_layout: MemoryLayout,
                      mean: np.ndarray, variance: np.ndarray,
                      weights: Optional[np.ndarray]):
    x = src[src_layout.channel_offsets(c)].astype(np.float32)
    dd = diff_dst[diff_dst_layout.channel_offsets(c)].astype(np.float32)

    m = np.float32(mean[c])
    rsqrt = _rsqrt(variance[c], ctx.epsilon)
    xm = x - m

    diff_gamma = np.float32(np.dot(xm.astype(np.float64), dd.astype(np.float64))) * rsqrt
    diff_beta = np.float32(dd.sum(dtype=np.float64))
    gamma = np.float32(weights[c]) if ctx.use_scale_shift else np.float32(1.0)

    diff_src = dd
    if ctx.calculate_stats:
        n = np.float32(ctx.shape.reduction_size)
        diff_src = dd - (diff_beta / n + xm * diff_gamma * rsqrt / n)
    diff_src = diff_src * (gamma * rsqrt)
    return diff_gamma, diff_beta, diff_src


def compute_backward(ctx: ComputationContext, src: np.ndarray, src_layout: MemoryLayout,
                     diff_dst: np.ndarray, diff_dst_layout: MemoryLayout,
                     stats: ChannelStatistics,
                     scale_shift: Optional[ScaleShift] = None,
                     num_threads: Optional[int] = None) -> GradientAccumulators:
    """Expected diff_scale, diff_shift and logical diff_src for a backward pass."""
    weights = scale_shift.weights if scale_shift is not None else None
    _check_args(ctx, weights, stats)
    shape = ctx.shape
    diff_scale = np.zeros(shape.c, dtype=np.float32)
    diff_shift = np.zeros(shape.c, dtype=np.float32)
    diff_src = np.zeros(shape.dims, dtype=np.float32)
    if shape.nelems == 0:
        return GradientAccumulators(diff_scale, diff_shift, diff_src)

    results = parallel_nd(
        shape.c,
        lambda c: _backward_channel(ctx, c, src, src_layout, diff_dst, diff_dst_layout,
                                    stats.mean, stats.variance, weights),
        num_threads,
    )
    for c, (dg, db, ds) in enumerate(results):
        diff_scale[c] = dg
        diff_shift[c] = db
        diff_src[:, c] = ds.reshape(shape.mb, shape.d, shape.h, shape.w)
    return GradientAccumulators(diff_scale, diff_shift, diff_src)


def check_backward(ctx: ComputationContext, src: np.ndarray, src_layout: MemoryLayout,
                   diff_dst: np.ndarray, diff_dst_layout: MemoryLayout,
                   mean: np.ndarray, variance: np.ndarray, weights: Optional[np.ndarray],
                   diff_src: np.ndarray, diff_src_layout: MemoryLayout,
                   diff_weights: Optional[np.ndarray] = None,
                   num_threads: Optional[int] = None) -> Dict[str, Comparison]:
    """Compare a primitive's backward outputs against the reference."""
    _check_args(ctx, weights, ChannelStatistics(mean, variance))
    full = ctx.propagation is PropagationKind.BACKWARD
    if full and diff_weights is None:
        raise ValueError(f"{ctx.name}: diff_weights required")
    eps = float(ctx.epsilon_scale)
    C = ctx.shape.c
    names = ["diff_scale", "diff_shift", "diff_src"] if full else ["diff_src"]
    results = {name: Comparison(name, eps) for name in names}

    if ctx.shape.nelems == 0:
        # Per-channel accumulators exist even when there is nothing to reduce.
        if full:
            for c in range(C):
                results["diff_scale"].expect_zero(diff_weights[c], c)
                results["diff_shift"].expect_zero(diff_weights[C + c], c)
        return results

    def channel(c: int) -> Dict[str, Comparison]:
        ref_dg, ref_db, expected = _backward_channel(
            ctx, c, src, src_layout, diff_dst, diff_dst_layout, mean, variance, weights)
        local = {name: Comparison(name, eps) for name in names}
        if full:
            local["diff_scale"].update(diff_weights[c], ref_dg, floor=DIFF_WEIGHTS_FLOOR, channel=c)
            local["diff_shift"].update(diff_weights[C + c], ref_db, floor=DIFF_WEIGHTS_FLOOR, channel=c)
        local["diff_src"].update(
            diff_src[diff_src_layout.channel_offsets(c)], expected,
            floor=eps, channel=c, locate=_locate(ctx.shape, c),
        )
        return local

    for local in parallel_nd(C, channel, num_threads):
        for name, cmp in local.items():
            results[name].merge(cmp)
    return results
