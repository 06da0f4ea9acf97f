"""
Reference backward model tests.

With statistics computed from the batch, the reference gradients must equal
PyTorch autograd through a training-mode batch_norm; with global statistics,
autograd through an inference-mode batch_norm.
"""
import numpy as np
import torch
import torch.nn.functional as F

from bnorm_check.bnorm_types import (
    ChannelStatistics, ComputationContext, NormalizationFlags as NF,
    PropagationKind as PK, ScaleShift, TensorShape,
)
from bnorm_check.layout import MemoryFormat, MemoryLayout
from bnorm_check.reference import check_backward, compute_backward

REDUCE = (0, 2, 3, 4)


def make_case(shape, data_fmt, diff_fmt, seed=1):
    rng = np.random.default_rng(seed)
    data_layout = MemoryLayout.create(shape, data_fmt)
    diff_layout = MemoryLayout.create(shape, diff_fmt)
    x = (1.0 + 0.2 * rng.standard_normal(shape.dims)).astype(np.float32)
    dy = rng.standard_normal(shape.dims).astype(np.float32)
    weights = (1.0 + 0.2 * rng.standard_normal(2 * shape.c)).astype(np.float32)
    src = data_layout.from_logical(x, np.zeros(data_layout.size, np.float32))
    diff_dst = diff_layout.from_logical(dy, np.zeros(diff_layout.size, np.float32))
    return data_layout, diff_layout, x, dy, src, diff_dst, weights


def autograd_reference(x, dy, weights, mean=None, var=None, eps=1e-5):
    C = x.shape[1]
    xt = torch.from_numpy(x).clone().requires_grad_(True)
    w = torch.from_numpy(weights[:C]).clone().requires_grad_(True)
    b = torch.from_numpy(weights[C:]).clone().requires_grad_(True)
    if mean is None:
        y = F.batch_norm(xt, None, None, w, b, training=True, eps=eps)
    else:
        y = F.batch_norm(xt, torch.from_numpy(mean), torch.from_numpy(var), w, b,
                         training=False, eps=eps)
    y.backward(torch.from_numpy(dy))
    return xt.grad, w.grad, b.grad


# ═══════════════════════════════════════════════════════════════════════════════
# Against PyTorch autograd
# ═══════════════════════════════════════════════════════════════════════════════

def test_batch_stats_backward_matches_autograd():
    shape = TensorShape(4, 6, h=3, w=5)
    data_layout, diff_layout, x, dy, src, diff_dst, weights = make_case(
        shape, MemoryFormat.NCHW8C, MemoryFormat.NCHW16C)
    xt = torch.from_numpy(x)
    mean = xt.mean(dim=REDUCE).numpy()
    var = xt.var(dim=REDUCE, unbiased=False).numpy()
    ctx = ComputationContext(shape, 1e-5, NF.USE_SCALE_SHIFT, PK.BACKWARD)

    grads = compute_backward(ctx, src, data_layout, diff_dst, diff_layout,
                             ChannelStatistics(mean, var), ScaleShift(weights), num_threads=3)

    dx, dw, db = autograd_reference(x, dy, weights)
    torch.testing.assert_close(torch.from_numpy(grads.diff_src), dx, rtol=1e-3, atol=1e-4)
    torch.testing.assert_close(torch.from_numpy(grads.diff_scale), dw, rtol=1e-4, atol=1e-4)
    torch.testing.assert_close(torch.from_numpy(grads.diff_shift), db, rtol=1e-5, atol=1e-5)


def test_global_stats_backward_matches_autograd():
    shape = TensorShape(2, 5, d=2, h=2, w=2, ndims=5)
    data_layout, diff_layout, x, dy, src, diff_dst, weights = make_case(
        shape, MemoryFormat.NCDHW, MemoryFormat.NDHWC)
    mean = np.linspace(0.9, 1.1, 5).astype(np.float32)
    var = np.linspace(0.5, 1.5, 5).astype(np.float32)
    ctx = ComputationContext(shape, 1e-5, NF.USE_SCALE_SHIFT | NF.USE_GLOBAL_STATS, PK.BACKWARD)

    grads = compute_backward(ctx, src, data_layout, diff_dst, diff_layout,
                             ChannelStatistics(mean, var), ScaleShift(weights))

    dx, dw, db = autograd_reference(x, dy, weights, mean, var)
    torch.testing.assert_close(torch.from_numpy(grads.diff_src), dx, rtol=1e-5, atol=1e-6)
    torch.testing.assert_close(torch.from_numpy(grads.diff_scale), dw, rtol=1e-4, atol=1e-5)
    torch.testing.assert_close(torch.from_numpy(grads.diff_shift), db, rtol=1e-5, atol=1e-5)


def test_without_scale_shift_gamma_is_one():
    shape = TensorShape(3, 4, h=2, w=2)
    data_layout, diff_layout, x, dy, src, diff_dst, weights = make_case(
        shape, MemoryFormat.NCHW, MemoryFormat.NCHW)
    stats = ChannelStatistics(np.ones(4, np.float32), np.ones(4, np.float32))
    plain = ComputationContext(shape, 0.0, NF.USE_GLOBAL_STATS, PK.BACKWARD_DATA)

    grads = compute_backward(plain, src, data_layout, diff_dst, diff_layout, stats)
    # global stats, gamma = 1, var + eps = 1: diff_src is diff_dst itself
    np.testing.assert_allclose(grads.diff_src, dy, rtol=1e-6)


# ═══════════════════════════════════════════════════════════════════════════════
# check_backward
# ═══════════════════════════════════════════════════════════════════════════════

def _physical(layout, logical):
    return layout.from_logical(logical, np.zeros(layout.size, np.float32))


def test_check_accepts_reference_and_rejects_perturbation():
    shape = TensorShape(2, 10, h=4, w=4)
    data_layout, diff_layout, x, dy, src, diff_dst, weights = make_case(
        shape, MemoryFormat.NCHW8C, MemoryFormat.NHWC)
    stats = ChannelStatistics(np.full(10, 1.0, np.float32), np.full(10, 0.9, np.float32))
    ctx = ComputationContext(shape, 1e-5, NF.USE_SCALE_SHIFT, PK.BACKWARD)
    grads = compute_backward(ctx, src, data_layout, diff_dst, diff_layout, stats, ScaleShift(weights))
    diff_src = _physical(diff_layout, grads.diff_src)
    diff_weights = grads.diff_weights

    results = check_backward(ctx, src, data_layout, diff_dst, diff_layout,
                             stats.mean, stats.variance, weights,
                             diff_src, diff_layout, diff_weights)
    assert set(results) == {"diff_scale", "diff_shift", "diff_src"}
    assert all(r.passed for r in results.values())
    assert results["diff_src"].checked == shape.nelems

    diff_weights[10 + 7] += 1.0
    diff_src[diff_layout.offset(1, 3, 0, 0, 2)] += 1.0
    results = check_backward(ctx, src, data_layout, diff_dst, diff_layout,
                             stats.mean, stats.variance, weights,
                             diff_src, diff_layout, diff_weights)
    assert results["diff_scale"].passed
    assert results["diff_shift"].failed == 1
    assert results["diff_shift"].mismatches[0].channel == 7
    assert results["diff_src"].failed == 1
    assert results["diff_src"].mismatches[0].index == (1, 3, 0, 0, 2)


def test_backward_data_does_not_check_weights():
    shape = TensorShape(2, 4, h=2, w=2)
    data_layout, diff_layout, x, dy, src, diff_dst, weights = make_case(
        shape, MemoryFormat.NCHW, MemoryFormat.NCHW)
    stats = ChannelStatistics(np.ones(4, np.float32), np.ones(4, np.float32))
    ctx = ComputationContext(shape, 1e-5, NF.NONE, PK.BACKWARD_DATA)
    grads = compute_backward(ctx, src, data_layout, diff_dst, diff_layout, stats)

    results = check_backward(ctx, src, data_layout, diff_dst, diff_layout,
                             stats.mean, stats.variance, None,
                             _physical(diff_layout, grads.diff_src), diff_layout)
    assert list(results) == ["diff_src"]
    assert results["diff_src"].passed


def test_correction_term_applies_only_to_computed_stats():
    shape = TensorShape(2, 3, h=2, w=2)
    data_layout, diff_layout, x, dy, src, diff_dst, weights = make_case(
        shape, MemoryFormat.NCHW, MemoryFormat.NCHW)
    stats = ChannelStatistics(np.full(3, 1.0, np.float32), np.full(3, 0.5, np.float32))
    computed = ComputationContext(shape, 1e-5, NF.NONE, PK.BACKWARD_DATA)
    supplied = ComputationContext(shape, 1e-5, NF.USE_GLOBAL_STATS, PK.BACKWARD_DATA)

    g_computed = compute_backward(computed, src, data_layout, diff_dst, diff_layout, stats)
    g_supplied = compute_backward(supplied, src, data_layout, diff_dst, diff_layout, stats)

    x64, dy64 = x.astype(np.float64), dy.astype(np.float64)
    rsqrt = 1.0 / np.sqrt(0.5 + 1e-5)
    np.testing.assert_allclose(g_supplied.diff_src, dy64 * rsqrt, rtol=1e-5)

    n = shape.reduction_size
    xm = x64 - 1.0
    db = dy64.sum(axis=REDUCE, keepdims=True)
    dg = (xm * dy64).sum(axis=REDUCE, keepdims=True) * rsqrt
    expected = (dy64 - (db / n + xm * dg * rsqrt / n)) * rsqrt
    np.testing.assert_allclose(g_computed.diff_src, expected, rtol=1e-4, atol=1e-5)
    assert not np.allclose(g_computed.diff_src, g_supplied.diff_src)


def test_zero_sized_backward_requires_zero_accumulators():
    shape = TensorShape(0, 5, h=2, w=2)
    layout = MemoryLayout.create(shape, MemoryFormat.NCHW8C)
    empty = np.zeros(0, np.float32)
    mean = np.ones(5, np.float32)
    var = np.ones(5, np.float32)
    weights = np.ones(10, np.float32)
    ctx = ComputationContext(shape, 1e-5, NF.USE_SCALE_SHIFT, PK.BACKWARD)

    zeros = np.zeros(10, np.float32)
    results = check_backward(ctx, empty, layout, empty, layout, mean, var, weights,
                             empty, layout, zeros)
    assert all(r.passed for r in results.values())
    assert results["diff_scale"].checked == 5
    assert results["diff_src"].checked == 0

    dirty = zeros.copy()
    dirty[6] = 1e-7
    results = check_backward(ctx, empty, layout, empty, layout, mean, var, weights,
                             empty, layout, dirty)
    assert results["diff_scale"].passed
    assert results["diff_shift"].failed == 1
    assert results["diff_shift"].mismatches[0].channel == 1


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"  {name:<50}  [\033[92mPASS\033[0m]")
