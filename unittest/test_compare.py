"""
Tolerance comparator tests.
"""
import numpy as np

from bnorm_check.compare import MAX_RECORDED_MISMATCHES, Comparison, near_equal, relative_error
from bnorm_check.errors import FailureKind


def test_values_below_floor_compare_absolutely():
    # raw relative difference is 90%, but both sit under the floor
    assert near_equal(1e-6, 1e-7, eps_scale=1e-4, floor=1e-2)
    assert relative_error(1e-6, 1e-7, floor=1e-2) < 1e-5


def test_relative_error_above_floor():
    assert near_equal(100.0, 100.005, eps_scale=1e-4, floor=1e-2)
    assert not near_equal(100.0, 100.05, eps_scale=1e-4, floor=1e-2)
    assert not near_equal(0.5, 0.6, eps_scale=1e-3, floor=1e-2)


def test_force_floor_for_quantized_values():
    # int8 outputs: off by one is always a failure, regardless of magnitude
    assert relative_error(100, 101, floor=1e-2, force_floor=True) == 1.0
    assert near_equal(-7, -7, eps_scale=1e-4, floor=1e-2, force_floor=True)


def test_nan_is_never_near():
    assert not near_equal(np.nan, 1.0, eps_scale=1.0, floor=1e-2)
    assert np.isinf(relative_error(np.nan, np.nan, floor=1e-2))


def test_comparison_records_channel_and_location():
    cmp = Comparison("dst", tolerance=1e-3)
    actual = np.array([1.0, 2.0, 3.5, 4.0], dtype=np.float32)
    expected = np.array([1.0, 2.0, 3.0, 4.0], dtype=np.float32)
    cmp.update(actual, expected, floor=1e-2, channel=3, locate=lambda k: (0, 3, 0, 0, k))
    assert not cmp.passed
    assert cmp.checked == 4
    assert cmp.failed == 1
    m = cmp.mismatches[0]
    assert m.channel == 3 and m.index == (0, 3, 0, 0, 2)
    assert m.actual == 3.5 and m.expected == 3.0
    assert m.kind is FailureKind.NUMERIC
    assert abs(cmp.max_error - 0.5 / 3.5) < 1e-6


def test_merge_keeps_counts_beyond_recorded_cap():
    total = Comparison("diff_src", tolerance=0.0)
    for c in range(3):
        part = Comparison("diff_src", tolerance=0.0)
        part.update(np.ones(10), np.zeros(10), floor=1e-2, channel=c)
        total.merge(part)
    assert total.checked == 30
    assert total.failed == 30
    assert len(total.mismatches) == MAX_RECORDED_MISMATCHES


def test_expect_zero():
    cmp = Comparison("diff_scale", tolerance=1e-4)
    cmp.expect_zero(0.0, channel=0)
    assert cmp.passed
    cmp.expect_zero(1e-9, channel=1)
    assert not cmp.passed
    assert cmp.mismatches[0].channel == 1


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            fn()
            print(f"  {name:<50}  [\033[92mPASS\033[0m]")
