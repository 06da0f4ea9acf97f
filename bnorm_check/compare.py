"""
compare.py - Scale-aware relative-error comparison.

Values are compared as |actual - expected| / denom with
denom = max(|actual|, |expected|), replaced by 1 when it falls below a floor
(or always, for quantized outputs). Near zero this turns into an absolute
error check; elsewhere it is a relative one.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

from .errors import FailureKind

# First N mismatches kept per check; the rest are only counted.
MAX_RECORDED_MISMATCHES = 16


def relative_error(actual, expected, floor: float, force_floor: bool = False) -> np.ndarray:
    """Element-wise floored relative error. NaN compares as an infinite error."""
    a = np.asarray(actual, dtype=np.float64)
    e = np.asarray(expected, dtype=np.float64)
    denom = np.maximum(np.abs(a), np.abs(e))
    if force_floor:
        denom = np.ones_like(denom)
    else:
        denom = np.where(denom < floor, 1.0, denom)
    err = np.abs(a - e) / denom
    return np.where(np.isnan(err), np.inf, err)


def near_equal(actual, expected, eps_scale: float, floor: float,
               force_floor: bool = False) -> bool:
    return bool(np.all(relative_error(actual, expected, floor, force_floor) <= eps_scale))


@dataclass
class Mismatch:
    """One value outside tolerance."""
    check: str
    channel: int
    index: Optional[Tuple[int, ...]]  # logical (n, c, d, h, w); None for per-channel values
    actual: float
    expected: float
    error: float
    kind: FailureKind = FailureKind.NUMERIC

    def __str__(self) -> str:
        where = f"c={self.channel}" if self.index is None else f"at {self.index}"
        if self.kind is FailureKind.PADDING:
            return f"{self.check}: non-zero padding {where} value={self.actual:g}"
        return (f"{self.check}: {where} actual={self.actual:.6g} "
                f"expected={self.expected:.6g} err={self.error:.2e}")


@dataclass
class Comparison:
    """Running result of one named check (e.g. 'dst', 'mean')."""
    name: str
    tolerance: float
    kind: FailureKind = FailureKind.NUMERIC
    checked: int = 0
    failed: int = 0
    max_error: float = 0.0
    mismatches: List[Mismatch] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.failed == 0

    def record(self, mismatch: Mismatch) -> None:
        self.failed += 1
        if len(self.mismatches) < MAX_RECORDED_MISMATCHES:
            self.mismatches.append(mismatch)

    def update(self, actual, expected, floor: float, channel: int,
               force_floor: bool = False,
               locate: Optional[Callable[[int], Tuple[int, ...]]] = None) -> None:
        """Compare a channel's values; locate(k) gives the logical coordinate of element k."""
        a = np.atleast_1d(np.asarray(actual))
        e = np.atleast_1d(np.asarray(expected))
        if a.size == 0:
            return
        err = relative_error(a, e, floor, force_floor)
        self.checked += err.size
        self.max_error = max(self.max_error, float(err.max()))
        for k in np.flatnonzero(err > self.tolerance):
            self.record(Mismatch(
                check=self.name,
                channel=channel,
                index=locate(int(k)) if locate is not None else None,
                actual=float(a[k]),
                expected=float(e[k]),
                error=float(err[k]),
                kind=self.kind,
            ))

    def expect_zero(self, values, channel: int) -> None:
        """Exact-zero check (degenerate shapes)."""
        v = np.atleast_1d(np.asarray(values, dtype=np.float64))
        self.checked += v.size
        for k in np.flatnonzero(v != 0):
            self.max_error = max(self.max_error, abs(float(v[k])))
            self.record(Mismatch(self.name, channel, None, float(v[k]), 0.0,
                                 abs(float(v[k])), self.kind))

    def merge(self, other: "Comparison") -> None:
        self.checked += other.checked
        self.max_error = max(self.max_error, other.max_error)
        for m in other.mismatches:
            self.record(m)
        # record() counted the kept mismatches; add the ones other only counted
        self.failed += other.failed - len(other.mismatches)
