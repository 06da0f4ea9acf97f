"""
bnorm_config.py - Verification settings and the batch-norm test matrix

Environment:
  DEBUG=1              print the first mismatches of failed checks
  BNORM_NUM_THREADS=N  worker threads for per-channel checks (0 = all cores)
  BNORM_SEED=N         base seed for input data

The test matrix is plain data: a list of BnormTestParams, each expanded by
generate_contexts() into the (propagation, flags) combinations that apply to
its element kind. Nothing here has side effects.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .bnorm_types import (
    ComputationContext, ElementKind, NormalizationFlags, PropagationKind, TensorShape,
)
from .errors import Status
from .layout import MemoryFormat

DEBUG = os.environ.get("DEBUG", "0") == "1"
DEFAULT_NUM_THREADS = int(os.environ.get("BNORM_NUM_THREADS", "0"))
DEFAULT_SEED = int(os.environ.get("BNORM_SEED", "0"))

DEFAULT_EPSILON = 1e-5

Combo = Tuple[PropagationKind, NormalizationFlags]

_GS = NormalizationFlags.USE_GLOBAL_STATS
_SS = NormalizationFlags.USE_SCALE_SHIFT
_NONE = NormalizationFlags.NONE

F32_COMBOS: Tuple[Combo, ...] = (
    (PropagationKind.FORWARD_TRAINING, _NONE),
    (PropagationKind.FORWARD_TRAINING, _GS),
    (PropagationKind.FORWARD_TRAINING, _SS),
    (PropagationKind.FORWARD_TRAINING, _SS | _GS),
    (PropagationKind.FORWARD_INFERENCE, _NONE),
    (PropagationKind.FORWARD_INFERENCE, _GS),
    (PropagationKind.FORWARD_INFERENCE, _SS),
    (PropagationKind.BACKWARD_DATA, _NONE),
    (PropagationKind.BACKWARD_DATA, _GS),
    (PropagationKind.BACKWARD_DATA, _SS),
    (PropagationKind.BACKWARD_DATA, _SS | _GS),
    (PropagationKind.BACKWARD, _SS),
    (PropagationKind.BACKWARD, _SS | _GS),
)

# Quantized data only runs inference on supplied statistics
S8_COMBOS: Tuple[Combo, ...] = (
    (PropagationKind.FORWARD_INFERENCE, _GS),
    (PropagationKind.FORWARD_INFERENCE, _GS | _SS),
)


@dataclass(frozen=True)
class BnormTestParams:
    """One configuration of the test matrix."""
    name: str
    sizes: TensorShape
    data_format: MemoryFormat
    diff_format: MemoryFormat
    epsilon: float = DEFAULT_EPSILON
    element_kind: ElementKind = ElementKind.F32
    expect_to_fail: bool = False
    expected_status: Status = Status.SUCCESS
    combos: Optional[Sequence[Combo]] = None  # overrides the per-kind default

    @property
    def layouts(self) -> str:
        if self.data_format is self.diff_format:
            return self.data_format.tag
        return f"data={self.data_format.tag}, diff={self.diff_format.tag}"


def generate_contexts(params: BnormTestParams) -> List[ComputationContext]:
    """The computation contexts to verify for one configuration."""
    if params.combos is not None:
        combos = params.combos
    elif params.element_kind is ElementKind.S8:
        combos = S8_COMBOS
    else:
        combos = F32_COMBOS
    return [
        ComputationContext(
            shape=params.sizes,
            epsilon=params.epsilon,
            flags=flags,
            propagation=prop,
            element_kind=params.element_kind,
        )
        for prop, flags in combos
    ]


def _p(name, sizes, data_format, diff_format=None, **kwargs) -> BnormTestParams:
    return BnormTestParams(name, sizes, data_format, diff_format or data_format, **kwargs)


def default_test_params(quick: bool = False) -> List[BnormTestParams]:
    """The standard matrix; quick keeps one case per layout family."""
    F = MemoryFormat
    S = TensorShape
    quick_cases = [
        _p("simple_nchw", S(2, 10, h=4, w=4), F.NCHW),
        _p("example_nchw", S(2, 4, h=4, w=4), F.NCHW),
        _p("blocked_nchw8c_padded", S(2, 10, h=4, w=4), F.NCHW8C),
        _p("nc", S(2, 10, ndims=2), F.NC),
        _p("ncdhw_16c_padded", S(2, 17, d=2, h=3, w=4, ndims=5), F.NCDHW16C),
        _p("zero_mb", S(0, 8, h=3, w=3), F.NCHW8C),
        _p("invalid_negative_c", S(2, -10, h=4, w=4), F.NCHW,
           expect_to_fail=True, expected_status=Status.INVALID_ARGUMENTS),
        _p("s8_nhwc", S(2, 8, h=5, w=5), F.NHWC, element_kind=ElementKind.S8),
    ]
    if quick:
        return quick_cases

    return quick_cases + [
        _p("nchw_eps_0.1", S(2, 10, h=4, w=4), F.NCHW, epsilon=0.1),
        _p("nchw_eps_0", S(2, 10, h=4, w=4), F.NCHW, epsilon=0.0),
        _p("nchw_mb1", S(1, 10, h=2, w=2), F.NCHW),
        _p("nhwc", S(2, 10, h=4, w=4), F.NHWC),
        _p("nchw16c_padded", S(2, 17, h=5, w=3), F.NCHW16C),
        _p("nchw8c_data_nchw16c_diff", S(3, 20, h=4, w=4), F.NCHW8C, F.NCHW16C),
        _p("nchw_data_nchw8c_diff", S(2, 12, h=3, w=5), F.NCHW, F.NCHW8C),
        _p("nc_large_mb", S(64, 33, ndims=2), F.NC),
        _p("ncdhw", S(2, 10, d=4, h=4, w=4, ndims=5), F.NCDHW),
        _p("ndhwc", S(2, 10, d=2, h=4, w=3, ndims=5), F.NDHWC),
        _p("ncdhw8c", S(2, 16, d=2, h=2, w=2, ndims=5), F.NCDHW8C),
        _p("zero_c", S(2, 0, h=4, w=4), F.NCHW),
        _p("zero_spatial", S(2, 10, h=0, w=4), F.NCHW16C),
        _p("zero_mb_5d", S(0, 5, d=2, h=2, w=2, ndims=5), F.NCDHW),
        _p("invalid_negative_mb", S(-2, 10, h=4, w=4), F.NCHW,
           expect_to_fail=True, expected_status=Status.INVALID_ARGUMENTS),
        _p("invalid_format_rank", S(2, 10, h=4, w=4), F.NCDHW,
           expect_to_fail=True, expected_status=Status.INVALID_ARGUMENTS),
        _p("s8_nchw", S(2, 10, h=4, w=4), F.NCHW, element_kind=ElementKind.S8),
        _p("s8_nchw16c_padded", S(2, 20, h=3, w=3), F.NCHW16C, element_kind=ElementKind.S8),
        _p("s8_training_unsupported", S(2, 8, h=2, w=2), F.NCHW,
           element_kind=ElementKind.S8, expect_to_fail=True,
           expected_status=Status.UNIMPLEMENTED,
           combos=((PropagationKind.FORWARD_TRAINING, _NONE),)),
    ]
