"""
bnorm_check - Reference verification of batch-normalization primitives.

Recomputes forward/backward batch normalization from a primitive's raw
(possibly blocked and channel-padded) buffers and compares the results
per channel under a scale-aware relative-error tolerance.
"""

from .bnorm_config import BnormTestParams, default_test_params, generate_contexts
from .bnorm_types import (
    ChannelStatistics, ComputationContext, ElementKind, GradientAccumulators,
    NormalizationFlags, PropagationKind, ScaleShift, TensorShape,
)
from .compare import Comparison, Mismatch, near_equal, relative_error
from .driver import BnormVerifier, catch_expected_failures, fill_data
from .errors import FailureKind, PrimitiveError, Status
from .layout import MemoryFormat, MemoryLayout
from .primitive import ComputeBackend, Primitive, PrimitiveDescriptor, TorchBackend
from .reference import check_backward, check_forward, compute_backward, compute_forward
from .report import CheckResult, VerificationReport

__version__ = "0.1.0"
