"""
driver.py - Runs batch-norm configurations against a compute backend.

For every configuration of the matrix and every computation context it
expands to:

    allocate buffers -> fill inputs -> zero padding tails
        -> create descriptor / instantiate / execute (blocking)
        -> padding tails still zero?  -> reference comparison

Construction failures are matched against the configuration's expected
status; numeric and padding problems become failed CheckResults. Nothing
raised by one configuration stops the next one.
"""

from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from .bnorm_config import DEFAULT_NUM_THREADS, DEFAULT_SEED, BnormTestParams, generate_contexts
from .bnorm_types import ComputationContext, ElementKind, PropagationKind
from .errors import PrimitiveError, Status
from .layout import MemoryLayout
from .primitive import Buffers, ComputeBackend, PrimitiveDescriptor, TorchBackend
from .reference import check_backward, check_forward
from .report import CheckResult, VerificationReport, get_cpu_info


# ═══════════════════════════════════════════════════════════════════════════════
# Data helpers
# ═══════════════════════════════════════════════════════════════════════════════

def fill_data(buffer: np.ndarray, rng: np.random.Generator,
              mean: float = 1.0, deviation: float = 0.2) -> np.ndarray:
    """Deterministic pseudo-random fill; small integers for int8 buffers."""
    if buffer.dtype == np.int8:
        buffer[:] = rng.integers(-8, 9, size=buffer.shape, dtype=np.int8)
    else:
        buffer[:] = (mean + deviation * rng.standard_normal(buffer.shape)).astype(buffer.dtype)
    return buffer


def allocate(layout: MemoryLayout, kind: ElementKind = ElementKind.F32) -> np.ndarray:
    return np.zeros(layout.size, dtype=kind.dtype)


def catch_expected_failures(fn: Callable[[], None], expect_to_fail: bool,
                            expected_status: Status) -> CheckResult:
    """
    Run fn, turning a PrimitiveError into a status check against the expected one.

    Any other exception is an unexpected failure of this context; it is
    recorded and never propagates to the next context or configuration.
    """
    try:
        fn()
    except PrimitiveError as e:
        if expect_to_fail and e.status == expected_status:
            return CheckResult.status("status", True, f"failed as expected ({e.status.name})")
        return CheckResult.status(
            "status", False,
            f"got {e.status.name}, expected {expected_status.name if expect_to_fail else 'success'}"
            + (f" ({e.message})" if e.message else ""),
        )
    except Exception as e:
        # a crashing backend fails this context only
        return CheckResult.status("status", False, f"unexpected {type(e).__name__}: {e}")
    if expect_to_fail:
        return CheckResult.status("status", False, f"expected {expected_status.name}, primitive succeeded")
    return CheckResult.status("status", True)


# ═══════════════════════════════════════════════════════════════════════════════
# Verifier
# ═══════════════════════════════════════════════════════════════════════════════

class BnormVerifier:
    """Verifies a ComputeBackend over batch-norm test configurations."""

    def __init__(self, backend: Optional[ComputeBackend] = None,
                 num_threads: Optional[int] = None, seed: Optional[int] = None):
        self.backend = backend or TorchBackend()
        self.num_threads = DEFAULT_NUM_THREADS if num_threads is None else num_threads
        self.seed = DEFAULT_SEED if seed is None else seed

    def run_all(self, params_list: Iterable[BnormTestParams]) -> List[VerificationReport]:
        return [self.run(params) for params in params_list]

    def run(self, params: BnormTestParams) -> VerificationReport:
        report = VerificationReport(
            test_name=f"Batch Normalization: {params.name}",
            dtype=params.element_kind.value,
            shape=str(params.sizes),
            layouts=params.layouts,
            backend=self.backend.name,
            cpu_info=get_cpu_info(),
        )
        rng = np.random.default_rng(self.seed)
        for ctx in generate_contexts(params):
            checks: List[CheckResult] = []
            status = catch_expected_failures(
                lambda: self.run_context(params, ctx, rng, checks),
                params.expect_to_fail, params.expected_status,
            )
            status.name = f"{ctx.name} status"
            report.add_result(status)
            for result in checks:
                report.add_result(result)
        return report

    def run_context(self, params: BnormTestParams, ctx: ComputationContext,
                    rng: np.random.Generator, checks: List[CheckResult]) -> None:
        """Verify one context; appends its results to checks."""
        data_layout = MemoryLayout.create(ctx.shape, params.data_format)
        if ctx.is_forward:
            self._forward(ctx, data_layout, rng, checks)
        else:
            diff_layout = MemoryLayout.create(ctx.shape, params.diff_format)
            self._backward(ctx, data_layout, diff_layout, rng, checks)

    # -------------------------------------------------------------------------

    def _execute(self, pd: PrimitiveDescriptor, args: Buffers) -> None:
        primitive = self.backend.instantiate(pd)
        self.backend.execute(primitive, args)

    @staticmethod
    def _check_padding(prefix: str, layouts: Dict[str, MemoryLayout], args: Buffers,
                       checks: List[CheckResult]) -> None:
        for name, layout in layouts.items():
            if not layout.has_padding:
                continue
            bad = layout.check_zero_tail(args[name])
            checks.append(CheckResult.padding(f"{prefix} {name} padding", bad, args[name]))

    def _forward(self, ctx: ComputationContext, layout: MemoryLayout,
                 rng: np.random.Generator, checks: List[CheckResult]) -> None:
        pd = self.backend.create_descriptor(ctx, layout)
        kind = ctx.element_kind
        args: Buffers = {"src": allocate(layout, kind), "dst": allocate(layout, kind)}
        fill_data(args["src"], rng)
        fill_data(args["dst"], rng)
        if ctx.use_scale_shift:
            args["weights"] = fill_data(np.zeros(pd.weights_size, np.float32), rng)
        if pd.has_stats:
            args["mean"] = np.zeros(pd.stats_size, np.float32)
            args["variance"] = np.zeros(pd.stats_size, np.float32)
            if ctx.use_global_stats:
                fill_data(args["mean"], rng)
                fill_data(args["variance"], rng)

        data_layouts = {"src": layout, "dst": layout}
        for name in data_layouts:
            layout.zero_tail(args[name])

        self._execute(pd, args)

        self._check_padding(ctx.name, data_layouts, args, checks)
        results = check_forward(
            ctx, args["src"], layout,
            self.backend.read_output(args, "dst"), layout,
            mean=args.get("mean"), variance=args.get("variance"),
            weights=args.get("weights"),
            num_threads=self.num_threads,
        )
        checks.extend(CheckResult.from_comparison(ctx.name, cmp) for cmp in results.values())

    def _backward(self, ctx: ComputationContext, data_layout: MemoryLayout,
                  diff_layout: MemoryLayout, rng: np.random.Generator,
                  checks: List[CheckResult]) -> None:
        pd = self.backend.create_descriptor(ctx, data_layout, diff_layout)
        full = ctx.propagation is PropagationKind.BACKWARD
        args: Buffers = {
            "src": allocate(data_layout),
            "diff_dst": allocate(diff_layout),
            "diff_src": allocate(diff_layout),
            "mean": np.zeros(pd.stats_size, np.float32),
            "variance": np.zeros(pd.stats_size, np.float32),
        }
        for name in ("src", "diff_dst", "diff_src", "mean", "variance"):
            fill_data(args[name], rng)
        if ctx.use_scale_shift:
            args["weights"] = fill_data(np.zeros(pd.weights_size, np.float32), rng)
        if full:
            args["diff_weights"] = fill_data(np.zeros(pd.weights_size, np.float32), rng)

        layouts = {"src": data_layout, "diff_dst": diff_layout, "diff_src": diff_layout}
        for name, layout in layouts.items():
            layout.zero_tail(args[name])

        self._execute(pd, args)

        self._check_padding(ctx.name, layouts, args, checks)
        results = check_backward(
            ctx, args["src"], data_layout, args["diff_dst"], diff_layout,
            args["mean"], args["variance"], args.get("weights"),
            self.backend.read_output(args, "diff_src"), diff_layout,
            diff_weights=self.backend.read_output(args, "diff_weights") if full else None,
            num_threads=self.num_threads,
        )
        checks.extend(CheckResult.from_comparison(ctx.name, cmp) for cmp in results.values())
