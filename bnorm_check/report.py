"""
Report utilities for batch-norm verification runs.

Provides:
- Host description (CPU model name, core count)
- CheckResult / VerificationReport with pretty-printed output
"""
import os
import platform
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import torch

from .bnorm_config import DEBUG
from .compare import MAX_RECORDED_MISMATCHES, Comparison, Mismatch
from .errors import FailureKind


# ═══════════════════════════════════════════════════════════════════════════════
# Host description
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CPUInfo:
    """Host CPU as shown in report headers."""
    model_name: str = "Unknown"
    num_cores: int = 1


def _cpu_model_name() -> str:
    system = platform.system()
    if system == "Linux":
        try:
            with open("/proc/cpuinfo", "r") as f:
                for line in f:
                    if line.startswith("model name"):
                        return line.split(":", 1)[1].strip()
        except OSError:
            pass
    elif system == "Darwin":
        try:
            result = subprocess.run(["sysctl", "-n", "machdep.cpu.brand_string"],
                                    capture_output=True, text=True)
            if result.stdout.strip():
                return result.stdout.strip()
        except OSError:
            pass
    return platform.processor() or "Unknown"


_cpu_info: Optional[CPUInfo] = None

def get_cpu_info() -> CPUInfo:
    """Detected once per process."""
    global _cpu_info
    if _cpu_info is None:
        _cpu_info = CPUInfo(model_name=_cpu_model_name(), num_cores=os.cpu_count() or 1)
    return _cpu_info


# ═══════════════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CheckResult:
    """Outcome of a single named check within a configuration."""
    name: str
    passed: bool
    max_diff: float
    tolerance: float
    kind: FailureKind = FailureKind.NUMERIC
    checked: int = 0
    failed: int = 0
    mismatches: List[Mismatch] = field(default_factory=list)
    message: str = ""

    @classmethod
    def from_comparison(cls, prefix: str, cmp: Comparison) -> "CheckResult":
        return cls(
            name=f"{prefix} {cmp.name}",
            passed=cmp.passed,
            max_diff=cmp.max_error,
            tolerance=cmp.tolerance,
            kind=cmp.kind,
            checked=cmp.checked,
            failed=cmp.failed,
            mismatches=list(cmp.mismatches),
        )

    @classmethod
    def padding(cls, name: str, offsets: List[int], values: np.ndarray) -> "CheckResult":
        mismatches = [
            Mismatch(check=name, channel=-1, index=(off,), actual=float(values[off]),
                     expected=0.0, error=abs(float(values[off])), kind=FailureKind.PADDING)
            for off in offsets[:MAX_RECORDED_MISMATCHES]
        ]
        return cls(
            name=name,
            passed=not offsets,
            max_diff=max((m.error for m in mismatches), default=0.0),
            tolerance=0.0,
            kind=FailureKind.PADDING,
            failed=len(offsets),
            mismatches=mismatches,
        )

    @classmethod
    def status(cls, name: str, passed: bool, message: str = "") -> "CheckResult":
        return cls(name=name, passed=passed, max_diff=0.0, tolerance=0.0,
                   kind=FailureKind.STATUS, failed=0 if passed else 1, message=message)


@dataclass
class VerificationReport:
    """All check results for one test configuration."""
    test_name: str
    dtype: str = "f32"
    shape: str = ""
    layouts: str = ""
    backend: str = ""
    results: List[CheckResult] = field(default_factory=list)
    cpu_info: Optional[CPUInfo] = None

    def add_result(self, result: CheckResult):
        self.results.append(result)

    def all_passed(self) -> bool:
        return all(r.passed for r in self.results)

    def failures(self, kind: Optional[FailureKind] = None) -> List[CheckResult]:
        return [r for r in self.results if not r.passed and (kind is None or r.kind is kind)]

    def result(self, name: str) -> CheckResult:
        for r in self.results:
            if r.name == name:
                return r
        raise KeyError(name)

    def counts(self) -> Dict[str, int]:
        return {
            "total": len(self.results),
            "passed": sum(1 for r in self.results if r.passed),
        }

    def print_report(self, debug: bool = DEBUG):
        """Print the report; with debug, also the first mismatches of failed checks."""
        cpu = self.cpu_info or get_cpu_info()

        print()
        print("=" * 80)
        print(f"  TEST: {self.test_name}")
        print("=" * 80)
        print(f"  CPU:        {cpu.model_name} ({cpu.num_cores} cores)")
        print(f"  Dtype:      {self.dtype}")
        if self.shape:
            print(f"  Shape:      {self.shape}")
        if self.layouts:
            print(f"  Layouts:    {self.layouts}")
        if self.backend:
            print(f"  Backend:    {self.backend}")

        print()
        print("  ACCURACY")
        print("  " + "-" * 40)
        max_name_len = max(len(r.name) for r in self.results) if self.results else 10
        for r in self.results:
            status = "\033[92mPASS\033[0m" if r.passed else "\033[91mFAIL\033[0m"
            line = f"  {r.name:<{max_name_len}}  max_diff={r.max_diff:.2e}  tol={r.tolerance:.0e}  [{status}]"
            if r.message:
                line += f"  {r.message}"
            elif not r.passed:
                line += f"  {r.failed}/{r.checked or r.failed} {r.kind.value}"
            print(line)
            if debug and not r.passed:
                for m in r.mismatches:
                    print(f"      {m}")

        print()
        print("  " + "-" * 40)
        c = self.counts()
        if self.all_passed():
            print(f"  \033[92mALL CHECKS PASSED ({c['passed']}/{c['total']})\033[0m")
        else:
            print(f"  \033[91mSOME CHECKS FAILED ({c['passed']}/{c['total']} passed)\033[0m")
        print("=" * 80)
        print()


def print_system_info():
    """Print system information header."""
    cpu = get_cpu_info()
    print()
    print("=" * 60)
    print("  Batch Normalization Verification Suite")
    print("=" * 60)
    print(f"  CPU:     {cpu.model_name}")
    print(f"  Cores:   {cpu.num_cores}")
    print(f"  NumPy:   {np.__version__}")
    print(f"  PyTorch: {torch.__version__}")
    print("=" * 60)
    print()
