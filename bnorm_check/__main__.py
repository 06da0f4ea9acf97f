#!/usr/bin/env python3
"""
Batch-norm verification runner.

Usage:
    python -m bnorm_check                  # full matrix
    python -m bnorm_check --quick          # one case per layout family
    python -m bnorm_check --filter s8      # configurations whose name contains 's8'
    python -m bnorm_check --threads 4 --seed 7
"""

import argparse
import sys

from .bnorm_config import DEFAULT_NUM_THREADS, DEFAULT_SEED, DEBUG, default_test_params
from .driver import BnormVerifier
from .primitive import TorchBackend
from .report import print_system_info


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Verify batch normalization against a reference model")
    parser.add_argument("--quick", action="store_true", help="Run the quick subset of the matrix")
    parser.add_argument("--filter", type=str, default="", help="Only configurations whose name contains this")
    parser.add_argument("--threads", type=int, default=DEFAULT_NUM_THREADS,
                        help="Worker threads for per-channel checks (0 = all cores)")
    parser.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Seed for input data")
    parser.add_argument("--debug", action="store_true", default=DEBUG, help="Print first mismatches of failed checks")
    args = parser.parse_args(argv)

    params = [p for p in default_test_params(quick=args.quick) if args.filter in p.name]
    if not params:
        print(f"ERROR: no configuration matches '{args.filter}'")
        return 1

    print_system_info()
    verifier = BnormVerifier(TorchBackend(), num_threads=args.threads, seed=args.seed)

    failed = []
    for p in params:
        report = verifier.run(p)
        report.print_report(debug=args.debug)
        if not report.all_passed():
            failed.append(p.name)

    print("=" * 60)
    print(f"  {len(params) - len(failed)}/{len(params)} configurations passed")
    for name in failed:
        print(f"  \033[91mFAIL\033[0m  {name}")
    print("=" * 60)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
