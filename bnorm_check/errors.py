"""
errors.py - Status codes and failure kinds for batch-norm verification.

A compute backend signals construction/execution problems by raising
PrimitiveError with one of the Status codes below. Numeric and layout
problems found by the verifier are never raised; they are recorded as
results tagged with a FailureKind.
"""

from enum import Enum


class Status(Enum):
    """Primitive status codes (mirrors the C API status values)."""
    SUCCESS = 0
    OUT_OF_MEMORY = 1
    INVALID_ARGUMENTS = 2
    UNIMPLEMENTED = 3
    RUNTIME_ERROR = 4


class FailureKind(Enum):
    """Category of a recorded verification failure."""
    NUMERIC = "numeric"   # value outside relative-error tolerance
    PADDING = "padding"   # non-zero element in a channel padding tail
    STATUS = "status"     # unexpected (or missing) primitive status


class PrimitiveError(Exception):
    """Raised by a compute backend when a primitive cannot be built or run."""

    def __init__(self, status: Status, message: str = ""):
        self.status = status
        self.message = message
        super().__init__(f"{status.name}: {message}" if message else status.name)
