"""
layout.py - Logical -> physical index mapping for (possibly blocked) tensors.

A logical element (n, c, d, h, w) is first flattened into the *logical index*
of a dense n,c,d,h,w tensor whose channel dimension is padded:

    logical = n*Cp*D*H*W + c*D*H*W + d*H*W + h*W + w        (Cp = padded_channels)

and then mapped to the physical offset of the chosen memory format:

    plain   (nchw, ncdhw, nc):  identical to the logical index (Cp == C)
    channels-last (nhwc, ndhwc): (n*S + s)*C + c
    blocked (nChw8c, nCdhw16c, ...): n*Cp*S + (c // b)*S*b + s*b + c % b

where S = D*H*W and s is the spatial position. Blocked formats round the
channel count up to the block size; the padding channels [C, Cp) must always
read as zero.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Union

import numpy as np

from .bnorm_types import TensorShape
from .errors import PrimitiveError, Status

IndexLike = Union[int, np.ndarray]


class MemoryFormat(Enum):
    # value: (tag, ndims, channel block, channels last)
    NC = ("nc", 2, 1, False)
    NCHW = ("nchw", 4, 1, False)
    NHWC = ("nhwc", 4, 1, True)
    NCHW8C = ("nChw8c", 4, 8, False)
    NCHW16C = ("nChw16c", 4, 16, False)
    NCDHW = ("ncdhw", 5, 1, False)
    NDHWC = ("ndhwc", 5, 1, True)
    NCDHW8C = ("nCdhw8c", 5, 8, False)
    NCDHW16C = ("nCdhw16c", 5, 16, False)

    @property
    def tag(self) -> str:
        return self.value[0]

    @property
    def ndims(self) -> int:
        return self.value[1]

    @property
    def block(self) -> int:
        return self.value[2]

    @property
    def channels_last(self) -> bool:
        return self.value[3]

    @classmethod
    def from_tag(cls, tag: str) -> "MemoryFormat":
        for fmt in cls:
            if fmt.tag == tag:
                return fmt
        raise ValueError(f"Unknown memory format: {tag}")


@dataclass(frozen=True)
class MemoryLayout:
    """Physical storage description of a TensorShape."""
    shape: TensorShape
    fmt: MemoryFormat
    padded_channels: int

    @classmethod
    def create(cls, shape: TensorShape, fmt: MemoryFormat) -> "MemoryLayout":
        if any(dim < 0 for dim in shape.dims):
            raise PrimitiveError(Status.INVALID_ARGUMENTS, f"negative dimension in ({shape})")
        if fmt.ndims != shape.ndims:
            raise PrimitiveError(
                Status.INVALID_ARGUMENTS,
                f"format {fmt.tag} expects {fmt.ndims} dims, shape has {shape.ndims}",
            )
        b = fmt.block
        padded = (shape.c + b - 1) // b * b
        return cls(shape=shape, fmt=fmt, padded_channels=padded)

    @property
    def size(self) -> int:
        """Number of physical elements, padding included."""
        return self.shape.mb * self.padded_channels * self.shape.spatial

    @property
    def has_padding(self) -> bool:
        return self.padded_channels > self.shape.c

    # -------------------------------------------------------------------------
    # Index mapping
    # -------------------------------------------------------------------------

    def logical_index(self, n: IndexLike, c: IndexLike, d: IndexLike = 0,
                      h: IndexLike = 0, w: IndexLike = 0) -> IndexLike:
        s = self.shape
        return ((n * self.padded_channels + c) * s.d + d) * s.h * s.w + h * s.w + w

    def map_index(self, logical: IndexLike) -> IndexLike:
        """Physical offset of the element at a (padded) logical flat index."""
        S = self.shape.spatial
        Cp = self.padded_channels
        sp = logical % S
        c = (logical // S) % Cp
        n = logical // (S * Cp)

        fmt = self.fmt
        if fmt.channels_last:
            return (n * S + sp) * Cp + c
        if fmt.block > 1:
            b = fmt.block
            return n * Cp * S + (c // b) * S * b + sp * b + c % b
        return logical

    def offset(self, n: IndexLike, c: IndexLike, d: IndexLike = 0,
               h: IndexLike = 0, w: IndexLike = 0) -> IndexLike:
        return self.map_index(self.logical_index(n, c, d, h, w))

    def channel_offsets(self, c: int) -> np.ndarray:
        """Physical offsets of every element of channel c, in (n, d, h, w) order."""
        S = self.shape.spatial
        n = np.arange(self.shape.mb, dtype=np.int64)[:, None]
        sp = np.arange(S, dtype=np.int64)[None, :]
        logical = n * self.padded_channels * S + c * S + sp
        return self.map_index(logical).reshape(-1)

    def padding_offsets(self) -> np.ndarray:
        tail = [self.channel_offsets(c) for c in range(self.shape.c, self.padded_channels)]
        if not tail:
            return np.empty(0, dtype=np.int64)
        return np.concatenate(tail)

    def logical_offsets(self) -> np.ndarray:
        """Physical offsets shaped (mb, c, d, h, w)."""
        s = self.shape
        n, c, d, h, w = np.meshgrid(
            *(np.arange(dim, dtype=np.int64) for dim in s.dims), indexing="ij"
        )
        return self.offset(n, c, d, h, w)

    # -------------------------------------------------------------------------
    # Buffer helpers
    # -------------------------------------------------------------------------

    def to_logical(self, buffer: np.ndarray) -> np.ndarray:
        """Gather a physical buffer into a dense (mb, c, d, h, w) array."""
        return buffer[self.logical_offsets()]

    def from_logical(self, array: np.ndarray, buffer: np.ndarray) -> np.ndarray:
        """Scatter a (mb, c, d, h, w) array into a physical buffer (padding untouched)."""
        buffer[self.logical_offsets()] = array
        return buffer

    def zero_tail(self, buffer: np.ndarray) -> None:
        buffer[self.padding_offsets()] = 0

    def check_zero_tail(self, buffer: np.ndarray) -> List[int]:
        """Return the physical offsets in the padding tail that are not zero."""
        pad = self.padding_offsets()
        bad = pad[buffer[pad] != 0]
        return [int(off) for off in bad]

    def __str__(self) -> str:
        if self.has_padding:
            return f"{self.fmt.tag}(c={self.shape.c}->{self.padded_channels})"
        return self.fmt.tag
