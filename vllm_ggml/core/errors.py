"""
vllm-ggml :: Errors

Every failure the loader and the decode engine can report.

  GGMLError
  ├── CheckpointIOError      file missing / unreadable
  ├── InvalidFormatError     bad magic, bad type code, truncated stream
  │   ├── UnknownTensorError     record name not declared by the builder
  │   ├── ShapeMismatchError     dims disagree with the declaration
  │   └── SizeMismatchError      byte size disagrees with the declaration
  ├── ContextOverflowError   n_past + N > n_ctx
  └── AllocationError        arena / scratch exhausted

Load errors are fatal to the load attempt. Nothing is downgraded to a default.

INL - 2025
"""

from typing import Sequence


class GGMLError(Exception):
    """Base class for all vllm-ggml errors."""


class CheckpointIOError(GGMLError, OSError):
    """Checkpoint file cannot be opened or read."""


class InvalidFormatError(GGMLError, ValueError):
    """Checkpoint stream violates the GGML file format."""


class UnknownTensorError(InvalidFormatError):
    """Tensor record names a tensor the model never declared."""

    def __init__(self, name: str):
        super().__init__(f"unknown tensor '{name}' in model file")
        self.name = name


class ShapeMismatchError(InvalidFormatError):
    """Tensor record dims disagree with the declared tensor."""

    def __init__(self, name: str, got: Sequence[int], expected: Sequence[int]):
        super().__init__(
            f"tensor '{name}' has wrong shape in model file: "
            f"got {list(got)}, expected {list(expected)}"
        )
        self.name = name
        self.got = tuple(got)
        self.expected = tuple(expected)


class SizeMismatchError(InvalidFormatError):
    """Tensor record byte size disagrees with the declared tensor."""

    def __init__(self, name: str, got: int, expected: int):
        super().__init__(
            f"tensor '{name}' has wrong size in model file: "
            f"got {got} bytes, expected {expected}"
        )
        self.name = name
        self.got = got
        self.expected = expected


class ContextOverflowError(GGMLError, ValueError):
    """Decode request does not fit in the KV cache."""

    def __init__(self, n_past: int, n_tokens: int, n_ctx: int):
        super().__init__(
            f"context overflow: n_past={n_past} + n_tokens={n_tokens} "
            f"exceeds context length {n_ctx}"
        )
        self.n_past = n_past
        self.n_tokens = n_tokens
        self.n_ctx = n_ctx


class AllocationError(GGMLError, MemoryError):
    """Model arena or scratch space could not be allocated."""
