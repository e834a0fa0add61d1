"""
vllm-ggml :: Tensor Arena & Directory

All model tensors live in ONE contiguous uint8 arena, sized up front by the
model builder. A tensor is a record (name, type, ne, offset, nbytes); every
other reference to it is an integer handle into the arena's record list.

  TensorArena      — owns the bytes and the records, hands out handles
  TensorDirectory  — name → handle, filled by the builder, consumed by the
                     checkpoint reader while matching tensor records

INL - 2025
"""

import torch
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from vllm_ggml.core.errors import AllocationError
from vllm_ggml.core.quantization import GGMLType, tensor_nbytes, dequantize


TENSOR_ALIGNMENT = 32


def align_up(n: int, alignment: int = TENSOR_ALIGNMENT) -> int:
    return (n + alignment - 1) // alignment * alignment


@dataclass
class TensorRecord:
    """A declared tensor. `ne` is GGML order (innermost dim first)."""
    name: str
    ggml_type: GGMLType
    ne: Tuple[int, ...]
    offset: int
    nbytes: int
    offloaded: bool = False
    loaded: bool = False

    @property
    def n_elements(self) -> int:
        n = 1
        for d in self.ne:
            n *= d
        return n

    @property
    def shape(self) -> Tuple[int, ...]:
        """Row-major (PyTorch) shape."""
        return tuple(reversed(self.ne))


class TensorArena:
    """
    Contiguous byte arena holding every model tensor.

    Memory layout:
        [tensor 0 | pad | tensor 1 | pad | ... | reserve]

    Each tensor starts on a TENSOR_ALIGNMENT boundary so typed views
    (float32 / float16) over its bytes are valid.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        try:
            self.buffer = torch.zeros(capacity, dtype=torch.uint8)
        except (RuntimeError, MemoryError) as e:
            raise AllocationError(f"failed to allocate {capacity} byte model arena") from e
        self.records: List[TensorRecord] = []
        self.used: int = 0

        # handle → tensor relocated off the arena (offloaded layers)
        self._placed: Dict[int, torch.Tensor] = {}
        # handle → dequantized float32 weight
        self._float_cache: Dict[int, torch.Tensor] = {}

    def new_tensor(self, name: str, ggml_type: GGMLType, ne: Tuple[int, ...],
                   offloaded: bool = False) -> int:
        """Carve a tensor out of the arena. Returns its handle."""
        offset = align_up(self.used)
        nbytes = tensor_nbytes(ne, ggml_type)
        if offset + nbytes > self.capacity:
            raise AllocationError(
                f"arena exhausted: tensor '{name}' needs {nbytes} bytes at offset "
                f"{offset}, capacity {self.capacity}"
            )
        self.records.append(TensorRecord(
            name=name, ggml_type=ggml_type, ne=tuple(ne),
            offset=offset, nbytes=nbytes, offloaded=offloaded,
        ))
        self.used = offset + nbytes
        return len(self.records) - 1

    def record(self, handle: int) -> TensorRecord:
        return self.records[handle]

    def raw(self, handle: int) -> torch.Tensor:
        """Byte view of a tensor: (nbytes,) uint8."""
        if handle in self._placed:
            return self._placed[handle]
        rec = self.records[handle]
        return self.buffer[rec.offset:rec.offset + rec.nbytes]

    def place(self, handle: int, device: str):
        """Relocate a loaded tensor's bytes to `device` (accelerator offload)."""
        self._placed[handle] = self.raw(handle).to(device)
        self._float_cache.pop(handle, None)

    def typed(self, handle: int) -> torch.Tensor:
        """F32/F16 tensor viewed in its own dtype and row-major shape (no copy)."""
        rec = self.records[handle]
        dtype = {GGMLType.F32: torch.float32, GGMLType.F16: torch.float16}[rec.ggml_type]
        return self.raw(handle).view(dtype).reshape(rec.shape)

    def weight(self, handle: int) -> torch.Tensor:
        """Float32 compute copy of a weight, dequantized once and cached."""
        if handle not in self._float_cache:
            rec = self.records[handle]
            self._float_cache[handle] = dequantize(self.raw(handle), rec.ggml_type, rec.ne)
        return self._float_cache[handle]

    def __len__(self) -> int:
        return len(self.records)


class TensorDirectory:
    """Append-only name → handle mapping used while matching tensor records."""

    def __init__(self):
        self._handles: Dict[str, int] = {}

    def register(self, name: str, handle: int):
        if name in self._handles:
            raise ValueError(f"tensor '{name}' registered twice")
        self._handles[name] = handle

    def lookup(self, name: str) -> Optional[int]:
        return self._handles.get(name)

    def names(self) -> List[str]:
        return list(self._handles)

    def __contains__(self, name: str) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[Tuple[str, int]]:
        return iter(self._handles.items())
