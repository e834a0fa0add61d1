"""
vllm-ggml :: GGML Types & Block Quantization

The GGML element-type table as the legacy file format understands it:
  - type codes and (block_size, bytes_per_block)
  - ftype (file-level storage type) → weight type, with the
    quantization-version stamp split off
  - block dequantization for the classic formats (Q4_0, Q4_1, Q5_0,
    Q5_1, Q8_0, Q8_1) and reference quantizers for Q4_0 / Q8_0

K-quant types (Q2_K..Q8_K) are sized and validated so their files load,
but are not dequantized for compute.

Block layouts (little-endian, d/m are fp16 unless noted):
  Q4_0: d, qs[16]                 x = (nibble - 8) * d
  Q4_1: d, m, qs[16]              x = nibble * d + m
  Q5_0: d, qh[4], qs[16]          x = (nibble | bit5 << 4) - 16) * d
  Q5_1: d, m, qh[4], qs[16]       x = (nibble | bit5 << 4) * d + m
  Q8_0: d, qs[32] int8            x = q * d
  Q8_1: d(f32), s(f32), qs[32]    x = q * d

INL - 2025
"""

import numpy as np
import torch
from enum import IntEnum
from typing import Dict, Sequence, Tuple

from vllm_ggml.core.errors import InvalidFormatError


GGML_FILE_MAGIC = 0x67676D6C  # "ggml"
GGML_QNT_VERSION = 2
GGML_QNT_VERSION_FACTOR = 1000

QK = 32
QK_K = 256


class GGMLType(IntEnum):
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8
    Q8_1 = 9
    Q2_K = 10
    Q3_K = 11
    Q4_K = 12
    Q5_K = 13
    Q6_K = 14
    Q8_K = 15
    I8 = 16
    I16 = 17
    I32 = 18


# type → (elements per block, bytes per block)
GGML_TYPE_SIZES: Dict[GGMLType, Tuple[int, int]] = {
    GGMLType.F32: (1, 4),
    GGMLType.F16: (1, 2),
    GGMLType.Q4_0: (QK, 2 + QK // 2),
    GGMLType.Q4_1: (QK, 2 + 2 + QK // 2),
    GGMLType.Q5_0: (QK, 2 + 4 + QK // 2),
    GGMLType.Q5_1: (QK, 2 + 2 + 4 + QK // 2),
    GGMLType.Q8_0: (QK, 2 + QK),
    GGMLType.Q8_1: (QK, 4 + 4 + QK),
    GGMLType.Q2_K: (QK_K, 2 + 2 + QK_K // 16 + QK_K // 4),
    GGMLType.Q3_K: (QK_K, 2 + QK_K // 4 + QK_K // 8 + 12),
    GGMLType.Q4_K: (QK_K, 2 + 2 + QK_K // 2 + 12),
    GGMLType.Q5_K: (QK_K, 2 + 2 + QK_K // 2 + QK_K // 8 + 12),
    GGMLType.Q6_K: (QK_K, 2 + QK_K // 2 + QK_K // 4 + QK_K // 16),
    GGMLType.Q8_K: (QK_K, 4 + QK_K + QK_K // 8),
    GGMLType.I8: (1, 1),
    GGMLType.I16: (1, 2),
    GGMLType.I32: (1, 4),
}


# ftype stored in the hparams block → type of the big weight matrices
FTYPE_TO_TYPE: Dict[int, GGMLType] = {
    0: GGMLType.F32,
    1: GGMLType.F16,
    2: GGMLType.Q4_0,
    3: GGMLType.Q4_1,
    4: GGMLType.Q4_1,   # MOSTLY_Q4_1_SOME_F16
    7: GGMLType.Q8_0,
    8: GGMLType.Q5_0,
    9: GGMLType.Q5_1,
    10: GGMLType.Q2_K,
    11: GGMLType.Q3_K,
    12: GGMLType.Q4_K,
    13: GGMLType.Q5_K,
    14: GGMLType.Q6_K,
}


def parse_type_code(code: int) -> GGMLType:
    """Tensor-record type code → GGMLType. Unknown codes are format errors."""
    try:
        return GGMLType(code)
    except ValueError:
        raise InvalidFormatError(f"unknown tensor type code {code}") from None


def split_ftype(ftype: int) -> Tuple[int, int]:
    """Packed ftype → (base ftype, quantization version)."""
    return ftype % GGML_QNT_VERSION_FACTOR, ftype // GGML_QNT_VERSION_FACTOR


def ftype_to_type(ftype: int) -> GGMLType:
    """Base ftype → weight storage type. No default for unknown values."""
    if ftype not in FTYPE_TO_TYPE:
        raise InvalidFormatError(f"bad ftype value {ftype}")
    return FTYPE_TO_TYPE[ftype]


def block_size(ggml_type: GGMLType) -> int:
    return GGML_TYPE_SIZES[ggml_type][0]


def type_size(ggml_type: GGMLType) -> int:
    return GGML_TYPE_SIZES[ggml_type][1]


def is_quantized(ggml_type: GGMLType) -> bool:
    return block_size(ggml_type) > 1


def tensor_nbytes(ne: Sequence[int], ggml_type: GGMLType) -> int:
    """Bytes occupied by a contiguous tensor with GGML dims `ne`."""
    nelements = 1
    for n in ne:
        nelements *= n
    return nelements * type_size(ggml_type) // block_size(ggml_type)


# =========================================================================
# Block layouts (numpy structured dtypes)
# =========================================================================

_BLOCK_DTYPES = {
    GGMLType.Q4_0: np.dtype([("d", "<f2"), ("qs", "u1", QK // 2)]),
    GGMLType.Q4_1: np.dtype([("d", "<f2"), ("m", "<f2"), ("qs", "u1", QK // 2)]),
    GGMLType.Q5_0: np.dtype([("d", "<f2"), ("qh", "<u4"), ("qs", "u1", QK // 2)]),
    GGMLType.Q5_1: np.dtype([("d", "<f2"), ("m", "<f2"), ("qh", "<u4"), ("qs", "u1", QK // 2)]),
    GGMLType.Q8_0: np.dtype([("d", "<f2"), ("qs", "i1", QK)]),
    GGMLType.Q8_1: np.dtype([("d", "<f4"), ("s", "<f4"), ("qs", "i1", QK)]),
}


def _unpack_nibbles(qs: np.ndarray) -> np.ndarray:
    """(nb, 16) packed bytes → (nb, 32): low nibbles first, then high."""
    return np.concatenate([qs & 0x0F, qs >> 4], axis=-1).astype(np.float32)


def _fifth_bits(qh: np.ndarray) -> np.ndarray:
    """(nb,) u32 high-bit masks → (nb, 32) values of 0 or 16."""
    shifts = np.arange(QK, dtype=np.uint32)
    return (((qh[:, None] >> shifts) & 1) << 4).astype(np.float32)


def _dequantize_blocks(data: np.ndarray, ggml_type: GGMLType) -> np.ndarray:
    blocks = data.view(_BLOCK_DTYPES[ggml_type])
    d = blocks["d"].astype(np.float32)[:, None]

    if ggml_type == GGMLType.Q4_0:
        return (_unpack_nibbles(blocks["qs"]) - 8.0) * d
    if ggml_type == GGMLType.Q4_1:
        m = blocks["m"].astype(np.float32)[:, None]
        return _unpack_nibbles(blocks["qs"]) * d + m
    if ggml_type == GGMLType.Q5_0:
        q = _unpack_nibbles(blocks["qs"]) + _fifth_bits(blocks["qh"])
        return (q - 16.0) * d
    if ggml_type == GGMLType.Q5_1:
        m = blocks["m"].astype(np.float32)[:, None]
        q = _unpack_nibbles(blocks["qs"]) + _fifth_bits(blocks["qh"])
        return q * d + m
    # Q8_0 / Q8_1
    return blocks["qs"].astype(np.float32) * d


def dequantize(raw: torch.Tensor, ggml_type: GGMLType, ne: Sequence[int]) -> torch.Tensor:
    """
    Raw tensor bytes → float32 tensor.

    raw:  (nbytes,) uint8, any device
    ne:   GGML dims (innermost first); result shape is reversed(ne)

    Returns a float32 tensor on raw's device.
    """
    shape = tuple(reversed(tuple(ne)))
    device = raw.device

    if ggml_type == GGMLType.F32:
        return raw.view(torch.float32).reshape(shape).clone()
    if ggml_type == GGMLType.F16:
        return raw.view(torch.float16).reshape(shape).float()
    if ggml_type not in _BLOCK_DTYPES:
        raise NotImplementedError(f"dequantization of {ggml_type.name} tensors is not supported")

    data = raw.cpu().numpy()
    values = _dequantize_blocks(data, ggml_type)
    return torch.from_numpy(values.reshape(shape)).to(device)


# =========================================================================
# Reference quantizers (row-wise, ne0 must be a multiple of 32)
# =========================================================================

def quantize_q8_0(weight: torch.Tensor) -> bytes:
    """
    float → Q8_0 blocks.

    weight: (..., ne0) float, ne0 % 32 == 0
    d = max|x| / 127, q = round(x / d)
    """
    x = weight.detach().float().cpu().numpy().reshape(-1, QK)
    amax = np.abs(x).max(axis=-1)
    d = amax / 127.0
    inv = np.where(d > 0, 1.0 / np.where(d > 0, d, 1.0), 0.0)

    blocks = np.zeros(x.shape[0], dtype=_BLOCK_DTYPES[GGMLType.Q8_0])
    blocks["d"] = d.astype(np.float16)
    blocks["qs"] = np.round(x * inv[:, None]).astype(np.int8)
    return blocks.tobytes()


def quantize_q4_0(weight: torch.Tensor) -> bytes:
    """
    float → Q4_0 blocks.

    d = (signed value with largest magnitude) / -8
    q = clamp(int(x / d + 8.5), 0, 15)
    """
    x = weight.detach().float().cpu().numpy().reshape(-1, QK)
    idx = np.abs(x).argmax(axis=-1)
    vmax = x[np.arange(x.shape[0]), idx]
    d = vmax / -8.0
    inv = np.where(d != 0, 1.0 / np.where(d != 0, d, 1.0), 0.0)

    q = np.minimum(15, (x * inv[:, None] + 8.5).astype(np.int32)).astype(np.uint8)
    blocks = np.zeros(x.shape[0], dtype=_BLOCK_DTYPES[GGMLType.Q4_0])
    blocks["d"] = d.astype(np.float16)
    blocks["qs"] = q[:, : QK // 2] | (q[:, QK // 2:] << 4)
    return blocks.tobytes()
