"""
vllm-ggml :: Test GGML type table + block quantization

Tests:
  - ftype split / ftype → weight type mapping
  - type code parsing and block sizes
  - hand-built Q4_0 / Q4_1 / Q5_0 / Q5_1 / Q8_0 / Q8_1 blocks dequantize exactly
  - reference quantizers stay within one quantization step

INL - 2025
"""

import struct
import numpy as np
import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vllm_ggml.core.errors import InvalidFormatError
from vllm_ggml.core.quantization import (
    GGMLType, block_size, type_size, tensor_nbytes, is_quantized,
    parse_type_code, split_ftype, ftype_to_type,
    dequantize, quantize_q4_0, quantize_q8_0,
)


def _raw(data: bytes) -> torch.Tensor:
    return torch.frombuffer(bytearray(data), dtype=torch.uint8)


# =========================================================================
# Type table
# =========================================================================

class TestTypeTable:
    def test_classic_block_sizes(self):
        assert (block_size(GGMLType.F32), type_size(GGMLType.F32)) == (1, 4)
        assert (block_size(GGMLType.F16), type_size(GGMLType.F16)) == (1, 2)
        assert (block_size(GGMLType.Q4_0), type_size(GGMLType.Q4_0)) == (32, 18)
        assert (block_size(GGMLType.Q4_1), type_size(GGMLType.Q4_1)) == (32, 20)
        assert (block_size(GGMLType.Q5_0), type_size(GGMLType.Q5_0)) == (32, 22)
        assert (block_size(GGMLType.Q5_1), type_size(GGMLType.Q5_1)) == (32, 24)
        assert (block_size(GGMLType.Q8_0), type_size(GGMLType.Q8_0)) == (32, 34)
        assert (block_size(GGMLType.Q8_1), type_size(GGMLType.Q8_1)) == (32, 40)

    def test_k_quant_block_sizes(self):
        assert block_size(GGMLType.Q4_K) == 256
        assert type_size(GGMLType.Q2_K) == 84
        assert type_size(GGMLType.Q3_K) == 110
        assert type_size(GGMLType.Q4_K) == 144
        assert type_size(GGMLType.Q5_K) == 176
        assert type_size(GGMLType.Q6_K) == 210
        assert type_size(GGMLType.Q8_K) == 292

    def test_tensor_nbytes(self):
        assert tensor_nbytes((32, 4), GGMLType.Q4_0) == 4 * 18
        assert tensor_nbytes((8, 16), GGMLType.F32) == 8 * 16 * 4
        assert tensor_nbytes((100,), GGMLType.F16) == 200

    def test_is_quantized(self):
        assert is_quantized(GGMLType.Q8_0)
        assert not is_quantized(GGMLType.F16)

    def test_parse_type_code(self):
        assert parse_type_code(8) == GGMLType.Q8_0
        # 4 and 5 were retired from the table
        for code in (4, 5, 19, -1):
            with pytest.raises(InvalidFormatError):
                parse_type_code(code)


class TestFtype:
    def test_split(self):
        assert split_ftype(2) == (2, 0)
        assert split_ftype(2002) == (2, 2)
        assert split_ftype(1007) == (7, 1)

    def test_mapping(self):
        assert ftype_to_type(0) == GGMLType.F32
        assert ftype_to_type(1) == GGMLType.F16
        assert ftype_to_type(2) == GGMLType.Q4_0
        assert ftype_to_type(3) == GGMLType.Q4_1
        assert ftype_to_type(4) == GGMLType.Q4_1
        assert ftype_to_type(7) == GGMLType.Q8_0
        assert ftype_to_type(8) == GGMLType.Q5_0
        assert ftype_to_type(9) == GGMLType.Q5_1
        assert ftype_to_type(12) == GGMLType.Q4_K

    @pytest.mark.parametrize("ftype", [5, 6, 15, 99])
    def test_unknown_ftype(self, ftype):
        with pytest.raises(InvalidFormatError):
            ftype_to_type(ftype)


# =========================================================================
# Dequantization
# =========================================================================

class TestDequantize:
    def test_f32_shape_reversed(self):
        values = np.arange(12, dtype="<f4")
        out = dequantize(_raw(values.tobytes()), GGMLType.F32, (4, 3))
        assert out.shape == (3, 4)
        assert out[1, 0].item() == 4.0

    def test_f16(self):
        values = np.array([0.5, -2.0, 3.25, 0.0], dtype="<f2")
        out = dequantize(_raw(values.tobytes()), GGMLType.F16, (4,))
        assert out.dtype == torch.float32
        assert out.tolist() == [0.5, -2.0, 3.25, 0.0]

    def test_q4_0_block(self):
        # low nibble 8 → 0, high nibble 1 → (1 - 8) * 0.5
        block = struct.pack("<e", 0.5) + bytes([0x18] * 16)
        out = dequantize(_raw(block), GGMLType.Q4_0, (32,))
        assert out[:16].tolist() == [0.0] * 16
        assert out[16:].tolist() == [-3.5] * 16

    def test_q4_1_block(self):
        block = struct.pack("<ee", 1.0, -2.0) + bytes([0x21] * 16)
        out = dequantize(_raw(block), GGMLType.Q4_1, (32,))
        assert out[:16].tolist() == [-1.0] * 16
        assert out[16:].tolist() == [0.0] * 16

    def test_q5_0_high_bits(self):
        all_set = struct.pack("<eI", 1.0, 0xFFFFFFFF) + bytes(16)
        none_set = struct.pack("<eI", 1.0, 0) + bytes(16)
        assert dequantize(_raw(all_set), GGMLType.Q5_0, (32,)).tolist() == [0.0] * 32
        assert dequantize(_raw(none_set), GGMLType.Q5_0, (32,)).tolist() == [-16.0] * 32

    def test_q5_1_block(self):
        # first 16 elements get the fifth bit, low nibble 1; the rest high nibble 2
        block = struct.pack("<eeI", 0.5, 2.0, 0x0000FFFF) + bytes([0x21] * 16)
        out = dequantize(_raw(block), GGMLType.Q5_1, (32,))
        assert out[:16].tolist() == [10.5] * 16
        assert out[16:].tolist() == [3.0] * 16

    def test_q8_0_block(self):
        qs = np.arange(-16, 16, dtype=np.int8)
        block = struct.pack("<e", 0.25) + qs.tobytes()
        out = dequantize(_raw(block), GGMLType.Q8_0, (32,))
        assert torch.allclose(out, torch.arange(-16, 16, dtype=torch.float32) * 0.25)

    def test_q8_1_block(self):
        qs = np.arange(-16, 16, dtype=np.int8)
        # the precomputed sum does not enter the values
        block = struct.pack("<ff", 0.5, 123.0) + qs.tobytes()
        out = dequantize(_raw(block), GGMLType.Q8_1, (32,))
        assert torch.allclose(out, torch.arange(-16, 16, dtype=torch.float32) * 0.5)

    def test_k_quant_not_dequantized(self):
        raw = torch.zeros(type_size(GGMLType.Q4_K), dtype=torch.uint8)
        with pytest.raises(NotImplementedError):
            dequantize(raw, GGMLType.Q4_K, (256,))


class TestQuantizers:
    def test_q8_0_within_one_step(self):
        torch.manual_seed(0)
        w = torch.randn(4, 64)
        data = quantize_q8_0(w)
        assert len(data) == tensor_nbytes((64, 4), GGMLType.Q8_0)
        out = dequantize(_raw(data), GGMLType.Q8_0, (64, 4))
        step = w.abs().reshape(-1, 32).max(dim=-1).values / 127.0
        err = (out - w).abs().reshape(-1, 32).max(dim=-1).values
        assert torch.all(err <= step * 0.6 + 1e-3)

    def test_q4_0_within_one_step(self):
        torch.manual_seed(1)
        w = torch.randn(2, 32)
        data = quantize_q4_0(w)
        assert len(data) == 2 * 18
        out = dequantize(_raw(data), GGMLType.Q4_0, (32, 2))
        step = w.abs().max(dim=-1, keepdim=True).values / 8.0
        assert torch.all((out - w).abs() <= step * 1.05 + 1e-3)
