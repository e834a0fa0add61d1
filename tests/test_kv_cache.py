"""
vllm-ggml :: Test KV Cache

Tests:
  - slot arithmetic
  - capacity check raises before writing
  - append-only writes at n_past
  - F16 storage, float32 reads
  - reset

INL - 2025
"""

import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vllm_ggml.core.errors import ContextOverflowError
from vllm_ggml.core.quantization import GGMLType
from vllm_ggml.models.builder import ModelBuilder
from vllm_ggml.models.config import HParams, MPT_FAMILY


@pytest.fixture
def cache():
    hp = HParams(d_model=8, max_seq_len=6, n_heads=2, n_layers=2, n_vocab=16)
    hp.apply_context_length(0)
    return ModelBuilder(hp, MPT_FAMILY, GGMLType.F32).build().kv_cache


class TestKVCache:
    def test_geometry(self, cache):
        assert cache.n_ctx == 6
        assert cache.memory_k.shape == (2, 6, 8)
        assert cache.dtype == torch.float16
        assert cache.nbytes == 2 * (2 * 6 * 8) * 2

    def test_slot(self, cache):
        assert cache.slot(0, 0) == 0
        assert cache.slot(0, 5) == 40
        assert cache.slot(1, 2) == (6 + 2) * 8

    def test_write_then_read(self, cache):
        k = torch.arange(16, dtype=torch.float32).view(2, 8)
        v = -k
        cache.write_kv_batch(1, 3, k, v)
        k_all, v_all = cache.read_kv(1, 5)
        assert k_all.dtype == torch.float32
        assert torch.equal(k_all[3:5], k)
        assert torch.equal(v_all[3:5], v)
        assert torch.count_nonzero(k_all[:3]) == 0
        # other layer untouched
        assert torch.count_nonzero(cache.memory_k[0]) == 0

    def test_stored_as_f16(self, cache):
        k = torch.full((1, 8), 1.0 + 2 ** -13)
        cache.write_kv_batch(0, 0, k, k)
        k_all, _ = cache.read_kv(0, 1)
        assert torch.all(k_all == 1.0)

    def test_append_preserves_prefix(self, cache):
        first = torch.randn(2, 8)
        cache.write_kv_batch(0, 0, first, first)
        before = cache.memory_k[0, :2].clone()
        cache.write_kv_batch(0, 2, torch.randn(3, 8), torch.randn(3, 8))
        assert torch.equal(cache.memory_k[0, :2], before)

    @pytest.mark.parametrize("n_past,n", [(5, 2), (6, 1), (-1, 1), (0, 7)])
    def test_overflow(self, cache, n_past, n):
        with pytest.raises(ContextOverflowError):
            cache.check_capacity(n_past, n)

    def test_overflow_writes_nothing(self, cache):
        with pytest.raises(ContextOverflowError) as exc:
            cache.write_kv_batch(0, 5, torch.ones(2, 8), torch.ones(2, 8))
        assert exc.value.n_ctx == 6
        assert torch.count_nonzero(cache.memory_k) == 0

    def test_full_context_fits(self, cache):
        cache.check_capacity(0, 6)
        cache.check_capacity(5, 1)

    def test_reset(self, cache):
        cache.write_kv_batch(0, 0, torch.ones(1, 8), torch.ones(1, 8))
        cache.reset()
        assert torch.count_nonzero(cache.memory_k) == 0
        assert torch.count_nonzero(cache.memory_v) == 0
