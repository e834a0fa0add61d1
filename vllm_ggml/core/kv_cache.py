"""
vllm-ggml :: KV Cache

Flat per-model key/value memory living in the tensor arena.

Memory layout (F16, one tensor each for K and V):
    n_layers * n_ctx * d_model elements
    slot(layer, pos) = (layer * n_ctx + pos) * d_model

All indexing is integer. Writes are append-only at the caller's n_past
offset; positions before n_past are never touched by a write.

INL - 2025
"""

import torch
from typing import Tuple

from vllm_ggml.core.errors import ContextOverflowError
from vllm_ggml.core.tensor_directory import TensorArena


class KVCache:
    """
    Key/value cache for a single decode session.

    Not safe for concurrent writers: the decode engine that owns the
    model serializes access.
    """

    def __init__(
        self,
        arena: TensorArena,
        k_handle: int,
        v_handle: int,
        num_layers: int,
        n_ctx: int,
        d_model: int,
    ):
        self.arena = arena
        self.k_handle = k_handle
        self.v_handle = v_handle
        self.num_layers = num_layers
        self.n_ctx = n_ctx
        self.d_model = d_model

        # (num_layers, n_ctx, d_model) views over the flat arena tensors
        self.memory_k = arena.typed(k_handle).view(num_layers, n_ctx, d_model)
        self.memory_v = arena.typed(v_handle).view(num_layers, n_ctx, d_model)
        self.dtype = self.memory_k.dtype

    @property
    def nbytes(self) -> int:
        return self.arena.record(self.k_handle).nbytes + self.arena.record(self.v_handle).nbytes

    def slot(self, layer_idx: int, position: int) -> int:
        """Element offset of (layer, position) in the flat cache."""
        return (layer_idx * self.n_ctx + position) * self.d_model

    def check_capacity(self, n_past: int, n_tokens: int):
        """Raise before any write if [n_past, n_past + n_tokens) does not fit."""
        if n_past < 0 or n_tokens < 0 or n_past + n_tokens > self.n_ctx:
            raise ContextOverflowError(n_past, n_tokens, self.n_ctx)

    def write_kv_batch(
        self,
        layer_idx: int,
        n_past: int,
        k: torch.Tensor,   # (n, d_model)
        v: torch.Tensor,   # (n, d_model)
    ):
        """Store n new key/value rows for a layer at positions [n_past, n_past + n)."""
        n = k.shape[0]
        self.check_capacity(n_past, n)
        self.memory_k[layer_idx, n_past:n_past + n] = k.to(self.memory_k.device, self.dtype)
        self.memory_v[layer_idx, n_past:n_past + n] = v.to(self.memory_v.device, self.dtype)

    def read_kv(self, layer_idx: int, length: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Read cached K/V for positions [0, length).

        Returns:
            k: (length, d_model) float32
            v: (length, d_model) float32
        """
        if length > self.n_ctx:
            raise ContextOverflowError(0, length, self.n_ctx)
        k = self.memory_k[layer_idx, :length].float()
        v = self.memory_v[layer_idx, :length].float()
        return k, v

    def reset(self):
        """Zero the whole cache (new session on the same model)."""
        self.memory_k.zero_()
        self.memory_v.zero_()
