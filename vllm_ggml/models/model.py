"""
vllm-ggml :: Model

Containers for a loaded checkpoint. The model owns the tensor arena; layers
and the KV cache refer to tensors by integer handle only.

Lifecycle: allocate-all → fill from file → read-only (except the KV cache).

INL - 2025
"""

import torch
from dataclasses import dataclass, field
from typing import List, Optional

from vllm_ggml.core.kv_cache import KVCache
from vllm_ggml.core.tensor_directory import TensorArena, TensorDirectory
from vllm_ggml.core.quantization import GGMLType
from vllm_ggml.models.config import HParams, ModelFamily


@dataclass
class Layer:
    """One transformer block: six weight handles."""
    norm_1: int
    attn_wqkv: int
    attn_out_proj: int
    norm_2: int
    ffn_up_proj: int
    ffn_down_proj: int
    offloaded: bool = False


@dataclass
class Model:
    hparams: HParams
    family: ModelFamily
    wtype: GGMLType
    arena: TensorArena
    directory: TensorDirectory
    wte: int
    norm_f: int
    layers: List[Layer] = field(default_factory=list)
    kv_cache: Optional[KVCache] = None

    @property
    def n_ctx(self) -> int:
        return self.hparams.n_ctx

    def weight(self, handle: int) -> torch.Tensor:
        """Float32 compute view of a weight tensor."""
        return self.arena.weight(handle)

    def tensor(self, name: str) -> torch.Tensor:
        """Float32 weight by canonical name (debugging / tests)."""
        handle = self.directory.lookup(name)
        if handle is None:
            raise KeyError(name)
        return self.arena.weight(handle)

    def num_parameters(self) -> int:
        return sum(self.arena.record(h).n_elements for _, h in self.directory)
