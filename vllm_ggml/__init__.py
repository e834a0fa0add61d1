"""
vllm-ggml: legacy GGML checkpoint loader and ALiBi decode engine.

Integers where the format allows it, float only where math requires it.

  Loading:     i32 (hparams, dims, type codes, byte offsets)
  Tensors:     int handles into one byte arena
  KV cache:    integer slots (layer * n_ctx + pos)
  Tokenize:    i64 ids
  Compute:     fp32 (norm, attention, MLP — the ONLY float)

INL - 2025
"""

__version__ = "0.1.0"

from vllm_ggml.core.config import RuntimeConfig
from vllm_ggml.engine.llm import LLM
