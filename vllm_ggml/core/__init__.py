"""
vllm-ggml :: Core

Generic infrastructure — shared by every model family.
  - errors: exception hierarchy
  - quantization: GGML type table, ftype mapping, block dequantization
  - tensor_directory: byte arena + name → handle directory
  - kv_cache: flat per-model key/value memory
  - tokenizer: text ↔ token id conversion
  - registry: model family registration
  - loader: checkpoint reading
"""

from vllm_ggml.core.errors import (
    GGMLError, CheckpointIOError, InvalidFormatError, UnknownTensorError,
    ShapeMismatchError, SizeMismatchError, ContextOverflowError, AllocationError,
)
from vllm_ggml.core.registry import register_family, get_family, list_families
from vllm_ggml.core.tokenizer import VocabTokenizer, UnigramTokenizer, HFTokenizer
from vllm_ggml.core.kv_cache import KVCache
from vllm_ggml.core.loader import load_ggml_checkpoint, LoadStats
