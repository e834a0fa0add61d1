"""
vllm-ggml :: Model Config

Hyperparameters as stored in the GGML hparams block, plus the small closed
set of model-family variants that drive one shared loader/engine.

A ModelFamily captures everything that differs between MPT-style and
Replit-style checkpoints:
  - which hparams fields the file carries (and in what order)
  - whether QKV is clamped before the split
  - where the ALiBi max bias comes from (hparams or a fixed constant)
  - whether the vocab block carries per-token scores (unigram tokenizer)
  - whether layers may be offloaded

INL - 2025
"""

import struct
from typing import Optional, Tuple
from dataclasses import dataclass


DEFAULT_N_CTX = 2048


@dataclass(frozen=True)
class ModelFamily:
    """Closed variant record selected at load time."""
    name: str
    hparam_fields: Tuple[Tuple[str, str], ...]   # (field, struct code) in file order
    has_clip_qkv: bool = False
    alibi_bias_max: Optional[float] = None       # None → read from hparams
    vocab_has_scores: bool = False
    supports_offload: bool = False
    tokenizer: str = "vocab"                     # "vocab" | "unigram"

    @property
    def hparams_struct(self) -> struct.Struct:
        return struct.Struct("<" + "".join(code for _, code in self.hparam_fields))


MPT_FAMILY = ModelFamily(
    name="mpt",
    hparam_fields=(
        ("d_model", "i"),
        ("max_seq_len", "i"),
        ("n_heads", "i"),
        ("n_layers", "i"),
        ("n_vocab", "i"),
        ("alibi_bias_max", "f"),
        ("clip_qkv", "f"),
        ("ftype", "i"),
    ),
    has_clip_qkv=True,
    alibi_bias_max=None,
    vocab_has_scores=False,
    supports_offload=True,
    tokenizer="vocab",
)

REPLIT_FAMILY = ModelFamily(
    name="replit",
    hparam_fields=(
        ("d_model", "i"),
        ("max_seq_len", "i"),
        ("n_heads", "i"),
        ("n_layers", "i"),
        ("n_vocab", "i"),
        ("ftype", "i"),
    ),
    has_clip_qkv=False,
    alibi_bias_max=8.0,
    vocab_has_scores=True,
    supports_offload=False,
    tokenizer="unigram",
)


@dataclass
class HParams:
    """
    GGML hparams block.

    `ftype` holds the base storage type; the quantization version stamp
    that shared the packed field lives in `qnt_version`.
    """
    d_model: int = 0
    max_seq_len: int = 0
    n_heads: int = 0
    n_layers: int = 0
    n_vocab: int = 0
    alibi_bias_max: float = 0.0
    clip_qkv: float = 0.0
    ftype: int = 0
    qnt_version: int = 0
    n_ctx: int = DEFAULT_N_CTX

    @property
    def head_dim(self) -> int:
        return self.d_model // self.n_heads

    def apply_context_length(self, context_length: int = 0):
        """n_ctx = min(max_seq_len, override); override defaults to 2048."""
        requested = context_length if context_length > 0 else DEFAULT_N_CTX
        self.n_ctx = min(self.max_seq_len, requested)

    def alibi_max_bias(self, family: ModelFamily) -> float:
        if family.alibi_bias_max is not None:
            return family.alibi_bias_max
        return self.alibi_bias_max
