"""
vllm-ggml :: Decode Engine

One forward evaluation over a batch of new token ids, given how many
positions are already in the KV cache:

    evaluate(n_past, token_ids) → logits for the next token

Per layer:
    x_n  = norm(x) * norm_1
    qkv  = Wqkv x_n                 (clamped to ±clip_qkv when configured)
    K, V → cache[layer, n_past : n_past + N]
    attn = ALiBi causal attention of Q over cache[layer, : n_past + N]
    x    = x + out_proj(attn)
    x    = x + down(gelu(up(norm(x) * norm_2)))
Then norm(x) * norm_f and the tied embedding projection.

Integer-first: the engine validates ids and offsets before any float work;
an overflowing request never touches the cache. The engine is bound to one
model and is not re-entrant — each call mutates that model's KV cache.

INL - 2025
"""

import threading
import torch
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Sequence

from vllm_ggml.core.errors import AllocationError
from vllm_ggml.core.logging import get_logger
from vllm_ggml.kernels import ggml_ops as ops
from vllm_ggml.layers.attention import alibi_cached_attention
from vllm_ggml.models.model import Model

logger = get_logger("vllm_ggml.engine")


DEFAULT_SCRATCH_BYTES = 256 * 1024 * 1024
SCRATCH_GROWTH = 1.1


@dataclass
class ScratchState:
    """
    Session-scoped scratch budget.

    After the first successful call mem_per_token is fixed; later calls grow
    the budget to 1.1 × mem_per_token × N when they would not fit.
    """
    buf_size: int = DEFAULT_SCRATCH_BYTES
    max_bytes: Optional[int] = None
    mem_per_token: int = 0
    used: int = 0

    def reserve(self, n_tokens: int):
        if self.mem_per_token > 0 and self.mem_per_token * n_tokens > self.buf_size:
            new_size = int(SCRATCH_GROWTH * self.mem_per_token * n_tokens)
            if self.max_bytes is not None and new_size > self.max_bytes:
                raise AllocationError(
                    f"failed to allocate {new_size} bytes of scratch "
                    f"(limit {self.max_bytes})"
                )
            logger.info(f"reallocating scratch from {self.buf_size} to {new_size} bytes")
            self.buf_size = new_size
        self.used = 0

    def track(self, *tensors: torch.Tensor):
        for t in tensors:
            self.used += t.numel() * t.element_size()

    def finish(self, n_tokens: int):
        if self.mem_per_token == 0:
            self.mem_per_token = self.used // n_tokens
            logger.debug(f"mem_per_token = {self.mem_per_token}")


@contextmanager
def thread_budget(threads: Optional[int]):
    """Run the enclosed compute with `threads` intra-op threads."""
    if not threads or threads <= 0:
        yield
        return
    previous = torch.get_num_threads()
    torch.set_num_threads(threads)
    try:
        yield
    finally:
        torch.set_num_threads(previous)


class DecodeEngine:
    """
    Forward evaluation + KV cache management for one loaded model.

    Control flow:
        check n_past + N <= n_ctx        # before any write
        for layer in layers:             # float compute via ggml_ops
            write K/V at n_past
            attend over [0, n_past + N)
        return logits[-1] or all rows
    """

    def __init__(self, model: Model, max_scratch_bytes: Optional[int] = None):
        self.model = model
        self.hparams = model.hparams
        self.family = model.family
        self.kv_cache = model.kv_cache
        self.alibi_bias_max = model.hparams.alibi_max_bias(model.family)
        self.scratch = ScratchState(max_bytes=max_scratch_bytes)
        self._lock = threading.Lock()

    @property
    def mem_per_token(self) -> int:
        return self.scratch.mem_per_token

    def evaluate(
        self,
        n_past: int,
        token_ids: Sequence[int],
        threads: Optional[int] = None,
        logits_all: bool = False,
    ) -> torch.Tensor:
        """
        Evaluate N new tokens at cache offset n_past.

        Args:
            n_past: tokens already in the cache
            token_ids: new token ids (N >= 1)
            threads: intra-op thread count for this call
            logits_all: return every position's logits instead of the last

        Returns:
            (n_vocab,) float32, or (N * n_vocab,) when logits_all
        """
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("DecodeEngine.evaluate called concurrently on the same model")
        try:
            n_tokens = len(token_ids)
            if n_tokens == 0:
                raise ValueError("evaluate needs at least one token")
            self.kv_cache.check_capacity(n_past, n_tokens)

            ids = torch.tensor(list(token_ids), dtype=torch.int64)
            n_vocab = self.hparams.n_vocab
            if int(ids.min()) < 0 or int(ids.max()) >= n_vocab:
                raise ValueError(f"token id out of range [0, {n_vocab}): {list(token_ids)}")

            self.scratch.reserve(n_tokens)
            with thread_budget(threads), torch.inference_mode():
                try:
                    logits = self._forward(n_past, ids)
                except AllocationError:
                    raise
                except (torch.cuda.OutOfMemoryError, MemoryError) as e:
                    raise AllocationError(f"scratch allocation failed: {e}") from e
            self.scratch.finish(n_tokens)
        finally:
            self._lock.release()

        if logits_all:
            return logits.reshape(-1).cpu()
        return logits[-1].cpu()

    def _forward(self, n_past: int, ids: torch.Tensor) -> torch.Tensor:
        model = self.model
        hp = self.hparams
        n_tokens = ids.shape[0]
        n_embd = hp.d_model

        x = ops.get_rows(model.weight(model.wte), ids)
        self.scratch.track(x)

        for il, layer in enumerate(model.layers):
            # self-attention
            cur = ops.mul(ops.norm(x), model.weight(layer.norm_1))
            qkv = ops.mul_mat(model.weight(layer.attn_wqkv), cur)
            if self.family.has_clip_qkv and hp.clip_qkv > 0.0:
                qkv = ops.clamp(qkv, -hp.clip_qkv, hp.clip_qkv)

            q, k, v = qkv.split(n_embd, dim=-1)
            self.kv_cache.write_kv_batch(il, n_past, k, v)
            k_all, v_all = self.kv_cache.read_kv(il, n_past + n_tokens)

            attn = alibi_cached_attention(q, k_all, v_all, n_past, hp.n_heads, self.alibi_bias_max)
            cur = ops.mul_mat(model.weight(layer.attn_out_proj), attn)
            x = ops.add(x, cur)
            self.scratch.track(cur, qkv, k_all, v_all, attn)
            self.scratch.used += hp.n_heads * n_tokens * (n_past + n_tokens) * 4

            # feed-forward
            cur = ops.mul(ops.norm(x), model.weight(layer.norm_2))
            up = ops.gelu(ops.mul_mat(model.weight(layer.ffn_up_proj), cur))
            cur = ops.mul_mat(model.weight(layer.ffn_down_proj), up)
            x = ops.add(x, cur)
            self.scratch.track(up, cur)

        x = ops.mul(ops.norm(x), model.weight(model.norm_f))

        # output embedding weight tied to input embedding
        logits = ops.mul_mat(model.weight(model.wte), x)
        self.scratch.track(logits)
        return logits

    def reset(self):
        """Forget every cached position (start a new sequence)."""
        self.kv_cache.reset()

