"""
vllm-ggml :: ALiBi Attention

Cached multi-head attention with linear position bias. New queries attend
to every cached key up to n_past + N for the layer, with causal masking.

Integer-first: n_past and head counts drive all indexing. Only the
Q/K/V/score tensors are float.

INL - 2025
"""

import math
import torch

from vllm_ggml.kernels import ggml_ops as ops


def alibi_cached_attention(
    q: torch.Tensor,        # (N, d_model)
    k_all: torch.Tensor,    # (n_past + N, d_model)
    v_all: torch.Tensor,    # (n_past + N, d_model)
    n_past: int,
    n_head: int,
    alibi_bias_max: float,
) -> torch.Tensor:
    """
    softmax(mask(alibi(Q K^T / sqrt(head_dim)))) V, heads merged back.

    Returns:
        (N, d_model) float32
    """
    n, d_model = q.shape
    n_kv = k_all.shape[0]
    head_dim = d_model // n_head

    k_all = k_all.to(q.device)
    v_all = v_all.to(q.device)

    q_t = q.view(n, n_head, head_dim).transpose(0, 1)         # (n_head, N, head_dim)
    k_t = k_all.view(n_kv, n_head, head_dim).transpose(0, 1)  # (n_head, n_kv, head_dim)
    v_t = v_all.view(n_kv, n_head, head_dim).transpose(0, 1)

    scores = torch.bmm(q_t, k_t.transpose(1, 2))
    scores = ops.scale(scores, 1.0 / math.sqrt(float(d_model) / n_head))
    scores = ops.alibi(scores, n_past, n_head, alibi_bias_max)
    scores = ops.diag_mask_inf(scores, n_past)
    probs = ops.soft_max(scores)

    out = torch.bmm(probs, v_t)                               # (n_head, N, head_dim)
    return out.transpose(0, 1).reshape(n, d_model)
