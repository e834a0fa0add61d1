"""
vllm-ggml :: GGML compute primitives in PyTorch.

The only arithmetic the decode engine performs goes through here. Each op
mirrors the ggml op of the same name, including its conventions:

  mul_mat(w, x)     w is (out, in) row-major → x @ w.T
  norm(x)           parameter-free, eps = 1e-5 (weights multiplied after)
  gelu(x)           tanh approximation
  alibi(...)        bias = key_position * head_slope
  diag_mask_inf     query i (absolute n_past + i) cannot see keys > n_past + i

Float only. Shapes are documented per op.

INL - 2025
"""

import math
import torch
import torch.nn.functional as F


NORM_EPS = 1e-5


def get_rows(w: torch.Tensor, token_ids: torch.Tensor) -> torch.Tensor:
    """w: (n_vocab, d), token_ids: (N,) int64 → (N, d)"""
    return w.index_select(0, token_ids.to(w.device))


def mul_mat(w: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    """w: (out, in), x: (N, in) → (N, out)"""
    return x.to(w.device) @ w.t()


def norm(x: torch.Tensor, eps: float = NORM_EPS) -> torch.Tensor:
    """Normalize each row to zero mean, unit variance. x: (N, d)"""
    mean = x.mean(dim=-1, keepdim=True)
    centered = x - mean
    var = (centered * centered).mean(dim=-1, keepdim=True)
    return centered * torch.rsqrt(var + eps)


def mul(x: torch.Tensor, w: torch.Tensor) -> torch.Tensor:
    """Broadcast multiply by a (d,) weight."""
    return x * w.to(x.device)


def add(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a + b.to(a.device)


def clamp(x: torch.Tensor, min_value: float, max_value: float) -> torch.Tensor:
    return torch.clamp(x, min=min_value, max=max_value)


def scale(x: torch.Tensor, factor: float) -> torch.Tensor:
    return x * factor


def gelu(x: torch.Tensor) -> torch.Tensor:
    return F.gelu(x, approximate="tanh")


def soft_max(x: torch.Tensor) -> torch.Tensor:
    """Softmax over the last dim."""
    return torch.softmax(x, dim=-1)


def alibi_slopes(n_head: int, max_bias: float) -> torch.Tensor:
    """
    Per-head ALiBi slopes.

        n = 2^floor(log2(n_head))
        m0 = 2^(-max_bias / n),  m1 = 2^(-(max_bias / 2) / n)
        head k < n:   m0^(k + 1)
        head k >= n:  m1^(2 * (k - n) + 1)
    """
    n_heads_log2_floor = 1 << int(math.floor(math.log2(n_head)))
    m0 = 2.0 ** (-max_bias / n_heads_log2_floor)
    m1 = 2.0 ** (-(max_bias / 2.0) / n_heads_log2_floor)

    slopes = []
    for k in range(n_head):
        if k < n_heads_log2_floor:
            slopes.append(m0 ** (k + 1))
        else:
            slopes.append(m1 ** (2 * (k - n_heads_log2_floor) + 1))
    return torch.tensor(slopes, dtype=torch.float32)


def alibi(scores: torch.Tensor, n_past: int, n_head: int, max_bias: float) -> torch.Tensor:
    """
    Add linear position bias.

    scores: (n_head, N, n_past + N) → same shape
    bias[h, :, j] = j * slope[h]
    """
    n_kv = scores.shape[-1]
    if n_kv < n_past:
        raise ValueError(f"alibi: {n_kv} keys but n_past={n_past}")
    slopes = alibi_slopes(n_head, max_bias).to(scores.device, scores.dtype)
    positions = torch.arange(n_kv, device=scores.device, dtype=scores.dtype)
    return scores + slopes[:, None, None] * positions[None, None, :]


def diag_mask_inf(scores: torch.Tensor, n_past: int) -> torch.Tensor:
    """
    Causal mask over cached + new keys.

    scores: (n_head, N, n_past + N); entry [h, i, j] is -inf when j > n_past + i
    """
    n, n_kv = scores.shape[-2], scores.shape[-1]
    q_pos = torch.arange(n, device=scores.device)[:, None] + n_past
    k_pos = torch.arange(n_kv, device=scores.device)[None, :]
    return scores.masked_fill(k_pos > q_pos, float("-inf"))
