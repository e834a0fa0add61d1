"""
vllm-ggml :: Generic layers for ALiBi decoders.
"""

from vllm_ggml.layers.attention import alibi_cached_attention
