"""
vllm-ggml :: GGML compute primitives (PyTorch).
"""
