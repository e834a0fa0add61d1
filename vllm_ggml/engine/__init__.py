"""
vllm-ggml :: Engine
"""

from vllm_ggml.engine.decode_engine import DecodeEngine
from vllm_ggml.engine.llm import LLM
