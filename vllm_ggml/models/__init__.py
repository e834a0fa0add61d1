"""
Model definitions for vllm-ggml.
ALiBi decoder families sharing one tensor layout.
"""

from vllm_ggml.models.config import ModelFamily, HParams, MPT_FAMILY, REPLIT_FAMILY
from vllm_ggml.models.model import Model, Layer
from vllm_ggml.models.builder import ModelBuilder
