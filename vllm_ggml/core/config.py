"""
vllm-ggml :: Runtime Config

Load and evaluation settings for one LLM session.
Mirrors an optional runtime.json shipped next to a checkpoint.

INL - 2025
"""

import json
from typing import Optional
from dataclasses import dataclass


@dataclass
class RuntimeConfig:
    """
    Runtime settings.

    context_length = 0 keeps the default (2048, capped by max_seq_len).
    gpu_layers counts trailing layers; ignored by families without offload.
    """
    model_type: str = "mpt"

    # Load
    context_length: int = 0
    gpu_layers: int = 0
    offload_device: Optional[str] = None
    tokenizer_path: Optional[str] = None

    # Evaluate
    threads: Optional[int] = None
    logits_all: bool = False
    max_scratch_bytes: Optional[int] = None

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    @staticmethod
    def from_json(path: str) -> "RuntimeConfig":
        """Load from a runtime.json. Unknown keys are ignored."""
        with open(path, "r") as f:
            data = json.load(f)
        config = RuntimeConfig()
        for key, val in data.items():
            if hasattr(config, key):
                setattr(config, key, val)
        return config
