"""
vllm-ggml :: Model Family Registry

Maps model-type names (as a caller passes them to LLM.load) to the family
variant record that drives the loader, tokenizer and decode engine.

To add a new ALiBi family:
    1. Describe it with a ModelFamily (hparams layout, clamp, bias source)
    2. Register it: register_family("my-family", family)

INL - 2025
"""

from typing import Dict

from vllm_ggml.models.config import ModelFamily, MPT_FAMILY, REPLIT_FAMILY


# =========================================================================
# Global registry
# =========================================================================

_REGISTRY: Dict[str, ModelFamily] = {}


def register_family(name: str, family: ModelFamily):
    """
    Register a model family.

    Args:
        name: model type as given by callers (e.g. "mpt")
        family: variant record
    """
    _REGISTRY[name] = family


def get_family(name: str) -> ModelFamily:
    """Get a registered model family."""
    if name not in _REGISTRY:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(f"Unknown model type: {name}. Available: {available}")
    return _REGISTRY[name]


def list_families() -> list:
    """List all registered families."""
    return [
        {
            "name": name,
            "family": f.name,
            "tokenizer": f.tokenizer,
            "clip_qkv": f.has_clip_qkv,
            "offload": f.supports_offload,
        }
        for name, f in _REGISTRY.items()
    ]


# =========================================================================
# Built-in registrations
# =========================================================================

register_family("mpt", MPT_FAMILY)
register_family("replit", REPLIT_FAMILY)
