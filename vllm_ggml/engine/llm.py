"""
vllm-ggml :: LLM

Caller-facing session object: load a checkpoint, convert text, evaluate.

    llm = LLM.load("mpt-7b-q4_0.bin", "mpt", context_length=512)
    tokens = llm.tokenize("def hello():")
    llm.eval(tokens, n_past=0)
    next_id = int(llm.logits.argmax())
    llm.eval([next_id], n_past=len(tokens))

The caller owns n_past: it is the number of positions already written to
the KV cache by earlier eval calls. Sampling is left to the caller.

INL - 2025
"""

import torch
from typing import List, Optional, Sequence, Union

from vllm_ggml.core.config import RuntimeConfig
from vllm_ggml.core.loader import LoadStats, load_ggml_checkpoint
from vllm_ggml.core.logging import get_logger, setup_logging
from vllm_ggml.core.tokenizer import HFTokenizer, UnigramTokenizer, VocabTokenizer, find_tokenizer_file
from vllm_ggml.engine.decode_engine import DecodeEngine
from vllm_ggml.models.model import Model

logger = get_logger("vllm_ggml.llm")


class LLM:
    """One loaded model + tokenizer + decode engine."""

    def __init__(
        self,
        model: Model,
        tokenizer,
        stats: Optional[LoadStats] = None,
        config: Optional[RuntimeConfig] = None,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.stats = stats or LoadStats()
        self.config = config or RuntimeConfig(model_type=model.family.name)
        self.engine = DecodeEngine(model, max_scratch_bytes=self.config.max_scratch_bytes)
        self._logits: List[float] = []

    # =====================================================================
    # Construction
    # =====================================================================

    @classmethod
    def load(
        cls,
        model_path: str,
        model_type: str,
        context_length: int = 0,
        gpu_layers: int = 0,
        offload_device: Optional[str] = None,
        tokenizer_path: Optional[str] = None,
        config: Optional[RuntimeConfig] = None,
    ) -> "LLM":
        """
        Load a GGML checkpoint.

        Args:
            model_path: checkpoint .bin path
            model_type: registered family name ("mpt", "replit")
            context_length: n_ctx override (0 → default)
            gpu_layers: trailing layers placed on the accelerator
            offload_device: device for offloaded layers
            tokenizer_path: tokenizer.json for text → ids (vocab families
                also pick one up from the checkpoint directory)
        """
        model, tokenizer, stats = load_ggml_checkpoint(
            model_path,
            model_type,
            context_length=context_length,
            gpu_layers=gpu_layers,
            offload_device=offload_device,
        )

        if isinstance(tokenizer, VocabTokenizer):
            tok_path = tokenizer_path or find_tokenizer_file(model_path)
            if tok_path:
                logger.info(f"tokenizer: {tok_path}")
                tokenizer = HFTokenizer(tok_path, fallback=tokenizer)

        if config is None:
            config = RuntimeConfig(
                model_type=model_type,
                context_length=context_length,
                gpu_layers=gpu_layers,
                offload_device=offload_device,
                tokenizer_path=tokenizer_path,
            )
        return cls(model, tokenizer, stats, config)

    @classmethod
    def from_config(cls, model_path: str, config: Union[RuntimeConfig, str]) -> "LLM":
        """Load with a RuntimeConfig (or the path of a runtime.json)."""
        if isinstance(config, str):
            config = RuntimeConfig.from_json(config)
        setup_logging(config.log_level, json_output=config.json_logs)
        return cls.load(
            model_path,
            config.model_type,
            context_length=config.context_length,
            gpu_layers=config.gpu_layers,
            offload_device=config.offload_device,
            tokenizer_path=config.tokenizer_path,
            config=config,
        )

    # =====================================================================
    # Text
    # =====================================================================

    def tokenize(self, text: str) -> List[int]:
        return self.tokenizer.tokenize(text)

    def detokenize(self, tokens: Union[int, Sequence[int]]) -> str:
        """Concatenated stored strings; ids outside the vocabulary give ""."""
        if isinstance(tokens, int):
            return self.tokenizer.detokenize(tokens)
        if isinstance(self.tokenizer, UnigramTokenizer):
            # pieces can split a multi-byte character
            return self.tokenizer.decode(tokens)
        return "".join(self.tokenizer.detokenize(t) for t in tokens)

    # =====================================================================
    # Evaluation
    # =====================================================================

    def eval(
        self,
        tokens: Sequence[int],
        threads: Optional[int] = None,
        n_past: int = 0,
    ) -> torch.Tensor:
        """
        Evaluate `tokens` at cache offset `n_past`; logits land in `self.logits`.

        Engine errors (ContextOverflowError, AllocationError, ValueError)
        propagate unchanged; on error `self.logits` keeps its previous value.
        """
        if threads is None:
            threads = self.config.threads
        logits = self.engine.evaluate(
            n_past,
            tokens,
            threads=threads,
            logits_all=self.config.logits_all,
        )
        self._logits = logits.tolist()
        return logits

    @property
    def logits(self) -> torch.Tensor:
        return torch.tensor(self._logits, dtype=torch.float32)

    @property
    def context_length(self) -> int:
        return self.model.n_ctx

    @property
    def vocab_size(self) -> int:
        return self.model.hparams.n_vocab

    def reset(self):
        """Start a new sequence: clears the KV cache and the last logits."""
        self.engine.reset()
        self._logits = []
