"""
vllm-ggml :: Test LLM facade, runtime config, registry, logging

Tests:
  - LLM.load / tokenize / detokenize / eval / logits / reset
  - RuntimeConfig.from_json + LLM.from_config
  - family registry lookup
  - structured logging (JSON file output, model_path tagging, human fields)

INL - 2025
"""

import json
import logging
import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vllm_ggml import LLM, RuntimeConfig
from vllm_ggml.core.errors import ContextOverflowError
from vllm_ggml.core.logging import setup_logging, get_logger, LoadLogger, JSONFormatter, HumanFormatter
from vllm_ggml.core.registry import get_family, list_families, register_family
from vllm_ggml.core.tokenizer import HFTokenizer, UnigramTokenizer
from vllm_ggml.models.config import MPT_FAMILY, REPLIT_FAMILY, ModelFamily

from ggml_fixtures import make_checkpoint


@pytest.fixture
def checkpoint(tmp_path):
    path, _, _ = make_checkpoint(tmp_path / "mpt.bin")
    return path


@pytest.fixture
def restore_logging():
    yield
    logger = logging.getLogger("vllm_ggml")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# =========================================================================
# LLM
# =========================================================================

class TestLLM:
    def test_load(self, checkpoint):
        llm = LLM.load(checkpoint, "mpt")
        assert llm.context_length == 32
        assert llm.vocab_size == 16
        assert llm.stats.n_tensors == 8
        assert llm.config.model_type == "mpt"

    def test_context_length_override(self, checkpoint):
        llm = LLM.load(checkpoint, "mpt", context_length=8)
        assert llm.context_length == 8

    def test_tokenize_detokenize(self, checkpoint):
        llm = LLM.load(checkpoint, "mpt")
        tokens = llm.tokenize("hello world!")
        assert tokens == [8, 9, 11]
        assert llm.detokenize(tokens) == "hello world!"
        assert llm.detokenize(9) == " world"
        assert llm.detokenize(1000) == ""

    def test_eval_sets_logits(self, checkpoint):
        llm = LLM.load(checkpoint, "mpt")
        assert llm.logits.numel() == 0
        out = llm.eval([3, 7], n_past=0)
        assert llm.logits.shape == (16,)
        assert torch.equal(llm.logits, out)
        next_id = int(llm.logits.argmax())
        llm.eval([next_id], n_past=2)
        assert llm.logits.shape == (16,)

    def test_eval_error_keeps_logits(self, checkpoint):
        llm = LLM.load(checkpoint, "mpt", context_length=2)
        llm.eval([3, 7], n_past=0)
        before = llm.logits
        with pytest.raises(ContextOverflowError):
            llm.eval([1], n_past=2)
        assert torch.equal(llm.logits, before)

    def test_reset(self, checkpoint):
        llm = LLM.load(checkpoint, "mpt")
        first = llm.eval([3, 7])
        llm.reset()
        assert llm.logits.numel() == 0
        assert torch.equal(llm.eval([3, 7]), first)

    def test_replit(self, tmp_path):
        path, _, _ = make_checkpoint(tmp_path / "replit.bin", family="replit")
        llm = LLM.load(path, "replit")
        assert isinstance(llm.tokenizer, UnigramTokenizer)
        assert llm.tokenize("abc") == [5]
        llm.eval(llm.tokenize("abc"))
        assert llm.logits.shape == (16,)

    def test_replit_detokenize_split_character(self, tmp_path):
        vocab = [b"<unk>", b"a", b"b", b"c", b"ab", b"abc", b" ", b" a",
                 b"hello", b" world", b"\xc3", b"!", b"\xa9", b"e", b"f", b"g"]
        path, _, _ = make_checkpoint(tmp_path / "replit.bin", family="replit", vocab=vocab)
        llm = LLM.load(path, "replit")
        tokens = llm.tokenize("é")
        assert tokens == [10, 12]
        assert llm.detokenize(tokens) == "é"

    def test_tokenizer_json_next_to_checkpoint(self, checkpoint, tmp_path):
        from tokenizers import Tokenizer, models, pre_tokenizers

        tok = Tokenizer(models.WordLevel({"hello": 8, "world": 9, "[UNK]": 0}, unk_token="[UNK]"))
        tok.pre_tokenizer = pre_tokenizers.Whitespace()
        tok.save(str(tmp_path / "tokenizer.json"))

        llm = LLM.load(checkpoint, "mpt")
        assert isinstance(llm.tokenizer, HFTokenizer)
        assert llm.tokenize("hello world") == [8, 9]
        # ids map back through the checkpoint vocabulary
        assert llm.detokenize([8, 9]) == "hello world"


# =========================================================================
# Runtime config
# =========================================================================

class TestRuntimeConfig:
    def test_defaults(self):
        config = RuntimeConfig()
        assert config.context_length == 0
        assert config.gpu_layers == 0
        assert config.threads is None
        assert config.logits_all is False

    def test_from_json_ignores_unknown_keys(self, tmp_path):
        path = tmp_path / "runtime.json"
        path.write_text(json.dumps({"model_type": "replit", "threads": 2, "some_future_field": True}))
        config = RuntimeConfig.from_json(str(path))
        assert config.model_type == "replit"
        assert config.threads == 2
        assert not hasattr(config, "some_future_field")

    def test_from_config(self, checkpoint, tmp_path, restore_logging):
        path = tmp_path / "runtime.json"
        path.write_text(json.dumps({
            "model_type": "mpt",
            "context_length": 16,
            "logits_all": True,
            "log_level": "WARNING",
        }))
        llm = LLM.from_config(checkpoint, str(path))
        assert llm.context_length == 16
        assert llm.eval([3, 7, 5]).shape == (3 * 16,)
        assert logging.getLogger("vllm_ggml").level == logging.WARNING


# =========================================================================
# Registry
# =========================================================================

class TestRegistry:
    def test_builtins(self):
        assert get_family("mpt") is MPT_FAMILY
        assert get_family("replit") is REPLIT_FAMILY
        names = [entry["name"] for entry in list_families()]
        assert "mpt" in names and "replit" in names

    def test_unknown(self):
        with pytest.raises(ValueError, match="Available"):
            get_family("falcon")

    def test_register(self):
        family = ModelFamily(name="mpt-noclip", hparam_fields=MPT_FAMILY.hparam_fields)
        register_family("mpt-noclip", family)
        assert get_family("mpt-noclip") is family
        assert family.hparams_struct.size == 32


# =========================================================================
# Logging
# =========================================================================

class TestLogging:
    def test_json_file_output(self, tmp_path, restore_logging):
        log_file = tmp_path / "run.log"
        setup_logging("DEBUG", json_output=False, log_file=str(log_file))
        get_logger("vllm_ggml.test").info("hello")
        for handler in logging.getLogger("vllm_ggml").handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "vllm_ggml.test"

    def test_load_logger_tags_model_path(self, caplog):
        caplog.set_level(logging.DEBUG, logger="vllm_ggml")
        LoadLogger("/models/x.bin").info("loaded", n_tensors=3)
        record = caplog.records[-1]
        assert record.model_path == "/models/x.bin"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["model_path"] == "/models/x.bin"
        assert entry["n_tensors"] == 3

    def test_human_formatter_renders_fields(self, caplog):
        caplog.set_level(logging.DEBUG, logger="vllm_ggml")
        LoadLogger("/models/x.bin").warning("slow load", n_tensors=3)
        line = HumanFormatter().format(caplog.records[-1])
        assert "WARNING" in line
        assert "slow load" in line
        assert "[model_path=/models/x.bin n_tensors=3]" in line

    def test_loader_reports_summary(self, checkpoint, caplog):
        caplog.set_level(logging.INFO, logger="vllm_ggml")
        LLM.load(checkpoint, "mpt")
        messages = [r.getMessage() for r in caplog.records]
        assert any("model size" in m for m in messages)
        assert any("memory_size" in m for m in messages)
