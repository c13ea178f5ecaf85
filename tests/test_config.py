"""
Unit tests for configuration objects and shared helpers.

Tests verify:
  1. Derived ModelConfig sizes (head_dim, kv_dim, repeat_factor, rotary width)
  2. validate() rejects layouts that cannot be shaped
  3. JSON save/load roundtrip
  4. GenerationRequest defaults, validation and host-record parsing
  5. format_size units, device resolution, logging setup
"""

import logging
import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chat_engine.config import EngineConfig, GenerationRequest, ModelConfig
from chat_engine.errors import ArchitectureMismatch, EngineError
from chat_engine.utils import Timer, format_size, resolve_device, setup_logging


class TestModelConfig:

    def test_stories_defaults(self):
        config = ModelConfig()
        assert (config.dim, config.hidden_dim, config.n_layers) == (288, 768, 6)
        assert (config.n_heads, config.n_kv_heads) == (6, 6)
        assert (config.vocab_size, config.seq_len) == (32000, 256)
        config.validate()

    def test_derived_sizes(self):
        config = ModelConfig(dim=64, n_heads=8, n_kv_heads=2)
        assert config.head_dim == 8
        assert config.kv_dim == 16
        assert config.repeat_factor == 4
        assert config.rotary_width == 8

    def test_partial_rotary(self):
        config = ModelConfig(dim=64, n_heads=4, n_kv_heads=4, arch="phi", rotary_dim=6)
        assert config.rotary_width == 6
        config.validate()

    @pytest.mark.parametrize("overrides", [
        {"dim": 0},
        {"vocab_size": -5},
        {"dim": 65, "n_heads": 4},
        {"n_heads": 6, "n_kv_heads": 4},
        {"arch": "mamba"},
        {"rotary_dim": 7},
        {"rotary_dim": 128},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ArchitectureMismatch):
            ModelConfig(**overrides).validate()

    def test_mismatch_is_engine_error(self):
        assert issubclass(ArchitectureMismatch, EngineError)

    def test_save_load(self, tmp_path):
        config = ModelConfig(dim=128, n_heads=4, n_kv_heads=2, arch="phi",
                             rotary_dim=16, shared_classifier=False)
        path = str(tmp_path / "nested" / "config.json")
        config.save(path)
        assert ModelConfig.load(path) == config


class TestGenerationRequest:

    def test_defaults(self):
        request = GenerationRequest()
        assert request.temperature == 0.9
        assert request.top_p == 0.95
        assert request.seed == 0
        assert request.max_new_tokens == 1024
        assert request.stop == []
        request.validate()

    def test_stop_lists_not_shared(self):
        a, b = GenerationRequest(), GenerationRequest()
        a.stop.append("User:")
        assert b.stop == []

    @pytest.mark.parametrize("overrides", [
        {"temperature": -0.1},
        {"top_p": 0.0},
        {"top_p": 1.5},
        {"top_k": -1},
        {"max_new_tokens": -1},
        {"repetition_penalty": 0.0},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValueError):
            GenerationRequest(**overrides).validate()

    def test_zero_tokens_allowed(self):
        GenerationRequest(max_new_tokens=0).validate()

    def test_from_host_record(self):
        record = {
            "temperature": 0.1,
            "top_p": 0.95,
            "repetition_penalty": 1.2,
            "top_k": 50,
            "truncate": 1000,
            "max_new_tokens": 1024,
            "stop": ["User:"],
            "return_full_text": False,
        }
        request = GenerationRequest.from_dict(record)
        assert request.temperature == 0.1
        assert request.top_k == 50
        assert request.stop == ["User:"]
        assert not hasattr(request, "truncate")


class TestEngineConfig:

    def test_defaults(self):
        config = EngineConfig()
        assert config.channel_size == 20
        assert config.device == "cpu"
        assert config.cache_dir is None
        assert config.weights_path is None and config.tokenizer_path is None


class TestUtils:

    @pytest.mark.parametrize("size, expected", [
        (0, "0B"),
        (999, "999B"),
        (1_500, "1.50KB"),
        (2_000_000, "2.00MB"),
        (3_250_000_000, "3.25GB"),
    ])
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    def test_resolve_device_passthrough(self):
        assert resolve_device("cpu") == torch.device("cpu")

    def test_resolve_device_auto(self):
        assert resolve_device("auto").type in ("cpu", "cuda", "mps")

    def test_timer(self):
        with Timer("block") as t:
            sum(range(1000))
        assert t.elapsed >= 0.0
        assert str(t).startswith("block: ")

    def test_setup_logging_file(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        path = setup_logging(logging.DEBUG, log_dir=log_dir)
        logger = logging.getLogger("chat_engine")
        try:
            assert path is not None and path.startswith(log_dir)
            logging.getLogger("chat_engine.weights").info("loaded 3 tensors")
            for handler in logger.handlers:
                handler.flush()
            with open(path) as f:
                assert "chat_engine.weights: loaded 3 tensors" in f.read()
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
            logger.setLevel(logging.NOTSET)

    def test_setup_logging_console_only(self):
        logger = logging.getLogger("chat_engine")
        try:
            assert setup_logging() is None
            assert len(logger.handlers) == 1
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
            logger.setLevel(logging.NOTSET)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
