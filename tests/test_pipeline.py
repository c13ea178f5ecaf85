"""
Unit tests for the model registry and the dispatcher.

Tests verify:
  1. resolve_family: exact ids win, then the longest matching prefix;
     unknown ids raise ModelNotFound
  2. load() with local overrides never touches the hub
  3. load() without overrides fetches the family's weight and tokenizer
     files through hf_hub_download
  4. Pipeline.iter() uses the family heuristic; reset() clears the cache
     and swaps the prompt
"""

import sys
import os

import pytest
from tokenizers import Tokenizer, models, pre_tokenizers

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chat_engine import pipeline as pipeline_module
from chat_engine.config import EngineConfig, GenerationRequest
from chat_engine.errors import ModelNotFound
from chat_engine.generate import EosHeuristic, NewlineRunHeuristic
from chat_engine.model import LlamaModel, precompute_rope_frequencies
from chat_engine.pipeline import HubFile, ModelFamily, load, resolve_family
from chat_engine.weights import write_legacy
from conftest import random_weights


@pytest.fixture
def model_files(tmp_path, tiny_config):
    """A tiny legacy dump plus a word-level tokenizer.json over its vocab."""
    weights = random_weights(tiny_config, seed=4)
    cos, sin = precompute_rope_frequencies(tiny_config.head_dim, tiny_config.seq_len)
    weights["rope.cos"] = cos
    weights["rope.sin"] = sin
    weights_path = tmp_path / "stories-tiny.bin"
    with open(weights_path, "wb") as f:
        write_legacy(f, tiny_config, weights)

    vocab = ["<unk>", "<s>", "</s>"] + [f"w{i}" for i in range(3, tiny_config.vocab_size)]
    backend = Tokenizer(models.WordLevel(vocab={w: i for i, w in enumerate(vocab)},
                                         unk_token="<unk>"))
    backend.pre_tokenizer = pre_tokenizers.WhitespaceSplit()
    tokenizer_path = tmp_path / "tokenizer.json"
    backend.save(str(tokenizer_path))
    return str(weights_path), str(tokenizer_path)


def _no_hub(**kwargs):
    raise AssertionError(f"unexpected hub download: {kwargs}")


class TestResolveFamily:

    def test_exact_id(self):
        assert resolve_family("karpathy/tinyllamas").name == "tiny-llama-C-format"
        assert resolve_family("meta-llama/Llama-2-7b-chat-hf").name == "quantized-llama"

    def test_family_name(self):
        assert resolve_family("quantized-phi").name == "quantized-phi"

    def test_prefix(self):
        assert resolve_family("microsoft/phi-2").name == "quantized-phi"
        assert resolve_family("TheBloke/Llama-2-13B-chat-GGUF").name == "quantized-llama"

    def test_longest_prefix_wins(self):
        weights = HubFile("org/w", "w.gguf")
        tok = HubFile("org/t", "tokenizer.json")
        families = (
            ModelFamily(name="short", prefixes=("org/model",), weights=weights, tokenizer=tok),
            ModelFamily(name="long", prefixes=("org/model-chat",), weights=weights, tokenizer=tok),
        )
        assert resolve_family("org/model-chat-v2", families).name == "long"
        assert resolve_family("org/model-base", families).name == "short"

    def test_unknown(self):
        with pytest.raises(ModelNotFound):
            resolve_family("bigscience/bloom")


class TestLoad:

    def test_local_overrides(self, model_files, monkeypatch, tiny_config):
        monkeypatch.setattr(pipeline_module, "hf_hub_download", _no_hub)
        weights_path, tokenizer_path = model_files
        engine_config = EngineConfig(weights_path=weights_path, tokenizer_path=tokenizer_path)

        pipe = load("karpathy/tinyllamas", "w5 w6",
                    GenerationRequest(temperature=0.0, max_new_tokens=4), engine_config)

        assert isinstance(pipe.model, LlamaModel)
        assert pipe.config.dim == tiny_config.dim
        assert pipe.family.name == "tiny-llama-C-format"
        assert pipe.prompt_tokens == [1, 5, 6]

        items = list(pipe.iter())
        assert 1 <= len(items) <= 4
        assert items[-1].generated_text is not None

    def test_fetch_through_hub(self, model_files, monkeypatch, tmp_path):
        weights_path, tokenizer_path = model_files
        calls = []

        def fake_download(repo_id, filename, revision=None, cache_dir=None):
            calls.append((repo_id, filename, cache_dir))
            return weights_path if filename.endswith(".bin") else tokenizer_path

        monkeypatch.setattr(pipeline_module, "hf_hub_download", fake_download)
        cache_dir = str(tmp_path / "hub")
        load("karpathy/tinyllamas", "w3", engine_config=EngineConfig(cache_dir=cache_dir))

        assert calls == [
            ("karpathy/tinyllamas", "stories15M.bin", cache_dir),
            ("hf-internal-testing/llama-tokenizer", "tokenizer.json", cache_dir),
        ]

    def test_unknown_model_fails_before_fetch(self, monkeypatch):
        monkeypatch.setattr(pipeline_module, "hf_hub_download", _no_hub)
        with pytest.raises(ModelNotFound):
            load("bigscience/bloom", "hello")

    def test_invalid_request_rejected(self, model_files, monkeypatch):
        monkeypatch.setattr(pipeline_module, "hf_hub_download", _no_hub)
        weights_path, tokenizer_path = model_files
        with pytest.raises(ValueError):
            load("karpathy/tinyllamas", "w3", GenerationRequest(top_p=0.0),
                 EngineConfig(weights_path=weights_path, tokenizer_path=tokenizer_path))


class TestPipeline:

    @pytest.fixture
    def pipe(self, model_files, monkeypatch):
        monkeypatch.setattr(pipeline_module, "hf_hub_download", _no_hub)
        weights_path, tokenizer_path = model_files
        return load("karpathy/tinyllamas", "w5 w6",
                    GenerationRequest(temperature=0.0, max_new_tokens=3),
                    EngineConfig(weights_path=weights_path, tokenizer_path=tokenizer_path))

    def test_family_heuristic(self, pipe):
        assert isinstance(pipe.iter().heuristic, EosHeuristic)
        phi = resolve_family("microsoft/phi-2")
        pipe.family = phi
        assert isinstance(pipe.iter().heuristic, NewlineRunHeuristic)

    def test_iter_gets_fresh_cache(self, pipe):
        first = pipe.iter()
        list(first)
        second = pipe.iter()
        assert second.cache is not first.cache
        assert len(second.cache) == 0

    def test_reset(self, pipe):
        driver = pipe.iter()
        next(driver)
        assert len(pipe.cache) == 3
        pipe.reset("w7")
        assert len(pipe.cache) == 0
        assert pipe.prompt_tokens == [1, 7]
        assert pipe.prompt == "w7"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
