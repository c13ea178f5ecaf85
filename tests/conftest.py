"""
Shared fixtures: tiny configs, random weight maps and scripted collaborators.

The scripted model and fake tokenizer let the driver and streaming tests
control exactly which token appears at which step without any real
numerics.
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chat_engine.cache import KVCache
from chat_engine.config import ModelConfig
from chat_engine.weights import expected_shapes


def random_weights(config: ModelConfig, seed: int = 0, scale: float = 0.1) -> dict:
    """Logical name -> random float32 tensor for every tensor config needs."""
    gen = torch.Generator().manual_seed(seed)
    weights = {}
    for name, shape in expected_shapes(config).items():
        if name.endswith("norm.weight"):
            weights[name] = 1.0 + scale * torch.randn(shape, generator=gen)
        else:
            weights[name] = scale * torch.randn(shape, generator=gen)
    return weights


class ScriptedModel:
    """
    Stands in for LlamaModel/PhiModel in driver tests.

    Step n returns logits peaked at script[n] (the last entry repeats), so a
    greedy sampler reproduces the script exactly. fail_at raises a
    RuntimeError on that step, as a numeric backend would.
    """

    def __init__(self, script, vocab_size: int, seq_len: int = 64, fail_at=None):
        self.script = list(script)
        self.config = ModelConfig(
            dim=8, hidden_dim=16, n_layers=1, n_heads=2, n_kv_heads=2,
            vocab_size=vocab_size, seq_len=seq_len,
        )
        self.freqs_cos = torch.zeros(1)
        self.fail_at = fail_at
        self.calls = []

    def new_cache(self) -> KVCache:
        return KVCache(self.config.n_layers, self.config.seq_len)

    def __call__(self, tokens, start_pos, cache):
        step = len(self.calls)
        self.calls.append((tokens[0].tolist(), start_pos))
        if self.fail_at is not None and step == self.fail_at:
            raise RuntimeError("backend exploded")
        token = self.script[min(step, len(self.script) - 1)]
        logits = torch.full((1, self.config.vocab_size), -10.0)
        logits[0, token] = 10.0
        return logits


class FakeTokenizer:
    """Whitespace-split encoder over a fixed vocabulary; decode concatenates."""

    def __init__(self, vocab, bos_id=0, eos_id=1):
        self.vocab = list(vocab)
        self.bos_id = bos_id
        self.eos_id = eos_id

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    def encode(self, text, bos=True, eos=False):
        ids = [self.vocab.index(word) for word in text.split()]
        if bos:
            ids = [self.bos_id] + ids
        if eos:
            ids = ids + [self.eos_id]
        return ids

    def decode(self, ids):
        return "".join(self.vocab[i] for i in ids)

    def token_text(self, token_id):
        return self.vocab[token_id]


CHAT_VOCAB = ["<s>", "</s>", "Hello", " there", "User:", " more", "\n", "Hi", "!"]


@pytest.fixture
def tiny_config():
    """Small llama config with grouped-query attention."""
    return ModelConfig(
        vocab_size=256,
        dim=64,
        n_layers=2,
        n_heads=4,
        n_kv_heads=2,
        hidden_dim=128,
        seq_len=32,
    )


@pytest.fixture
def tiny_phi_config():
    return ModelConfig(
        vocab_size=128,
        dim=64,
        n_layers=2,
        n_heads=4,
        n_kv_heads=4,
        hidden_dim=256,
        seq_len=32,
        arch="phi",
        rotary_dim=8,
        shared_classifier=False,
    )


@pytest.fixture
def chat_tokenizer():
    return FakeTokenizer(CHAT_VOCAB)


@pytest.fixture
def vocab_id():
    return CHAT_VOCAB.index
