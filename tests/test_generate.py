"""
Unit tests for the generation driver.

Tests verify:
  1. max_new_tokens bounds both emitted tokens and forward calls
     (0 means nothing runs at all)
  2. Stop precedence: step limit, stop strings, family heuristics
  3. The terminal item carries generated_text = decode(all generated ids)
  4. After FINISHED (or an error) the iterator stays exhausted
  5. Prefill feeds the whole prompt once, then one token per step at the
     right position
  6. Real model: greedy decoding is deterministic, the cache tracks tokens
     fed, and overflow ends the sequence with an error
  7. generate() drains a pipeline into a GenerateResult
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chat_engine.config import GenerationRequest
from chat_engine.errors import CacheOverflow, NumericBackendError, TokenizerError
from chat_engine.generate import (
    DriverState,
    EosHeuristic,
    GenerationDriver,
    NewlineRunHeuristic,
    generate,
)
from chat_engine.model import build_model
from chat_engine.pipeline import Pipeline
from conftest import FakeTokenizer, ScriptedModel, random_weights


def greedy(**kwargs) -> GenerationRequest:
    kwargs.setdefault("temperature", 0.0)
    return GenerationRequest(**kwargs)


def make_driver(tokenizer, script, request, heuristic=None, fail_at=None, prompt=(0, 7)):
    model = ScriptedModel(script, vocab_size=len(tokenizer.vocab), fail_at=fail_at)
    driver = GenerationDriver(model, tokenizer, list(prompt), request, heuristic=heuristic)
    return model, driver


class TestStepLimit:

    def test_bound(self, chat_tokenizer, vocab_id):
        model, driver = make_driver(chat_tokenizer, [vocab_id("Hello")], greedy(max_new_tokens=3))
        items = list(driver)
        assert len(items) == 3
        assert len(model.calls) == 3
        assert [g.generated_text is None for g in items] == [True, True, False]
        assert items[-1].generated_text == "HelloHelloHello"

    def test_zero_means_zero(self, chat_tokenizer, vocab_id):
        model, driver = make_driver(chat_tokenizer, [vocab_id("Hello")], greedy(max_new_tokens=0))
        assert driver.state is DriverState.FINISHED
        assert list(driver) == []
        assert model.calls == []

    def test_one(self, chat_tokenizer, vocab_id):
        model, driver = make_driver(chat_tokenizer, [vocab_id("Hi")], greedy(max_new_tokens=1))
        items = list(driver)
        assert len(items) == 1 and items[0].generated_text == "Hi"

    def test_exhausted_after_finish(self, chat_tokenizer, vocab_id):
        _, driver = make_driver(chat_tokenizer, [vocab_id("Hi")], greedy(max_new_tokens=2))
        list(driver)
        with pytest.raises(StopIteration):
            next(driver)
        with pytest.raises(StopIteration):
            next(driver)


class TestStopStrings:

    def test_user_stop_halts_at_exact_step(self, chat_tokenizer, vocab_id):
        script = [vocab_id(w) for w in ("Hello", " there", "User:", " more")]
        model, driver = make_driver(chat_tokenizer, script,
                                    greedy(max_new_tokens=50, stop=["User:"]))
        items = list(driver)
        assert [g.text for g in items] == ["Hello", " there", "User:"]
        assert items[-1].generated_text == "Hello thereUser:"
        assert len(model.calls) == 3

    def test_fragment_must_start_with_stop(self, chat_tokenizer, vocab_id):
        """A fragment that merely contains the stop string does not stop."""
        script = [vocab_id(w) for w in (" there", "User:")]
        _, driver = make_driver(chat_tokenizer, script,
                                greedy(max_new_tokens=10, stop=["here"]))
        assert len(list(driver)) == 10

    def test_empty_stop_string_ignored(self, chat_tokenizer, vocab_id):
        _, driver = make_driver(chat_tokenizer, [vocab_id("Hi")],
                                greedy(max_new_tokens=4, stop=[""]))
        assert len(list(driver)) == 4

    def test_step_limit_and_stop_on_same_step(self, chat_tokenizer, vocab_id):
        script = [vocab_id("Hello"), vocab_id("User:")]
        _, driver = make_driver(chat_tokenizer, script,
                                greedy(max_new_tokens=2, stop=["User:"]))
        items = list(driver)
        assert len(items) == 2
        assert items[-1].generated_text == "HelloUser:"


class TestHeuristics:

    def test_eos(self, chat_tokenizer, vocab_id):
        script = [vocab_id("Hi"), vocab_id("!"), vocab_id("</s>"), vocab_id("Hi")]
        _, driver = make_driver(chat_tokenizer, script, greedy(max_new_tokens=20),
                                heuristic=EosHeuristic(chat_tokenizer.eos_id))
        items = list(driver)
        assert [g.token_id for g in items] == script[:3]
        assert items[-1].generated_text == "Hi!</s>"

    def test_newline_run_after_text(self, chat_tokenizer, vocab_id):
        """Text then two newline fragments stops on the second newline."""
        script = [vocab_id(w) for w in ("Hi", "\n", "Hi", "\n", "\n", "Hello")]
        _, driver = make_driver(chat_tokenizer, script, greedy(max_new_tokens=20),
                                heuristic=NewlineRunHeuristic())
        items = list(driver)
        assert [g.text for g in items] == ["Hi", "\n", "Hi", "\n", "\n"]

    def test_newline_run_from_start(self, chat_tokenizer, vocab_id):
        _, driver = make_driver(chat_tokenizer, [vocab_id("\n")], greedy(max_new_tokens=20),
                                heuristic=NewlineRunHeuristic())
        assert len(list(driver)) == 3

    def test_stop_string_beats_heuristic(self, chat_tokenizer, vocab_id):
        script = [vocab_id("Hi"), vocab_id("User:")]
        _, driver = make_driver(chat_tokenizer, script,
                                greedy(max_new_tokens=20, stop=["User:"]),
                                heuristic=EosHeuristic(chat_tokenizer.eos_id))
        assert len(list(driver)) == 2


class TestPositions:

    def test_prefill_then_single_tokens(self, chat_tokenizer, vocab_id):
        script = [vocab_id("Hello"), vocab_id(" there"), vocab_id("!")]
        model, driver = make_driver(chat_tokenizer, script, greedy(max_new_tokens=3),
                                    prompt=(0, 7, 8))
        list(driver)
        assert model.calls == [
            ([0, 7, 8], 0),
            ([vocab_id("Hello")], 3),
            ([vocab_id(" there")], 4),
        ]
        assert driver.history == [0, 7, 8] + script

    def test_empty_prompt_rejected(self, chat_tokenizer):
        model = ScriptedModel([2], vocab_size=len(chat_tokenizer.vocab))
        with pytest.raises(ValueError):
            GenerationDriver(model, chat_tokenizer, [], greedy())


class TestErrors:

    def test_backend_failure_after_tokens(self, chat_tokenizer, vocab_id):
        _, driver = make_driver(chat_tokenizer, [vocab_id("Hi")], greedy(max_new_tokens=10),
                                fail_at=2)
        assert next(driver).text == "Hi"
        assert next(driver).text == "Hi"
        with pytest.raises(NumericBackendError):
            next(driver)
        assert driver.state is DriverState.FINISHED
        with pytest.raises(StopIteration):
            next(driver)

    def test_tokenizer_failure(self):
        class BrokenDecode(FakeTokenizer):
            def decode(self, ids):
                raise TokenizerError("cannot decode")

        tokenizer = BrokenDecode(["<s>", "</s>", "a"])
        _, driver = make_driver(tokenizer, [2], greedy(max_new_tokens=2), prompt=(0,))
        next(driver)
        with pytest.raises(TokenizerError):
            next(driver)
        assert driver.finished


class TestWithModel:

    @pytest.fixture
    def model(self, tiny_config):
        return build_model(tiny_config, random_weights(tiny_config, seed=11))

    @pytest.fixture
    def tokenizer(self, tiny_config):
        # No EOS id, so random weights cannot end a run early
        return FakeTokenizer([f"<{i}>" for i in range(tiny_config.vocab_size)], eos_id=None)

    def test_greedy_deterministic(self, model, tokenizer):
        prompt = [0, 5, 9, 13]
        runs = []
        for _ in range(2):
            driver = GenerationDriver(model, tokenizer, prompt, greedy(max_new_tokens=8))
            runs.append([g.token_id for g in driver])
        assert runs[0] == runs[1]
        assert len(runs[0]) == 8

    def test_seeded_sampling_reproducible(self, model, tokenizer):
        request = GenerationRequest(temperature=1.0, top_p=0.9, seed=5, max_new_tokens=8)
        a = [g.token_id for g in GenerationDriver(model, tokenizer, [0, 3], request)]
        b = [g.token_id for g in GenerationDriver(model, tokenizer, [0, 3], request)]
        assert a == b

    def test_cache_tracks_tokens_fed(self, model, tokenizer, tiny_config):
        driver = GenerationDriver(model, tokenizer, [0, 1, 2, 3, 4], greedy(max_new_tokens=6))
        for step, _ in enumerate(driver, start=1):
            # prompt once, then the previous sample on every later step
            fed = 5 + step - 1
            for layer in range(tiny_config.n_layers):
                assert driver.cache.seq_len(layer) == fed
        assert driver.forward_calls == 6

    def test_overflow_ends_with_error(self, model, tokenizer, tiny_config):
        prompt = list(range(tiny_config.seq_len - 2))   # 30 of 32 positions
        driver = GenerationDriver(model, tokenizer, prompt, greedy(max_new_tokens=10))
        items = []
        with pytest.raises(CacheOverflow):
            for g in driver:
                items.append(g)
        assert len(items) == 3
        assert len(driver.cache) == tiny_config.seq_len

    def test_logprob_is_log_probability(self, model, tokenizer):
        driver = GenerationDriver(model, tokenizer, [0, 1], greedy(max_new_tokens=3))
        for g in driver:
            assert g.logprob <= 0.0

    def test_generate_result(self, model, tokenizer):
        pipeline = Pipeline(model, tokenizer, "<3> <4>", greedy(max_new_tokens=5))
        result = generate(pipeline)
        assert result.prompt_tokens == 3
        assert result.generated_tokens == 5
        assert result.text.count("<") == 5
        assert result.total_ms >= result.prefill_ms >= 0
        assert "Output tokens  : 5" in result.stats_string()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
