"""
Autoregressive generation as a finite, non-restartable iterator.

GenerationDriver is the state machine every model family shares. One
next() call is one generation step:

  1. forward: the whole prompt on the first step (PREFILL), then the single
     token sampled on the previous step (DECODE), at the current position.
  2. sample the next id; append it to the history.
  3. turn the id into a text fragment (tokenizer.token_text).
  4. stop check, in this precedence:
       a. the step counter reached max_new_tokens
       b. the fragment starts with a configured stop string
       c. the family heuristic (end-of-sequence id, newline run, ...)
  5. on stop: decode the whole generated history into generated_text and
     become FINISHED. That item is the last one yielded.

  PREFILL / DECODE with a per-session cache:

    step 1: model(["Once", "upon", "a"], start_pos=0, cache)   cache len 3
            -> sample "time"
    step 2: model(["time"], start_pos=3, cache)                cache len 4
            -> sample ","
    ...

  max_new_tokens = M bounds both: at most M tokens and M forward calls.
  M = 0 yields nothing and never runs the model.

ERRORS:
  Any failure inside a step ends the sequence: the driver becomes FINISHED
  and the error propagates from next(). Numeric failures arrive as
  NumericBackendError (CacheOverflow included), tokenizer failures as
  TokenizerError. Items yielded before the error stay valid.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Iterator, Optional

import torch
import torch.nn.functional as F

from chat_engine.cache import KVCache
from chat_engine.config import GenerationRequest
from chat_engine.errors import EngineError, NumericBackendError
from chat_engine.sampler import Sampler

logger = logging.getLogger(__name__)


@dataclass
class Generation:
    """One emitted token."""
    token_id: int
    text: str
    logprob: float = 0.0
    # Set only on the last item of a sequence.
    generated_text: Optional[str] = None


class DriverState(enum.Enum):
    RUNNING = "running"
    FINISHED = "finished"


# ═══════════════════════════════════════════════════════════════════════════
# Family stop heuristics
# ═══════════════════════════════════════════════════════════════════════════

class StopHeuristic:
    """Per-sequence stop rule. A fresh instance is made for every driver."""

    def should_stop(self, token_id: int, text: str) -> bool:
        return False


class EosHeuristic(StopHeuristic):
    """Stop once the end-of-sequence id has been sampled."""

    def __init__(self, eos_id: Optional[int]):
        self.eos_id = eos_id

    def should_stop(self, token_id: int, text: str) -> bool:
        return self.eos_id is not None and token_id == self.eos_id


class NewlineRunHeuristic(StopHeuristic):
    """
    Stop on a blank line after some text.

    Instruction-tuned models without a reliable end token tend to close a
    reply with "\\n\\n" and start rambling. The counter is reset to 1 by any
    non-newline fragment and bumped by each "\\n" fragment; reaching 3 means
    text followed by two newlines (or three newlines at the very start).
    """

    def __init__(self, run_length: int = 3):
        self.run_length = run_length
        self.count = 0

    def should_stop(self, token_id: int, text: str) -> bool:
        if text == "\n":
            self.count += 1
        else:
            self.count = 1
        return self.count == self.run_length


# ═══════════════════════════════════════════════════════════════════════════
# Driver
# ═══════════════════════════════════════════════════════════════════════════

class GenerationDriver:
    """
    Iterator over Generation items for one request.

    Owns everything that is per-request: the KV cache, the sampler and its
    RNG, the token history and the step counter. The model and tokenizer
    are shared read-only.
    """

    def __init__(
        self,
        model,
        tokenizer,
        prompt_tokens: list[int],
        request: GenerationRequest,
        heuristic: Optional[StopHeuristic] = None,
        cache: Optional[KVCache] = None,
        sampler: Optional[Sampler] = None,
    ):
        if not prompt_tokens:
            raise ValueError("prompt must encode to at least one token")
        self.model = model
        self.tokenizer = tokenizer
        self.request = request
        self.heuristic = heuristic or StopHeuristic()
        self.cache = cache if cache is not None else model.new_cache()
        self.sampler = sampler or Sampler.from_request(request)
        self.device = model.freqs_cos.device

        self.history: list[int] = list(prompt_tokens)
        self.generated: list[int] = []
        self.prompt_len = len(prompt_tokens)
        self.i = 0
        self.forward_calls = 0
        self.generated_text: Optional[str] = None

        self.state = DriverState.RUNNING
        if request.max_new_tokens == 0:
            self.state = DriverState.FINISHED

        self.started_at: Optional[float] = None
        self.prefill_s = 0.0
        self.elapsed_s = 0.0

    @property
    def finished(self) -> bool:
        return self.state is DriverState.FINISHED

    def __iter__(self) -> Iterator[Generation]:
        return self

    def __next__(self) -> Generation:
        if self.state is DriverState.FINISHED:
            raise StopIteration
        try:
            return self._step()
        except EngineError:
            self._finish()
            raise
        except RuntimeError as e:
            self._finish()
            raise NumericBackendError(f"step {self.i}: {e}") from e

    def _step(self) -> Generation:
        if self.started_at is None:
            self.started_at = time.perf_counter()

        # ── Forward ────────────────────────────────────────────────────────
        if self.i == 0:
            pending = self.history
            start_pos = 0
        else:
            pending = self.history[-1:]
            start_pos = len(self.history) - 1
        tokens = torch.tensor([pending], dtype=torch.long, device=self.device)
        logits = self.model(tokens, start_pos, self.cache)[0]
        self.forward_calls += 1
        if self.i == 0:
            self.prefill_s = time.perf_counter() - self.started_at

        # ── Sample ─────────────────────────────────────────────────────────
        next_token = self.sampler.sample(logits, self.history)
        logprob = float(F.log_softmax(logits.float(), dim=-1)[next_token])
        self.history.append(next_token)
        self.generated.append(next_token)
        self.i += 1

        text = self.tokenizer.token_text(next_token)

        # ── Stop check ─────────────────────────────────────────────────────
        stop = self.i == self.request.max_new_tokens
        if not stop:
            stop = any(s and text.startswith(s) for s in self.request.stop)
        if not stop:
            stop = self.heuristic.should_stop(next_token, text)

        generated_text = None
        if stop:
            generated_text = self.tokenizer.decode(self.generated)
            self.generated_text = generated_text
            self._finish()

        return Generation(
            token_id=next_token,
            text=text,
            logprob=logprob,
            generated_text=generated_text,
        )

    def _finish(self) -> None:
        self.state = DriverState.FINISHED
        if self.started_at is None:
            return
        self.elapsed_s = time.perf_counter() - self.started_at
        rate = len(self.generated) / self.elapsed_s if self.elapsed_s > 0 else 0.0
        logger.info(
            "%d tokens generated (%.2f token/s)", len(self.generated), rate
        )


# ═══════════════════════════════════════════════════════════════════════════
# Drain helper
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class GenerateResult:
    """Result of a drained generation with inference metrics."""
    text: str
    prompt_tokens: int      # number of tokens in the prompt (including BOS)
    generated_tokens: int   # number of tokens generated
    prefill_ms: float       # time of the first forward call (ms)
    decode_ms: float        # time spent after the first forward call (ms)
    total_ms: float         # total wall time (ms)
    temperature: float
    top_k: int
    top_p: float

    @property
    def ttft_ms(self) -> float:
        """Time to first token, same as prefill time."""
        return self.prefill_ms

    @property
    def decode_tok_per_sec(self) -> float:
        """Decode throughput (tokens/sec), excluding prefill."""
        if self.decode_ms <= 0:
            return 0.0
        return max(self.generated_tokens - 1, 0) / (self.decode_ms / 1000)

    @property
    def overall_tok_per_sec(self) -> float:
        if self.total_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.total_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of inference metrics."""
        return "\n".join([
            f"Sampling       : temp={self.temperature}, top_k={self.top_k}, top_p={self.top_p}",
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"TTFT           : {self.ttft_ms:.1f} ms",
            f"Decode speed   : {self.decode_tok_per_sec:.1f} tok/s",
            f"Overall speed  : {self.overall_tok_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ])


def generate(pipeline) -> GenerateResult:
    """
    Run a pipeline to completion and summarize it.

    Errors propagate exactly as they would from iterating the driver.
    """
    driver = pipeline.iter()
    t_start = time.perf_counter()
    for _ in driver:
        pass
    total_ms = (time.perf_counter() - t_start) * 1000

    text = driver.generated_text
    if text is None:
        text = pipeline.tokenizer.decode(driver.generated)
    prefill_ms = driver.prefill_s * 1000
    request = pipeline.request
    return GenerateResult(
        text=text,
        prompt_tokens=driver.prompt_len,
        generated_tokens=len(driver.generated),
        prefill_ms=prefill_ms,
        decode_ms=max(total_ms - prefill_ms, 0.0),
        total_ms=total_ms,
        temperature=request.temperature,
        top_k=request.top_k,
        top_p=request.top_p,
    )
