"""
Token sampling: logits vector -> token id.

SAMPLING PIPELINE (applied in order):
  1. REPETITION PENALTY (optional)
     For every id among the last repeat_last_n ids of the history, a positive
     logit is divided by the penalty and a negative one multiplied by it, so
     a penalty > 1 always makes the repeated token less likely.

  2. TEMPERATURE
     temperature == 0 is greedy arg-max: no division, no randomness.
     Otherwise logits /= temperature.

  3. TOP-K (optional)
     Logits below the k-th largest become -inf.

  4. SOFTMAX, then TOP-P (nucleus)
     Sort descending, accumulate probability until the mass exceeds p, zero
     the rest (the token that crosses p is kept), renormalize.

  5. DRAW
     torch.multinomial with the sampler's own seeded torch.Generator. Same
     seed + same logits sequence -> same tokens, independent of any global
     RNG state or other samplers running in the same process.
"""

from typing import Optional, Sequence

import torch
import torch.nn.functional as F

from chat_engine.config import GenerationRequest


def apply_repetition_penalty(
    logits: torch.Tensor,
    penalty: float,
    context: Sequence[int],
) -> torch.Tensor:
    """
    Penalize every token id that appears in context.

    Args:
        logits: (vocab_size,) scores. Not modified.
        penalty: 1.0 is a no-op.
        context: Recent token ids.

    Returns:
        Penalized copy of logits.
    """
    if penalty == 1.0 or len(context) == 0:
        return logits
    logits = logits.clone()
    ids = torch.tensor(sorted(set(context)), dtype=torch.long, device=logits.device)
    selected = logits[ids]
    logits[ids] = torch.where(selected >= 0, selected / penalty, selected * penalty)
    return logits


def sample_top_p(
    probs: torch.Tensor,
    p: float,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """
    Nucleus sampling over a probability vector.

    EXAMPLE:
      probs  = [0.4, 0.3, 0.15, 0.1, 0.05]  (sorted descending)
      cumsum = [0.4, 0.7, 0.85, 0.95, 1.0]
      p = 0.8 -> keep [0.4, 0.3, 0.15]; 0.15 is the token that crosses p

    Args:
        probs: (vocab_size,) distribution.
        p: Cumulative probability threshold.
        generator: RNG for the draw.

    Returns:
        Sampled token index as a 0-d tensor.
    """
    probs_sorted, sorted_indices = torch.sort(probs, descending=True)
    cumsum = torch.cumsum(probs_sorted, dim=-1)

    # Mass BEFORE each token; strictly above p means the token is past the cut.
    mask = cumsum - probs_sorted > p
    probs_sorted = probs_sorted.masked_fill(mask, 0.0)
    probs_sorted = probs_sorted / probs_sorted.sum()

    sampled_idx = torch.multinomial(probs_sorted, num_samples=1, generator=generator)
    return sorted_indices[sampled_idx].squeeze(0)


class Sampler:
    """
    Stateful sampler for one generation session.

    The generator is created from the seed once and advances with every
    draw, so a Sampler must not be shared between concurrent requests.
    """

    def __init__(
        self,
        temperature: float = 0.9,
        top_p: float = 1.0,
        top_k: int = 0,
        seed: int = 0,
        repetition_penalty: float = 1.0,
        repeat_last_n: int = 64,
    ):
        self.temperature = temperature
        self.top_p = top_p
        self.top_k = top_k
        self.seed = seed
        self.repetition_penalty = repetition_penalty
        self.repeat_last_n = repeat_last_n
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(seed)

    @classmethod
    def from_request(cls, request: GenerationRequest) -> "Sampler":
        return cls(
            temperature=request.temperature,
            top_p=request.top_p,
            top_k=request.top_k,
            seed=request.seed,
            repetition_penalty=request.repetition_penalty,
            repeat_last_n=request.repeat_last_n,
        )

    def sample(self, logits: torch.Tensor, history: Sequence[int] = ()) -> int:
        """
        Pick the next token id.

        Args:
            logits: (vocab_size,) or (1, vocab_size) scores for the next position.
            history: All token ids so far (prompt + generated); only the last
                repeat_last_n matter.

        Returns:
            The chosen token id.
        """
        # Work on CPU in float32 so the seeded CPU generator drives every draw.
        logits = logits.detach().reshape(-1).float().cpu()

        if self.repetition_penalty != 1.0 and self.repeat_last_n > 0:
            logits = apply_repetition_penalty(
                logits, self.repetition_penalty, list(history)[-self.repeat_last_n:]
            )

        if self.temperature == 0.0:
            return int(logits.argmax())

        logits = logits / self.temperature

        if self.top_k > 0:
            k = min(self.top_k, logits.size(-1))
            kth_value = torch.topk(logits, k).values[-1]
            logits = logits.masked_fill(logits < kth_value, float("-inf"))

        probs = F.softmax(logits, dim=-1)

        if self.top_p < 1.0:
            return int(sample_top_p(probs, self.top_p, self.generator))
        return int(torch.multinomial(probs, num_samples=1, generator=self.generator))


def sample(
    logits: torch.Tensor,
    temperature: float,
    top_p: float,
    seed: int,
) -> int:
    """One-shot sampling with a fresh generator. See Sampler for sessions."""
    return Sampler(temperature=temperature, top_p=top_p, seed=seed).sample(logits)
