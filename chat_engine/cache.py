"""
Per-request attention state: the KV cache and the causal mask cache.

KV CACHE:
  Autoregressive decoding feeds the whole prompt once, then one token per
  step. Keys and values of earlier positions never change, so each layer
  keeps them and only computes K/V for the new tokens:

    call 1 (prompt, 5 tokens)  cache len 5
    call 2 (1 token)           cache len 6
    call 3 (1 token)           cache len 7

  The cache is owned by the generation session and handed to every
  forward() call. Attention layers read their slot, concatenate the new
  keys/values along the sequence axis and write the result back. They never
  keep a reference between calls.

  Tensor layout per slot: (batch, seq, n_kv_heads, head_dim), the layout the
  attention layer produces before transposing heads forward.

MASK CACHE:
  A prompt of length t needs a t x t causal mask where position (i, j) is
  masked iff j > i. Masks are immutable and memoized by t.
"""

from typing import Optional, Tuple

import torch

from chat_engine.errors import CacheOverflow


class KVCache:
    """
    Per-layer (key, value) accumulator for one generation session.

    Must never be shared by two concurrent requests; every request builds
    its own.
    """

    def __init__(self, n_layers: int, max_seq_len: int):
        self.n_layers = n_layers
        self.max_seq_len = max_seq_len
        self._entries: list = [None] * n_layers

    def get(self, layer: int) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        """Cached (K, V) for a layer, or None before its first write."""
        return self._entries[layer]

    def put(self, layer: int, k: torch.Tensor, v: torch.Tensor) -> None:
        """
        Store the full (K, V) history for a layer.

        Raises:
            CacheOverflow: The new length exceeds max_seq_len. The cache is
                left unchanged.
        """
        if k.shape[1] > self.max_seq_len:
            raise CacheOverflow(
                f"layer {layer}: cache would hold {k.shape[1]} positions, "
                f"context length is {self.max_seq_len}"
            )
        self._entries[layer] = (k, v)

    def seq_len(self, layer: int = 0) -> int:
        """Number of positions cached for a layer."""
        entry = self._entries[layer]
        return 0 if entry is None else entry[0].shape[1]

    def reset(self) -> None:
        """Drop everything, e.g. to reuse a pipeline for a new turn."""
        self._entries = [None] * self.n_layers

    def __len__(self) -> int:
        return self.seq_len(0)


class MaskCache:
    """Memoized boolean causal masks, True where attention is forbidden."""

    def __init__(self):
        self._masks: dict = {}

    def get(self, t: int, device: Optional[torch.device] = None) -> torch.Tensor:
        key = (t, str(device))
        mask = self._masks.get(key)
        if mask is None:
            mask = torch.triu(torch.ones(t, t, dtype=torch.bool, device=device), diagonal=1)
            self._masks[key] = mask
        return mask

    def for_query(self, t: int, kv_len: int,
                  device: Optional[torch.device] = None) -> torch.Tensor:
        """
        Mask of shape (t, kv_len) for t new queries over kv_len keys.

        The first kv_len - t keys are cached history; every new query may
        see all of them, so those columns are never masked.
        """
        mask = self.get(t, device)
        history = kv_len - t
        if history == 0:
            return mask
        visible = torch.zeros(t, history, dtype=torch.bool, device=device)
        return torch.cat([visible, mask], dim=1)

    def __len__(self) -> int:
        return len(self._masks)
