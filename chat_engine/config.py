"""
Configuration for the inference engine.

Three dataclasses carry every knob the engine has:

  ModelConfig       architecture hyperparameters, read from a weight file header
  GenerationRequest sampling and stopping parameters for one request
  EngineConfig      host-level context (device, download cache, channel size)

EngineConfig is passed explicitly into the dispatcher and the streaming bridge.
Nothing in the engine reads global device or cache state; a host that wants two
engines with different devices simply builds two EngineConfigs.

ARCHITECTURE FIELDS:
  Both supported architectures are decoder-only transformers with rotary
  position encoding:
  - "llama": RMSNorm, SwiGLU FFN, grouped-query attention, no biases
  - "phi":   LayerNorm, GELU MLP in parallel with attention, fused QKV,
             partial rotary embedding, biases everywhere
"""

from dataclasses import dataclass, field, asdict
from typing import Optional
import json
import os

from chat_engine.errors import ArchitectureMismatch


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters.

    The first seven fields are exactly the integer header of a legacy weight
    dump (dim, hidden_dim, n_layers, n_heads, n_kv_heads, vocab_size,
    seq_len). GGUF containers provide the same values through metadata.

    The defaults describe the 15M-parameter "stories" checkpoint:
      dim=288, hidden_dim=768, 6 layers, 6 heads, 6 KV heads,
      vocab 32000, context 256.
    """

    # ── Shape ──────────────────────────────────────────────────────────────
    dim: int = 288
    hidden_dim: int = 768
    n_layers: int = 6

    # ── Attention heads ────────────────────────────────────────────────────
    # n_kv_heads < n_heads is grouped-query attention: each KV head serves
    # n_heads // n_kv_heads consecutive query heads.
    n_heads: int = 6
    n_kv_heads: int = 6

    vocab_size: int = 32000

    # Context length. Bounds the rotary tables and the KV cache.
    seq_len: int = 256

    norm_eps: float = 1e-5
    rope_theta: float = 10000.0

    # ── Family specifics ───────────────────────────────────────────────────
    arch: str = "llama"
    # Number of leading head dimensions that get rotated (phi rotates only
    # part of each head). None means the whole head.
    rotary_dim: Optional[int] = None
    # LM head shares the token embedding matrix.
    shared_classifier: bool = True

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (dim / n_heads)."""
        return self.dim // self.n_heads

    @property
    def kv_dim(self) -> int:
        """Width of the K and V projections."""
        return self.n_kv_heads * self.head_dim

    @property
    def repeat_factor(self) -> int:
        """Query heads per KV head."""
        return self.n_heads // self.n_kv_heads

    @property
    def rotary_width(self) -> int:
        return self.rotary_dim if self.rotary_dim is not None else self.head_dim

    def validate(self) -> None:
        """
        Check the configuration before any tensor is shaped from it.

        Raises:
            ArchitectureMismatch: If a size is not positive or the head
                layout does not divide evenly.
        """
        for name in ("dim", "hidden_dim", "n_layers", "n_heads", "n_kv_heads",
                     "vocab_size", "seq_len"):
            if getattr(self, name) <= 0:
                raise ArchitectureMismatch(
                    f"{name} must be positive, got {getattr(self, name)}"
                )
        if self.dim % self.n_heads != 0:
            raise ArchitectureMismatch(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
            )
        if self.n_heads % self.n_kv_heads != 0:
            raise ArchitectureMismatch(
                f"n_heads ({self.n_heads}) must be divisible by "
                f"n_kv_heads ({self.n_kv_heads})"
            )
        if self.arch not in ("llama", "phi"):
            raise ArchitectureMismatch(f"unknown architecture {self.arch!r}")
        if self.rotary_width % 2 != 0 or self.rotary_width > self.head_dim:
            raise ArchitectureMismatch(
                f"rotary width ({self.rotary_width}) must be even and at most "
                f"head_dim ({self.head_dim})"
            )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass
class GenerationRequest:
    """
    Sampling and stopping parameters for one generation request.

    Defaults follow the parameter records the chat host stores per model.
    """

    # ── Sampling ───────────────────────────────────────────────────────────
    # 0.0 means greedy arg-max.
    temperature: float = 0.9
    # Nucleus threshold; 1.0 disables the filter.
    top_p: float = 0.95
    # 0 disables top-k.
    top_k: int = 0
    seed: int = 0

    # ── Repetition ─────────────────────────────────────────────────────────
    # 1.0 disables the penalty. The window is the last repeat_last_n ids of
    # prompt + generated history.
    repetition_penalty: float = 1.0
    repeat_last_n: int = 64

    # ── Stopping ───────────────────────────────────────────────────────────
    max_new_tokens: int = 1024
    stop: list[str] = field(default_factory=list)

    def validate(self) -> None:
        if self.temperature < 0.0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if self.max_new_tokens < 0:
            raise ValueError(f"max_new_tokens must be >= 0, got {self.max_new_tokens}")
        if self.repetition_penalty <= 0.0:
            raise ValueError(
                f"repetition_penalty must be positive, got {self.repetition_penalty}"
            )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "GenerationRequest":
        """
        Build a request from a host parameter record.

        Unknown keys (for example "truncate" or "return_full_text") are
        dropped so that stored records can be passed through unchanged.
        """
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class EngineConfig:
    """Host-level context threaded through the dispatcher and the bridge."""

    # Where downloaded model files live. None = huggingface_hub default.
    cache_dir: Optional[str] = None

    # "auto" picks CUDA, then MPS, then CPU.
    device: str = "cpu"

    # Capacity of the bounded channel between the worker and the async host.
    channel_size: int = 20

    # Local overrides. When set, the hub is not consulted for that file.
    weights_path: Optional[str] = None
    tokenizer_path: Optional[str] = None
