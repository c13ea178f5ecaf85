"""
Transformer forward passes for the supported model families.

Both models expose the same call:

    logits = model(tokens, start_pos, cache)

  tokens    (batch, seq_len) token ids; the whole prompt on the first call,
            one id per call afterwards
  start_pos where these tokens sit in the overall sequence
  cache     the session's KVCache, or None for a stateless pass
  logits    (batch, vocab_size) for the LAST position only

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. RMSNorm          normalization for the llama family
  2. RoPE             rotary position encoding (interleaved pairs and the
                      rotate-half variant used by phi)
  3. FeedForward      SwiGLU FFN
  4. Attention        grouped-query attention over the session cache
  5. TransformerBlock one llama decoder layer
  6. LlamaModel       the llama / tiny-llama stack
  7. PhiModel         the phi stack: LayerNorm, parallel attention + MLP

Weights never come from training here. build_model() shapes the modules from
a ModelConfig and copies tensors out of a WeightMap.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from chat_engine.cache import KVCache, MaskCache
from chat_engine.config import ModelConfig
from chat_engine.errors import CacheOverflow
from chat_engine.utils import resolve_device


# ═══════════════════════════════════════════════════════════════════════════
# 1. RMSNorm: Root Mean Square Layer Normalization
# ═══════════════════════════════════════════════════════════════════════════

class RMSNorm(nn.Module):
    """
    RMSNorm (Zhang & Sennrich, 2019).

      RMSNorm(x) = x / sqrt(mean(x²) + eps) * gamma

    No mean subtraction and no bias, unlike LayerNorm. The statistic is
    computed in float32 regardless of the input dtype.
    """

    def __init__(self, dim: int, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def _norm(self, x: torch.Tensor) -> torch.Tensor:
        return x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + self.eps)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        output = self._norm(x.float()).type_as(x)
        return output * self.weight


# ═══════════════════════════════════════════════════════════════════════════
# 2. RoPE: Rotary Positional Embeddings
# ═══════════════════════════════════════════════════════════════════════════

def precompute_rope_frequencies(
    head_dim: int,
    max_seq_len: int,
    theta: float = 10000.0,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Precompute the cos/sin tables for rotary embeddings.

    For dimension pair i and position m the rotation angle is
      m * theta^(-2i / head_dim)

    Legacy weight dumps ship these tables precomputed; GGUF models get them
    from here.

    Args:
        head_dim: Rotated width (must be even).
        max_seq_len: Number of positions to precompute.
        theta: Base frequency.

    Returns:
        (freqs_cos, freqs_sin), each of shape (max_seq_len, head_dim // 2).
    """
    assert head_dim % 2 == 0, f"head_dim must be even for RoPE, got {head_dim}"

    dim_indices = torch.arange(0, head_dim, 2, device=device).float()
    freqs = 1.0 / (theta ** (dim_indices / head_dim))
    positions = torch.arange(max_seq_len, device=device).float()
    angles = torch.outer(positions, freqs)
    return angles.cos(), angles.sin()


def apply_rotary_embeddings(
    x: torch.Tensor,
    freqs_cos: torch.Tensor,
    freqs_sin: torch.Tensor,
) -> torch.Tensor:
    """
    Rotate consecutive pairs (d0, d1), (d2, d3), ... of each head.

      x_even' = x_even * cos - x_odd * sin
      x_odd'  = x_even * sin + x_odd * cos

    Args:
        x: (batch, seq_len, n_heads, head_dim).
        freqs_cos, freqs_sin: (seq_len, head_dim // 2), already sliced to the
            positions of x.

    Returns:
        Rotated tensor of the same shape and dtype.
    """
    x_reshaped = x.float().reshape(*x.shape[:-1], -1, 2)
    x_even = x_reshaped[..., 0]
    x_odd = x_reshaped[..., 1]

    # (seq_len, half) -> (1, seq_len, 1, half) to broadcast over batch and heads
    cos = freqs_cos.unsqueeze(0).unsqueeze(2)
    sin = freqs_sin.unsqueeze(0).unsqueeze(2)

    x_even_rot = x_even * cos - x_odd * sin
    x_odd_rot = x_even * sin + x_odd * cos

    x_rotated = torch.stack([x_even_rot, x_odd_rot], dim=-1).flatten(-2)
    return x_rotated.type_as(x)


def apply_rotary_half(
    x: torch.Tensor,
    freqs_cos: torch.Tensor,
    freqs_sin: torch.Tensor,
) -> torch.Tensor:
    """
    Rotate-half variant on the leading rotary width of each head.

    The rotated width is 2 * freqs_cos.shape[-1]; dimensions past it pass
    through untouched. Pairs are (d_i, d_{i + width/2}) instead of adjacent
    dimensions.
    """
    width = 2 * freqs_cos.shape[-1]
    x_rot, x_pass = x[..., :width].float(), x[..., width:]
    x1, x2 = x_rot.chunk(2, dim=-1)

    cos = freqs_cos.unsqueeze(0).unsqueeze(2)
    sin = freqs_sin.unsqueeze(0).unsqueeze(2)

    rotated = torch.cat([x1 * cos - x2 * sin, x1 * sin + x2 * cos], dim=-1)
    return torch.cat([rotated.type_as(x), x_pass], dim=-1)


def repeat_kv(x: torch.Tensor, n_rep: int) -> torch.Tensor:
    """
    Expand KV heads for grouped-query attention.

    x is (batch, n_kv_heads, seq, head_dim). Each KV head is repeated n_rep
    times contiguously, so KV head h serves query heads
    [h * n_rep, (h + 1) * n_rep).
    """
    if n_rep == 1:
        return x
    return x.repeat_interleave(n_rep, dim=1)


def _attend(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    mask: Optional[torch.Tensor],
) -> torch.Tensor:
    """
    Scaled dot-product attention, scale 1/sqrt(head_dim).

    mask is the boolean "forbidden" mask from MaskCache (True = masked) or
    None for single-token steps, where the new position may see the whole
    history.
    """
    if mask is None:
        return F.scaled_dot_product_attention(q, k, v)
    # SDPA's boolean mask marks positions that DO take part
    return F.scaled_dot_product_attention(q, k, v, attn_mask=~mask)


def _update_cache(
    cache: Optional[KVCache],
    layer_id: int,
    k: torch.Tensor,
    v: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    # get -> concatenate -> put, so the cache always holds the full history
    if cache is None:
        return k, v
    cached = cache.get(layer_id)
    if cached is not None:
        k = torch.cat([cached[0], k], dim=1)
        v = torch.cat([cached[1], v], dim=1)
    cache.put(layer_id, k, v)
    return k, v


# ═══════════════════════════════════════════════════════════════════════════
# 3. SwiGLU Feed-Forward Network
# ═══════════════════════════════════════════════════════════════════════════

class FeedForward(nn.Module):
    """
    SwiGLU FFN (Shazeer, 2020).

      FFN(x) = W_down(silu(W_gate x) * W_up x)

    The gate decides per hidden unit how much of W_up's content passes.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.w_gate = nn.Linear(config.dim, config.hidden_dim, bias=False)
        self.w_up = nn.Linear(config.dim, config.hidden_dim, bias=False)
        self.w_down = nn.Linear(config.hidden_dim, config.dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.w_down(F.silu(self.w_gate(x)) * self.w_up(x))


# ═══════════════════════════════════════════════════════════════════════════
# 4. Grouped Query Attention over the session KV cache
# ═══════════════════════════════════════════════════════════════════════════

class Attention(nn.Module):
    """
    Multi-head attention with grouped KV heads.

    Data flow for one call:
      x (batch, seq, dim)
        ├─→ Wq → (batch, seq, n_heads, head_dim)    → RoPE
        ├─→ Wk → (batch, seq, n_kv_heads, head_dim) → RoPE ─┐
        └─→ Wv → (batch, seq, n_kv_heads, head_dim) ────────┤
                                cache: concat history, store back
        heads forward, repeat KV heads, SDPA, merge heads, Wo

    The layer holds no cache of its own. The session's KVCache and this
    layer's index arrive with every call.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.n_heads = config.n_heads
        self.n_kv_heads = config.n_kv_heads
        self.head_dim = config.head_dim
        self.n_rep = config.repeat_factor

        self.wq = nn.Linear(config.dim, config.n_heads * config.head_dim, bias=False)
        self.wk = nn.Linear(config.dim, config.kv_dim, bias=False)
        self.wv = nn.Linear(config.dim, config.kv_dim, bias=False)
        self.wo = nn.Linear(config.n_heads * config.head_dim, config.dim, bias=False)

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: torch.Tensor,
        freqs_sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
        layer_id: int = 0,
    ) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape

        q = self.wq(x).view(batch_size, seq_len, self.n_heads, self.head_dim)
        k = self.wk(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        v = self.wv(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)

        q = apply_rotary_embeddings(q, freqs_cos, freqs_sin)
        k = apply_rotary_embeddings(k, freqs_cos, freqs_sin)

        k, v = _update_cache(cache, layer_id, k, v)

        q = q.transpose(1, 2)                          # (batch, n_heads, seq, head_dim)
        k = repeat_kv(k.transpose(1, 2), self.n_rep)   # (batch, n_heads, kv_len, head_dim)
        v = repeat_kv(v.transpose(1, 2), self.n_rep)

        output = _attend(q, k, v, mask)
        output = output.transpose(1, 2).contiguous().view(batch_size, seq_len, -1)
        return self.wo(output)


# ═══════════════════════════════════════════════════════════════════════════
# 5. Transformer Block
# ═══════════════════════════════════════════════════════════════════════════

class TransformerBlock(nn.Module):
    """
    One pre-norm llama layer:

      x = x + Attention(RMSNorm(x))
      x = x + FFN(RMSNorm(x))
    """

    def __init__(self, layer_id: int, config: ModelConfig):
        super().__init__()
        self.layer_id = layer_id
        self.attention_norm = RMSNorm(config.dim, config.norm_eps)
        self.attention = Attention(config)
        self.ffn_norm = RMSNorm(config.dim, config.norm_eps)
        self.feed_forward = FeedForward(config)

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: torch.Tensor,
        freqs_sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        x = x + self.attention(
            self.attention_norm(x), freqs_cos, freqs_sin, mask, cache, self.layer_id
        )
        return x + self.feed_forward(self.ffn_norm(x))


# ═══════════════════════════════════════════════════════════════════════════
# Shared decoder plumbing
# ═══════════════════════════════════════════════════════════════════════════

class _Decoder(nn.Module, ABC):
    """
    Bookkeeping common to both families: positions, masks, weight copy.

    Base class only; subclasses build the modules and map their state keys.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        config.validate()
        self.config = config
        # Immutable entries; safe to keep for the model's lifetime.
        self.mask_cache = MaskCache()

    def new_cache(self) -> KVCache:
        return KVCache(self.config.n_layers, self.config.seq_len)

    def _positions(self, seq_len: int, start_pos: int, cache: Optional[KVCache]):
        end = start_pos + seq_len
        if end > self.config.seq_len:
            raise CacheOverflow(
                f"positions [{start_pos}, {end}) exceed context length {self.config.seq_len}"
            )
        cos = self.freqs_cos[start_pos:end]
        sin = self.freqs_sin[start_pos:end]
        # Only multi-token queries need a mask.
        mask = None
        if seq_len > 1:
            history = 0 if cache is None else cache.seq_len(0)
            mask = self.mask_cache.for_query(
                seq_len, history + seq_len, device=self.freqs_cos.device
            )
        return cos, sin, mask

    @abstractmethod
    def state_dict_names(self) -> dict:
        """Module state key -> logical WeightMap name."""

    def load_weights(self, weights) -> None:
        state = {key: weights[name] for key, name in self.state_dict_names().items()}
        self.load_state_dict(state, strict=True)


# ═══════════════════════════════════════════════════════════════════════════
# 6. Llama family
# ═══════════════════════════════════════════════════════════════════════════

class LlamaModel(_Decoder):
    """
    Decoder-only llama stack (quantized-llama and tiny-llama families).

      tokens → embedding → N × TransformerBlock → RMSNorm → LM head (last position)
    """

    def __init__(self, config: ModelConfig, rope_tables: Optional[tuple] = None):
        super().__init__(config)
        self.tok_embeddings = nn.Embedding(config.vocab_size, config.dim)
        self.layers = nn.ModuleList([
            TransformerBlock(layer_id=i, config=config)
            for i in range(config.n_layers)
        ])
        self.norm = RMSNorm(config.dim, config.norm_eps)
        self.output = nn.Linear(config.dim, config.vocab_size, bias=False)
        if config.shared_classifier:
            self.output.weight = self.tok_embeddings.weight

        if rope_tables is None:
            rope_tables = precompute_rope_frequencies(
                config.head_dim, config.seq_len, config.rope_theta
            )
        freqs_cos, freqs_sin = rope_tables
        self.register_buffer("freqs_cos", freqs_cos.float(), persistent=False)
        self.register_buffer("freqs_sin", freqs_sin.float(), persistent=False)

    def state_dict_names(self) -> dict:
        c = self.config
        names = {
            "tok_embeddings.weight": "token_embd.weight",
            "norm.weight": "output_norm.weight",
            "output.weight": "token_embd.weight" if c.shared_classifier else "output.weight",
        }
        for i in range(c.n_layers):
            p, b = f"layers.{i}.", f"blk.{i}."
            names.update({
                p + "attention_norm.weight": b + "attn_norm.weight",
                p + "attention.wq.weight": b + "attn_q.weight",
                p + "attention.wk.weight": b + "attn_k.weight",
                p + "attention.wv.weight": b + "attn_v.weight",
                p + "attention.wo.weight": b + "attn_output.weight",
                p + "ffn_norm.weight": b + "ffn_norm.weight",
                p + "feed_forward.w_gate.weight": b + "ffn_gate.weight",
                p + "feed_forward.w_up.weight": b + "ffn_up.weight",
                p + "feed_forward.w_down.weight": b + "ffn_down.weight",
            })
        return names

    @torch.inference_mode()
    def forward(
        self,
        tokens: torch.Tensor,
        start_pos: int = 0,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        """
        Args:
            tokens: (batch, seq_len) token ids.
            start_pos: Position of tokens[:, 0] in the overall sequence.
            cache: Session cache, updated in place. None disables caching.

        Returns:
            Logits for the last position, shape (batch, vocab_size).

        Raises:
            CacheOverflow: start_pos + seq_len exceeds the context length.
        """
        _, seq_len = tokens.shape
        freqs_cos, freqs_sin, mask = self._positions(seq_len, start_pos, cache)

        h = self.tok_embeddings(tokens)
        for layer in self.layers:
            h = layer(h, freqs_cos, freqs_sin, mask, cache)

        h = self.norm(h[:, -1, :])
        return self.output(h).float()


# ═══════════════════════════════════════════════════════════════════════════
# 7. Phi family
# ═══════════════════════════════════════════════════════════════════════════

class PhiAttention(nn.Module):
    """
    Phi attention: fused biased QKV projection, partial rotate-half RoPE.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.n_heads = config.n_heads
        self.n_kv_heads = config.n_kv_heads
        self.head_dim = config.head_dim
        self.n_rep = config.repeat_factor
        self.q_width = config.n_heads * config.head_dim
        self.kv_width = config.kv_dim

        self.wqkv = nn.Linear(config.dim, self.q_width + 2 * self.kv_width, bias=True)
        self.wo = nn.Linear(self.q_width, config.dim, bias=True)

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: torch.Tensor,
        freqs_sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
        layer_id: int = 0,
    ) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape
        q, k, v = self.wqkv(x).split([self.q_width, self.kv_width, self.kv_width], dim=-1)

        q = q.view(batch_size, seq_len, self.n_heads, self.head_dim)
        k = k.view(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        v = v.view(batch_size, seq_len, self.n_kv_heads, self.head_dim)

        q = apply_rotary_half(q, freqs_cos, freqs_sin)
        k = apply_rotary_half(k, freqs_cos, freqs_sin)

        k, v = _update_cache(cache, layer_id, k, v)

        q = q.transpose(1, 2)
        k = repeat_kv(k.transpose(1, 2), self.n_rep)
        v = repeat_kv(v.transpose(1, 2), self.n_rep)

        output = _attend(q, k, v, mask)
        output = output.transpose(1, 2).contiguous().view(batch_size, seq_len, -1)
        return self.wo(output)


class PhiMLP(nn.Module):
    def __init__(self, config: ModelConfig):
        super().__init__()
        self.fc1 = nn.Linear(config.dim, config.hidden_dim, bias=True)
        self.fc2 = nn.Linear(config.hidden_dim, config.dim, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.fc2(F.gelu(self.fc1(x), approximate="tanh"))


class PhiBlock(nn.Module):
    """
    Parallel residual layer: one LayerNorm feeds both branches.

      h = LayerNorm(x)
      x = x + Attention(h) + MLP(h)
    """

    def __init__(self, layer_id: int, config: ModelConfig):
        super().__init__()
        self.layer_id = layer_id
        self.norm = nn.LayerNorm(config.dim, eps=config.norm_eps)
        self.attention = PhiAttention(config)
        self.mlp = PhiMLP(config)

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: torch.Tensor,
        freqs_sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        h = self.norm(x)
        attn = self.attention(h, freqs_cos, freqs_sin, mask, cache, self.layer_id)
        return x + attn + self.mlp(h)


class PhiModel(_Decoder):
    """Decoder-only phi stack (quantized-phi family)."""

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        self.tok_embeddings = nn.Embedding(config.vocab_size, config.dim)
        self.layers = nn.ModuleList([
            PhiBlock(layer_id=i, config=config) for i in range(config.n_layers)
        ])
        self.norm = nn.LayerNorm(config.dim, eps=config.norm_eps)
        self.output = nn.Linear(config.dim, config.vocab_size, bias=True)

        freqs_cos, freqs_sin = precompute_rope_frequencies(
            config.rotary_width, config.seq_len, config.rope_theta
        )
        self.register_buffer("freqs_cos", freqs_cos, persistent=False)
        self.register_buffer("freqs_sin", freqs_sin, persistent=False)

    def state_dict_names(self) -> dict:
        names = {
            "tok_embeddings.weight": "token_embd.weight",
            "norm.weight": "output_norm.weight",
            "norm.bias": "output_norm.bias",
            "output.weight": (
                "token_embd.weight" if self.config.shared_classifier else "output.weight"
            ),
            "output.bias": "output.bias",
        }
        for i in range(self.config.n_layers):
            p, b = f"layers.{i}.", f"blk.{i}."
            for param in ("weight", "bias"):
                names.update({
                    f"{p}norm.{param}": f"{b}attn_norm.{param}",
                    f"{p}attention.wqkv.{param}": f"{b}attn_qkv.{param}",
                    f"{p}attention.wo.{param}": f"{b}attn_output.{param}",
                    f"{p}mlp.fc1.{param}": f"{b}ffn_up.{param}",
                    f"{p}mlp.fc2.{param}": f"{b}ffn_down.{param}",
                })
        return names

    @torch.inference_mode()
    def forward(
        self,
        tokens: torch.Tensor,
        start_pos: int = 0,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        _, seq_len = tokens.shape
        freqs_cos, freqs_sin, mask = self._positions(seq_len, start_pos, cache)

        h = self.tok_embeddings(tokens)
        for layer in self.layers:
            h = layer(h, freqs_cos, freqs_sin, mask, cache)

        h = self.norm(h[:, -1, :])
        return self.output(h).float()


def build_model(config: ModelConfig, weights, device: str = "cpu") -> _Decoder:
    """
    Shape a model from config and fill it from a WeightMap.

    Legacy dumps carry their own rotary tables ("rope.cos" / "rope.sin");
    they are used as-is instead of recomputing.
    """
    if config.arch == "phi":
        model = PhiModel(config)
    else:
        rope_tables = None
        if "rope.cos" in weights and "rope.sin" in weights:
            rope_tables = (weights["rope.cos"], weights["rope.sin"])
        model = LlamaModel(config, rope_tables=rope_tables)
    model.load_weights(weights)
    model.eval()
    return model.to(resolve_device(device))
