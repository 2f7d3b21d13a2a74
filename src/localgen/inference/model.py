"""
Decoder-Only Transformer

Pure PyTorch building blocks shared by every supported architecture:
- RMSNorm (plain, or Gemma's 1 + weight)
- RoPE (half-split rotary embeddings, optional llama3 / linear scaling),
  one table per model grown on demand
- Grouped Query Attention over a KVCache arena, optional logit soft-capping
- SwiGLU / GeGLU FFN (separate or fused gate/up projections)

Parameter names follow the Hugging Face layout with the "model." prefix
stripped (embed_tokens.weight, layers.0.self_attn.q_proj.weight, ...), so a
ParameterBundle from either weight format loads with load_state_dict(strict=True).

Usage:
    model = DecoderModel(config)
    cache = model.new_cache()
    logits = model(token_ids, position=0, cache=cache)   # [vocab_size] float32
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from ..errors import LoadError, ModelRuntimeError
from .kv_cache import KVCache

logger = logging.getLogger(__name__)


class Architecture(str, Enum):
    LLAMA = "llama"
    MISTRAL = "mistral"
    PHI3 = "phi3"
    QWEN2 = "qwen2"
    GEMMA = "gemma"
    GEMMA2 = "gemma2"


# config.json "architectures"[0] -> Architecture
HF_ARCHITECTURES = {
    "LlamaForCausalLM": Architecture.LLAMA,
    "MistralForCausalLM": Architecture.MISTRAL,
    "Phi3ForCausalLM": Architecture.PHI3,
    "Qwen2ForCausalLM": Architecture.QWEN2,
    "GemmaForCausalLM": Architecture.GEMMA,
    "Gemma2ForCausalLM": Architecture.GEMMA2,
}

GEMMA_ARCHITECTURES = (Architecture.GEMMA, Architecture.GEMMA2)

# GGUF general.architecture -> Architecture
GGUF_ARCHITECTURES = {
    "llama": Architecture.LLAMA,
    "phi3": Architecture.PHI3,
    "qwen2": Architecture.QWEN2,
}

SUPPORTED_ROPE_SCALING = ("llama3", "linear", "freq_factors")


@dataclass
class ModelConfig:
    """Model hyperparameters from config.json or GGUF metadata."""

    architecture: Architecture
    vocab_size: int
    hidden_dim: int
    intermediate_dim: int
    num_layers: int
    num_heads: int
    num_kv_heads: int  # For GQA
    head_dim: int
    rms_norm_eps: float = 1e-6
    rope_base: float = 10000.0
    rope_scaling: Optional[Dict[str, Any]] = None
    max_seq_len: int = 4096
    sliding_window: Optional[int] = None  # Mistral (every layer), Gemma2 (even layers)
    attention_bias: bool = False  # Qwen2
    tie_embeddings: bool = False  # Share embed/lm_head weights
    # Gemma2
    attn_logit_softcap: Optional[float] = None
    final_logit_softcap: Optional[float] = None
    query_pre_attn_scalar: Optional[float] = None

    def __post_init__(self):
        if self.num_heads <= 0 or self.num_kv_heads <= 0:
            raise LoadError(f"Invalid head counts: {self.num_heads} heads, {self.num_kv_heads} kv heads")
        if self.num_heads % self.num_kv_heads != 0:
            raise LoadError(
                f"num_heads ({self.num_heads}) must be a multiple of num_kv_heads ({self.num_kv_heads})"
            )
        if self.head_dim % 2 != 0:
            raise LoadError(f"head_dim must be even for rotary embeddings, got {self.head_dim}")
        if self.rope_scaling is not None:
            rope_type = self.rope_scaling.get("rope_type", self.rope_scaling.get("type"))
            if rope_type not in SUPPORTED_ROPE_SCALING:
                logger.warning(f"Ignoring unsupported RoPE scaling type {rope_type!r}")
                self.rope_scaling = None

    @property
    def num_kv_groups(self) -> int:
        return self.num_heads // self.num_kv_heads

    @classmethod
    def from_hf_config(cls, config: Dict[str, Any], architecture: Architecture) -> "ModelConfig":
        """Extract config from a Hugging Face config.json dict."""
        try:
            hidden_dim = int(config["hidden_size"])
            num_heads = int(config["num_attention_heads"])
            num_kv_heads = int(config.get("num_key_value_heads") or num_heads)
            head_dim = int(config.get("head_dim") or hidden_dim // num_heads)

            sliding_window = None
            if architecture in (Architecture.MISTRAL, Architecture.GEMMA2):
                sliding_window = config.get("sliding_window")

            gemma2 = architecture == Architecture.GEMMA2

            def optional_float(key: str) -> Optional[float]:
                value = config.get(key) if gemma2 else None
                return float(value) if value is not None else None

            return cls(
                architecture=architecture,
                vocab_size=int(config["vocab_size"]),
                hidden_dim=hidden_dim,
                intermediate_dim=int(config["intermediate_size"]),
                num_layers=int(config["num_hidden_layers"]),
                num_heads=num_heads,
                num_kv_heads=num_kv_heads,
                head_dim=head_dim,
                rms_norm_eps=float(config.get("rms_norm_eps", 1e-6)),
                rope_base=float(config.get("rope_theta", 10000.0)),
                rope_scaling=config.get("rope_scaling"),
                max_seq_len=int(config.get("max_position_embeddings", 4096)),
                sliding_window=int(sliding_window) if sliding_window else None,
                attention_bias=(
                    architecture == Architecture.QWEN2 or bool(config.get("attention_bias", False))
                ),
                # Gemma configs often omit the key; their heads are always tied
                tie_embeddings=bool(
                    config.get("tie_word_embeddings", architecture in GEMMA_ARCHITECTURES)
                ),
                attn_logit_softcap=optional_float("attn_logit_softcapping"),
                final_logit_softcap=optional_float("final_logit_softcapping"),
                query_pre_attn_scalar=optional_float("query_pre_attn_scalar"),
            )
        except KeyError as e:
            raise LoadError(f"config.json is missing required key {e}") from e
        except (TypeError, ValueError) as e:
            raise LoadError(f"config.json has an invalid value: {e}") from e

    @classmethod
    def from_gguf_metadata(
        cls,
        metadata: Dict[str, Any],
        architecture: Architecture,
        vocab_size_override: Optional[int] = None,
        attention_bias: bool = False,
        tie_embeddings: bool = False,
        rope_freq_factors: Optional[List[float]] = None,
    ) -> "ModelConfig":
        """Extract config from GGUF metadata (keys prefixed by general.architecture)."""
        def get_val(keys: List[str], default=None):
            for k in keys:
                if k in metadata:
                    return metadata[k]
            return default

        arch = get_val(["general.architecture"], "llama")
        prefix = f"{arch}."

        hidden_dim = get_val([f"{prefix}embedding_length"])
        num_heads = get_val([f"{prefix}attention.head_count"])
        num_layers = get_val([f"{prefix}block_count"])
        intermediate_dim = get_val([f"{prefix}feed_forward_length"])
        for key, value in (
            ("embedding_length", hidden_dim),
            ("attention.head_count", num_heads),
            ("block_count", num_layers),
            ("feed_forward_length", intermediate_dim),
        ):
            if value is None:
                raise LoadError(f"GGUF metadata is missing {prefix}{key}")

        num_kv_heads = get_val([f"{prefix}attention.head_count_kv"], num_heads)
        # head_dim can be explicitly set (key_length) or derived
        head_dim = get_val([f"{prefix}attention.key_length"], hidden_dim // num_heads)

        # Vocab size: prefer override (from embedding tensor) over metadata
        if vocab_size_override is not None:
            vocab_size = vocab_size_override
        else:
            vocab_size = get_val([f"{prefix}vocab_size"])
            if vocab_size is None:
                tokens = metadata.get("tokenizer.ggml.tokens")
                if not tokens:
                    raise LoadError("GGUF metadata does not declare a vocabulary size")
                vocab_size = len(tokens)

        rope_scaling = None
        if rope_freq_factors is not None:
            rope_scaling = {"rope_type": "freq_factors", "factors": list(rope_freq_factors)}
        else:
            scaling_type = get_val([f"{prefix}rope.scaling.type"])
            if scaling_type not in (None, "none"):
                rope_scaling = {
                    "rope_type": scaling_type,
                    "factor": get_val([f"{prefix}rope.scaling.factor"], 1.0),
                }

        sliding_window = None
        if architecture == Architecture.MISTRAL:
            sliding_window = get_val([f"{prefix}attention.sliding_window"])

        return cls(
            architecture=architecture,
            vocab_size=int(vocab_size),
            hidden_dim=int(hidden_dim),
            intermediate_dim=int(intermediate_dim),
            num_layers=int(num_layers),
            num_heads=int(num_heads),
            num_kv_heads=int(num_kv_heads),
            head_dim=int(head_dim),
            rms_norm_eps=float(get_val([f"{prefix}attention.layer_norm_rms_epsilon"], 1e-6)),
            rope_base=float(get_val([f"{prefix}rope.freq_base"], 10000.0)),
            rope_scaling=rope_scaling,
            max_seq_len=int(get_val([f"{prefix}context_length"], 4096)),
            sliding_window=int(sliding_window) if sliding_window else None,
            attention_bias=attention_bias,
            tie_embeddings=tie_embeddings,
        )


class RMSNorm(nn.Module):
    """Root Mean Square Layer Normalization."""

    def __init__(self, dim: int, eps: float = 1e-6):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # Normalize in float32, then cast back (matters for fp16/bf16)
        x32 = x.float()
        rms = torch.rsqrt(torch.mean(x32 ** 2, dim=-1, keepdim=True) + self.eps)
        return (x32 * rms).to(x.dtype) * self.weight


class OffsetRMSNorm(RMSNorm):
    """Gemma RMSNorm: checkpoints store weight - 1, scaling happens in float32."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x32 = x.float()
        rms = torch.rsqrt(torch.mean(x32 ** 2, dim=-1, keepdim=True) + self.eps)
        return (x32 * rms * (1.0 + self.weight.float())).to(x.dtype)


def _llama3_inv_freq(inv_freq: torch.Tensor, scaling: Dict[str, Any]) -> torch.Tensor:
    factor = scaling.get("factor", 8.0)
    low_freq_factor = scaling.get("low_freq_factor", 1.0)
    high_freq_factor = scaling.get("high_freq_factor", 4.0)
    old_context_len = scaling.get("original_max_position_embeddings", 8192)

    low_freq_wavelen = old_context_len / low_freq_factor
    high_freq_wavelen = old_context_len / high_freq_factor
    wavelen = 2 * math.pi / inv_freq

    # Long wavelengths are scaled down, short ones kept, the band between interpolated
    scaled = torch.where(wavelen > low_freq_wavelen, inv_freq / factor, inv_freq)
    smooth = (old_context_len / wavelen - low_freq_factor) / (high_freq_factor - low_freq_factor)
    smoothed = (1 - smooth) * scaled / factor + smooth * scaled
    is_medium = (wavelen >= high_freq_wavelen) & (wavelen <= low_freq_wavelen)
    return torch.where(is_medium, smoothed, scaled)


class RotaryEmbedding(nn.Module):
    """
    Standard RoPE for causal LM (half-split / neox layout).

    The cos/sin tables are built lazily on the device of the first input so the
    module can be constructed on the meta device and has no state_dict entries.
    A table only covers the positions seen so far: it starts at
    `initial_len` rows and doubles (capped at max_seq_len) when a later
    position falls outside it. DecoderModel owns a single instance shared by
    every layer.
    """

    def __init__(
        self,
        dim: int,
        max_seq_len: int = 4096,
        base: float = 10000.0,
        scaling: Optional[Dict[str, Any]] = None,
        initial_len: int = 256,
    ):
        super().__init__()
        self.dim = dim
        self.max_seq_len = max_seq_len
        self.base = base
        self.scaling = scaling
        self.initial_len = initial_len
        self._cache: Dict[torch.device, Tuple[torch.Tensor, torch.Tensor]] = {}

    def inv_freq(self, device: torch.device) -> torch.Tensor:
        inv_freq = 1.0 / (
            self.base ** (torch.arange(0, self.dim, 2, device=device, dtype=torch.float32) / self.dim)
        )
        if self.scaling is None:
            return inv_freq

        rope_type = self.scaling.get("rope_type", self.scaling.get("type"))
        if rope_type == "llama3":
            return _llama3_inv_freq(inv_freq, self.scaling)
        if rope_type == "linear":
            return inv_freq / float(self.scaling.get("factor", 1.0))
        if rope_type == "freq_factors":
            factors = torch.tensor(self.scaling["factors"], device=device, dtype=torch.float32)
            return inv_freq / factors
        return inv_freq

    def table_length(self, device: torch.device) -> int:
        cached = self._cache.get(device)
        return 0 if cached is None else cached[0].shape[0]

    def _table(self, device: torch.device, needed: int) -> Tuple[torch.Tensor, torch.Tensor]:
        cached = self._cache.get(device)
        current = 0 if cached is None else cached[0].shape[0]
        if needed <= current:
            return cached

        length = min(max(needed, 2 * current, self.initial_len), self.max_seq_len)
        length = max(length, needed)
        t = torch.arange(length, device=device, dtype=torch.float32)
        freqs = torch.outer(t, self.inv_freq(device))
        emb = torch.cat([freqs, freqs], dim=-1)
        cached = (emb.cos(), emb.sin())
        self._cache[device] = cached
        logger.debug(f"RoPE table on {device} grown to {length} positions")
        return cached

    def cos_sin(
        self,
        positions: torch.Tensor,
        end: int,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Rows for `positions`, shaped [1, 1, seq_len, dim] for broadcasting.

        Args:
            positions: [seq_len] position indices, all below `end`
            end: One past the largest position
        """
        cos_cached, sin_cached = self._table(positions.device, end)
        cos = cos_cached[positions].unsqueeze(0).unsqueeze(0)
        sin = sin_cached[positions].unsqueeze(0).unsqueeze(0)
        return cos, sin

    def forward(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        positions: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Apply RoPE to queries and keys.

        Args:
            q, k: [batch, heads, seq_len, head_dim]
            positions: [seq_len] position indices
        """
        cos, sin = self.cos_sin(positions, int(positions.max()) + 1)
        return apply_rotary(q, cos, sin), apply_rotary(k, cos, sin)


def apply_rotary(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """Rotate the two halves of the last dimension of x."""
    half = x.shape[-1] // 2
    x32 = x.float()
    x1 = x32[..., :half]
    x2 = x32[..., half:]
    rotated = torch.cat([-x2, x1], dim=-1)
    return (x32 * cos + rotated * sin).to(x.dtype)


class SwiGLUFFN(nn.Module):
    """SwiGLU Feed-Forward Network (Llama style)."""

    def __init__(self, hidden_dim: int, intermediate_dim: int):
        super().__init__()
        self.gate_proj = nn.Linear(hidden_dim, intermediate_dim, bias=False)
        self.up_proj = nn.Linear(hidden_dim, intermediate_dim, bias=False)
        self.down_proj = nn.Linear(intermediate_dim, hidden_dim, bias=False)

    def activation(self, x: torch.Tensor) -> torch.Tensor:
        return F.silu(x)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(self.activation(self.gate_proj(x)) * self.up_proj(x))


class GeGLUFFN(SwiGLUFFN):
    """Gated FFN with tanh-approximated GELU (Gemma)."""

    def activation(self, x: torch.Tensor) -> torch.Tensor:
        return F.gelu(x, approximate="tanh")


class FusedSwiGLUFFN(nn.Module):
    """SwiGLU with gate and up projections stored as one matrix (Phi3)."""

    def __init__(self, hidden_dim: int, intermediate_dim: int):
        super().__init__()
        self.gate_up_proj = nn.Linear(hidden_dim, 2 * intermediate_dim, bias=False)
        self.down_proj = nn.Linear(intermediate_dim, hidden_dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        gate, up = self.gate_up_proj(x).chunk(2, dim=-1)
        return self.down_proj(F.silu(gate) * up)


class Attention(nn.Module):
    """Multi-head attention with RoPE, GQA and a per-layer KV cache slot."""

    def __init__(self, config: ModelConfig, layer_idx: int):
        super().__init__()
        self.layer_idx = layer_idx
        self.num_heads = config.num_heads
        self.num_kv_heads = config.num_kv_heads
        self.head_dim = config.head_dim
        self.num_kv_groups = config.num_kv_groups
        self.scale = 1.0 / math.sqrt(config.query_pre_attn_scalar or config.head_dim)
        self.logit_softcap = config.attn_logit_softcap

        self._build_projections(config)
        self.o_proj = nn.Linear(config.num_heads * config.head_dim, config.hidden_dim, bias=False)

    def _build_projections(self, config: ModelConfig):
        bias = config.attention_bias
        self.q_proj = nn.Linear(config.hidden_dim, config.num_heads * config.head_dim, bias=bias)
        self.k_proj = nn.Linear(config.hidden_dim, config.num_kv_heads * config.head_dim, bias=bias)
        self.v_proj = nn.Linear(config.hidden_dim, config.num_kv_heads * config.head_dim, bias=bias)

    def _project(self, hidden_states: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        return self.q_proj(hidden_states), self.k_proj(hidden_states), self.v_proj(hidden_states)

    def forward(
        self,
        hidden_states: torch.Tensor,
        rotary: Tuple[torch.Tensor, torch.Tensor],
        mask: Optional[torch.Tensor],
        cache: KVCache,
    ) -> torch.Tensor:
        batch, seq_len, _ = hidden_states.shape

        q, k, v = self._project(hidden_states)

        q = q.view(batch, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = k.view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)
        v = v.view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)

        cos, sin = rotary
        q = apply_rotary(q, cos, sin)
        k = apply_rotary(k, cos, sin)

        # Cache holds un-expanded KV heads
        k, v = cache.append(self.layer_idx, k, v)

        # Expand KV for GQA if needed
        if self.num_kv_groups > 1:
            k = k.repeat_interleave(self.num_kv_groups, dim=1)
            v = v.repeat_interleave(self.num_kv_groups, dim=1)

        scores = torch.matmul(q, k.transpose(-2, -1)) * self.scale
        if self.logit_softcap is not None:
            scores = torch.tanh(scores / self.logit_softcap) * self.logit_softcap
        if mask is not None:
            scores = scores + mask

        attn_weights = F.softmax(scores, dim=-1, dtype=torch.float32).to(q.dtype)
        attn_out = torch.matmul(attn_weights, v)

        attn_out = attn_out.transpose(1, 2).contiguous().view(batch, seq_len, -1)
        return self.o_proj(attn_out)


class FusedQKVAttention(Attention):
    """Attention whose Q/K/V projections are one qkv_proj matrix (Phi3)."""

    def _build_projections(self, config: ModelConfig):
        out_dim = (config.num_heads + 2 * config.num_kv_heads) * config.head_dim
        self.qkv_proj = nn.Linear(config.hidden_dim, out_dim, bias=config.attention_bias)

    def _project(self, hidden_states: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        q_size = self.num_heads * self.head_dim
        kv_size = self.num_kv_heads * self.head_dim
        return self.qkv_proj(hidden_states).split([q_size, kv_size, kv_size], dim=-1)


class TransformerBlock(nn.Module):
    """Single pre-norm transformer block."""

    def __init__(
        self,
        config: ModelConfig,
        layer_idx: int,
        attention_cls,
        mlp_cls,
        norm_cls=RMSNorm,
        sliding_window: Optional[int] = None,
    ):
        super().__init__()
        self.layer_idx = layer_idx
        self.sliding_window = sliding_window
        self.input_layernorm = norm_cls(config.hidden_dim, config.rms_norm_eps)
        self.self_attn = attention_cls(config, layer_idx)
        self.post_attention_layernorm = norm_cls(config.hidden_dim, config.rms_norm_eps)
        self.mlp = mlp_cls(config.hidden_dim, config.intermediate_dim)

    def forward(
        self,
        hidden_states: torch.Tensor,
        rotary: Tuple[torch.Tensor, torch.Tensor],
        mask: Optional[torch.Tensor],
        cache: KVCache,
    ) -> torch.Tensor:
        residual = hidden_states
        hidden_states = self.input_layernorm(hidden_states)
        hidden_states = residual + self.self_attn(hidden_states, rotary, mask, cache)

        residual = hidden_states
        hidden_states = self.post_attention_layernorm(hidden_states)
        return residual + self.mlp(hidden_states)


class SandwichTransformerBlock(TransformerBlock):
    """
    Gemma2 block: attention and MLP outputs are normalized again before the
    residual add. post_attention_layernorm is the post-attention norm here,
    and the MLP gets its own pre/post pair.
    """

    def __init__(self, config: ModelConfig, layer_idx: int, attention_cls, mlp_cls, norm_cls=RMSNorm,
                 sliding_window: Optional[int] = None):
        super().__init__(config, layer_idx, attention_cls, mlp_cls, norm_cls, sliding_window)
        self.pre_feedforward_layernorm = norm_cls(config.hidden_dim, config.rms_norm_eps)
        self.post_feedforward_layernorm = norm_cls(config.hidden_dim, config.rms_norm_eps)

    def forward(
        self,
        hidden_states: torch.Tensor,
        rotary: Tuple[torch.Tensor, torch.Tensor],
        mask: Optional[torch.Tensor],
        cache: KVCache,
    ) -> torch.Tensor:
        residual = hidden_states
        hidden_states = self.input_layernorm(hidden_states)
        hidden_states = self.self_attn(hidden_states, rotary, mask, cache)
        hidden_states = residual + self.post_attention_layernorm(hidden_states)

        residual = hidden_states
        hidden_states = self.mlp(self.pre_feedforward_layernorm(hidden_states))
        return residual + self.post_feedforward_layernorm(hidden_states)


def build_attention_mask(
    start: int,
    seq_len: int,
    sliding_window: Optional[int],
    device: torch.device,
    dtype: torch.dtype,
) -> Optional[torch.Tensor]:
    """
    Additive mask [seq_len, start + seq_len] over cached + new keys.

    Query at absolute position p may attend key j iff j <= p and, with a
    sliding window w, p - j < w. Returns None when nothing is masked.
    """
    total = start + seq_len
    if seq_len == 1 and (sliding_window is None or total <= sliding_window):
        return None

    query_pos = torch.arange(start, total, device=device).unsqueeze(1)
    key_pos = torch.arange(total, device=device).unsqueeze(0)
    allowed = key_pos <= query_pos
    if sliding_window is not None:
        allowed = allowed & (query_pos - key_pos < sliding_window)

    mask = torch.zeros((seq_len, total), device=device, dtype=dtype)
    return mask.masked_fill(~allowed, float("-inf"))


class DecoderModel(nn.Module):
    """
    Decoder-only transformer with incremental decoding over a KVCache.

    Subclasses choose the layer layouts via `attention_cls`, `mlp_cls`,
    `norm_cls` and `block_cls`; everything else is shared. One rotary table
    serves every layer.
    """

    attention_cls = Attention
    mlp_cls = SwiGLUFFN
    norm_cls = RMSNorm
    block_cls = TransformerBlock

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.config = config

        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_dim)
        self.rope = RotaryEmbedding(
            config.head_dim, config.max_seq_len, config.rope_base, config.rope_scaling
        )
        self.layers = nn.ModuleList([
            self.block_cls(
                config, i, self.attention_cls, self.mlp_cls, self.norm_cls, self.layer_sliding_window(i)
            )
            for i in range(config.num_layers)
        ])
        self.norm = self.norm_cls(config.hidden_dim, config.rms_norm_eps)

        # LM head - may be tied to embeddings
        if config.tie_embeddings:
            self.lm_head = None  # Will use embed_tokens.weight
        else:
            self.lm_head = nn.Linear(config.hidden_dim, config.vocab_size, bias=False)

    def layer_sliding_window(self, layer_idx: int) -> Optional[int]:
        return self.config.sliding_window

    def new_cache(self, max_length: Optional[int] = None) -> KVCache:
        """Empty cache holding at most min(max_length, max_seq_len) positions."""
        capacity = self.config.max_seq_len
        if max_length is not None:
            capacity = min(capacity, max_length)
        return KVCache(self.config.num_layers, max_capacity=capacity)

    def embed(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.embed_tokens(input_ids)

    @property
    def device(self) -> torch.device:
        return self.embed_tokens.weight.device

    @property
    def dtype(self) -> torch.dtype:
        return self.embed_tokens.weight.dtype

    def _as_input_ids(self, token_ids: Union[Sequence[int], torch.Tensor]) -> torch.Tensor:
        if isinstance(token_ids, torch.Tensor):
            ids = token_ids.to(device=self.device, dtype=torch.long)
        else:
            ids = torch.tensor(list(token_ids), dtype=torch.long, device=self.device)
        if ids.dim() == 1:
            ids = ids.unsqueeze(0)
        if ids.dim() != 2 or ids.shape[0] != 1:
            raise ModelRuntimeError(f"Expected a single sequence of token ids, got shape {tuple(ids.shape)}")
        return ids

    def forward(
        self,
        token_ids: Union[Sequence[int], torch.Tensor],
        position: int,
        cache: KVCache,
    ) -> torch.Tensor:
        """
        Run new tokens through the model, extending the cache.

        Args:
            token_ids: New token ids ([seq_len] or [1, seq_len])
            position: Absolute position of the first new token; must equal cache.length()
            cache: KV cache for this generation

        Returns:
            logits: [vocab_size] float32 for the last new position
        """
        input_ids = self._as_input_ids(token_ids)
        seq_len = input_ids.shape[1]

        if seq_len == 0:
            raise ModelRuntimeError("forward() called with no tokens")
        cached = cache.length()
        if position != cached:
            raise ModelRuntimeError(f"Position {position} does not match KV cache length {cached}")
        if position + seq_len > self.config.max_seq_len:
            raise ModelRuntimeError(
                f"Positions up to {position + seq_len} exceed context length {self.config.max_seq_len}"
            )
        if int(input_ids.max()) >= self.config.vocab_size or int(input_ids.min()) < 0:
            raise ModelRuntimeError(f"Token id outside vocabulary of size {self.config.vocab_size}")

        try:
            end = position + seq_len
            positions = torch.arange(position, end, device=input_ids.device)
            rotary = self.rope.cos_sin(positions, end)

            # One mask per distinct window (Gemma2 alternates local/global layers)
            masks: Dict[Optional[int], Optional[torch.Tensor]] = {}

            hidden_states = self.embed(input_ids)
            for layer in self.layers:
                window = layer.sliding_window
                if window not in masks:
                    masks[window] = build_attention_mask(
                        position, seq_len, window, input_ids.device, self.dtype
                    )
                hidden_states = layer(hidden_states, rotary, masks[window], cache)

            hidden_states = self.norm(hidden_states[:, -1, :])

            # LM head (tied or separate)
            if self.lm_head is not None:
                logits = self.lm_head(hidden_states)
            else:
                logits = F.linear(hidden_states, self.embed_tokens.weight)

            cap = self.config.final_logit_softcap
            if cap is not None:
                logits = torch.tanh(logits.float() / cap) * cap
        except ModelRuntimeError:
            raise
        except RuntimeError as e:
            raise ModelRuntimeError(f"Forward pass failed: {e}") from e

        cache.check_consistent(position + seq_len)
        return logits[0].float()
