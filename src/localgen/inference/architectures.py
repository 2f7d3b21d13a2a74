"""
Architecture Variants

One DecoderModel subclass per supported architecture, registered in a closed
Architecture -> variant table. Variants differ only in which attention, MLP,
norm and block layouts they plug into the shared decoder:

    Architecture   attention             mlp               notes
    LLAMA          q/k/v/o_proj          gate/up/down      optional llama3 RoPE scaling
    MISTRAL        q/k/v/o_proj          gate/up/down      optional sliding window
    PHI3           qkv_proj (fused)      gate_up (fused)
    QWEN2          q/k/v/o_proj + bias   gate/up/down      usually tied embeddings
    GEMMA          q/k/v/o_proj          gate/up/down      GELU gate, (1 + weight) norms,
                                                           sqrt(hidden) embedding scale, tied
    GEMMA2         q/k/v/o_proj          gate/up/down      GEMMA plus sandwich norms, logit
                                                           soft-capping, even layers windowed
"""

from typing import Dict, Optional, Type
import logging
import time

import torch

from ..errors import LoadError
from .loader import ParameterBundle
from .model import (
    Architecture,
    Attention,
    DecoderModel,
    FusedQKVAttention,
    FusedSwiGLUFFN,
    GeGLUFFN,
    OffsetRMSNorm,
    SandwichTransformerBlock,
    SwiGLUFFN,
)

logger = logging.getLogger(__name__)


class LlamaModel(DecoderModel):
    attention_cls = Attention
    mlp_cls = SwiGLUFFN


class MistralModel(DecoderModel):
    """Llama layout; config.sliding_window limits how far back attention reaches."""

    attention_cls = Attention
    mlp_cls = SwiGLUFFN


class Phi3Model(DecoderModel):
    attention_cls = FusedQKVAttention
    mlp_cls = FusedSwiGLUFFN


class Qwen2Model(DecoderModel):
    """Llama layout with Q/K/V projection biases (config.attention_bias)."""

    attention_cls = Attention
    mlp_cls = SwiGLUFFN


class GemmaModel(DecoderModel):
    attention_cls = Attention
    mlp_cls = GeGLUFFN
    norm_cls = OffsetRMSNorm

    def embed(self, input_ids: torch.Tensor) -> torch.Tensor:
        hidden_states = self.embed_tokens(input_ids)
        # Normalizer is rounded to the activation dtype, as in the reference weights
        normalizer = torch.tensor(
            self.config.hidden_dim ** 0.5, dtype=hidden_states.dtype, device=hidden_states.device
        )
        return hidden_states * normalizer


class Gemma2Model(GemmaModel):
    block_cls = SandwichTransformerBlock

    def layer_sliding_window(self, layer_idx: int) -> Optional[int]:
        # Even layers are local, odd layers attend globally
        return self.config.sliding_window if layer_idx % 2 == 0 else None


MODEL_VARIANTS: Dict[Architecture, Type[DecoderModel]] = {
    Architecture.LLAMA: LlamaModel,
    Architecture.MISTRAL: MistralModel,
    Architecture.PHI3: Phi3Model,
    Architecture.QWEN2: Qwen2Model,
    Architecture.GEMMA: GemmaModel,
    Architecture.GEMMA2: Gemma2Model,
}


def build_model(bundle: ParameterBundle) -> DecoderModel:
    """
    Instantiate the variant for bundle.config and bind the bundle's tensors.

    The module is built on the meta device and the loaded tensors are assigned
    in place, so no weights are allocated twice. Every parameter must be
    present with the right shape and no extra tensors are allowed.

    Raises:
        LoadError: unknown architecture, missing/unexpected tensors, shape mismatch
    """
    config = bundle.config
    variant = MODEL_VARIANTS.get(config.architecture)
    if variant is None:
        raise LoadError(f"No model variant registered for {config.architecture}")

    start = time.time()
    with torch.device("meta"):
        model = variant(config)

    try:
        model.load_state_dict(bundle.tensors, strict=True, assign=True)
    except RuntimeError as e:
        raise LoadError(f"Weights do not match {variant.__name__}: {e}") from e

    stale = [name for name, p in model.named_parameters() if p.is_meta]
    if stale:
        raise LoadError(f"Parameters left uninitialized: {stale[:10]}")

    model.eval()
    model.requires_grad_(False)
    elapsed = time.time() - start
    logger.info(f"Built {variant.__name__} on {bundle.target} in {elapsed:.1f}s")
    return model
