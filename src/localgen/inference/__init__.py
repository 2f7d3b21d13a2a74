"""
Local Inference Module

Single-request text generation for decoder-only models on local hardware.
Supports:
- Hugging Face safetensors checkpoints and single-file GGUF (F32/F16/BF16/Q4_0/Q4_1/Q8_0)
- Llama, Mistral, Phi3 and Qwen2 architectures in pure PyTorch
- Chat prompts rendered through the model's own Jinja2 template
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class PipelineConfig:
    """Configuration for a TextPipeline. Validated once by TextPipeline.from_config."""

    location: str  # Model directory, .safetensors/.gguf file, or "org/name"

    # Sampling
    temperature: float = 0.7
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    seed: Optional[int] = None  # None = fresh OS entropy per run

    # Generation
    max_new_tokens: int = 512

    # Hardware
    device: Optional[str] = None  # None = autodetect
    dtype: Optional[str] = None  # None = per-device default

    # Model
    architecture: Optional[str] = None  # Hint, checked against the model's metadata
    max_context_length: Optional[int] = None  # None = use model default
    template_policy: str = "fallback"  # "fallback" or "strict"
    allow_download: bool = False


@dataclass
class GenerationResult:
    """Result from generation."""

    prompt: str
    text: str
    finish_reason: str  # "eos", "length" or "context"
    prompt_tokens: int
    tokens_generated: int
    generation_time_ms: float


# Backend exports
from .device import ExecutionTarget, select_backend, autodetect_device

# Loading exports
from .loader import (
    ModelFormat,
    ModelLocation,
    ParameterBundle,
    resolve_location,
    open_loader,
)
from .gguf_loader import GGUFLoader, GGUFReader, GGUFTensorInfo, inspect_gguf
from .safetensors_loader import SafetensorsLoader

# Model exports
from .model import Architecture, ModelConfig, DecoderModel
from .architectures import MODEL_VARIANTS, build_model
from .kv_cache import KVCache

# Text exports
from .tokenizer import TokenizerAdapter
from .templates import (
    ChatTemplate,
    Message,
    Role,
    TemplatePolicy,
    render_conversation,
)
from .sampler import Sampler, SamplingConfig, sample

# Pipeline exports
from .pipeline import (
    FinishReason,
    GenerationState,
    PipelineBuilder,
    PipelineState,
    TextPipeline,
)

__all__ = [
    # Config
    "PipelineConfig",
    "GenerationResult",
    # Backend
    "ExecutionTarget",
    "select_backend",
    "autodetect_device",
    # Loading
    "ModelFormat",
    "ModelLocation",
    "ParameterBundle",
    "resolve_location",
    "open_loader",
    "GGUFReader",
    "GGUFTensorInfo",
    "GGUFLoader",
    "SafetensorsLoader",
    "inspect_gguf",
    # Model
    "Architecture",
    "ModelConfig",
    "DecoderModel",
    "MODEL_VARIANTS",
    "build_model",
    "KVCache",
    # Text
    "TokenizerAdapter",
    "ChatTemplate",
    "Message",
    "Role",
    "TemplatePolicy",
    "render_conversation",
    "Sampler",
    "SamplingConfig",
    "sample",
    # Pipeline
    "FinishReason",
    "GenerationState",
    "PipelineBuilder",
    "PipelineState",
    "TextPipeline",
]
