"""
localgen - Local LLM Text Generation

Runs decoder-only language models (Llama, Mistral, Phi3, Qwen2) on local
CPU/GPU hardware, with no remote service involved.

Core components:
- inference.loader: model location resolution, safetensors and GGUF weight loading
- inference.model / inference.architectures: PyTorch decoder variants
- inference.tokenizer: Hugging Face tokenizers with model-declared BOS/EOS policy
- inference.templates: sandboxed Jinja2 chat template rendering
- inference.sampler: temperature / top-k / top-p sampling with seeded draws
- inference.pipeline: blocking generation loop with KV cache and stop criteria
- errors: exception taxonomy shared by all of the above
"""

__version__ = "0.1.0"

from .errors import (
    LocalGenError,
    LoadError,
    DeviceError,
    TokenizerError,
    TemplateError,
    NoTemplateError,
    InvalidRoleError,
    ModelRuntimeError,
    CacheInvariantError,
    SamplingError,
    InvalidConfigError,
    ContextOverflowError,
    PipelineBusyError,
)
from .inference import (
    GenerationResult,
    Message,
    PipelineBuilder,
    PipelineConfig,
    Role,
    SamplingConfig,
    TemplatePolicy,
    TextPipeline,
)
