"""
Text Generation Pipeline

Blocking, one-request-at-a-time generation loop:

    IDLE -> PROMPTING -> DECODING -> FINISHED -> IDLE
                 |           |
                 +-----------+-> FAILED -> IDLE

Prompting encodes the prompt, resets the KV cache and runs one forward pass
over the whole prompt. Decoding samples a token, checks the stop criteria
(stop token -> "eos", max_new_tokens -> "length", context full -> "context")
and feeds the token back in. Whatever happens, the cache is cleared and the
pipeline returns to IDLE, so a failed run never poisons the next one.

Usage:
    pipeline = TextPipeline.from_config(PipelineConfig(location="path/to/model"))
    text = pipeline.run("The capital of France is")
    reply = pipeline.run_chat([(Role.USER, "Hi")])

    pipeline = (
        PipelineBuilder()
        .with_location("model.gguf")
        .with_temperature(0.0)
        .build()
    )
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Union
import logging
import threading
import time

import torch

from . import PipelineConfig, GenerationResult
from ..errors import (
    ContextOverflowError,
    InvalidConfigError,
    PipelineBusyError,
    TokenizerError,
)
from .architectures import build_model
from .device import ExecutionTarget, select_backend
from .kv_cache import KVCache
from .loader import open_loader, resolve_location
from .model import DecoderModel
from .sampler import Sampler, SamplingConfig
from .templates import ChatTemplate, ConversationLike, TemplatePolicy, render_conversation
from .tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    PROMPTING = "prompting"
    DECODING = "decoding"
    FINISHED = "finished"
    FAILED = "failed"


class FinishReason(str, Enum):
    EOS = "eos"
    LENGTH = "length"
    CONTEXT = "context"


@dataclass
class GenerationState:
    """Per-call decode state."""

    prompt_ids: List[int]
    generated_ids: List[int] = field(default_factory=list)
    stopped: bool = False
    finish_reason: Optional[FinishReason] = None

    def finish(self, reason: FinishReason):
        self.stopped = True
        self.finish_reason = reason


def _validate_max_new_tokens(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidConfigError(f"max_new_tokens must be an integer >= 1, got {value!r}")
    return value


def validate_config(config: PipelineConfig) -> PipelineConfig:
    """Check every option once; raises InvalidConfigError."""
    if not config.location:
        raise InvalidConfigError("location is required")
    SamplingConfig(
        temperature=config.temperature,
        top_k=config.top_k,
        top_p=config.top_p,
        seed=config.seed,
    ).validate()
    _validate_max_new_tokens(config.max_new_tokens)
    if config.max_context_length is not None and (
        isinstance(config.max_context_length, bool)
        or not isinstance(config.max_context_length, int)
        or config.max_context_length < 1
    ):
        raise InvalidConfigError(
            f"max_context_length must be a positive integer, got {config.max_context_length!r}"
        )
    try:
        TemplatePolicy(config.template_policy)
    except ValueError as e:
        raise InvalidConfigError(f"Unknown template policy: {config.template_policy!r}") from e
    return config


class TextPipeline:
    """
    Prompt in, text out, for one loaded model.

    Usage:
        pipeline = TextPipeline.from_config(config)
        result = pipeline.generate("What is 2+2?")
        print(result.text, result.finish_reason)
    """

    def __init__(
        self,
        model: DecoderModel,
        tokenizer: TokenizerAdapter,
        target: ExecutionTarget,
        template: Optional[ChatTemplate] = None,
        sampling: Optional[SamplingConfig] = None,
        max_new_tokens: int = 512,
        max_context_length: Optional[int] = None,
        template_policy: Union[TemplatePolicy, str] = TemplatePolicy.FALLBACK,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.target = target
        self.template = template
        self.template_policy = TemplatePolicy(template_policy)
        self._sampling = (sampling or SamplingConfig()).validate()
        self.max_new_tokens = _validate_max_new_tokens(max_new_tokens)

        self.context_length = model.config.max_seq_len
        if max_context_length is not None:
            self.context_length = min(self.context_length, max_context_length)

        self._cache: KVCache = model.new_cache(self.context_length)
        self._state = PipelineState.IDLE
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "TextPipeline":
        """Validate config, resolve and load the model, and build the pipeline."""
        validate_config(config)
        start = time.time()

        target = select_backend(config.device, config.dtype)
        location = resolve_location(
            config.location,
            architecture=config.architecture,
            allow_download=config.allow_download,
        )
        logger.info(f"Loading {location.architecture.value} model ({location.format.value}) from {location.path}")

        loader = open_loader(location, target)
        bundle = loader.load_parameters()
        tokenizer = loader.load_tokenizer()
        template = loader.load_chat_template(tokenizer)
        model = build_model(bundle)

        elapsed = time.time() - start
        logger.info(f"Model loaded in {elapsed:.1f}s")

        return cls(
            model=model,
            tokenizer=tokenizer,
            target=target,
            template=template,
            sampling=SamplingConfig(
                temperature=config.temperature,
                top_k=config.top_k,
                top_p=config.top_p,
                seed=config.seed,
            ),
            max_new_tokens=config.max_new_tokens,
            max_context_length=config.max_context_length,
            template_policy=config.template_policy,
        )

    @classmethod
    def from_path(cls, location: str) -> "TextPipeline":
        return cls.from_config(PipelineConfig(location=location))

    @staticmethod
    def builder() -> "PipelineBuilder":
        return PipelineBuilder()

    # =========================================================================
    # Settings
    # =========================================================================

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def sampling(self) -> SamplingConfig:
        """Copy of the current sampling settings."""
        return replace(self._sampling)

    def _update_sampling(self, **changes):
        self._sampling = replace(self._sampling, **changes).validate()

    def set_seed(self, seed: Optional[int]):
        self._update_sampling(seed=seed)

    def set_temperature(self, temperature: float):
        self._update_sampling(temperature=temperature)

    def set_top_k(self, top_k: Optional[int]):
        self._update_sampling(top_k=top_k)

    def set_top_p(self, top_p: Optional[float]):
        self._update_sampling(top_p=top_p)

    def set_max_new_tokens(self, max_new_tokens: int):
        self.max_new_tokens = _validate_max_new_tokens(max_new_tokens)

    # =========================================================================
    # Generation
    # =========================================================================

    def run(self, prompt: str) -> str:
        """Generate a continuation of raw prompt text."""
        return self.generate(prompt).text

    def run_chat(self, messages: ConversationLike) -> str:
        """Render a conversation with the model's chat template and generate the reply."""
        return self.generate_chat(messages).text

    def generate(self, prompt: str) -> GenerationResult:
        return self._generate(prompt)

    def generate_chat(self, messages: ConversationLike) -> GenerationResult:
        if self._state != PipelineState.IDLE:
            raise PipelineBusyError(f"Pipeline is busy ({self._state.value})")
        prompt = render_conversation(messages, self.template, self.template_policy)
        return self._generate(prompt)

    def _generate(self, prompt: str) -> GenerationResult:
        if not self._lock.acquire(blocking=False):
            raise PipelineBusyError(f"Pipeline is busy ({self._state.value})")

        start = time.time()
        try:
            self._state = PipelineState.PROMPTING
            sampler = Sampler(replace(self._sampling))
            with torch.inference_mode():
                generation, logits = self._prompt(prompt)
                self._state = PipelineState.DECODING
                self._decode(generation, logits, sampler)

            text = self.tokenizer.decode(generation.generated_ids)
            self._state = PipelineState.FINISHED
        except BaseException:
            self._state = PipelineState.FAILED
            raise
        finally:
            self._cache.reset()
            self._state = PipelineState.IDLE
            self._lock.release()

        elapsed_ms = (time.time() - start) * 1000
        logger.debug(
            f"Generated {len(generation.generated_ids)} tokens from {len(generation.prompt_ids)} "
            f"prompt tokens in {elapsed_ms:.0f}ms ({generation.finish_reason.value})"
        )
        return GenerationResult(
            prompt=prompt,
            text=text,
            finish_reason=generation.finish_reason.value,
            prompt_tokens=len(generation.prompt_ids),
            tokens_generated=len(generation.generated_ids),
            generation_time_ms=elapsed_ms,
        )

    def _prompt(self, prompt: str):
        prompt_ids = self.tokenizer.encode(prompt)
        if not prompt_ids:
            raise TokenizerError("Prompt encodes to no tokens and the model adds no BOS token")
        if len(prompt_ids) > self.context_length:
            raise ContextOverflowError(
                f"Prompt has {len(prompt_ids)} tokens but the context length is {self.context_length}"
            )

        self._cache.reset()
        logits = self.model(prompt_ids, 0, self._cache)
        return GenerationState(prompt_ids=prompt_ids), logits

    def _decode(self, generation: GenerationState, logits: torch.Tensor, sampler: Sampler):
        while not generation.stopped:
            token = sampler.sample(logits)

            if self.tokenizer.is_stop_token(token):
                generation.finish(FinishReason.EOS)
                break

            generation.generated_ids.append(token)
            if len(generation.generated_ids) >= self.max_new_tokens:
                generation.finish(FinishReason.LENGTH)
                break

            position = self._cache.length()
            if position >= self.context_length:
                generation.finish(FinishReason.CONTEXT)
                break

            logits = self.model([token], position, self._cache)

    def __repr__(self) -> str:
        return (
            f"TextPipeline({type(self.model).__name__}, target={self.target}, "
            f"context={self.context_length}, state={self._state.value})"
        )


class PipelineBuilder:
    """
    Fluent wrapper over PipelineConfig.

    Usage:
        pipeline = PipelineBuilder().with_location("model/").with_seed(42).build()
    """

    def __init__(self, location: Optional[str] = None):
        self._options = {"location": location}

    def _set(self, key: str, value) -> "PipelineBuilder":
        self._options[key] = value
        return self

    def with_location(self, location: str) -> "PipelineBuilder":
        return self._set("location", str(location))

    def with_temperature(self, temperature: float) -> "PipelineBuilder":
        return self._set("temperature", temperature)

    def with_top_k(self, top_k: Optional[int]) -> "PipelineBuilder":
        return self._set("top_k", top_k)

    def with_top_p(self, top_p: Optional[float]) -> "PipelineBuilder":
        return self._set("top_p", top_p)

    def with_seed(self, seed: Optional[int]) -> "PipelineBuilder":
        return self._set("seed", seed)

    def with_max_new_tokens(self, max_new_tokens: int) -> "PipelineBuilder":
        return self._set("max_new_tokens", max_new_tokens)

    def with_device(self, device: Optional[str], dtype: Optional[str] = None) -> "PipelineBuilder":
        self._set("device", device)
        return self._set("dtype", dtype)

    def with_architecture(self, architecture: Optional[str]) -> "PipelineBuilder":
        return self._set("architecture", architecture)

    def with_max_context_length(self, max_context_length: Optional[int]) -> "PipelineBuilder":
        return self._set("max_context_length", max_context_length)

    def with_template_policy(self, policy: Union[TemplatePolicy, str]) -> "PipelineBuilder":
        return self._set("template_policy", policy)

    def with_allow_download(self, allow_download: bool = True) -> "PipelineBuilder":
        return self._set("allow_download", allow_download)

    def config(self) -> PipelineConfig:
        if not self._options.get("location"):
            raise InvalidConfigError("location is required")
        return PipelineConfig(**self._options)

    def build(self) -> TextPipeline:
        return TextPipeline.from_config(self.config())
