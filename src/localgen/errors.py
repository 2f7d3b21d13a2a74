"""
Error taxonomy for localgen.

Every error raised by the pipeline derives from LocalGenError so a host
application can catch the whole family in one place. Errors that correspond
to a built-in category also inherit from it (ValueError, RuntimeError).
"""


class LocalGenError(Exception):
    """Base class for all localgen errors."""


class LoadError(LocalGenError):
    """Model location could not be resolved or its weights could not be loaded."""


class DeviceError(LocalGenError):
    """Requested compute device or precision is unavailable."""


class TokenizerError(LocalGenError):
    """Malformed tokenizer input, vocabulary mismatch, or unsupported tokenizer."""


class TemplateError(LocalGenError):
    """Chat template is missing, invalid, or failed to render."""


class NoTemplateError(TemplateError):
    """Model declares no chat template and the strict policy is in effect."""


class InvalidRoleError(TemplateError, ValueError):
    """Conversation contains a role other than system/user/assistant."""


class ModelRuntimeError(LocalGenError, RuntimeError):
    """Forward pass failed (shape, device, or position mismatch). Fatal, never retried."""


class CacheInvariantError(ModelRuntimeError):
    """KV cache layers disagree on their sequence length."""


class SamplingError(LocalGenError):
    """Sampling configuration masked out every candidate token."""


class InvalidConfigError(LocalGenError, ValueError):
    """Contradictory or out-of-range configuration value."""


class ContextOverflowError(LocalGenError, ValueError):
    """Prompt does not fit in the model's context window."""


class PipelineBusyError(LocalGenError):
    """A generation call was entered while another one is in flight."""


__all__ = [
    "LocalGenError",
    "LoadError",
    "DeviceError",
    "TokenizerError",
    "TemplateError",
    "NoTemplateError",
    "InvalidRoleError",
    "ModelRuntimeError",
    "CacheInvariantError",
    "SamplingError",
    "InvalidConfigError",
    "ContextOverflowError",
    "PipelineBusyError",
]
