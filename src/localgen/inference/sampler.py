"""
Sampler

Turns a next-token logit vector into a token id:

    1. temperature == 0  -> argmax (lowest id wins ties)
    2. logits / temperature -> softmax
    3. top_k  keeps the k most probable candidates
    4. top_p  keeps the smallest prefix of the survivors whose renormalized
              cumulative probability reaches top_p
    5. renormalize and draw from a seeded torch.Generator

All math runs in float32 on CPU so a given seed produces the same draw
regardless of which device computed the logits.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import torch
import torch.nn.functional as F

from ..errors import InvalidConfigError, SamplingError

logger = logging.getLogger(__name__)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class SamplingConfig:
    """Sampling policy. Mutable; validated on every pipeline setter and at build."""

    temperature: float = 0.7
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    seed: Optional[int] = None

    def validate(self) -> "SamplingConfig":
        if not _is_number(self.temperature) or not self.temperature >= 0.0:
            raise InvalidConfigError(f"temperature must be >= 0, got {self.temperature!r}")
        if self.top_k is not None and (not _is_int(self.top_k) or self.top_k < 1):
            raise InvalidConfigError(f"top_k must be an integer >= 1, got {self.top_k!r}")
        if self.top_p is not None and (not _is_number(self.top_p) or not 0.0 < self.top_p <= 1.0):
            raise InvalidConfigError(f"top_p must be in (0, 1], got {self.top_p!r}")
        if self.seed is not None and (not _is_int(self.seed) or self.seed < 0):
            raise InvalidConfigError(f"seed must be a non-negative integer, got {self.seed!r}")
        return self

    @property
    def greedy(self) -> bool:
        return self.temperature == 0.0


def _make_generator(seed: Optional[int]) -> torch.Generator:
    generator = torch.Generator(device="cpu")
    if seed is None:
        generator.seed()
    else:
        generator.manual_seed(seed)
    return generator


def sample(
    logits: torch.Tensor,
    config: SamplingConfig,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Pick one token id from a logit vector.

    Args:
        logits: [vocab_size] (a leading batch dim of 1 is squeezed)
        config: Sampling policy; not re-validated here so raw values reach the masking logic
        generator: CPU torch.Generator; a fresh OS-seeded one is used when None

    Raises:
        SamplingError: every candidate was masked out or the logits are not finite
    """
    logits = logits.detach().float().cpu()
    if logits.dim() == 2 and logits.shape[0] == 1:
        logits = logits[0]
    if logits.dim() != 1 or logits.numel() == 0:
        raise SamplingError(f"Expected a 1-D logit vector, got shape {tuple(logits.shape)}")

    if config.temperature == 0.0:
        if torch.isnan(logits).any():
            raise SamplingError("Logits contain NaN")
        # torch.argmax returns the first maximal index
        return int(torch.argmax(logits).item())

    if config.temperature < 0.0:
        raise SamplingError(f"Negative temperature: {config.temperature}")

    probs = F.softmax(logits / config.temperature, dim=-1)
    if not torch.isfinite(probs).all():
        raise SamplingError("Logits produced a non-finite distribution")

    # Stable sort keeps lower ids first among equal probabilities
    sorted_probs, sorted_ids = torch.sort(probs, descending=True, stable=True)

    if config.top_k is not None:
        if config.top_k < 1:
            raise SamplingError(f"top_k={config.top_k} masks every candidate")
        sorted_probs = sorted_probs[: config.top_k]
        sorted_ids = sorted_ids[: config.top_k]

    if config.top_p is not None:
        if not config.top_p > 0.0:
            raise SamplingError(f"top_p={config.top_p} masks every candidate")
        total = sorted_probs.sum()
        if total <= 0:
            raise SamplingError("No probability mass left after top_k")
        renorm = sorted_probs / total
        cumulative = torch.cumsum(renorm, dim=-1)
        # Keep a candidate while the mass before it is still short of top_p
        keep = (cumulative - renorm) < config.top_p
        sorted_probs = sorted_probs[keep]
        sorted_ids = sorted_ids[keep]

    total = sorted_probs.sum()
    if sorted_probs.numel() == 0 or not total > 0:
        raise SamplingError("All candidate tokens were masked out")

    if generator is None:
        generator = _make_generator(None)

    choice = torch.multinomial(sorted_probs / total, num_samples=1, generator=generator)
    return int(sorted_ids[choice].item())


class Sampler:
    """Stateful sampler: one config plus the generator that backs its draws."""

    def __init__(self, config: Optional[SamplingConfig] = None):
        self.config = config if config is not None else SamplingConfig()
        self.generator = _make_generator(self.config.seed)

    def set_seed(self, seed: Optional[int]):
        """Reseed future draws. None draws fresh OS entropy."""
        self.config.seed = seed
        self.generator = _make_generator(seed)

    def sample(self, logits: torch.Tensor) -> int:
        return sample(logits, self.config, self.generator)
