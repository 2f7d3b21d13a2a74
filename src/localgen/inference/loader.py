"""
Model Location & Weight Loading

Resolves a user-supplied location to a ModelLocation (path, format,
architecture) and opens the matching loader:

    .gguf file                  -> GGUFLoader
    .safetensors file / dir     -> SafetensorsLoader
    other existing file         -> its parent directory
    "org/name" (not on disk)    -> Hugging Face cache (download only if allowed)

Every loader produces the same ParameterBundle: canonical tensor names
(embed_tokens.weight, layers.{i}.self_attn.q_proj.weight, ...) on the target
device/dtype, plus the ModelConfig. Loading is all-or-nothing.

Usage:
    location = resolve_location("path/to/model")
    loader = open_loader(location, target)
    bundle = loader.load_parameters()
    tokenizer = loader.load_tokenizer()
    template = loader.load_chat_template(tokenizer)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import json
import logging

import torch

from ..errors import LoadError
from .device import ExecutionTarget
from .model import GGUF_ARCHITECTURES, HF_ARCHITECTURES, Architecture, ModelConfig
from .templates import ChatTemplate
from .tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)

SAFETENSORS_INDEX = "model.safetensors.index.json"
SAFETENSORS_SINGLE = "model.safetensors"


class ModelFormat(str, Enum):
    SAFETENSORS = "safetensors"
    GGUF = "gguf"


@dataclass(frozen=True)
class ModelLocation:
    """A resolved model on local disk."""

    path: Path
    format: ModelFormat
    architecture: Architecture
    shards: Tuple[Path, ...] = ()

    @property
    def model_dir(self) -> Path:
        return self.path if self.path.is_dir() else self.path.parent


@dataclass
class ParameterBundle:
    """All model tensors keyed by canonical name, plus the config they satisfy."""

    tensors: Dict[str, torch.Tensor]
    config: ModelConfig
    format: ModelFormat
    target: ExecutionTarget
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def num_parameters(self) -> int:
        return sum(t.numel() for t in self.tensors.values())

    def __len__(self) -> int:
        return len(self.tensors)


def read_json(path: Path, required: bool = False) -> Dict[str, Any]:
    if not path.is_file():
        if required:
            raise LoadError(f"{path.name} not found in {path.parent}")
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise LoadError(f"Failed to read {path}: {e}") from e


def resolve_architecture(
    declared: Architecture,
    hint: Optional[Union[Architecture, str]],
) -> Architecture:
    """Reconcile the architecture a model declares with the caller's hint."""
    if hint is None:
        return declared
    try:
        hinted = Architecture(hint)
    except ValueError as e:
        raise LoadError(f"Unsupported architecture hint: {hint!r}") from e
    if hinted == declared:
        return declared
    # Mistral GGUF files declare general.architecture = "llama"
    if declared == Architecture.LLAMA and hinted == Architecture.MISTRAL:
        return hinted
    raise LoadError(f"Model declares architecture {declared.value!r} but {hinted.value!r} was requested")


def _hf_architecture(model_dir: Path) -> Architecture:
    config = read_json(model_dir / "config.json", required=True)
    names = config.get("architectures") or []
    if not names:
        raise LoadError(f"config.json in {model_dir} does not declare 'architectures'")
    if names[0] not in HF_ARCHITECTURES:
        raise LoadError(
            f"Unsupported architecture {names[0]!r}; expected one of {sorted(HF_ARCHITECTURES)}"
        )
    return HF_ARCHITECTURES[names[0]]


def _gguf_architecture(path: Path) -> Architecture:
    from .gguf_loader import GGUFReader

    try:
        with GGUFReader(path) as reader:
            name = reader.metadata.get("general.architecture")
    except (OSError, ValueError) as e:
        raise LoadError(f"Failed to read GGUF header from {path}: {e}") from e
    if name not in GGUF_ARCHITECTURES:
        raise LoadError(
            f"Unsupported GGUF architecture {name!r}; expected one of {sorted(GGUF_ARCHITECTURES)}"
        )
    return GGUF_ARCHITECTURES[name]


def _find_shards(model_dir: Path) -> Tuple[Path, ...]:
    index_path = model_dir / SAFETENSORS_INDEX
    if index_path.is_file():
        weight_map = read_json(index_path).get("weight_map")
        if not weight_map:
            raise LoadError(f"{SAFETENSORS_INDEX} has no weight_map")
        shards = tuple(model_dir / name for name in sorted(set(weight_map.values())))
        missing = [p.name for p in shards if not p.is_file()]
        if missing:
            raise LoadError(f"Missing safetensors shards: {missing}")
        return shards

    single = model_dir / SAFETENSORS_SINGLE
    if single.is_file():
        return (single,)

    shards = tuple(sorted(model_dir.glob("*.safetensors")))
    if not shards:
        raise LoadError(f"No .safetensors files found in {model_dir}")
    return shards


def _snapshot(repo_id: str, allow_download: bool) -> Path:
    from huggingface_hub import snapshot_download

    try:
        path = snapshot_download(
            repo_id=repo_id,
            local_files_only=not allow_download,
            allow_patterns=["*.json", "*.safetensors", "*.jinja"],
        )
    except (OSError, ValueError) as e:
        how = "download failed" if allow_download else "not in the local Hugging Face cache"
        raise LoadError(f"Could not resolve {repo_id!r}: {how} ({e})") from e
    logger.info(f"Resolved {repo_id} to {path}")
    return Path(path)


def resolve_location(
    location: Union[str, Path],
    architecture: Optional[Union[Architecture, str]] = None,
    allow_download: bool = False,
) -> ModelLocation:
    """
    Resolve a path or Hugging Face repo id to a ModelLocation.

    Args:
        location: .gguf file, .safetensors file, model directory, or "org/name"
        architecture: Optional hint; must agree with what the model declares
        allow_download: Fetch missing repos from the Hub instead of failing

    Raises:
        LoadError: nothing usable at the location, or an architecture mismatch
    """
    if location is None or str(location) == "":
        raise LoadError("No model location given")

    path = Path(location).expanduser()
    explicit_shards = None

    if path.is_file():
        if path.suffix == ".gguf":
            declared = _gguf_architecture(path)
            return ModelLocation(
                path=path,
                format=ModelFormat.GGUF,
                architecture=resolve_architecture(declared, architecture),
            )
        # Single-file safetensors or any other file: metadata lives beside it
        if path.suffix == ".safetensors":
            explicit_shards = (path,)
        path = path.parent
    elif not path.exists():
        text = str(location)
        if text.count("/") == 1 and not text.startswith((".", "/", "~")):
            path = _snapshot(text, allow_download)
        else:
            raise LoadError(f"Model location does not exist: {location}")

    if not path.is_dir():
        raise LoadError(f"Unsupported model location: {location}")

    declared = _hf_architecture(path)
    return ModelLocation(
        path=path,
        format=ModelFormat.SAFETENSORS,
        architecture=resolve_architecture(declared, architecture),
        shards=explicit_shards or _find_shards(path),
    )


class ModelLoader(ABC):
    """Turns a ModelLocation into a ParameterBundle, tokenizer and chat template."""

    def __init__(self, location: ModelLocation, target: ExecutionTarget):
        self.location = location
        self.target = target

    @abstractmethod
    def load_parameters(self) -> ParameterBundle:
        pass

    @abstractmethod
    def load_tokenizer(self) -> TokenizerAdapter:
        pass

    @abstractmethod
    def chat_template_source(self) -> Optional[str]:
        pass

    def load_chat_template(self, tokenizer: TokenizerAdapter) -> Optional[ChatTemplate]:
        source = self.chat_template_source()
        if source is None:
            logger.info("Model declares no chat template")
            return None
        return ChatTemplate(source, bos_token=tokenizer.bos_token, eos_token=tokenizer.eos_token)

    def _convert(self, tensor: torch.Tensor) -> torch.Tensor:
        return tensor.to(device=self.target.device, dtype=self.target.dtype)


def check_shapes(tensors: Dict[str, torch.Tensor], config: ModelConfig):
    """Cross-check the tensors every architecture shares against the config."""
    expected = {
        "embed_tokens.weight": (config.vocab_size, config.hidden_dim),
        "norm.weight": (config.hidden_dim,),
    }
    if "lm_head.weight" in tensors:
        expected["lm_head.weight"] = (config.vocab_size, config.hidden_dim)
    for i in range(config.num_layers):
        expected[f"layers.{i}.input_layernorm.weight"] = (config.hidden_dim,)
        expected[f"layers.{i}.post_attention_layernorm.weight"] = (config.hidden_dim,)
        expected[f"layers.{i}.mlp.down_proj.weight"] = (config.hidden_dim, config.intermediate_dim)

    for name, shape in expected.items():
        if name not in tensors:
            raise LoadError(f"Missing tensor {name}")
        actual = tuple(tensors[name].shape)
        if actual != shape:
            raise LoadError(f"Shape mismatch for {name}: got {actual}, expected {shape}")


def open_loader(location: ModelLocation, target: ExecutionTarget) -> ModelLoader:
    if location.format == ModelFormat.GGUF:
        from .gguf_loader import GGUFLoader
        return GGUFLoader(location, target)
    if location.format == ModelFormat.SAFETENSORS:
        from .safetensors_loader import SafetensorsLoader
        return SafetensorsLoader(location, target)
    raise LoadError(f"Unsupported model format: {location.format}")
