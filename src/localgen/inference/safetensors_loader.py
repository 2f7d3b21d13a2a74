"""
Safetensors Loader

Loads a Hugging Face model directory (config.json + *.safetensors shards)
into a ParameterBundle. Tensor names lose their "model." prefix so they match
DecoderModel's parameter names.
"""

from pathlib import Path
from typing import Dict, Optional
import logging
import time

import torch
from safetensors import SafetensorError, safe_open

from ..errors import LoadError
from .loader import ModelFormat, ModelLoader, ParameterBundle, check_shapes, read_json
from .model import ModelConfig
from .templates import load_template_source
from .tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)

# Non-parameter buffers some checkpoints still carry
IGNORED_SUFFIXES = ("rotary_emb.inv_freq",)


def canonical_name(name: str) -> str:
    return name[len("model."):] if name.startswith("model.") else name


class SafetensorsLoader(ModelLoader):
    """Loads sharded or single-file safetensors checkpoints."""

    @property
    def model_dir(self) -> Path:
        return self.location.path

    def read_config(self) -> ModelConfig:
        raw = read_json(self.model_dir / "config.json", required=True)
        return ModelConfig.from_hf_config(raw, self.location.architecture)

    def load_parameters(self) -> ParameterBundle:
        logger.info(f"Loading safetensors model from {self.model_dir}")
        start = time.time()

        config = self.read_config()
        logger.info(
            f"Config: {config.num_layers} layers, {config.hidden_dim} hidden, "
            f"{config.num_heads} heads, {config.vocab_size} vocab"
        )

        tensors: Dict[str, torch.Tensor] = {}
        try:
            for shard in self.location.shards:
                with safe_open(str(shard), framework="pt", device="cpu") as f:
                    for name in f.keys():
                        if name.endswith(IGNORED_SUFFIXES):
                            continue
                        key = canonical_name(name)
                        if key in tensors:
                            raise LoadError(f"Tensor {key} appears in more than one shard")
                        tensors[key] = self._convert(f.get_tensor(name))

            if config.tie_embeddings and "lm_head.weight" in tensors:
                logger.debug("Dropping lm_head.weight (tied to embed_tokens)")
                del tensors["lm_head.weight"]

            check_shapes(tensors, config)
        except LoadError:
            tensors.clear()
            raise
        except (OSError, SafetensorError, RuntimeError, ValueError) as e:
            tensors.clear()
            raise LoadError(f"Failed to load safetensors from {self.model_dir}: {e}") from e

        elapsed = time.time() - start
        logger.info(f"Loaded {len(tensors)} tensors from {len(self.location.shards)} shard(s) in {elapsed:.1f}s")
        return ParameterBundle(
            tensors=tensors,
            config=config,
            format=ModelFormat.SAFETENSORS,
            target=self.target,
        )

    def load_tokenizer(self) -> TokenizerAdapter:
        raw = read_json(self.model_dir / "config.json", required=True)
        return TokenizerAdapter.from_model_dir(self.model_dir, raw)

    def chat_template_source(self) -> Optional[str]:
        tokenizer_config = read_json(self.model_dir / "tokenizer_config.json")
        return load_template_source(self.model_dir, tokenizer_config)
