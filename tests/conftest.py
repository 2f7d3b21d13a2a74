"""
Pytest configuration and shared fixtures.

Fabricates tiny models on disk instead of downloading real checkpoints:
a 2-layer Llama with random weights saved as safetensors, the same weights
written as a GGUF file, and a byte-level BPE tokenizer whose vocabulary is
<s>, </s> and the 256 byte symbols.
"""

import json
import logging
import struct
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pytest
import torch
from safetensors.torch import save_file
from tokenizers import AddedToken, Tokenizer, decoders, models, pre_tokenizers, processors

# Configure logging for test runs
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# Tiny Model Definition
# =============================================================================

BOS_ID = 0
EOS_ID = 1
TOKENS = ["<s>", "</s>"] + sorted(pre_tokenizers.ByteLevel.alphabet())
VOCAB_SIZE = len(TOKENS)

TINY_HF_CONFIG = {
    "architectures": ["LlamaForCausalLM"],
    "model_type": "llama",
    "vocab_size": VOCAB_SIZE,
    "hidden_size": 64,
    "intermediate_size": 128,
    "num_hidden_layers": 2,
    "num_attention_heads": 4,
    "num_key_value_heads": 2,
    "max_position_embeddings": 128,
    "rms_norm_eps": 1e-5,
    "rope_theta": 10000.0,
    "bos_token_id": BOS_ID,
    "eos_token_id": EOS_ID,
    "tie_word_embeddings": False,
}


def make_state_dict(config, seed: int = 0) -> Dict[str, torch.Tensor]:
    """Random weights under canonical names for any supported architecture."""
    from localgen.inference.model import Architecture

    gen = torch.Generator().manual_seed(seed)

    def rand(*shape, scale=0.1):
        return torch.randn(*shape, generator=gen) * scale

    def norm(dim):
        return 1.0 + rand(dim, scale=0.05)

    H, I = config.hidden_dim, config.intermediate_dim
    q_dim = config.num_heads * config.head_dim
    kv_dim = config.num_kv_heads * config.head_dim

    tensors = {
        "embed_tokens.weight": rand(config.vocab_size, H, scale=0.5),
        "norm.weight": norm(H),
    }
    if not config.tie_embeddings:
        tensors["lm_head.weight"] = rand(config.vocab_size, H, scale=0.5)

    for i in range(config.num_layers):
        p = f"layers.{i}"
        tensors[f"{p}.input_layernorm.weight"] = norm(H)
        tensors[f"{p}.post_attention_layernorm.weight"] = norm(H)
        tensors[f"{p}.self_attn.o_proj.weight"] = rand(H, q_dim)
        tensors[f"{p}.mlp.down_proj.weight"] = rand(H, I)
        if config.architecture == Architecture.GEMMA2:
            tensors[f"{p}.pre_feedforward_layernorm.weight"] = norm(H)
            tensors[f"{p}.post_feedforward_layernorm.weight"] = norm(H)

        if config.architecture == Architecture.PHI3:
            tensors[f"{p}.self_attn.qkv_proj.weight"] = rand(q_dim + 2 * kv_dim, H)
            tensors[f"{p}.mlp.gate_up_proj.weight"] = rand(2 * I, H)
        else:
            tensors[f"{p}.self_attn.q_proj.weight"] = rand(q_dim, H)
            tensors[f"{p}.self_attn.k_proj.weight"] = rand(kv_dim, H)
            tensors[f"{p}.self_attn.v_proj.weight"] = rand(kv_dim, H)
            tensors[f"{p}.mlp.gate_proj.weight"] = rand(I, H)
            tensors[f"{p}.mlp.up_proj.weight"] = rand(I, H)
            if config.attention_bias:
                tensors[f"{p}.self_attn.q_proj.bias"] = rand(q_dim)
                tensors[f"{p}.self_attn.k_proj.bias"] = rand(kv_dim)
                tensors[f"{p}.self_attn.v_proj.bias"] = rand(kv_dim)
    return tensors


def build_tiny_tokenizer() -> Tokenizer:
    """Byte-level BPE without merges: every byte is one token, plus <s> and </s>."""
    vocab = {tok: i for i, tok in enumerate(TOKENS)}
    tokenizer = Tokenizer(models.BPE(vocab=vocab, merges=[]))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    tokenizer.add_special_tokens([
        AddedToken("<s>", special=True, normalized=False),
        AddedToken("</s>", special=True, normalized=False),
    ])
    tokenizer.post_processor = processors.TemplateProcessing(
        single="<s> $A",
        special_tokens=[("<s>", BOS_ID)],
    )
    return tokenizer


def write_hf_model(
    model_dir: Path,
    hf_config: dict,
    tensors: Dict[str, torch.Tensor],
    tokenizer_config: Optional[dict] = None,
    generation_config: Optional[dict] = None,
):
    model_dir.mkdir(parents=True, exist_ok=True)
    (model_dir / "config.json").write_text(json.dumps(hf_config))
    save_file(
        {f"model.{k}" if k != "lm_head.weight" else k: v.contiguous() for k, v in tensors.items()},
        str(model_dir / "model.safetensors"),
    )
    build_tiny_tokenizer().save(str(model_dir / "tokenizer.json"))
    if tokenizer_config is not None:
        (model_dir / "tokenizer_config.json").write_text(json.dumps(tokenizer_config))
    if generation_config is not None:
        (model_dir / "generation_config.json").write_text(json.dumps(generation_config))
    return model_dir


# =============================================================================
# GGUF Writer
# =============================================================================

GGUF_MAGIC = 0x46554747
GGML_TYPE_F32 = 0
GGML_TYPE_F16 = 1
GGML_TYPE_Q4_0 = 2
GGML_TYPE_Q4_1 = 3
GGML_TYPE_Q8_0 = 8
GGML_TYPE_Q2_K = 10
GGML_TYPE_Q3_K = 11
GGML_TYPE_Q4_K = 12
GGML_TYPE_Q5_K = 13
GGML_TYPE_Q6_K = 14
GGML_TYPE_BF16 = 30

VT_UINT8, VT_INT8, VT_UINT16, VT_INT16, VT_UINT32, VT_INT32, VT_FLOAT32 = range(7)
VT_BOOL, VT_STRING, VT_ARRAY, VT_UINT64, VT_INT64, VT_FLOAT64 = range(7, 13)

_VT_FORMATS = {
    VT_UINT8: "<B", VT_INT8: "<b", VT_UINT16: "<H", VT_INT16: "<h",
    VT_UINT32: "<I", VT_INT32: "<i", VT_FLOAT32: "<f",
    VT_UINT64: "<Q", VT_INT64: "<q", VT_FLOAT64: "<d",
}


class Typed:
    """Metadata value with an explicit GGUF value type (arrays: elem_type + list)."""

    def __init__(self, vtype: int, value, elem_type: Optional[int] = None):
        self.vtype = vtype
        self.value = value
        self.elem_type = elem_type


def _gguf_string(s: str) -> bytes:
    data = s.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def _infer_type(value) -> Typed:
    if isinstance(value, Typed):
        return value
    if isinstance(value, bool):
        return Typed(VT_BOOL, value)
    if isinstance(value, int):
        return Typed(VT_UINT32, value)
    if isinstance(value, float):
        return Typed(VT_FLOAT32, value)
    if isinstance(value, str):
        return Typed(VT_STRING, value)
    if isinstance(value, list):
        first = value[0] if value else ""
        elem = _infer_type(first).vtype
        if elem == VT_UINT32:
            elem = VT_INT32
        return Typed(VT_ARRAY, value, elem_type=elem)
    raise TypeError(f"Cannot encode {value!r}")


def _gguf_value(typed: Typed) -> bytes:
    if typed.vtype == VT_STRING:
        return _gguf_string(typed.value)
    if typed.vtype == VT_BOOL:
        return struct.pack("<B", int(typed.value))
    if typed.vtype == VT_ARRAY:
        items = b"".join(_gguf_value(Typed(typed.elem_type, v)) for v in typed.value)
        return struct.pack("<IQ", typed.elem_type, len(typed.value)) + items
    return struct.pack(_VT_FORMATS[typed.vtype], typed.value)


def write_gguf(path: Path, metadata: dict, tensors: dict, alignment: int = 32, version: int = 3) -> Path:
    """
    Write a GGUF file.

    Args:
        metadata: key -> python value or Typed
        tensors: name -> (ggml_type, torch_shape, raw_bytes)
    """
    if alignment != 32:
        metadata = {"general.alignment": alignment, **metadata}

    def align(n):
        return (n + alignment - 1) // alignment * alignment

    kv = b""
    for key, value in metadata.items():
        typed = _infer_type(value)
        kv += _gguf_string(key) + struct.pack("<I", typed.vtype) + _gguf_value(typed)

    infos = b""
    blobs = []
    offset = 0
    for name, (ggml_type, shape, data) in tensors.items():
        offset = align(offset)
        dims = b"".join(struct.pack("<Q", d) for d in reversed(shape))
        infos += _gguf_string(name) + struct.pack("<I", len(shape)) + dims
        infos += struct.pack("<IQ", ggml_type, offset)
        blobs.append((offset, data))
        offset += len(data)

    header = struct.pack("<IIQQ", GGUF_MAGIC, version, len(tensors), len(metadata)) + kv + infos
    body = bytearray()
    for start, data in blobs:
        body += b"\x00" * (start - len(body))
        body += data

    with open(path, "wb") as f:
        f.write(header)
        f.write(b"\x00" * (align(len(header)) - len(header)))
        f.write(bytes(body))
    return path


def f32_tensor(t: torch.Tensor):
    return (GGML_TYPE_F32, tuple(t.shape), t.detach().numpy().astype("<f4").tobytes())


def quantize_q8_0(values: np.ndarray) -> bytes:
    """Reference Q8_0 quantizer: per 32-block scale = max|x| / 127."""
    blocks = values.astype(np.float32).reshape(-1, 32)
    amax = np.abs(blocks).max(axis=1, keepdims=True)
    d = amax / 127.0
    inv = np.where(d > 0, 1.0 / np.where(d > 0, d, 1.0), 0.0)
    q = np.round(blocks * inv).astype(np.int8)
    out = bytearray()
    for scale, row in zip(d[:, 0].astype(np.float16), q):
        out += scale.tobytes() + row.tobytes()
    return bytes(out)


def permute_qk(weight: torch.Tensor, n_head: int) -> torch.Tensor:
    """llama.cpp's convert-time Q/K row interleave."""
    rest = weight.shape[1:]
    return (
        weight.reshape(n_head, 2, weight.shape[0] // n_head // 2, *rest)
        .swapaxes(1, 2)
        .reshape(weight.shape)
    )


GGUF_NAMES = {
    "self_attn.q_proj": "attn_q",
    "self_attn.k_proj": "attn_k",
    "self_attn.v_proj": "attn_v",
    "self_attn.o_proj": "attn_output",
    "mlp.gate_proj": "ffn_gate",
    "mlp.up_proj": "ffn_up",
    "mlp.down_proj": "ffn_down",
    "input_layernorm": "attn_norm",
    "post_attention_layernorm": "ffn_norm",
}


def to_gguf_name(name: str) -> str:
    globals_ = {
        "embed_tokens.weight": "token_embd.weight",
        "lm_head.weight": "output.weight",
        "norm.weight": "output_norm.weight",
    }
    if name in globals_:
        return globals_[name]
    _, idx, rest = name.split(".", 2)
    module, kind = rest.rsplit(".", 1)
    return f"blk.{idx}.{GGUF_NAMES[module]}.{kind}"


def tiny_gguf_metadata(hf_config: dict) -> dict:
    return {
        "general.architecture": "llama",
        "general.name": "tiny-llama",
        "llama.context_length": hf_config["max_position_embeddings"],
        "llama.embedding_length": hf_config["hidden_size"],
        "llama.block_count": hf_config["num_hidden_layers"],
        "llama.feed_forward_length": hf_config["intermediate_size"],
        "llama.attention.head_count": hf_config["num_attention_heads"],
        "llama.attention.head_count_kv": hf_config["num_key_value_heads"],
        "llama.attention.layer_norm_rms_epsilon": hf_config["rms_norm_eps"],
        "llama.rope.freq_base": hf_config["rope_theta"],
        "tokenizer.ggml.model": "gpt2",
        "tokenizer.ggml.pre": "default",
        "tokenizer.ggml.tokens": list(TOKENS),
        "tokenizer.ggml.token_type": Typed(VT_ARRAY, [3, 3] + [1] * (VOCAB_SIZE - 2), elem_type=VT_INT32),
        "tokenizer.ggml.merges": Typed(VT_ARRAY, [], elem_type=VT_STRING),
        "tokenizer.ggml.bos_token_id": BOS_ID,
        "tokenizer.ggml.eos_token_id": EOS_ID,
        "tokenizer.ggml.add_bos_token": True,
    }


def write_llama_gguf(path: Path, hf_config: dict, tensors: Dict[str, torch.Tensor], **extra_metadata) -> Path:
    n_head = hf_config["num_attention_heads"]
    n_kv = hf_config["num_key_value_heads"]
    out = {}
    for name, tensor in tensors.items():
        if name.endswith("q_proj.weight"):
            tensor = permute_qk(tensor, n_head)
        elif name.endswith("k_proj.weight"):
            tensor = permute_qk(tensor, n_kv)
        out[to_gguf_name(name)] = f32_tensor(tensor)
    metadata = tiny_gguf_metadata(hf_config)
    metadata.update(extra_metadata)
    return write_gguf(path, metadata, out)


# =============================================================================
# Model Fixtures (Session-Scoped)
# =============================================================================


@pytest.fixture(scope="session")
def tiny_config():
    """ModelConfig matching TINY_HF_CONFIG."""
    from localgen.inference.model import Architecture, ModelConfig
    return ModelConfig.from_hf_config(TINY_HF_CONFIG, Architecture.LLAMA)


@pytest.fixture(scope="session")
def tiny_tensors(tiny_config):
    """
    Random Llama weights whose greedy output never starts with a special token.

    lm_head rows for <s> and </s> are zero and row 3 mirrors row 2, so at least
    one ordinary token always scores >= the special tokens.
    """
    tensors = make_state_dict(tiny_config)
    lm_head = tensors["lm_head.weight"]
    lm_head[BOS_ID] = 0.0
    lm_head[EOS_ID] = 0.0
    lm_head[3] = -lm_head[2]
    return tensors


@pytest.fixture(scope="session")
def tiny_model_dir(tmp_path_factory, tiny_tensors):
    """Safetensors Llama model directory without a chat template."""
    model_dir = tmp_path_factory.mktemp("models") / "tiny-llama"
    write_hf_model(
        model_dir,
        TINY_HF_CONFIG,
        tiny_tensors,
        tokenizer_config={"bos_token": "<s>", "eos_token": "</s>"},
    )
    logger.info(f"Wrote tiny safetensors model to {model_dir}")
    return model_dir


@pytest.fixture(scope="session")
def tiny_gguf_path(tmp_path_factory, tiny_tensors):
    """The same tiny Llama as a single F32 GGUF file."""
    path = tmp_path_factory.mktemp("gguf") / "tiny-llama.gguf"
    write_llama_gguf(path, TINY_HF_CONFIG, tiny_tensors)
    logger.info(f"Wrote tiny GGUF model to {path}")
    return path


@pytest.fixture
def cpu_target():
    from localgen.inference.device import select_backend
    return select_backend("cpu", "float32")


@pytest.fixture
def pipeline_factory(tiny_model_dir):
    """Factory for CPU float32 pipelines over the tiny model."""
    from localgen.inference import PipelineConfig, TextPipeline

    def create(location=None, **options) -> TextPipeline:
        options.setdefault("device", "cpu")
        options.setdefault("dtype", "float32")
        config = PipelineConfig(location=str(location or tiny_model_dir), **options)
        return TextPipeline.from_config(config)

    return create


# =============================================================================
# Markers Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "gpu: marks tests requiring GPU")
