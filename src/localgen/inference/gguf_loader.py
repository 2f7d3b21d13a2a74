"""
GGUF Tensor Loader

Pure Python GGUF file parser and dequantizer: struct parsing over mmap,
numpy block dequantization, torch tensors out.

Supported tensor types: F32, F16, BF16, Q4_0, Q4_1, Q8_0, Q2_K, Q3_K, Q4_K,
Q5_K, Q6_K.

Block layouts (32 elements per block, little-endian):
    Q4_0  18 bytes  fp16 d, 16 bytes nibbles      x = (q - 8) * d
    Q4_1  20 bytes  fp16 d, fp16 m, 16 bytes      x = q * d + m
    Q8_0  34 bytes  fp16 d, 32 x int8             x = q * d
Nibbles: the low 4 bits of byte j hold element j, the high 4 bits element j + 16.

K-quant super-blocks (256 elements, 16 or 8 sub-blocks with their own scales):
    Q2_K   84 bytes  scales[16] (4-bit scale | 4-bit min), qs[64], d, dmin
    Q3_K  110 bytes  hmask[32], qs[64], scales[12] (6-bit, biased by 32), d
    Q4_K  144 bytes  d, dmin, scales[12] (6-bit scale/min pairs), qs[128]
    Q5_K  176 bytes  d, dmin, scales[12], qh[32], qs[128]
    Q6_K  210 bytes  ql[128], qh[64], int8 scales[16], d
The 2- and 3-bit types, and Q6_K, walk each 128-element half in four 32-element
strips. Strip j takes bits 2j..2j+1 of the half's packed bytes, so element
e always uses sub-block scale e // 16.

References:
- GGUF spec: https://github.com/ggerganov/ggml/blob/master/docs/gguf.md
- K-quants: ggml-quants.c, dequantize_row_q*_K
"""

import struct
import mmap
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Any, Union
from dataclasses import dataclass, field
import logging
import time

import numpy as np
import torch

from ..errors import LoadError
from .loader import ModelLoader, ParameterBundle, ModelFormat, check_shapes
from .model import Architecture, ModelConfig
from .tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)

# =============================================================================
# GGUF Constants
# =============================================================================

GGUF_MAGIC = 0x46554747  # "GGUF" in little-endian
GGUF_DEFAULT_ALIGNMENT = 32

# GGML Types (from ggml.h)
GGML_TYPE_F32 = 0
GGML_TYPE_F16 = 1
GGML_TYPE_Q4_0 = 2
GGML_TYPE_Q4_1 = 3
GGML_TYPE_Q5_0 = 6
GGML_TYPE_Q5_1 = 7
GGML_TYPE_Q8_0 = 8
GGML_TYPE_Q8_1 = 9
GGML_TYPE_Q2_K = 10
GGML_TYPE_Q3_K = 11
GGML_TYPE_Q4_K = 12
GGML_TYPE_Q5_K = 13
GGML_TYPE_Q6_K = 14
GGML_TYPE_Q8_K = 15
GGML_TYPE_BF16 = 30

QK = 32  # Elements per block for Q4_0 / Q4_1 / Q8_0
QK_K = 256  # Elements per K-quant super-block
K_SCALE_SIZE = 12

# Type info: (block_size, bytes_per_block)
QUANT_INFO = {
    GGML_TYPE_F32: (1, 4),
    GGML_TYPE_F16: (1, 2),
    GGML_TYPE_BF16: (1, 2),
    GGML_TYPE_Q4_0: (QK, 2 + QK // 2),
    GGML_TYPE_Q4_1: (QK, 2 + 2 + QK // 2),
    GGML_TYPE_Q8_0: (QK, 2 + QK),
    GGML_TYPE_Q2_K: (QK_K, QK_K // 16 + QK_K // 4 + 2 + 2),
    GGML_TYPE_Q3_K: (QK_K, QK_K // 8 + QK_K // 4 + K_SCALE_SIZE + 2),
    GGML_TYPE_Q4_K: (QK_K, 2 + 2 + K_SCALE_SIZE + QK_K // 2),
    GGML_TYPE_Q5_K: (QK_K, 2 + 2 + K_SCALE_SIZE + QK_K // 8 + QK_K // 2),
    GGML_TYPE_Q6_K: (QK_K, QK_K // 2 + QK_K // 4 + QK_K // 16 + 2),
}

GGUF_TYPE_NAMES = {
    GGML_TYPE_F32: "F32",
    GGML_TYPE_F16: "F16",
    GGML_TYPE_BF16: "BF16",
    GGML_TYPE_Q4_0: "Q4_0",
    GGML_TYPE_Q4_1: "Q4_1",
    GGML_TYPE_Q5_0: "Q5_0",
    GGML_TYPE_Q5_1: "Q5_1",
    GGML_TYPE_Q8_0: "Q8_0",
    GGML_TYPE_Q8_1: "Q8_1",
    GGML_TYPE_Q2_K: "Q2_K",
    GGML_TYPE_Q3_K: "Q3_K",
    GGML_TYPE_Q4_K: "Q4_K",
    GGML_TYPE_Q5_K: "Q5_K",
    GGML_TYPE_Q6_K: "Q6_K",
    GGML_TYPE_Q8_K: "Q8_K",
}

# Metadata value types
GGUF_METADATA_VALUE_TYPE_UINT8 = 0
GGUF_METADATA_VALUE_TYPE_INT8 = 1
GGUF_METADATA_VALUE_TYPE_UINT16 = 2
GGUF_METADATA_VALUE_TYPE_INT16 = 3
GGUF_METADATA_VALUE_TYPE_UINT32 = 4
GGUF_METADATA_VALUE_TYPE_INT32 = 5
GGUF_METADATA_VALUE_TYPE_FLOAT32 = 6
GGUF_METADATA_VALUE_TYPE_BOOL = 7
GGUF_METADATA_VALUE_TYPE_STRING = 8
GGUF_METADATA_VALUE_TYPE_ARRAY = 9
GGUF_METADATA_VALUE_TYPE_UINT64 = 10
GGUF_METADATA_VALUE_TYPE_INT64 = 11
GGUF_METADATA_VALUE_TYPE_FLOAT64 = 12

# Fixed-width scalar types: struct format
_SCALAR_FORMATS = {
    GGUF_METADATA_VALUE_TYPE_UINT8: "<B",
    GGUF_METADATA_VALUE_TYPE_INT8: "<b",
    GGUF_METADATA_VALUE_TYPE_UINT16: "<H",
    GGUF_METADATA_VALUE_TYPE_INT16: "<h",
    GGUF_METADATA_VALUE_TYPE_UINT32: "<I",
    GGUF_METADATA_VALUE_TYPE_INT32: "<i",
    GGUF_METADATA_VALUE_TYPE_FLOAT32: "<f",
    GGUF_METADATA_VALUE_TYPE_UINT64: "<Q",
    GGUF_METADATA_VALUE_TYPE_INT64: "<q",
    GGUF_METADATA_VALUE_TYPE_FLOAT64: "<d",
}


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class GGUFTensorInfo:
    """Metadata for a single tensor in the GGUF file."""
    name: str
    n_dims: int
    dims: Tuple[int, ...]
    dtype: int  # GGML type
    offset: int  # Offset from start of tensor data section

    @property
    def numel(self) -> int:
        result = 1
        for d in self.dims:
            result *= d
        return result

    @property
    def shape(self) -> Tuple[int, ...]:
        """PyTorch-style shape (reversed from GGML)."""
        return tuple(reversed(self.dims))

    @property
    def dtype_name(self) -> str:
        return GGUF_TYPE_NAMES.get(self.dtype, f"UNKNOWN({self.dtype})")

    @property
    def nbytes(self) -> int:
        if self.dtype not in QUANT_INFO:
            raise LoadError(f"Unsupported tensor type {self.dtype_name} for {self.name}")

        block_size, bytes_per_block = QUANT_INFO[self.dtype]
        if self.numel % block_size != 0:
            raise LoadError(
                f"Tensor {self.name} has {self.numel} elements, not a multiple of block size {block_size}"
            )
        return self.numel // block_size * bytes_per_block


@dataclass
class GGUFHeader:
    """GGUF file header."""
    magic: int
    version: int
    n_tensors: int
    n_kv: int
    alignment: int = GGUF_DEFAULT_ALIGNMENT
    metadata: Dict[str, Any] = field(default_factory=dict)
    tensors: Dict[str, GGUFTensorInfo] = field(default_factory=dict)
    tensor_data_offset: int = 0


# =============================================================================
# GGUF Parser
# =============================================================================

class GGUFReader:
    """
    Memory-mapped GGUF file reader.

    Usage:
        with GGUFReader("model.gguf") as reader:
            tensor = reader.read_tensor("blk.0.attn_q.weight")
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._file = None
        self._mmap = None
        self._header: Optional[GGUFHeader] = None
        self._cursor = 0

    def __enter__(self) -> "GGUFReader":
        self._file = open(self.path, "rb")
        try:
            self._mmap = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            self._parse_header()
        except (ValueError, struct.error, UnicodeDecodeError, OverflowError) as e:
            self.close()
            raise ValueError(f"Corrupt GGUF file {self.path.name}: {e}") from e
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
        if self._file is not None:
            self._file.close()
            self._file = None

    @property
    def header(self) -> GGUFHeader:
        if self._header is None:
            raise RuntimeError("File not opened - use context manager")
        return self._header

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.header.metadata

    @property
    def tensors(self) -> Dict[str, GGUFTensorInfo]:
        return self.header.tensors

    def _read_bytes(self, n: int) -> bytes:
        end = self._cursor + n
        if end > len(self._mmap):
            raise ValueError(f"Unexpected end of file at offset {self._cursor} (wanted {n} bytes)")
        data = self._mmap[self._cursor:end]
        self._cursor = end
        return data

    def _read_scalar(self, fmt: str):
        return struct.unpack(fmt, self._read_bytes(struct.calcsize(fmt)))[0]

    def _read_u32(self) -> int:
        return self._read_scalar("<I")

    def _read_u64(self) -> int:
        return self._read_scalar("<Q")

    def _read_string(self) -> str:
        """Read length-prefixed string."""
        length = self._read_u64()
        return self._read_bytes(length).decode("utf-8")

    def _read_metadata_value(self, value_type: int) -> Any:
        """Read a metadata value based on its type."""
        if value_type in _SCALAR_FORMATS:
            return self._read_scalar(_SCALAR_FORMATS[value_type])
        elif value_type == GGUF_METADATA_VALUE_TYPE_BOOL:
            return self._read_scalar("<B") != 0
        elif value_type == GGUF_METADATA_VALUE_TYPE_STRING:
            return self._read_string()
        elif value_type == GGUF_METADATA_VALUE_TYPE_ARRAY:
            arr_type = self._read_u32()
            arr_len = self._read_u64()
            if arr_type in _SCALAR_FORMATS:
                # Bulk-read fixed-width arrays (token scores, token types)
                fmt = _SCALAR_FORMATS[arr_type]
                width = struct.calcsize(fmt)
                data = self._read_bytes(width * arr_len)
                return list(struct.unpack(f"<{arr_len}{fmt[1]}", data))
            return [self._read_metadata_value(arr_type) for _ in range(arr_len)]
        else:
            raise ValueError(f"Unknown metadata value type: {value_type}")

    def _parse_header(self):
        """Parse GGUF header, metadata, and tensor info."""
        self._cursor = 0

        magic = self._read_u32()
        if magic != GGUF_MAGIC:
            raise ValueError(f"Invalid GGUF magic: {hex(magic)}")

        version = self._read_u32()
        if version < 2 or version > 3:
            raise ValueError(f"Unsupported GGUF version: {version}")

        n_tensors = self._read_u64()
        n_kv = self._read_u64()

        self._header = GGUFHeader(
            magic=magic,
            version=version,
            n_tensors=n_tensors,
            n_kv=n_kv,
        )

        for _ in range(n_kv):
            key = self._read_string()
            value_type = self._read_u32()
            self._header.metadata[key] = self._read_metadata_value(value_type)

        alignment = self._header.metadata.get("general.alignment", GGUF_DEFAULT_ALIGNMENT)
        if not isinstance(alignment, int) or alignment <= 0 or alignment % 8 != 0:
            raise ValueError(f"Invalid general.alignment: {alignment!r}")
        self._header.alignment = alignment

        for _ in range(n_tensors):
            name = self._read_string()
            n_dims = self._read_u32()
            dims = tuple(self._read_u64() for _ in range(n_dims))
            dtype = self._read_u32()
            offset = self._read_u64()

            self._header.tensors[name] = GGUFTensorInfo(
                name=name,
                n_dims=n_dims,
                dims=dims,
                dtype=dtype,
                offset=offset,
            )

        self._header.tensor_data_offset = (self._cursor + alignment - 1) // alignment * alignment

    def read_tensor_raw(self, name: str) -> bytes:
        """Read raw tensor bytes without dequantization."""
        if name not in self.tensors:
            raise KeyError(f"Tensor not found: {name}")

        info = self.tensors[name]
        start = self.header.tensor_data_offset + info.offset
        end = start + info.nbytes
        if end > len(self._mmap):
            raise ValueError(f"Tensor {name} extends past end of file")
        return self._mmap[start:end]

    def read_tensor(self, name: str) -> torch.Tensor:
        """Read and dequantize a tensor to float32 on CPU, in PyTorch shape."""
        if name not in self.tensors:
            raise KeyError(f"Tensor not found: {name}")

        info = self.tensors[name]
        if info.dtype not in DEQUANTIZERS:
            raise LoadError(f"Dequantization not implemented for {info.dtype_name} ({name})")

        values = DEQUANTIZERS[info.dtype](self.read_tensor_raw(name), info.numel)
        return torch.from_numpy(values.reshape(info.shape))


# =============================================================================
# Dequantization Functions
# =============================================================================

def _blocks(data, bytes_per_block: int, numel: int, block_size: int = QK) -> np.ndarray:
    n_blocks = numel // block_size
    blocks = np.frombuffer(data, dtype=np.uint8, count=n_blocks * bytes_per_block)
    return blocks.reshape(n_blocks, bytes_per_block)


def _half(blocks: np.ndarray, start: int) -> np.ndarray:
    """fp16 field at byte `start` of every block, as [n_blocks, 1] float32."""
    return blocks[:, start:start + 2].copy().view(np.float16).astype(np.float32)


def _unpack_nibbles(qs: np.ndarray) -> np.ndarray:
    """[n_blocks, 16] packed bytes -> [n_blocks, 32] values (low nibbles first)."""
    low = qs & 0x0F
    high = qs >> 4
    return np.concatenate([low, high], axis=1).astype(np.float32)


def _decode_f32(data, numel: int) -> np.ndarray:
    return np.frombuffer(data, dtype=np.float32, count=numel).copy()


def _decode_f16(data, numel: int) -> np.ndarray:
    return np.frombuffer(data, dtype=np.float16, count=numel).astype(np.float32)


def _decode_bf16(data, numel: int) -> np.ndarray:
    # BF16 is the high half of an F32
    arr = np.frombuffer(data, dtype=np.uint16, count=numel)
    return (arr.astype(np.uint32) << 16).view(np.float32)


def _dequantize_q4_0(data, numel: int) -> np.ndarray:
    blocks = _blocks(data, QUANT_INFO[GGML_TYPE_Q4_0][1], numel)
    d = _half(blocks, 0)
    q = _unpack_nibbles(blocks[:, 2:])
    return ((q - 8.0) * d).reshape(-1)


def _dequantize_q4_1(data, numel: int) -> np.ndarray:
    blocks = _blocks(data, QUANT_INFO[GGML_TYPE_Q4_1][1], numel)
    d = _half(blocks, 0)
    m = _half(blocks, 2)
    q = _unpack_nibbles(blocks[:, 4:])
    return (q * d + m).reshape(-1)


def _dequantize_q8_0(data, numel: int) -> np.ndarray:
    blocks = _blocks(data, QUANT_INFO[GGML_TYPE_Q8_0][1], numel)
    d = _half(blocks, 0)
    q = blocks[:, 2:].copy().view(np.int8).astype(np.float32)
    return (q * d).reshape(-1)


def _k_blocks(data, ggml_type: int, numel: int) -> np.ndarray:
    return _blocks(data, QUANT_INFO[ggml_type][1], numel, QK_K)


def _crumbs(qs: np.ndarray) -> np.ndarray:
    """[n_blocks, 64] bytes of 2-bit fields -> [n_blocks, 256] in strip order."""
    halves = qs.reshape(-1, 2, 1, 32)
    shifts = np.arange(0, 8, 2, dtype=np.uint8).reshape(1, 1, 4, 1)
    return ((halves >> shifts) & 3).reshape(-1, QK_K)


def _scale_min_k4(scales: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Unpack Q4_K/Q5_K scales[12] into eight 6-bit scales and eight 6-bit mins."""
    low, high, extra = scales[:, 0:4], scales[:, 4:8], scales[:, 8:12]
    sc = np.concatenate([low & 63, (extra & 0x0F) | ((low >> 6) << 4)], axis=1)
    mn = np.concatenate([high & 63, (extra >> 4) | ((high >> 6) << 4)], axis=1)
    return sc.astype(np.float32), mn.astype(np.float32)


def _nibble_pairs(qs: np.ndarray) -> np.ndarray:
    """[n_blocks, 128] bytes -> [n_blocks, 8, 32]: each 32-byte run yields its
    low nibbles as one sub-block, then its high nibbles as the next."""
    runs = qs.reshape(-1, 4, 1, 32)
    return np.concatenate([runs & 0x0F, runs >> 4], axis=2).reshape(-1, 8, 32)


def _dequantize_q2_k(data, numel: int) -> np.ndarray:
    blocks = _k_blocks(data, GGML_TYPE_Q2_K, numel)
    scales = blocks[:, 0:16]
    q = _crumbs(blocks[:, 16:80]).reshape(-1, 16, 16).astype(np.float32)
    d = _half(blocks, 80)
    dmin = _half(blocks, 82)

    dl = (d * (scales & 0x0F)).reshape(-1, 16, 1)
    ml = (dmin * (scales >> 4)).reshape(-1, 16, 1)
    return (dl * q - ml).reshape(-1)


def _dequantize_q3_k(data, numel: int) -> np.ndarray:
    blocks = _k_blocks(data, GGML_TYPE_Q3_K, numel)
    hmask = blocks[:, 0:32]
    low = _crumbs(blocks[:, 32:96]).astype(np.int8)
    packed = blocks[:, 96:108]
    d = _half(blocks, 108)

    # Sixteen 6-bit scales: low nibbles from bytes 0-7, top two bits from bytes 8-11
    a, b, top = packed[:, 0:4], packed[:, 4:8], packed[:, 8:12]
    scales = np.concatenate([
        (a & 0x0F) | ((top & 3) << 4),
        (b & 0x0F) | (((top >> 2) & 3) << 4),
        (a >> 4) | (((top >> 4) & 3) << 4),
        (b >> 4) | (((top >> 6) & 3) << 4),
    ], axis=1).astype(np.float32) - 32.0

    # Bit k of hmask[l] is the high bit of element 32k + l; a clear bit subtracts 4
    bits = np.arange(8, dtype=np.uint8).reshape(1, 8, 1)
    high = ((hmask[:, None, :] >> bits) & 1).reshape(-1, QK_K).astype(np.int8)
    q = (low - 4 * (1 - high)).reshape(-1, 16, 16).astype(np.float32)

    dl = (d * scales).reshape(-1, 16, 1)
    return (dl * q).reshape(-1)


def _dequantize_q4_k(data, numel: int) -> np.ndarray:
    blocks = _k_blocks(data, GGML_TYPE_Q4_K, numel)
    d = _half(blocks, 0)
    dmin = _half(blocks, 2)
    sc, mn = _scale_min_k4(blocks[:, 4:16])
    q = _nibble_pairs(blocks[:, 16:144]).astype(np.float32)

    return ((d * sc)[:, :, None] * q - (dmin * mn)[:, :, None]).reshape(-1)


def _dequantize_q5_k(data, numel: int) -> np.ndarray:
    blocks = _k_blocks(data, GGML_TYPE_Q5_K, numel)
    d = _half(blocks, 0)
    dmin = _half(blocks, 2)
    sc, mn = _scale_min_k4(blocks[:, 4:16])
    qh = blocks[:, 16:48]

    # Bit i of qh[l] is the fifth bit of element l of sub-block i
    bits = np.arange(8, dtype=np.uint8).reshape(1, 8, 1)
    high = (qh[:, None, :] >> bits) & 1
    q = (_nibble_pairs(blocks[:, 48:176]) | (high << 4)).astype(np.float32)

    return ((d * sc)[:, :, None] * q - (dmin * mn)[:, :, None]).reshape(-1)


def _dequantize_q6_k(data, numel: int) -> np.ndarray:
    blocks = _k_blocks(data, GGML_TYPE_Q6_K, numel)
    ql = blocks[:, 0:128].reshape(-1, 2, 2, 32)
    qh = blocks[:, 128:192].reshape(-1, 2, 1, 32)
    scales = blocks[:, 192:208].copy().view(np.int8).astype(np.float32)
    d = _half(blocks, 208)

    # Per half: strips 0 and 1 take the low nibbles of ql[0:32] and ql[32:64],
    # strips 2 and 3 their high nibbles; qh supplies bits 4-5 two at a time
    low = np.concatenate([ql & 0x0F, ql >> 4], axis=2)
    shifts = np.arange(0, 8, 2, dtype=np.uint8).reshape(1, 1, 4, 1)
    high = (qh >> shifts) & 3
    q = ((low | (high << 4)).astype(np.int8) - 32).reshape(-1, 16, 16).astype(np.float32)

    dl = (d * scales).reshape(-1, 16, 1)
    return (dl * q).reshape(-1)


DEQUANTIZERS = {
    GGML_TYPE_F32: _decode_f32,
    GGML_TYPE_F16: _decode_f16,
    GGML_TYPE_BF16: _decode_bf16,
    GGML_TYPE_Q4_0: _dequantize_q4_0,
    GGML_TYPE_Q4_1: _dequantize_q4_1,
    GGML_TYPE_Q8_0: _dequantize_q8_0,
    GGML_TYPE_Q2_K: _dequantize_q2_k,
    GGML_TYPE_Q3_K: _dequantize_q3_k,
    GGML_TYPE_Q4_K: _dequantize_q4_k,
    GGML_TYPE_Q5_K: _dequantize_q5_k,
    GGML_TYPE_Q6_K: _dequantize_q6_k,
}


# =============================================================================
# Name Mapping
# =============================================================================

GLOBAL_NAMES = {
    "token_embd.weight": "embed_tokens.weight",
    "output.weight": "lm_head.weight",
    "output_norm.weight": "norm.weight",
}

BLOCK_NAMES = {
    # Attention projections
    "attn_q": "self_attn.q_proj",
    "attn_k": "self_attn.k_proj",
    "attn_v": "self_attn.v_proj",
    "attn_qkv": "self_attn.qkv_proj",
    "attn_output": "self_attn.o_proj",
    # FFN
    "ffn_gate": "mlp.gate_proj",
    "ffn_up": "mlp.up_proj",
    "ffn_down": "mlp.down_proj",
    # Norms
    "attn_norm": "input_layernorm",
    "ffn_norm": "post_attention_layernorm",
}

# Precomputed RoPE frequency divisors (Llama 3.1), folded into the config
ROPE_FREQS_TENSOR = "rope_freqs.weight"

_BLOCK_RE = re.compile(r"blk\.(\d+)\.([a-z_]+)\.(weight|bias)$")


def map_tensor_name(gguf_name: str, architecture: Architecture) -> Optional[str]:
    """Map a GGUF tensor name to its canonical parameter name (None if unknown)."""
    if gguf_name in GLOBAL_NAMES:
        return GLOBAL_NAMES[gguf_name]

    match = _BLOCK_RE.match(gguf_name)
    if match is None:
        return None
    layer_idx, component, kind = match.groups()

    # Phi3 stores gate and up fused under ffn_up
    if component == "ffn_up" and architecture == Architecture.PHI3:
        return f"layers.{layer_idx}.mlp.gate_up_proj.{kind}"

    target = BLOCK_NAMES.get(component)
    if target is None:
        return None
    return f"layers.{layer_idx}.{target}.{kind}"


def reverse_permute(weight: torch.Tensor, n_head: int) -> torch.Tensor:
    """
    Undo the Q/K row interleave llama.cpp applies to Llama-family checkpoints.

    GGUF stores each head's rotary pairs interleaved (x0, x_half, x1, ...);
    the model expects the half-split layout.
    """
    dim = weight.shape[0] // n_head // 2
    rest = weight.shape[1:]
    return weight.reshape(n_head, dim, 2, *rest).swapaxes(2, 1).reshape(weight.shape)


# Architectures converted with the Q/K permutation
PERMUTED_ARCHITECTURES = (Architecture.LLAMA, Architecture.MISTRAL)


# =============================================================================
# Loader
# =============================================================================

class GGUFLoader(ModelLoader):
    """Loads a single-file GGUF model into a ParameterBundle."""

    def __init__(self, location, target):
        super().__init__(location, target)
        self._cached_metadata: Optional[Dict[str, Any]] = None

    def _metadata(self) -> Dict[str, Any]:
        if self._cached_metadata is None:
            try:
                with GGUFReader(self.location.path) as reader:
                    self._cached_metadata = dict(reader.metadata)
            except (OSError, ValueError) as e:
                raise LoadError(f"Failed to read {self.location.path}: {e}") from e
        return self._cached_metadata

    def load_parameters(self) -> ParameterBundle:
        path = self.location.path
        architecture = self.location.architecture
        logger.info(f"Loading GGUF model from {path}")
        start = time.time()

        tensors: Dict[str, torch.Tensor] = {}
        try:
            with GGUFReader(path) as reader:
                metadata = dict(reader.metadata)
                self._cached_metadata = metadata
                infos = reader.tensors

                emb = infos.get("token_embd.weight")
                if emb is None:
                    raise LoadError("GGUF file has no token_embd.weight tensor")

                rope_factors = None
                if ROPE_FREQS_TENSOR in infos:
                    rope_factors = reader.read_tensor(ROPE_FREQS_TENSOR).tolist()

                config = ModelConfig.from_gguf_metadata(
                    metadata,
                    architecture,
                    vocab_size_override=emb.shape[0],
                    attention_bias="blk.0.attn_q.bias" in infos or "blk.0.attn_qkv.bias" in infos,
                    tie_embeddings="output.weight" not in infos,
                    rope_freq_factors=rope_factors,
                )
                logger.info(
                    f"Config: {config.num_layers} layers, {config.hidden_dim} hidden, "
                    f"{config.num_heads} heads, {config.vocab_size} vocab"
                )

                skipped = []
                for name, info in infos.items():
                    if name == ROPE_FREQS_TENSOR:
                        continue
                    param_name = map_tensor_name(name, architecture)
                    if param_name is None:
                        skipped.append(name)
                        continue

                    tensor = reader.read_tensor(name)
                    if architecture in PERMUTED_ARCHITECTURES:
                        if param_name.endswith("q_proj.weight") or param_name.endswith("q_proj.bias"):
                            tensor = reverse_permute(tensor, config.num_heads)
                        elif param_name.endswith("k_proj.weight") or param_name.endswith("k_proj.bias"):
                            tensor = reverse_permute(tensor, config.num_kv_heads)

                    tensors[param_name] = self._convert(tensor)

                if skipped:
                    raise LoadError(f"Unrecognized GGUF tensors: {skipped[:10]}")

            check_shapes(tensors, config)
        except LoadError:
            tensors.clear()
            raise
        except (OSError, ValueError, KeyError, RuntimeError) as e:
            tensors.clear()
            raise LoadError(f"Failed to load {path}: {e}") from e

        elapsed = time.time() - start
        logger.info(f"Loaded {len(tensors)} tensors in {elapsed:.1f}s")
        return ParameterBundle(
            tensors=tensors,
            config=config,
            format=ModelFormat.GGUF,
            target=self.target,
            metadata={"general.name": metadata.get("general.name")},
        )

    def load_tokenizer(self) -> TokenizerAdapter:
        return TokenizerAdapter.from_gguf_metadata(self._metadata())

    def chat_template_source(self) -> Optional[str]:
        return self._metadata().get("tokenizer.chat_template") or None


def inspect_gguf(path: Union[str, Path]) -> Dict[str, Any]:
    """Return GGUF file info without loading tensors."""
    with GGUFReader(path) as reader:
        tensor_info = {
            name: {
                "shape": info.shape,
                "dtype": info.dtype_name,
                "numel": info.numel,
            }
            for name, info in reader.tensors.items()
        }
        return {
            "version": reader.header.version,
            "n_tensors": reader.header.n_tensors,
            "alignment": reader.header.alignment,
            "metadata": reader.header.metadata,
            "tensors": tensor_info,
        }
