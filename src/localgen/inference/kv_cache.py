"""
KV Cache

Per-layer key/value arena for incremental decoding. Each layer owns a
preallocated buffer of shape [batch, kv_heads, capacity, head_dim] that doubles
when full, never past max_capacity; append() writes new keys/values at the layer's current length and
returns views over everything cached so far.

Every layer must advance by the same number of tokens per decode step. A cache
whose layers disagree on length is a bug in the caller and is reported as
CacheInvariantError rather than tolerated.

Usage:
    cache = KVCache(num_layers=32)
    k_all, v_all = cache.append(layer_idx, k_new, v_new)
    assert cache.length() == tokens_processed
    cache.reset()
"""

from typing import List, Optional, Tuple
import logging

import torch

from ..errors import CacheInvariantError, ModelRuntimeError

logger = logging.getLogger(__name__)

# Time dimension of [batch, kv_heads, time, head_dim]
TIME_DIM = 2


class KVCache:
    """Growable per-layer key/value buffers owned by one in-flight generation."""

    def __init__(self, num_layers: int, initial_capacity: int = 256, max_capacity: Optional[int] = None):
        if num_layers <= 0:
            raise ValueError(f"num_layers must be positive, got {num_layers}")
        if max_capacity is not None and max_capacity <= 0:
            raise ValueError(f"max_capacity must be positive, got {max_capacity}")
        self.num_layers = num_layers
        self.initial_capacity = initial_capacity
        self.max_capacity = max_capacity
        self._keys: List[Optional[torch.Tensor]] = [None] * num_layers
        self._values: List[Optional[torch.Tensor]] = [None] * num_layers
        self._lengths: List[int] = [0] * num_layers

    def _clamp(self, capacity: int, needed: int) -> int:
        if self.max_capacity is not None:
            capacity = min(capacity, self.max_capacity)
        return max(capacity, needed)

    def _allocate(self, layer_idx: int, template: torch.Tensor, needed: int):
        batch, heads, _, head_dim = template.shape
        capacity = self._clamp(self.initial_capacity, needed)
        shape = (batch, heads, capacity, head_dim)
        self._keys[layer_idx] = torch.empty(shape, dtype=template.dtype, device=template.device)
        self._values[layer_idx] = torch.empty(shape, dtype=template.dtype, device=template.device)

    def _grow(self, layer_idx: int, needed: int):
        k_old = self._keys[layer_idx]
        v_old = self._values[layer_idx]
        capacity = k_old.shape[TIME_DIM]
        while capacity < needed:
            capacity *= 2
        capacity = self._clamp(capacity, needed)

        length = self._lengths[layer_idx]
        batch, heads, _, head_dim = k_old.shape
        shape = (batch, heads, capacity, head_dim)

        k_new = torch.empty(shape, dtype=k_old.dtype, device=k_old.device)
        v_new = torch.empty(shape, dtype=v_old.dtype, device=v_old.device)
        k_new[:, :, :length] = k_old[:, :, :length]
        v_new[:, :, :length] = v_old[:, :, :length]
        self._keys[layer_idx] = k_new
        self._values[layer_idx] = v_new
        logger.debug(f"KV cache layer {layer_idx} grown to capacity {capacity}")

    def append(
        self,
        layer_idx: int,
        keys: torch.Tensor,
        values: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Extend one layer along the time dimension.

        Args:
            layer_idx: Layer index in [0, num_layers)
            keys: [batch, kv_heads, new_tokens, head_dim]
            values: same shape as keys

        Returns:
            (keys, values) views covering every cached position for this layer
        """
        if not 0 <= layer_idx < self.num_layers:
            raise ModelRuntimeError(f"Layer index {layer_idx} out of range [0, {self.num_layers})")
        if keys.dim() != 4 or keys.shape != values.shape:
            raise ModelRuntimeError(
                f"KV shape mismatch: keys {tuple(keys.shape)} vs values {tuple(values.shape)}"
            )

        start = self._lengths[layer_idx]
        new_tokens = keys.shape[TIME_DIM]
        end = start + new_tokens
        if self.max_capacity is not None and end > self.max_capacity:
            raise ModelRuntimeError(
                f"KV cache layer {layer_idx} would hold {end} positions, limit is {self.max_capacity}"
            )

        if self._keys[layer_idx] is None:
            self._allocate(layer_idx, keys, end)
        else:
            stored = self._keys[layer_idx]
            if (
                stored.shape[0] != keys.shape[0]
                or stored.shape[1] != keys.shape[1]
                or stored.shape[3] != keys.shape[3]
            ):
                raise ModelRuntimeError(
                    f"KV shape mismatch on layer {layer_idx}: cached "
                    f"{tuple(stored.shape)}, new {tuple(keys.shape)}"
                )
            if stored.device != keys.device:
                raise ModelRuntimeError(
                    f"KV device mismatch on layer {layer_idx}: {stored.device} vs {keys.device}"
                )
            if end > stored.shape[TIME_DIM]:
                self._grow(layer_idx, end)

        k_buf = self._keys[layer_idx]
        v_buf = self._values[layer_idx]
        k_buf[:, :, start:end] = keys.to(k_buf.dtype)
        v_buf[:, :, start:end] = values.to(v_buf.dtype)
        self._lengths[layer_idx] = end

        return k_buf[:, :, :end], v_buf[:, :, :end]

    def layer_length(self, layer_idx: int) -> int:
        return self._lengths[layer_idx]

    def length(self) -> int:
        """Tokens processed so far. Raises CacheInvariantError on per-layer skew."""
        first = self._lengths[0]
        if any(n != first for n in self._lengths):
            raise CacheInvariantError(f"KV cache layer lengths diverged: {self._lengths}")
        return first

    def check_consistent(self, expected: Optional[int] = None) -> int:
        """Assert all layers share one length (and that it equals `expected`)."""
        length = self.length()
        if expected is not None and length != expected:
            raise CacheInvariantError(
                f"KV cache length {length} does not match expected {expected}"
            )
        return length

    def reset(self):
        """Drop all cached keys/values and release the buffers."""
        self._keys = [None] * self.num_layers
        self._values = [None] * self.num_layers
        self._lengths = [0] * self.num_layers

    @property
    def capacity(self) -> int:
        buf = self._keys[0]
        return 0 if buf is None else buf.shape[TIME_DIM]

    def __len__(self) -> int:
        return self.length()

    def __repr__(self) -> str:
        return f"KVCache(num_layers={self.num_layers}, length={self._lengths[0]}, capacity={self.capacity})"
