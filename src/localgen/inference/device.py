"""
Backend Selection

Chooses the compute device and numeric precision for a pipeline run.

Default order: CUDA (bfloat16, or float16 without bf16 support), then Apple
MPS (float32), then CPU (float32). Explicit requests are honored or rejected
with DeviceError - there is no silent fallback.

Usage:
    target = select_backend()                      # best available
    target = select_backend("cuda:1", "float16")   # explicit
"""

from dataclasses import dataclass
from typing import Optional, Union
import logging

import torch

from ..errors import DeviceError

logger = logging.getLogger(__name__)


DTYPE_NAMES = {
    "float32": torch.float32,
    "fp32": torch.float32,
    "float16": torch.float16,
    "fp16": torch.float16,
    "half": torch.float16,
    "bfloat16": torch.bfloat16,
    "bf16": torch.bfloat16,
}


@dataclass(frozen=True)
class ExecutionTarget:
    """Concrete device + dtype every tensor and activation lives on."""

    device: torch.device
    dtype: torch.dtype

    @property
    def kind(self) -> str:
        return self.device.type

    def __str__(self) -> str:
        return f"{self.device} ({str(self.dtype).replace('torch.', '')})"


def cuda_available() -> bool:
    return torch.cuda.is_available()


def mps_available() -> bool:
    mps = getattr(torch.backends, "mps", None)
    return mps is not None and mps.is_available()


def _default_dtype(device: torch.device) -> torch.dtype:
    if device.type == "cuda":
        with torch.cuda.device(device):
            if torch.cuda.is_bf16_supported():
                return torch.bfloat16
        return torch.float16
    return torch.float32


def _parse_device(device: Union[str, torch.device]) -> torch.device:
    try:
        parsed = torch.device(device)
    except (RuntimeError, TypeError) as e:
        raise DeviceError(f"Unknown device: {device!r}") from e

    if parsed.type == "cpu":
        return parsed

    if parsed.type == "cuda":
        if not cuda_available():
            raise DeviceError(f"CUDA device requested ({device}) but CUDA is not available")
        index = parsed.index if parsed.index is not None else 0
        count = torch.cuda.device_count()
        if index >= count:
            raise DeviceError(f"CUDA device index {index} out of range ({count} device(s))")
        return torch.device("cuda", index)

    if parsed.type == "mps":
        if not mps_available():
            raise DeviceError("MPS device requested but Metal is not available")
        return torch.device("mps")

    raise DeviceError(f"Unsupported device type: {parsed.type}")


def _parse_dtype(dtype: Union[str, torch.dtype], device: torch.device) -> torch.dtype:
    if isinstance(dtype, torch.dtype):
        resolved = dtype
    else:
        key = str(dtype).lower()
        if key == "auto":
            return _default_dtype(device)
        if key not in DTYPE_NAMES:
            raise DeviceError(f"Unsupported dtype: {dtype!r}")
        resolved = DTYPE_NAMES[key]

    if resolved not in (torch.float32, torch.float16, torch.bfloat16):
        raise DeviceError(f"Unsupported dtype: {resolved}")

    if resolved == torch.bfloat16 and device.type == "cuda":
        with torch.cuda.device(device):
            if not torch.cuda.is_bf16_supported():
                raise DeviceError(f"bfloat16 is not supported on {device}")

    return resolved


def autodetect_device() -> torch.device:
    """Best available accelerator, else CPU."""
    if cuda_available():
        return torch.device("cuda", 0)
    if mps_available():
        return torch.device("mps")
    return torch.device("cpu")


def select_backend(
    device: Optional[Union[str, torch.device]] = None,
    dtype: Optional[Union[str, torch.dtype]] = None,
) -> ExecutionTarget:
    """
    Resolve device/precision hints to an ExecutionTarget.

    Args:
        device: "cpu", "cuda", "cuda:N", "mps", a torch.device, or None (autodetect)
        dtype: "float32", "float16", "bfloat16", "auto", a torch.dtype, or None (auto)

    Raises:
        DeviceError: requested device or dtype is unavailable
    """
    resolved_device = autodetect_device() if device is None else _parse_device(device)
    resolved_dtype = (
        _default_dtype(resolved_device) if dtype is None
        else _parse_dtype(dtype, resolved_device)
    )

    target = ExecutionTarget(device=resolved_device, dtype=resolved_dtype)
    logger.info(f"Selected backend: {target}")
    return target
