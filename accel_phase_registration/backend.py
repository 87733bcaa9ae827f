# -*- coding: utf-8 -*-
"""
Compute backends for the dense per-voxel kernels.

All filtering, warping, least-squares assembly and smoothing run as
PyTorch tensor operations on one selected backend. A backend is chosen
explicitly: the available platforms are enumerated, the caller picks a
(platform, device) pair and opens it for the duration of a run. An
invalid selection is an error, never a silent fallback to another device.

Platforms are enumerated in a fixed order:
    0. host (CPU, multi-threaded)
    1. cuda (if available)
    2. mps  (Apple Silicon, if available)

Functions
---------
1. list_backends: Enumerate available (platform, device) pairs
2. open_backend: Context manager acquiring a backend for a run
3. get_default_device: Best available device for ad-hoc use
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

import numpy as np
import torch
from numpy.typing import NDArray

from .errors import DeviceError


@dataclass(frozen=True)
class ComputeBackend:
    """Description of one selectable compute device."""
    platform_index: int
    device_index: int
    platform: str
    name: str
    device: torch.device


class Backend:
    """
    An opened compute backend.

    Holds the torch device and the host lane count used while it is open.
    Instances are created by ``open_backend``; tensors created through
    ``tensor`` live on the backend's device.
    """

    def __init__(self, descriptor: ComputeBackend, num_threads: int):
        self.descriptor = descriptor
        self.device = descriptor.device
        self.num_threads = num_threads
        # MPS has no float64 support
        self.reduction_dtype = (
            torch.float32 if descriptor.platform == 'mps' else torch.float64
        )

    def tensor(
        self,
        array: NDArray,
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        """Copy a numpy array to the backend device."""
        return torch.from_numpy(np.array(array)).to(device=self.device, dtype=dtype)

    def numpy(self, tensor: torch.Tensor) -> NDArray:
        """Copy a tensor back to host memory."""
        return tensor.detach().cpu().numpy().copy()

    def __repr__(self) -> str:
        return (f"Backend({self.descriptor.platform}:{self.descriptor.device_index}, "
                f"name={self.descriptor.name!r}, threads={self.num_threads})")


def _mps_available() -> bool:
    return hasattr(torch.backends, 'mps') and torch.backends.mps.is_available()


def list_backends() -> List[ComputeBackend]:
    """
    Enumerate the compute backends available in this process.

    Returns
    -------
    list of ComputeBackend
        The host CPU is always first, with platform index 0. Accelerator
        platforms follow only when present, so platform indices are
        contiguous.
    """
    backends = [
        ComputeBackend(0, 0, 'host', 'cpu', torch.device('cpu')),
    ]
    platform_index = 1

    if torch.cuda.is_available() and torch.cuda.device_count() > 0:
        for device_index in range(torch.cuda.device_count()):
            backends.append(ComputeBackend(
                platform_index, device_index, 'cuda',
                torch.cuda.get_device_name(device_index),
                torch.device(f'cuda:{device_index}'),
            ))
        platform_index += 1

    if _mps_available():
        backends.append(ComputeBackend(
            platform_index, 0, 'mps', 'mps', torch.device('mps'),
        ))

    return backends


def select_backend(platform_index: int, device_index: int) -> ComputeBackend:
    """
    Look up a backend descriptor by its (platform, device) indices.

    Raises
    ------
    DeviceError
        If no such backend exists.
    """
    available = list_backends()
    for backend in available:
        if (backend.platform_index == platform_index
                and backend.device_index == device_index):
            return backend
    choices = ", ".join(
        f"({b.platform_index}, {b.device_index}) {b.platform}:{b.name}" for b in available
    )
    raise DeviceError(
        f"No compute device ({platform_index}, {device_index}). Available: {choices}"
    )


@contextmanager
def open_backend(
    platform_index: int = 0,
    device_index: int = 0,
    num_threads: Optional[int] = None,
) -> Iterator[Backend]:
    """
    Acquire a compute backend for the duration of a ``with`` block.

    Parameters
    ----------
    platform_index : int
        Platform index from ``list_backends``. Default 0 (host).
    device_index : int
        Device index within the platform. Default 0.
    num_threads : int, optional
        Number of host lanes (intra-op threads) used while the backend is
        open. If None, the current torch setting is kept.

    Yields
    ------
    Backend
        The opened backend.

    Raises
    ------
    DeviceError
        If the selection is invalid or the device cannot be initialised.

    Examples
    --------
    >>> with open_backend(0, 0, num_threads=4) as backend:
    ...     t = backend.tensor(volume)
    """
    if num_threads is not None and num_threads < 1:
        raise DeviceError(f"num_threads must be >= 1, got {num_threads}")

    descriptor = select_backend(platform_index, device_index)

    # Probe allocation, fails early for drivers that enumerate but cannot run
    try:
        probe = torch.zeros(8, device=descriptor.device)
        float((probe + 1.0).sum().item())
    except RuntimeError as e:
        raise DeviceError(
            f"Failed to initialise {descriptor.platform} device "
            f"{descriptor.device_index} ({descriptor.name}): {e}"
        ) from e

    previous_threads = torch.get_num_threads()
    if num_threads is not None:
        torch.set_num_threads(num_threads)

    try:
        yield Backend(descriptor, torch.get_num_threads())
    finally:
        torch.set_num_threads(previous_threads)
        if descriptor.platform == 'cuda':
            torch.cuda.empty_cache()


def get_default_device(device: Optional[torch.device] = None) -> torch.device:
    """
    Get the best available PyTorch device.
    
    If no device is specified, attempts to use CUDA if available,
    then MPS, otherwise falls back to CPU. Only used by helpers that run
    outside a registration; the engine always selects its device
    explicitly through ``open_backend``.
    
    Parameters
    ----------
    device : torch.device, optional
        Specific device to use. If None, auto-detect.
    
    Returns
    -------
    torch.device
        The device to use for computations.
    """
    if device is not None:
        return device

    if torch.cuda.is_available():
        return torch.device('cuda:0')

    if _mps_available():
        return torch.device('mps')

    return torch.device('cpu')
