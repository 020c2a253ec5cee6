"""
Explicit memory reclamation.

Large 3D volumes make peak memory sensitive to when the garbage collector
runs, so the pipeline reclaims explicitly at fixed points:
- once per run while scanning a dataset
- before allocating batch buffers
- once per simulation step

Usage:
    from fluidnet.utils.memory import reclaim_memory

    for frame in range(num_frames):
        reclaim_memory()
        ...
"""

import gc
from typing import Iterable

import torch


def reclaim_memory(cuda: bool = True) -> None:
    """Run the garbage collector and release cached CUDA blocks."""
    gc.collect()
    if cuda and torch.cuda.is_available():
        torch.cuda.empty_cache()


def tensors_memory_mb(tensors: Iterable[torch.Tensor]) -> float:
    """Total storage of a collection of tensors in MB."""
    return sum(t.numel() * t.element_size() for t in tensors) / (1024 * 1024)
