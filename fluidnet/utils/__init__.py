"""Shared utilities."""

from .memory import reclaim_memory, tensors_memory_mb

__all__ = ['reclaim_memory', 'tensors_memory_mb']
