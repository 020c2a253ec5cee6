"""
Voxel-box (.vbox) volume sequence files for rendering.

Layout (little-endian):

    int32 xdim | int32 ydim | int32 zdim | int32 frame_count
    float32[xdim * ydim * zdim] per frame, x-major (x, y, z) order

Volumes are held as (z, y, x) tensors everywhere else in FluidNet; the writer
permutes them on the way out.
"""

from pathlib import Path
from typing import Tuple, Union

import numpy as np
import torch


_HEADER_DTYPE = np.dtype('<i4')
_VALUE_DTYPE = np.dtype('<f4')


class VoxelBoxWriter:
    """
    Sequential .vbox writer.

    Usage:
        with VoxelBoxWriter('density.vbox', dims=(128, 128, 128), frame_count=256) as writer:
            for volume in volumes:
                writer.write_volume(volume)
    """

    def __init__(self, path: Union[str, Path], dims: Tuple[int, int, int], frame_count: int):
        """
        Args:
            path: Output file
            dims: (xdim, ydim, zdim)
            frame_count: Number of volumes that will be written
        """
        if len(dims) != 3 or any(int(d) <= 0 for d in dims):
            raise ValueError(f"dims must be three positive sizes, got {dims}")
        if frame_count < 0:
            raise ValueError(f"frame_count must be non-negative, got {frame_count}")
        self.path = Path(path)
        self.dims = tuple(int(d) for d in dims)
        self.frame_count = int(frame_count)
        self.frames_written = 0

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, 'wb')
        self._handle.write(np.array(self.dims + (self.frame_count,), dtype=_HEADER_DTYPE).tobytes())

    def write_volume(self, volume: Union[torch.Tensor, np.ndarray]) -> None:
        """Append one (z, y, x) volume."""
        if self._handle is None:
            raise ValueError(f"{self.path} is already closed")
        if self.frames_written >= self.frame_count:
            raise ValueError(
                f"{self.path} declared {self.frame_count} frames, cannot write more"
            )
        if isinstance(volume, torch.Tensor):
            volume = volume.detach().cpu().numpy()
        volume = np.asarray(volume)
        xdim, ydim, zdim = self.dims
        if volume.shape != (zdim, ydim, xdim):
            raise ValueError(
                f"Volume shape {volume.shape} does not match (z, y, x) = {(zdim, ydim, xdim)}"
            )
        self._handle.write(np.ascontiguousarray(volume.transpose(2, 1, 0), dtype=_VALUE_DTYPE).tobytes())
        self.frames_written += 1

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "VoxelBoxWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_vbox(path: Union[str, Path]) -> np.ndarray:
    """
    Read a .vbox file.

    Returns:
        float32 array of shape (frames_present, xdim, ydim, zdim). A file
        closed early holds fewer frames than its header declares.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"vbox file not found: {path}")
    raw = path.read_bytes()
    header_size = 4 * _HEADER_DTYPE.itemsize
    if len(raw) < header_size:
        raise ValueError(f"{path} is too short to hold a vbox header")
    xdim, ydim, zdim, frame_count = (int(v) for v in np.frombuffer(raw[:header_size], dtype=_HEADER_DTYPE))
    volume_size = xdim * ydim * zdim
    data = np.frombuffer(raw[header_size:], dtype=_VALUE_DTYPE)
    frames = min(frame_count, data.size // volume_size) if volume_size else 0
    return data[:frames * volume_size].reshape(frames, xdim, ydim, zdim).copy()
