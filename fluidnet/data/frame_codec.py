"""
Binary codec for a single simulation frame.

On-disk layout (little-endian, as written by the Manta data generator):

    int32 transpose | int32 nx | int32 ny | int32 nz | float32 time
    float32[nx*ny*nz] Ux | Uy | Uz | pressure | geom

Each plane is flattened in (z, y, x) order. After reshaping to (nz, ny, nx)
the border cells are stripped: x and y always, z only for 3D frames
(nz > 1). A 2D frame keeps its single depth slice.
"""

from pathlib import Path
from typing import BinaryIO, NamedTuple, Union

import numpy as np


DEFAULT_BORDER_WIDTH = 1

_HEADER_INTS = np.dtype('<i4')
_FLOAT = np.dtype('<f4')


class TruncatedFrameError(IOError):
    """Raised when a frame record ends before all planes were read."""


class Frame(NamedTuple):
    """Decoded frame: iterable as (time, p, Ux, Uy, Uz, geom, min_value)."""
    time: float
    pressure: np.ndarray
    velocity_x: np.ndarray
    velocity_y: np.ndarray
    velocity_z: np.ndarray
    geometry: np.ndarray
    min_value: float


def _read_exact(handle: BinaryIO, dtype: np.dtype, count: int, what: str) -> np.ndarray:
    nbytes = dtype.itemsize * count
    raw = handle.read(nbytes)
    if len(raw) != nbytes:
        name = getattr(handle, 'name', '<stream>')
        raise TruncatedFrameError(
            f"Truncated frame record in {name}: expected {nbytes} bytes for {what}, got {len(raw)}"
        )
    return np.frombuffer(raw, dtype=dtype, count=count)


def _crop(field: np.ndarray, border_width: int, crop_z: bool) -> np.ndarray:
    if border_width == 0:
        return field.astype(np.float32)
    b = border_width
    if crop_z:
        field = field[b:-b, b:-b, b:-b]
    else:
        field = field[:, b:-b, b:-b]
    return field.astype(np.float32)


def decode_frame(handle: BinaryIO, border_width: int = DEFAULT_BORDER_WIDTH) -> Frame:
    """
    Decode one frame record from an open binary handle.

    Args:
        handle: Binary file-like object positioned at the start of a record
        border_width: Number of border cells stripped from each side

    Returns:
        Frame with float32 fields of shape (z, y, x) after cropping

    Raises:
        TruncatedFrameError: if the record is shorter than its header claims
        ValueError: if the header is malformed or the crop leaves no cells
    """
    if border_width < 0:
        raise ValueError(f"border_width must be >= 0, got {border_width}")

    _transpose, nx, ny, nz = (int(v) for v in _read_exact(handle, _HEADER_INTS, 4, 'header'))
    if nx <= 0 or ny <= 0 or nz <= 0:
        raise ValueError(f"Invalid frame dimensions nx={nx}, ny={ny}, nz={nz}")
    time = float(_read_exact(handle, _FLOAT, 1, 'time')[0])

    numel = nx * ny * nz
    planes = {}
    for name in ('Ux', 'Uy', 'Uz', 'p', 'geom'):
        planes[name] = _read_exact(handle, _FLOAT, numel, name).reshape(nz, ny, nx)

    crop_z = nz > 1
    for n, axis in ((nx, 'x'), (ny, 'y')) + (((nz, 'z'),) if crop_z else ()):
        if n <= 2 * border_width:
            raise ValueError(
                f"Border width {border_width} leaves no cells along {axis} (size {n})"
            )

    p = _crop(planes['p'], border_width, crop_z)
    ux = _crop(planes['Ux'], border_width, crop_z)
    uy = _crop(planes['Uy'], border_width, crop_z)
    uz = _crop(planes['Uz'], border_width, crop_z)
    geom = _crop(planes['geom'], border_width, crop_z)

    # Uz is meaningless for 2D frames and is left out of the minimum
    if crop_z:
        min_value = float(min(p.min(), ux.min(), uy.min(), uz.min()))
    else:
        min_value = float(min(p.min(), ux.min(), uy.min()))

    return Frame(time, p, ux, uy, uz, geom, min_value)


def load_frame_file(path: Union[str, Path], border_width: int = DEFAULT_BORDER_WIDTH) -> Frame:
    """Open and decode a single frame file."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Couldn't find frame file {path}")
    with open(path, 'rb') as f:
        return decode_frame(f, border_width)


def encode_frame(
    handle: BinaryIO,
    time: float,
    velocity_x: np.ndarray,
    velocity_y: np.ndarray,
    velocity_z: np.ndarray,
    pressure: np.ndarray,
    geometry: np.ndarray,
    transpose: int = 0,
) -> None:
    """
    Write one frame record. All fields must share the shape (nz, ny, nx).

    Used to generate fixtures and synthetic datasets; the simulator that
    produces real training data writes the same layout.
    """
    fields = [np.asarray(f, dtype=np.float32) for f in (velocity_x, velocity_y, velocity_z, pressure, geometry)]
    shape = fields[0].shape
    if len(shape) != 3:
        raise ValueError(f"Frame fields must be 3D (nz, ny, nx), got shape {shape}")
    for f in fields[1:]:
        if f.shape != shape:
            raise ValueError(f"All frame fields must share shape {shape}, got {f.shape}")

    nz, ny, nx = shape
    handle.write(np.array([transpose, nx, ny, nz], dtype=_HEADER_INTS).tobytes())
    handle.write(np.array([time], dtype=_FLOAT).tobytes())
    for f in fields:
        handle.write(np.ascontiguousarray(f, dtype=_FLOAT).tobytes())
