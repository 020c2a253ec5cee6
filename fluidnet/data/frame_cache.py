"""
On-disk frame cache.

3D runs are too large to hold in memory, so every validated frame is written
to its own cache entry at dataset construction time and read back on demand
when batches are built:

    <cache_root>/<run_dir>/frame_cache_000000.pt
    <cache_root>/<run_dir>/frame_cache_000001.pt
    ...

Entry layout (torch.save of plain containers, loadable with weights_only):

```python
{
    'version': 1,
    'time': 0.25,
    'fields': {
        'p':  {'tag': 'raw', 'data': Tensor(z, y, x)},
        'Ux': {'tag': 'quantized', 'shape': [z, y, x], 'offset': ..., 'step': ...,
               'payload': Tensor(uint8)},
        ...
    },
}
```

Every field carries its own tag, so entries written with and without
compression load the same way regardless of the current CacheConfig.
Entries are immutable once written and are never cleaned up automatically.
"""

import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import torch

from ..config import CacheConfig
from .fields import FieldKey


CACHE_ENTRY_VERSION = 1
TAG_RAW = 'raw'
TAG_QUANTIZED = 'quantized'


@dataclass
class CachedFrame:
    """A frame's field-set as read back from the cache."""
    fields: Dict[FieldKey, torch.Tensor]
    time: float

    def __getitem__(self, key: FieldKey) -> torch.Tensor:
        return self.fields[key]


def compress_field(tensor: torch.Tensor, accuracy: float) -> dict:
    """
    Quantize a field to a uniform step of 2 * accuracy and zlib-pack it.

    The absolute reconstruction error is bounded by accuracy (plus float32
    rounding of the reconstructed value). NaN and inf cells are stored
    verbatim next to the payload and restored exactly.
    """
    values = tensor.detach().cpu().to(torch.float64).contiguous()
    step = 2.0 * accuracy
    finite = torch.isfinite(values)
    offset = float(values[finite].min()) if finite.any() else 0.0
    quantized = torch.round((torch.where(finite, values, torch.full_like(values, offset)) - offset) / step)
    packed = zlib.compress(quantized.to(torch.int64).numpy().tobytes())
    nonfinite_index = torch.nonzero(~finite.flatten()).flatten()
    return {
        'tag': TAG_QUANTIZED,
        'shape': list(values.shape),
        'offset': offset,
        'step': step,
        'payload': torch.from_numpy(np.frombuffer(packed, dtype=np.uint8).copy()),
        'nonfinite_index': nonfinite_index,
        'nonfinite_values': values.flatten()[nonfinite_index].to(torch.float32),
    }


def decompress_field(record: dict) -> torch.Tensor:
    """Inverse of compress_field."""
    raw = zlib.decompress(record['payload'].numpy().tobytes())
    quantized = np.frombuffer(raw, dtype=np.int64).reshape(record['shape'])
    values = (record['offset'] + quantized.astype(np.float64) * record['step']).astype(np.float32)
    if 'nonfinite_index' in record:
        values.reshape(-1)[record['nonfinite_index'].numpy()] = record['nonfinite_values'].numpy()
    return torch.from_numpy(values)


def _encode_field(tensor: torch.Tensor, config: CacheConfig) -> dict:
    # Clone so the entry owns its storage: saving a slice of the run tensor
    # would otherwise serialize the whole run.
    value = tensor.detach().cpu().to(torch.float32).clone().contiguous()
    if config.compress and value.dim() > 1:
        return compress_field(value, config.accuracy)
    return {'tag': TAG_RAW, 'data': value}


def _decode_field(record: dict) -> torch.Tensor:
    tag = record.get('tag')
    if tag == TAG_RAW:
        return record['data']
    if tag == TAG_QUANTIZED:
        return decompress_field(record)
    raise ValueError(f"Unknown cache field tag: {tag!r}")


class FrameCache:
    """
    Per-(run, frame) cache of validated frame field-sets.

    Reads and writes of different entries are independent, and entries are
    never rewritten, so concurrent readers need no locking.

    Usage:
        cache = FrameCache(config.data.cache_root('tr'), CacheConfig(compress=True))
        cache.store('run_000', 0, {FieldKey.P: p, ...}, time=0.1)
        frame = cache.load('run_000', 0)
        p = frame[FieldKey.P]
    """

    def __init__(
        self,
        cache_root: Union[str, Path],
        config: Optional[CacheConfig] = None,
        verbose: bool = False,
    ):
        self.cache_root = Path(cache_root)
        self.config = config or CacheConfig()
        self.verbose = verbose

    def path_for(self, run_dir: str, frame_index: int) -> Path:
        """Cache entry path for a (run directory, frame index) key."""
        return self.cache_root / run_dir / f'frame_cache_{frame_index:06d}.pt'

    def exists(self, run_dir: str, frame_index: int) -> bool:
        return self.path_for(run_dir, frame_index).is_file()

    def store(
        self,
        run_dir: str,
        frame_index: int,
        fields: Dict[FieldKey, torch.Tensor],
        time: float = 0.0,
    ) -> Path:
        """Write one cache entry and return its path."""
        path = self.path_for(run_dir, frame_index)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = {
            'version': CACHE_ENTRY_VERSION,
            'time': float(time),
            'fields': {key.value: _encode_field(value, self.config) for key, value in fields.items()},
        }
        torch.save(entry, path)
        return path

    def store_run(
        self,
        run_dir: str,
        run_fields: Dict[FieldKey, torch.Tensor],
        times: torch.Tensor,
    ) -> int:
        """
        Split run-level tensors (frame_count, z, y, x) into one entry per frame.

        Returns:
            Number of entries written
        """
        num_frames = times.shape[0]
        for key, value in run_fields.items():
            if value.shape[0] != num_frames:
                raise ValueError(
                    f"Field {key.value} has {value.shape[0]} frames, expected {num_frames}"
                )

        for frame_index in range(num_frames):
            frame_fields = {key: value[frame_index] for key, value in run_fields.items()}
            self.store(run_dir, frame_index, frame_fields, float(times[frame_index]))

        if self.verbose:
            mode = f"compressed, accuracy={self.config.accuracy:g}" if self.config.compress else "raw"
            print(f"[FrameCache] Cached {num_frames} frames of {run_dir} ({mode})")
        return num_frames

    def load(self, run_dir: str, frame_index: int) -> CachedFrame:
        """Read one cache entry back, decompressing fields as needed."""
        path = self.path_for(run_dir, frame_index)
        if not path.is_file():
            raise FileNotFoundError(f"Frame cache entry not found: {path}")
        entry = torch.load(path, map_location='cpu', weights_only=True)
        fields = {
            FieldKey(name): _decode_field(record) for name, record in entry['fields'].items()
        }
        return CachedFrame(fields=fields, time=float(entry.get('time', 0.0)))
