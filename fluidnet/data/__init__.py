"""
FluidNet Data Pipeline.

Provides:
- Frame codec for the simulator's binary frame files
- FluidDataset: run scanning, divergence validation and frame caching
- SampleIndex: flattened (run, frame) addressing
- BatchBuilder: batch filling with flip augmentation
- compute_statistics: threaded per-sample statistics
"""

from .batch import (
    AppliedAugmentation,
    BatchBuilder,
    allocate_batch,
    perform_flips,
)
from .dataset import (
    FluidDataset,
    RunInfo,
    Sample,
    SampleIndex,
)
from .divergence import velocity_divergence
from .fields import BatchKey, FieldKey
from .frame_cache import CachedFrame, FrameCache
from .frame_codec import (
    Frame,
    TruncatedFrameError,
    decode_frame,
    encode_frame,
    load_frame_file,
)
from .statistics import (
    DataStatistics,
    RunningTotals,
    compute_statistics,
    plot_statistics,
)

__all__ = [
    # Codec
    'Frame',
    'TruncatedFrameError',
    'decode_frame',
    'encode_frame',
    'load_frame_file',
    # Dataset
    'FluidDataset',
    'RunInfo',
    'Sample',
    'SampleIndex',
    'FrameCache',
    'CachedFrame',
    'FieldKey',
    'BatchKey',
    'velocity_divergence',
    # Batching
    'AppliedAugmentation',
    'BatchBuilder',
    'allocate_batch',
    'perform_flips',
    # Statistics
    'DataStatistics',
    'RunningTotals',
    'compute_statistics',
    'plot_statistics',
]
