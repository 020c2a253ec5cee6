"""
Fluid Dataset Implementation for FluidNet.

This module provides:
1. FluidDataset: scans simulation runs, validates them, caches every frame
   on disk and exposes the flattened sample index
2. SampleIndex: stable (run, frame) addressing over all validated runs
3. RunInfo / Sample containers

Directory layout:

    <data_dir>/<dataset>/<prefix>/
        run_000/
            U_000000.bin  U_000000_divergent.bin
            U_000001.bin  U_000001_divergent.bin
            ...
        run_001/
            ...

Each "main" file holds the divergence-free target frame; its "_divergent"
twin holds the divergent input frame. Files pair up by numeric suffix.

CRITICAL: Some Manta runs go unstable without fully blowing up. The
divergence of the TARGET velocity is checked per run, and a run whose
maximum divergence exceeds the threshold is dropped wholesale. The target
velocity comes from a MAC grid -> central conversion, so it always carries a
small amount of divergence; the threshold is deliberately relaxed.
"""

import json
import math
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from torch.utils.data import Dataset
from tqdm import tqdm

from ..config import AugmentParams, CacheConfig, DataConfig
from ..utils.memory import reclaim_memory, tensors_memory_mb
from .batch import AppliedAugmentation, BatchBuilder, allocate_batch
from .divergence import DivergenceFn, velocity_divergence
from .fields import (
    BatchKey,
    DIVERGENT_FILE_KEYS,
    FieldKey,
    MAIN_FILE_KEYS,
    TARGET_VELOCITY_KEYS,
)
from .frame_cache import FrameCache
from .frame_codec import load_frame_file
from .statistics import DataStatistics, compute_statistics


INDEX_FORMAT_VERSION = 1

_MAIN_FILE_RE = re.compile(r'^.*?(\d+)\.bin$')
_DIVERGENT_FILE_RE = re.compile(r'^.*?(\d+)_divergent\.bin$')


@dataclass(frozen=True)
class RunInfo:
    """One validated simulation run."""
    dir: str
    num_frames: int
    xdim: int
    ydim: int
    zdim: int

    @property
    def dims(self) -> Tuple[int, int, int]:
        return (self.xdim, self.ydim, self.zdim)


class Sample(NamedTuple):
    """Fields of one cached frame. Uz / UzDiv are None for 2D datasets."""
    p: torch.Tensor
    Ux: torch.Tensor
    Uy: torch.Tensor
    Uz: Optional[torch.Tensor]
    geom: torch.Tensor
    pDiv: torch.Tensor
    UxDiv: torch.Tensor
    UyDiv: torch.Tensor
    UzDiv: Optional[torch.Tensor]


class SampleIndex:
    """
    Flattened, immutable list of (run, frame) pairs.

    Order is run discovery order, then frame order within the run. This is
    the addressing scheme used by every consumer (batching, statistics).
    """

    def __init__(self, pairs: np.ndarray):
        pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2).copy()
        pairs.setflags(write=False)
        self._pairs = pairs

    @classmethod
    def from_runs(cls, runs: Sequence[RunInfo]) -> "SampleIndex":
        pairs = [(r, f) for r, run in enumerate(runs) for f in range(run.num_frames)]
        return cls(np.array(pairs, dtype=np.int64).reshape(-1, 2))

    def size(self) -> int:
        return int(self._pairs.shape[0])

    def __len__(self) -> int:
        return self.size()

    def resolve(self, sample_index: int) -> Tuple[int, int]:
        """Map a sample index to its (run index, frame index)."""
        sample_index = int(sample_index)
        if not 0 <= sample_index < self.size():
            raise IndexError(
                f"Sample index {sample_index} out of range [0, {self.size()})"
            )
        run_index, frame_index = self._pairs[sample_index]
        return int(run_index), int(frame_index)

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        for run_index, frame_index in self._pairs:
            yield int(run_index), int(frame_index)

    @property
    def pairs(self) -> np.ndarray:
        """Read-only (N, 2) array view of the index."""
        return self._pairs


def _frame_number(path: Path, pattern: re.Pattern) -> int:
    return int(pattern.match(path.name).group(1))


def list_frame_files(run_path: Path) -> Tuple[List[Path], List[Path]]:
    """
    List the paired main / divergent frame files of a run, ordered by
    numeric suffix.

    Raises:
        ValueError: if the counts differ or the suffixes don't pair up
    """
    main_files = sorted(
        (p for p in run_path.iterdir() if p.is_file() and _MAIN_FILE_RE.match(p.name)),
        key=lambda p: _frame_number(p, _MAIN_FILE_RE),
    )
    div_files = sorted(
        (p for p in run_path.iterdir() if p.is_file() and _DIVERGENT_FILE_RE.match(p.name)),
        key=lambda p: _frame_number(p, _DIVERGENT_FILE_RE),
    )

    if len(main_files) != len(div_files):
        raise ValueError(
            f"Main file count ({len(main_files)}) not equal to divergent file count "
            f"({len(div_files)}) in {run_path}"
        )
    main_numbers = [_frame_number(p, _MAIN_FILE_RE) for p in main_files]
    div_numbers = [_frame_number(p, _DIVERGENT_FILE_RE) for p in div_files]
    if main_numbers != div_numbers:
        raise ValueError(f"Main and divergent frame numbers do not pair up in {run_path}")

    return main_files, div_files


class FluidDataset(Dataset):
    """
    Validated multi-run fluid dataset backed by an on-disk frame cache.

    Construction scans every run directory, decodes all frame pairs, drops
    runs whose target divergence is too high, writes the accepted frames to
    the FrameCache and builds the SampleIndex. After that, samples are read
    lazily from the cache.

    Attributes:
        runs: Validated runs (rejected runs never appear here)
        samples: SampleIndex over all validated frames
        min_value: Minimum over p / U of all accepted frames
        xdim, ydim, zdim: Shared spatial dimensions (None if no runs)
        two_dim: True when zdim == 1

    Usage:
        config = DataConfig(data_dir='../data/datasets', dataset='output_current_3d_model_sphere')
        dataset = FluidDataset(config, prefix='tr')
        batch = dataset.allocate_batch(config.batch_size)
        aug = dataset.create_batch(batch, [0, 1, 2], augment=True, params=AugmentParams(on=True))
    """

    def __init__(
        self,
        config: DataConfig,
        prefix: str,
        cache_config: Optional[CacheConfig] = None,
        divergence_fn: DivergenceFn = velocity_divergence,
        verbose: bool = True,
        scan: bool = True,
    ):
        """
        Initialize FluidDataset.

        Args:
            config: Dataset location and loading parameters
            prefix: Split subdirectory (e.g. 'tr' or 'te')
            cache_config: Frame cache options (compression off by default)
            divergence_fn: Divergence operator used for run validation
            verbose: Print progress and rejected runs
            scan: Scan and cache the runs now. from_index() passes False.
        """
        self.config = config
        self.prefix = prefix
        self.cache_config = cache_config or CacheConfig()
        self.divergence_fn = divergence_fn
        self.verbose = verbose
        self.cache = FrameCache(config.cache_root(prefix), self.cache_config, verbose=False)

        self.runs: List[RunInfo] = []
        self.samples = SampleIndex.from_runs([])
        self.min_value = math.inf
        self.xdim: Optional[int] = None
        self.ydim: Optional[int] = None
        self.zdim: Optional[int] = None
        self.two_dim: Optional[bool] = None
        self._builder = None

        if scan:
            self._scan_runs()

    # ------------------------------------------------------------------
    # Run scanning and validation
    # ------------------------------------------------------------------

    @property
    def base_dir(self) -> Path:
        return self.config.base_dir(self.prefix)

    def _scan_runs(self) -> None:
        base_dir = self.base_dir
        if not base_dir.is_dir():
            raise FileNotFoundError(f"Dataset directory not found: {base_dir}")
        run_dirs = sorted(p.name for p in base_dir.iterdir() if p.is_dir())
        if not run_dirs:
            raise FileNotFoundError(f"Couldn't find any run directories in {base_dir}")

        if self.verbose:
            print(f"[FluidDataset] Scanning {len(run_dirs)} runs in {base_dir}")

        runs: List[RunInfo] = []
        min_value = math.inf
        accepted_mb = 0.0
        iterator = tqdm(run_dirs, desc=f"Loading {self.prefix}") if self.verbose else run_dirs
        for i, run_dir in enumerate(iterator):
            fields, times, run_min = self._load_run(base_dir / run_dir)
            max_div = self._max_target_divergence(fields)

            if max_div > self.config.div_threshold:
                if self.verbose:
                    print(f"WARNING: run {run_dir} (i = {i}) has a sample with max(div) = {max_div:.4g} "
                          f"which is above the allowable threshold ({self.config.div_threshold:g})")
                    print("  --> Removing run from the dataset...")
            else:
                min_value = min(min_value, run_min)
                accepted_mb += tensors_memory_mb(fields.values())
                self.cache.store_run(run_dir, fields, times)
                zdim, ydim, xdim = fields[FieldKey.P].shape[1:]
                runs.append(RunInfo(
                    dir=run_dir,
                    num_frames=int(times.shape[0]),
                    xdim=int(xdim),
                    ydim=int(ydim),
                    zdim=int(zdim),
                ))

            # Release the run tensors before loading the next run
            del fields, times
            reclaim_memory()

        self._set_runs(runs, min_value)

        if self.verbose:
            rejected = len(run_dirs) - len(self.runs)
            print(f"[FluidDataset] Accepted {len(self.runs)} runs ({rejected} rejected), "
                  f"{self.nsamples()} samples, dims (x, y, z) = ({self.xdim}, {self.ydim}, {self.zdim}), "
                  f"{accepted_mb:.2f} MB of decoded fields")

    def _load_run(self, run_path: Path) -> Tuple[Dict[FieldKey, torch.Tensor], torch.Tensor, float]:
        """Decode every (main, divergent) frame pair of one run."""
        main_files, div_files = list_frame_files(run_path)
        ignore = self.config.ignore_frames
        if len(main_files) <= ignore:
            raise ValueError(
                f"Not enough files in sub-dir {run_path}: {len(main_files)} frames, "
                f"ignore_frames = {ignore}"
            )
        main_files = main_files[ignore:]
        div_files = div_files[ignore:]
        num_frames = len(main_files)
        border = self.config.border_width

        fields: Dict[FieldKey, torch.Tensor] = {}
        times = torch.empty(num_frames, dtype=torch.float32)
        data_min = math.inf
        shape = None

        for f, (main_path, div_path) in enumerate(zip(main_files, div_files)):
            time, p, ux, uy, uz, geom, min_value = load_frame_file(main_path, border)
            _, p_div, ux_div, uy_div, uz_div, _, _ = load_frame_file(div_path, border)
            data_min = min(data_min, min_value)

            if shape is None:
                shape = p.shape
                for key in MAIN_FILE_KEYS + DIVERGENT_FILE_KEYS:
                    fields[key] = torch.empty((num_frames,) + shape, dtype=torch.float32)
            if p.shape != shape or p_div.shape != shape:
                raise ValueError(
                    f"Frame {main_path.name} of {run_path.name} has shape {p.shape} "
                    f"(divergent {p_div.shape}), expected {shape}"
                )

            values = {
                FieldKey.P: p, FieldKey.UX: ux, FieldKey.UY: uy, FieldKey.UZ: uz,
                FieldKey.GEOM: geom, FieldKey.P_DIV: p_div, FieldKey.UX_DIV: ux_div,
                FieldKey.UY_DIV: uy_div, FieldKey.UZ_DIV: uz_div,
            }
            for key, value in values.items():
                fields[key][f].copy_(torch.from_numpy(value))
            times[f] = time

        return fields, times, data_min

    def _max_target_divergence(self, fields: Dict[FieldKey, torch.Tensor]) -> float:
        """Maximum divergence of the target velocity over all cells and frames."""
        u_target = torch.stack([fields[key] for key in TARGET_VELOCITY_KEYS], dim=1)
        div = self.divergence_fn(u_target, fields[FieldKey.GEOM])
        return float(div.max())

    def _set_runs(self, runs: List[RunInfo], min_value: float) -> None:
        """Install the validated runs and derive dims and the sample index."""
        if runs:
            xdim, ydim, zdim = runs[0].dims
            for run in runs:
                if run.dims != (xdim, ydim, zdim):
                    raise ValueError(
                        f"Run {run.dir} has dims (x, y, z) = {run.dims}, expected {(xdim, ydim, zdim)}"
                    )
            self.xdim, self.ydim, self.zdim = xdim, ydim, zdim
            self.two_dim = zdim == 1
        else:
            self.xdim = self.ydim = self.zdim = None
            self.two_dim = None

        self.runs = list(runs)
        self.min_value = min_value
        self.samples = SampleIndex.from_runs(self.runs)
        self._builder = None

    # ------------------------------------------------------------------
    # Sample access
    # ------------------------------------------------------------------

    def nsamples(self) -> int:
        """Total number of addressable (run, frame) samples."""
        return self.samples.size()

    def __len__(self) -> int:
        return self.nsamples()

    def _check_run_frame(self, run_index: int, frame_index: int) -> RunInfo:
        if not 0 <= run_index < len(self.runs):
            raise IndexError(f"Run index {run_index} out of range [0, {len(self.runs)})")
        run = self.runs[run_index]
        if not 0 <= frame_index < run.num_frames:
            raise IndexError(
                f"Frame index {frame_index} out of range [0, {run.num_frames}) for run {run.dir}"
            )
        return run

    def load_frame(self, run_index: int, frame_index: int):
        """Read the cached field-set of one frame."""
        run = self._check_run_frame(run_index, frame_index)
        return self.cache.load(run.dir, frame_index)

    def get_sample(self, run_index: int, frame_index: int) -> Sample:
        """Return all fields of one frame (z velocity omitted for 2D data)."""
        frame = self.load_frame(run_index, frame_index)
        fields = frame.fields
        return Sample(
            p=fields[FieldKey.P],
            Ux=fields[FieldKey.UX],
            Uy=fields[FieldKey.UY],
            Uz=None if self.two_dim else fields[FieldKey.UZ],
            geom=fields[FieldKey.GEOM],
            pDiv=fields[FieldKey.P_DIV],
            UxDiv=fields[FieldKey.UX_DIV],
            UyDiv=fields[FieldKey.UY_DIV],
            UzDiv=None if self.two_dim else fields[FieldKey.UZ_DIV],
        )

    def __getitem__(self, idx: int) -> Dict[BatchKey, torch.Tensor]:
        """One un-augmented sample as (C, D, H, W) tensors keyed by BatchKey."""
        self.samples.resolve(idx)
        batch = allocate_batch(1, self.zdim, self.ydim, self.xdim, self.two_dim)
        BatchBuilder(self).fill(batch, [idx])
        return {key: value[0] for key, value in batch.items()}

    # ------------------------------------------------------------------
    # Batching and statistics
    # ------------------------------------------------------------------

    def allocate_batch(self, batch_size: int) -> Dict[BatchKey, torch.Tensor]:
        """Allocate zero-filled batch buffers matching this dataset."""
        if not self.runs:
            raise ValueError("Cannot allocate batch buffers for an empty dataset")
        reclaim_memory()
        return allocate_batch(batch_size, self.zdim, self.ydim, self.xdim, self.two_dim)

    def create_batch(
        self,
        batch: Dict[BatchKey, torch.Tensor],
        sample_list: Sequence[int],
        augment: bool = False,
        params: Optional[AugmentParams] = None,
    ) -> AppliedAugmentation:
        """Fill preallocated batch buffers in place (see BatchBuilder.fill)."""
        if self._builder is None:
            self._builder = BatchBuilder(self)
        return self._builder.fill(batch, sample_list, augment=augment, params=params)

    def calc_data_statistics(
        self,
        batch_size: Optional[int] = None,
        num_workers: Optional[int] = None,
        augment: bool = False,
        params: Optional[AugmentParams] = None,
    ) -> DataStatistics:
        """Per-sample mean / std / L2 of every batch key (see compute_statistics)."""
        return compute_statistics(
            self,
            batch_size=batch_size or self.config.batch_size,
            num_workers=self.config.num_data_threads if num_workers is None else num_workers,
            divergence_fn=self.divergence_fn,
            augment=augment,
            params=params,
            verbose=self.verbose,
        )

    # ------------------------------------------------------------------
    # Inspection and persistence
    # ------------------------------------------------------------------

    def max_velocity_per_frame(self) -> torch.Tensor:
        """Max |U| of the target velocity for every sample, in sample order."""
        keys = TARGET_VELOCITY_KEYS[:2] if self.two_dim else TARGET_VELOCITY_KEYS
        values = torch.zeros(self.nsamples(), dtype=torch.float32)
        for i, (run_index, frame_index) in enumerate(self.samples):
            frame = self.load_frame(run_index, frame_index)
            values[i] = max(float(frame[key].abs().max()) for key in keys)
        return values

    def save_sample_to_matlab(self, path: Union[str, Path], run_index: int, frame_index: int) -> Path:
        """Export one frame to a MATLAB .mat file (squeezed float64 arrays)."""
        from scipy.io import savemat

        sample = self.get_sample(run_index, frame_index)
        data = {
            name: value.double().squeeze().numpy()
            for name, value in sample._asdict().items()
            if value is not None
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        savemat(str(path), data)
        return path

    def save_index(self, path: Union[str, Path]) -> Path:
        """Persist the validated run list so later processes can skip the scan."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        meta = {
            'version': INDEX_FORMAT_VERSION,
            'dataset': self.config.dataset,
            'prefix': self.prefix,
            'min_value': None if math.isinf(self.min_value) else self.min_value,
            'runs': [asdict(run) for run in self.runs],
        }
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(meta, f, indent=2)
        if self.verbose:
            print(f"[FluidDataset] Saved index of {len(self.runs)} runs to {path}")
        return path

    @classmethod
    def from_index(
        cls,
        path: Union[str, Path],
        config: DataConfig,
        cache_config: Optional[CacheConfig] = None,
        divergence_fn: DivergenceFn = velocity_divergence,
        verbose: bool = True,
    ) -> "FluidDataset":
        """Rebuild a dataset from save_index() output and its existing frame cache."""
        with open(path, 'r', encoding='utf-8') as f:
            meta = json.load(f)
        if meta.get('version') != INDEX_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported dataset index version {meta.get('version')} in {path}"
            )

        dataset = cls(
            config,
            meta['prefix'],
            cache_config=cache_config,
            divergence_fn=divergence_fn,
            verbose=verbose,
            scan=False,
        )
        runs = [RunInfo(**run) for run in meta['runs']]
        for run in runs:
            for frame_index in (0, run.num_frames - 1):
                if not dataset.cache.exists(run.dir, frame_index):
                    raise FileNotFoundError(
                        f"Missing cache entry {dataset.cache.path_for(run.dir, frame_index)}"
                    )
        min_value = meta.get('min_value')
        dataset._set_runs(runs, math.inf if min_value is None else float(min_value))
        if verbose:
            print(f"[FluidDataset] Loaded index of {len(runs)} runs ({dataset.nsamples()} samples) from {path}")
        return dataset
