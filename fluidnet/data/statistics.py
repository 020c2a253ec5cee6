"""
Dataset statistics for FluidNet.

Computes per-sample mean, standard deviation and L2 norm of every batch
field (plus the divergence of the divergent input velocity) over a whole
dataset. Used to pick normalization constants and to sanity check new
datasets before training.

Design:
- range(nsamples) is split into contiguous ranges of batch_size
- a bounded ThreadPoolExecutor consumes the ranges; each worker thread lazily
  creates its own BatchBuilder and batch buffers, so the only shared state is
  the read-only frame cache
- partial results are keyed by range start and concatenated in sample order;
  dataset-wide totals are merged by addition
- with a seed, each range reseeds its builder, so augmented draws are the
  same for any worker count

Usage:
    stats = compute_statistics(dataset, batch_size=16, num_workers=8)
    print(stats.mean[BatchKey.U_DIV].mean())
    plot_statistics(stats, 'tr', 'stats_plots/')
"""

import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import torch
from tqdm import tqdm

from ..config import AugmentParams
from .batch import BatchBuilder, allocate_batch, sample_ranges
from .divergence import DivergenceFn, velocity_divergence
from .fields import BUFFER_KEYS, BatchKey


STAT_KEYS = BUFFER_KEYS + (BatchKey.DIV,)


@dataclass
class RunningTotals:
    """Sum, sum of squares and element count of one key. Merged by addition."""
    total: float = 0.0
    total_sq: float = 0.0
    count: int = 0

    def update(self, values: torch.Tensor) -> None:
        values = values.detach().to(torch.float64)
        self.total += float(values.sum())
        self.total_sq += float((values * values).sum())
        self.count += values.numel()

    def merge(self, other: "RunningTotals") -> "RunningTotals":
        return RunningTotals(
            total=self.total + other.total,
            total_sq=self.total_sq + other.total_sq,
            count=self.count + other.count,
        )

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else math.nan

    @property
    def std(self) -> float:
        """Population standard deviation over every element seen."""
        if not self.count:
            return math.nan
        variance = self.total_sq / self.count - self.mean ** 2
        return math.sqrt(max(variance, 0.0))


@dataclass
class DataStatistics:
    """
    Per-sample statistics in sample order.

    mean / std / l2 map each key to a tensor with one entry per visited
    sample; sample_order lists the visited sample indices.
    """
    mean: Dict[BatchKey, torch.Tensor]
    std: Dict[BatchKey, torch.Tensor]
    l2: Dict[BatchKey, torch.Tensor]
    sample_order: torch.Tensor
    totals: Dict[BatchKey, RunningTotals] = field(default_factory=dict)

    def __len__(self) -> int:
        return int(self.sample_order.numel())

    def summary(self) -> Dict[str, Dict[str, float]]:
        """Dataset-wide mean / std per key."""
        return {
            key.value: {'mean': totals.mean, 'std': totals.std, 'count': totals.count}
            for key, totals in self.totals.items()
        }


@dataclass
class _PartialStats:
    start: int
    samples: List[int]
    mean: Dict[BatchKey, torch.Tensor]
    std: Dict[BatchKey, torch.Tensor]
    l2: Dict[BatchKey, torch.Tensor]
    totals: Dict[BatchKey, RunningTotals]


def _row_stats(values: torch.Tensor):
    """mean, unbiased std and L2 norm of each row of a (n, ...) tensor."""
    flat = values.reshape(values.shape[0], -1).to(torch.float64)
    if flat.shape[1] > 1:
        std = flat.std(dim=1, unbiased=True)
    else:
        std = torch.zeros(flat.shape[0], dtype=torch.float64)
    return flat.mean(dim=1), std, flat.norm(dim=1)


class _Worker:
    """Per-thread batch builder and buffers."""

    def __init__(self, dataset, batch_size: int):
        self.builder = BatchBuilder(dataset)
        self.batch = allocate_batch(batch_size, dataset.zdim, dataset.ydim, dataset.xdim, dataset.two_dim)


def _process_range(
    worker: _Worker,
    sample_range: range,
    divergence_fn: DivergenceFn,
    augment: bool,
    params: Optional[AugmentParams],
    seed: Optional[int] = None,
) -> _PartialStats:
    samples = list(sample_range)
    if seed is not None:
        # Draws depend on the range, not on which thread picks it up
        worker.builder.generator.manual_seed(seed + sample_range.start)
    worker.builder.fill(worker.batch, samples, augment=augment, params=params)
    n = len(samples)

    values = {key: worker.batch[key][:n] for key in BUFFER_KEYS}
    values[BatchKey.DIV] = divergence_fn(values[BatchKey.U_DIV], values[BatchKey.GEOM][:, 0])

    partial = _PartialStats(start=sample_range.start, samples=samples, mean={}, std={}, l2={}, totals={})
    for key in STAT_KEYS:
        mean, std, l2 = _row_stats(values[key])
        partial.mean[key] = mean
        partial.std[key] = std
        partial.l2[key] = l2
        totals = RunningTotals()
        totals.update(values[key])
        partial.totals[key] = totals
    return partial


def compute_statistics(
    dataset,
    batch_size: int,
    num_workers: int = 0,
    divergence_fn: Optional[DivergenceFn] = None,
    augment: bool = False,
    params: Optional[AugmentParams] = None,
    verbose: bool = True,
    seed: Optional[int] = None,
) -> DataStatistics:
    """
    Visit every sample of the dataset exactly once and collect statistics.

    Args:
        dataset: FluidDataset to scan
        batch_size: Samples per range / per worker batch
        num_workers: Worker threads (<= 1 runs inline on the calling thread)
        divergence_fn: Divergence operator for BatchKey.DIV
        augment: Apply flip augmentation while filling batches
        params: Augmentation parameters
        verbose: Print progress
        seed: Base seed for augmentation draws. Each range reseeds with
            seed + range.start, so results do not depend on num_workers

    Returns:
        DataStatistics in sample order
    """
    divergence_fn = divergence_fn or velocity_divergence
    num_samples = dataset.nsamples()
    if num_samples == 0:
        raise ValueError("Cannot compute statistics of an empty dataset")
    ranges = sample_ranges(num_samples, batch_size)

    if verbose:
        print(f"[Statistics] {num_samples} samples in {len(ranges)} batches "
              f"(batch_size={batch_size}, workers={max(num_workers, 1)})")

    partials: Dict[int, _PartialStats] = {}
    progress = tqdm(total=len(ranges), desc="Statistics") if verbose else None

    if num_workers <= 1:
        worker = _Worker(dataset, batch_size)
        for sample_range in ranges:
            partials[sample_range.start] = _process_range(
                worker, sample_range, divergence_fn, augment, params, seed)
            if progress is not None:
                progress.update(1)
    else:
        local = threading.local()

        def init_worker():
            local.worker = _Worker(dataset, batch_size)

        def task(sample_range: range) -> _PartialStats:
            return _process_range(local.worker, sample_range, divergence_fn, augment, params, seed)

        with ThreadPoolExecutor(
            max_workers=num_workers,
            thread_name_prefix="Statistics",
            initializer=init_worker,
        ) as executor:
            futures = [executor.submit(task, r) for r in ranges]
            for future in as_completed(futures):
                partial = future.result()
                partials[partial.start] = partial
                if progress is not None:
                    progress.update(1)

    if progress is not None:
        progress.close()

    ordered = [partials[start] for start in sorted(partials)]
    stats = DataStatistics(
        mean={key: torch.cat([p.mean[key] for p in ordered]) for key in STAT_KEYS},
        std={key: torch.cat([p.std[key] for p in ordered]) for key in STAT_KEYS},
        l2={key: torch.cat([p.l2[key] for p in ordered]) for key in STAT_KEYS},
        sample_order=torch.tensor([s for p in ordered for s in p.samples], dtype=torch.int64),
    )
    for key in STAT_KEYS:
        totals = RunningTotals()
        for p in ordered:
            totals = totals.merge(p.totals[key])
        stats.totals[key] = totals

    if verbose:
        for key in STAT_KEYS:
            print(f"[Statistics] {key.value:8s} mean={stats.totals[key].mean:.6g} "
                  f"std={stats.totals[key].std:.6g}")

    return stats


def plot_statistics(
    stats: DataStatistics,
    title_prefix: str,
    output_dir: Union[str, Path],
    bins: int = 100,
) -> List[Path]:
    """Save a histogram of the per-sample mean, std and l2 of every key."""
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    saved = []
    for stat_name in ('mean', 'std', 'l2'):
        per_key = getattr(stats, stat_name)
        for key, values in per_key.items():
            fig, ax = plt.subplots(1, 1, figsize=(6, 4))
            ax.hist(values.double().numpy(), bins=bins)
            ax.set_title(f"{title_prefix} {key.value} {stat_name}")
            ax.set_xlabel(stat_name)
            ax.set_ylabel("samples")
            plt.tight_layout()
            save_path = output_dir / f"{title_prefix}_{key.value}_{stat_name}.png"
            plt.savefig(save_path, dpi=100, bbox_inches='tight')
            plt.close(fig)
            saved.append(save_path)
    return saved
