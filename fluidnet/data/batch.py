"""
Batch construction for FluidNet training and statistics.

Batches are preallocated once and refilled in place:

    batch = allocate_batch(16, zdim, ydim, xdim, two_dim)
    builder = BatchBuilder(dataset)
    aug = builder.fill(batch, sample_list, augment=True, params=AugmentParams(on=True))

Buffer layout (B = capacity, C = 2 for 2D data, 3 for 3D data):
- pDiv:    (B, 1, D, H, W)  divergent pressure (input)
- UDiv:    (B, C, D, H, W)  divergent velocity (input)
- geom:    (B, 1, D, H, W)  geometry mask (input)
- pTarget: (B, 1, D, H, W)  divergence-free pressure (target)
- UTarget: (B, C, D, H, W)  divergence-free velocity (target)

Augmentation: random axis flips. A flip along axis A reverses every field
along A and negates the velocity component aligned with A, so the flipped
pair is still a valid simulation pair.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from ..config import AugmentParams
from .fields import (
    BUFFER_KEYS,
    BatchKey,
    DIVERGENT_VELOCITY_KEYS,
    FieldKey,
    TARGET_VELOCITY_KEYS,
    VECTOR_BATCH_KEYS,
    velocity_channels,
)


# Spatial dim of a (C, D, H, W) row per flip axis
_X_DIM, _Y_DIM, _Z_DIM = 3, 2, 1


def allocate_batch(
    batch_size: int,
    zdim: int,
    ydim: int,
    xdim: int,
    two_dim: bool,
) -> Dict[BatchKey, torch.Tensor]:
    """Allocate zero-filled batch buffers."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    spatial = (zdim, ydim, xdim)
    channels = velocity_channels(two_dim)
    batch = {}
    for key in BUFFER_KEYS:
        c = channels if key in VECTOR_BATCH_KEYS else 1
        batch[key] = torch.zeros((batch_size, c) + spatial, dtype=torch.float32)
    return batch


def _flip(tensor: torch.Tensor, dim: int, scratch: Optional[torch.Tensor]) -> None:
    n = tensor.shape[dim]
    if n == 1:
        return
    index = torch.arange(n - 1, -1, -1, device=tensor.device)
    if scratch is None or scratch.shape != tensor.shape:
        scratch = torch.empty_like(tensor)
    torch.index_select(tensor, dim, index, out=scratch)
    tensor.copy_(scratch)


def perform_flips(
    tensor: torch.Tensor,
    flip_x: bool,
    flip_y: bool,
    flip_z: bool,
    vector_field: bool,
    scratch: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Flip one (C, D, H, W) batch row in place.

    Args:
        tensor: Row to flip
        flip_x, flip_y, flip_z: Axes to reverse
        vector_field: Channels are (x, y[, z]) velocity components; the
            component aligned with each flipped axis changes sign
        scratch: Reusable buffer with the row's shape

    Returns:
        The same tensor, flipped
    """
    if tensor.dim() != 4:
        raise ValueError(f"Expected a (C, D, H, W) tensor, got shape {tuple(tensor.shape)}")

    for flip, dim, component in ((flip_x, _X_DIM, 0), (flip_y, _Y_DIM, 1), (flip_z, _Z_DIM, 2)):
        if not flip:
            continue
        _flip(tensor, dim, scratch)
        if vector_field:
            if component >= tensor.shape[0]:
                raise ValueError(
                    f"Cannot flip velocity component {component} of a {tensor.shape[0]}-channel field"
                )
            tensor[component].neg_()
    return tensor


@dataclass
class AppliedAugmentation:
    """
    Per-row augmentation actually applied by a fill.

    Every tensor has one entry per batch row (capacity). Rows past `count`
    were not filled and hold no-op values.
    """
    rotation: torch.Tensor
    scale: torch.Tensor
    trans_u: torch.Tensor
    trans_v: torch.Tensor
    flip_x: torch.Tensor
    flip_y: torch.Tensor
    flip_z: torch.Tensor
    count: int = 0

    @classmethod
    def identity(cls, capacity: int) -> "AppliedAugmentation":
        return cls(
            rotation=torch.zeros(capacity),
            scale=torch.ones(capacity),
            trans_u=torch.zeros(capacity),
            trans_v=torch.zeros(capacity),
            flip_x=torch.zeros(capacity, dtype=torch.uint8),
            flip_y=torch.zeros(capacity, dtype=torch.uint8),
            flip_z=torch.zeros(capacity, dtype=torch.uint8),
        )


class BatchBuilder:
    """
    Fills preallocated batch buffers from a FluidDataset's frame cache.

    A builder owns its random generator and flip scratch buffers, so it must
    not be shared between threads; create one per worker instead.
    """

    def __init__(self, dataset, generator: Optional[torch.Generator] = None):
        self.dataset = dataset
        self.generator = generator if generator is not None else torch.Generator()
        self._scratch: Dict[Tuple[int, ...], torch.Tensor] = {}

    def _scratch_for(self, row: torch.Tensor) -> torch.Tensor:
        shape = tuple(row.shape)
        if shape not in self._scratch:
            self._scratch[shape] = torch.empty(shape, dtype=row.dtype, device=row.device)
        return self._scratch[shape]

    def _check_buffers(self, batch: Dict[BatchKey, torch.Tensor]) -> int:
        ds = self.dataset
        spatial = (ds.zdim, ds.ydim, ds.xdim)
        channels = velocity_channels(ds.two_dim)
        capacity = None
        for key in BUFFER_KEYS:
            if key not in batch:
                raise ValueError(f"Batch is missing buffer {key.value}")
            buf = batch[key]
            expected_c = channels if key in VECTOR_BATCH_KEYS else 1
            if buf.dim() != 5 or buf.shape[1] != expected_c:
                raise ValueError(
                    f"Buffer {key.value} has shape {tuple(buf.shape)}, expected "
                    f"{expected_c} channels (two_dim={ds.two_dim})"
                )
            if tuple(buf.shape[2:]) != spatial:
                raise ValueError(
                    f"Buffer {key.value} has spatial shape {tuple(buf.shape[2:])}, expected {spatial}"
                )
            if capacity is None:
                capacity = buf.shape[0]
            elif buf.shape[0] != capacity:
                raise ValueError("Batch buffers have inconsistent batch sizes")
        return capacity

    def fill(
        self,
        batch: Dict[BatchKey, torch.Tensor],
        sample_list: Sequence[int],
        augment: bool = False,
        params: Optional[AugmentParams] = None,
    ) -> AppliedAugmentation:
        """
        Copy the listed samples into rows 0..len(sample_list)-1 of batch.

        Rows past len(sample_list) keep their previous contents.

        augment alone decides whether flips are drawn; params.on is not
        consulted here, so augment=True flips even when params.on is False.
        params only supplies flip_prob (default AugmentParams(on=True)).

        Raises:
            ValueError: empty dataset, too many samples or mismatched buffers
            IndexError: a sample index is out of range
            NotImplementedError: unsupported augmentation requested
        """
        ds = self.dataset
        if ds.nsamples() == 0:
            raise ValueError("Cannot build a batch from an empty dataset")
        capacity = self._check_buffers(batch)
        if len(sample_list) > capacity:
            raise ValueError(
                f"{len(sample_list)} samples requested but batch capacity is {capacity}"
            )
        if augment:
            params = params or AugmentParams(on=True)
            params.check_supported()

        # Resolve everything up front so a bad index leaves the batch untouched
        locations = [ds.samples.resolve(i) for i in sample_list]

        applied = AppliedAugmentation.identity(capacity)
        applied.count = len(locations)
        channels = velocity_channels(ds.two_dim)
        div_keys = DIVERGENT_VELOCITY_KEYS[:channels]
        target_keys = TARGET_VELOCITY_KEYS[:channels]

        for row, (run_index, frame_index) in enumerate(locations):
            frame = ds.load_frame(run_index, frame_index)

            batch[BatchKey.P_DIV][row, 0].copy_(frame[FieldKey.P_DIV])
            batch[BatchKey.GEOM][row, 0].copy_(frame[FieldKey.GEOM])
            batch[BatchKey.P_TARGET][row, 0].copy_(frame[FieldKey.P])
            for c in range(channels):
                batch[BatchKey.U_DIV][row, c].copy_(frame[div_keys[c]])
                batch[BatchKey.U_TARGET][row, c].copy_(frame[target_keys[c]])

            if not augment:
                continue

            draws = torch.rand(3, generator=self.generator) < params.flip_prob
            flip_x, flip_y = bool(draws[0]), bool(draws[1])
            flip_z = False if ds.two_dim else bool(draws[2])
            applied.flip_x[row] = int(flip_x)
            applied.flip_y[row] = int(flip_y)
            applied.flip_z[row] = int(flip_z)

            if flip_x or flip_y or flip_z:
                for key in BUFFER_KEYS:
                    target = batch[key][row]
                    perform_flips(
                        target, flip_x, flip_y, flip_z,
                        vector_field=key in VECTOR_BATCH_KEYS,
                        scratch=self._scratch_for(target),
                    )

        return applied


def sample_ranges(num_samples: int, batch_size: int) -> List[range]:
    """Partition range(num_samples) into contiguous chunks of batch_size."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [range(start, min(start + batch_size, num_samples))
            for start in range(0, num_samples, batch_size)]
