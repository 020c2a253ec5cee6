"""
Velocity divergence on a regular voxel grid.

Default implementation of the divergence operator used for run validation
and dataset statistics. Any callable with the same signature can be passed
to FluidDataset / compute_statistics instead.

Convention:
- velocity: (B, C, D, H, W), C = 2 (x, y) or 3 (x, y, z)
- geometry: (B, D, H, W) or (B, 1, D, H, W), 1 = solid, 0 = fluid
- result:   (B, D, H, W), zero inside solid cells

Central differences with unit grid spacing. Velocity inside solid cells is
treated as zero; the domain boundary is replicated, so boundary cells get a
halved one-sided difference. Axes of size 1 (2D data along z) contribute
nothing.
"""

from typing import Callable

import torch


DivergenceFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


def _central_difference(component: torch.Tensor, axis: int) -> torch.Tensor:
    n = component.shape[axis]
    padded = torch.cat(
        [component.narrow(axis, 0, 1), component, component.narrow(axis, n - 1, 1)],
        dim=axis,
    )
    return (padded.narrow(axis, 2, n) - padded.narrow(axis, 0, n)) * 0.5


def velocity_divergence(velocity: torch.Tensor, geometry: torch.Tensor) -> torch.Tensor:
    """
    Compute the divergence of a velocity field against a geometry mask.

    Args:
        velocity: (B, C, D, H, W) with C in {2, 3}
        geometry: (B, D, H, W) or (B, 1, D, H, W)

    Returns:
        (B, D, H, W) divergence, zero in solid cells
    """
    if velocity.dim() != 5:
        raise ValueError(f"velocity must be (B, C, D, H, W), got shape {tuple(velocity.shape)}")
    num_components = velocity.shape[1]
    if num_components not in (2, 3):
        raise ValueError(f"velocity must have 2 or 3 components, got {num_components}")
    if geometry.dim() == 5:
        if geometry.shape[1] != 1:
            raise ValueError(f"geometry must have a single channel, got shape {tuple(geometry.shape)}")
        geometry = geometry[:, 0]
    spatial = (velocity.shape[0],) + tuple(velocity.shape[2:])
    if tuple(geometry.shape) != spatial:
        raise ValueError(
            f"geometry shape {tuple(geometry.shape)} does not match velocity grid {spatial}"
        )

    fluid = (geometry < 0.5).to(velocity.dtype)
    u = velocity * fluid.unsqueeze(1)

    div = torch.zeros(spatial, dtype=velocity.dtype, device=velocity.device)
    # Component c differentiates along axis x=3, y=2, z=1 of a (B, D, H, W) slice
    for c in range(num_components):
        axis = 3 - c
        if u.shape[axis + 1] == 1:
            continue
        div += _central_difference(u[:, c], axis)

    return div * fluid
