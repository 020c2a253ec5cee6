"""
3D simulation driver.

Runs a pre-trained TorchScript model forward in time on a single scene and
dumps geometry and density volumes as .vbox files for rendering.

The model is the whole simulation step:

    pressure, velocity, density = model(pressure, velocity, geometry, density)

with
- pressure: (1, 1, D, H, W)
- velocity: (1, 3, D, H, W)
- geometry: (1, 1, D, H, W)
- density:  (1, 3, D, H, W) RGB smoke density

The default scene is a plume rising from the bottom of the grid with
otherwise open boundaries; an optional voxelized obstacle can be placed in
the domain.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn
from tqdm import tqdm

from .utils.memory import reclaim_memory
from .vbox import VoxelBoxWriter


@dataclass
class SimulationState:
    """Mutable simulation fields, updated in place every step."""
    pressure: torch.Tensor
    velocity: torch.Tensor
    geometry: torch.Tensor
    density: torch.Tensor

    @classmethod
    def zeros(cls, resolution: int, batch_size: int = 1, device: Union[str, torch.device] = 'cpu') -> "SimulationState":
        """All-zero cubic state of side `resolution`."""
        spatial = (resolution, resolution, resolution)
        return cls(
            pressure=torch.zeros((batch_size, 1) + spatial, device=device),
            velocity=torch.zeros((batch_size, 3) + spatial, device=device),
            geometry=torch.zeros((batch_size, 1) + spatial, device=device),
            density=torch.zeros((batch_size, 3) + spatial, device=device),
        )

    @property
    def batch_size(self) -> int:
        return self.pressure.shape[0]

    @property
    def dims(self) -> Tuple[int, int, int]:
        """(xdim, ydim, zdim)."""
        d, h, w = self.pressure.shape[2:]
        return (w, h, d)

    def set_geometry(self, voxels: Union[torch.Tensor, np.ndarray]) -> None:
        """Place a (D, H, W) occupancy volume (1 = solid) into the scene."""
        voxels = torch.as_tensor(np.asarray(voxels), dtype=torch.float32)
        expected = tuple(self.geometry.shape[2:])
        if tuple(voxels.shape) != expected:
            raise ValueError(f"Geometry volume has shape {tuple(voxels.shape)}, expected {expected}")
        self.geometry[:, 0].copy_(voxels.to(self.geometry.device).expand_as(self.geometry[:, 0]))


@dataclass
class PlumeSource:
    """
    Circular inflow on the bottom (y = 0) face of the grid.

    Re-applied before every step: density inside the disk is set to `color`
    and velocity to `u_scale` along +y. u_scale = 0 leaves the plume driven
    by buoyancy alone.
    """
    color: Sequence[float] = (1.0, 1.0, 1.0)
    u_scale: float = 1.0
    radius: float = 0.15  # Fraction of the domain width

    def mask(self, state: SimulationState) -> torch.Tensor:
        """(D, W) boolean disk in the bottom slab."""
        d, _, w = state.pressure.shape[2:]
        device = state.pressure.device
        z = (torch.arange(d, device=device, dtype=torch.float32) + 0.5) / d - 0.5
        x = (torch.arange(w, device=device, dtype=torch.float32) + 0.5) / w - 0.5
        zz, xx = torch.meshgrid(z, x, indexing='ij')
        return (zz * zz + xx * xx) <= self.radius * self.radius

    def apply(self, state: SimulationState) -> None:
        disk = self.mask(state)
        for c, value in enumerate(self.color):
            state.density[:, c, :, 0, :][:, disk] = float(value)
        state.velocity[:, 0, :, 0, :][:, disk] = 0.0
        state.velocity[:, 1, :, 0, :][:, disk] = float(self.u_scale)
        state.velocity[:, 2, :, 0, :][:, disk] = 0.0


def load_model(path: Union[str, Path], device: Union[str, torch.device] = 'cpu') -> nn.Module:
    """Load a TorchScript simulation model in eval mode."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Model not found at {path}")
    model = torch.jit.load(str(path), map_location=device)
    model.eval()
    return model


def load_geometry(path: Union[str, Path]) -> np.ndarray:
    """Load a (D, H, W) occupancy volume saved with numpy.save."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Geometry volume not found at {path}")
    voxels = np.load(path)
    if voxels.ndim != 3:
        raise ValueError(f"Geometry volume must be 3D (D, H, W), got shape {voxels.shape}")
    return (voxels > 0).astype(np.float32)


class SimulationDriver:
    """
    Steps a model forward and writes .vbox output.

    Output files (when save_data):
    - geom_output_<tag>.vbox: the geometry, written once on the first frame
    - density_output_<tag>.vbox: channel-mean density every
      output_decimation frames
    """

    def __init__(
        self,
        model: nn.Module,
        state: SimulationState,
        output_dir: Union[str, Path],
        tag: str,
        output_decimation: int = 4,
        save_data: bool = True,
        source: Optional[PlumeSource] = None,
        verbose: bool = True,
    ):
        if state.batch_size != 1:
            raise ValueError(f"The batch size must be one, got {state.batch_size}")
        if output_decimation < 1:
            raise ValueError(f"output_decimation must be >= 1, got {output_decimation}")
        self.model = model
        self.state = state
        self.output_dir = Path(output_dir)
        self.tag = tag
        self.output_decimation = output_decimation
        self.save_data = save_data
        self.source = source
        self.verbose = verbose

    @property
    def geometry_path(self) -> Path:
        return self.output_dir / f"geom_output_{self.tag}.vbox"

    @property
    def density_path(self) -> Path:
        return self.output_dir / f"density_output_{self.tag}.vbox"

    def step(self) -> None:
        """Advance the state by one model step."""
        state = self.state
        if self.source is not None:
            self.source.apply(state)
        with torch.no_grad():
            pressure, velocity, density = self.model(
                state.pressure, state.velocity, state.geometry, state.density
            )
        state.pressure.copy_(pressure)
        state.velocity.copy_(velocity)
        state.density.copy_(density)

    def run(self, num_frames: int) -> int:
        """
        Simulate num_frames steps.

        Returns:
            Number of density volumes written
        """
        if num_frames <= 0:
            raise ValueError(f"num_frames must be positive, got {num_frames}")
        saved = num_frames // self.output_decimation
        geom_writer = density_writer = None
        if self.save_data:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            geom_writer = VoxelBoxWriter(self.geometry_path, self.state.dims, 1)
            density_writer = VoxelBoxWriter(self.density_path, self.state.dims, saved)

        if self.verbose:
            print(f"[Simulation] Simulating {num_frames} frames, saving every "
                  f"{self.output_decimation} frames ({saved} density volumes)")

        start = time.time()
        written = 0
        try:
            frames = range(1, num_frames + 1)
            for i in tqdm(frames, desc="Simulating") if self.verbose else frames:
                reclaim_memory()
                self.step()

                if self.save_data:
                    if i == 1:
                        geom_writer.write_volume(self.state.geometry[0, 0])
                    if i % self.output_decimation == 0:
                        density_writer.write_volume(self.state.density[0].mean(dim=0))
                        written += 1
        finally:
            if geom_writer is not None:
                geom_writer.close()
            if density_writer is not None:
                density_writer.close()

        if self.verbose:
            elapsed = time.time() - start
            print(f"[Simulation] Done in {elapsed:.1f}s")
            if self.save_data:
                print(f"[Simulation] Saved geometry to {self.geometry_path}")
                print(f"[Simulation] Saved {written} density volumes to {self.density_path}")
        return written
