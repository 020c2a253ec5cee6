"""
FluidNet: data pipeline and simulation driver for learned fluid solvers.

Key Components:
- FluidDataset: Validated multi-run dataset backed by an on-disk frame cache
- BatchBuilder: Fills preallocated batches with optional flip augmentation
- compute_statistics: Threaded per-sample statistics over a dataset
- SimulationDriver: Runs a trained model on a 3D scene and writes .vbox files
"""

__version__ = "0.1.0"
__author__ = "FluidNet Team"

from fluidnet.config import (
    AugmentParams,
    CacheConfig,
    DataConfig,
    FluidNetConfig,
    SimulationConfig,
    get_default_config,
    load_config,
    override_config,
)
from fluidnet.data import (
    AppliedAugmentation,
    BatchBuilder,
    BatchKey,
    DataStatistics,
    FieldKey,
    FluidDataset,
    FrameCache,
    SampleIndex,
    compute_statistics,
    velocity_divergence,
)
from fluidnet.simulation import SimulationDriver, SimulationState, load_model
from fluidnet.vbox import VoxelBoxWriter, read_vbox

__all__ = [
    # Config
    "AugmentParams",
    "CacheConfig",
    "DataConfig",
    "FluidNetConfig",
    "SimulationConfig",
    "get_default_config",
    "load_config",
    "override_config",
    # Data
    "AppliedAugmentation",
    "BatchBuilder",
    "BatchKey",
    "DataStatistics",
    "FieldKey",
    "FluidDataset",
    "FrameCache",
    "SampleIndex",
    "compute_statistics",
    "velocity_divergence",
    # Simulation
    "SimulationDriver",
    "SimulationState",
    "load_model",
    "VoxelBoxWriter",
    "read_vbox",
]
