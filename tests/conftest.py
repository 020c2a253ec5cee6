"""
Pytest configuration and shared fixtures.
"""

from pathlib import Path

import numpy as np
import pytest
import torch

from fluidnet.config import DataConfig
from fluidnet.data.dataset import FluidDataset
from fluidnet.data.frame_codec import encode_frame


def write_frame_file(path: Path, time: float, ux, uy, uz, p, geom) -> None:
    """Write one frame record to its own file."""
    with open(path, 'wb') as f:
        encode_frame(f, time, ux, uy, uz, p, geom)


def write_run(
    run_dir: Path,
    num_frames: int = 5,
    shape=(6, 6, 6),
    seed: int = 0,
    target_slope=None,
    stem: str = 'U_',
):
    """
    Write a synthetic run of paired main / divergent frame files.

    Random target velocities keep max(div) well under 100. With target_slope
    set, the target velocity is an x ramp whose interior divergence equals
    the slope and the geometry is all fluid.

    Returns:
        List of per-frame dicts of the full-size (uncropped) arrays
    """
    rng = np.random.RandomState(seed)
    run_dir.mkdir(parents=True, exist_ok=True)
    nz, ny, nx = shape
    frames = []
    for i in range(num_frames):
        target = {k: rng.uniform(-1, 1, size=shape).astype(np.float32) for k in ('Ux', 'Uy', 'Uz', 'p')}
        if target_slope is not None:
            ramp = np.arange(nx, dtype=np.float32) * np.float32(target_slope)
            target['Ux'] = np.broadcast_to(ramp, shape).astype(np.float32)
            target['Uy'] = np.zeros(shape, dtype=np.float32)
            target['Uz'] = np.zeros(shape, dtype=np.float32)
        geom = np.zeros(shape, dtype=np.float32)
        if target_slope is None:
            geom[nz // 2, 1, 1] = 1.0
        divergent = {k: rng.uniform(-2, 2, size=shape).astype(np.float32) for k in ('Ux', 'Uy', 'Uz', 'p')}

        time = 0.1 * (i + 1)
        write_frame_file(run_dir / f'{stem}{i:06d}.bin', time,
                         target['Ux'], target['Uy'], target['Uz'], target['p'], geom)
        write_frame_file(run_dir / f'{stem}{i:06d}_divergent.bin', time,
                         divergent['Ux'], divergent['Uy'], divergent['Uz'], divergent['p'], geom)
        frames.append({'time': time, 'target': target, 'divergent': divergent, 'geom': geom})
    return frames


def crop(field: np.ndarray, border: int = 1) -> np.ndarray:
    """Reference crop matching the frame codec."""
    if field.shape[0] > 1:
        field = field[border:-border]
    return field[:, border:-border, border:-border]


@pytest.fixture(scope="session")
def device():
    """Get available device."""
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


@pytest.fixture
def make_data_config(tmp_path):
    """
    Factory that writes a dataset tree and returns its DataConfig.

    Usage:
        config, frames = make_data_config([{'num_frames': 5}, {'target_slope': 1000.0}])
    """
    def _make(runs, prefix='tr', **config_kwargs):
        data_dir = tmp_path / 'datasets'
        frames = {}
        for i, kwargs in enumerate(runs):
            kwargs = dict(kwargs)
            run_name = kwargs.pop('name', f'run_{i:03d}')
            kwargs.setdefault('seed', i)
            frames[run_name] = write_run(data_dir / 'synthetic' / prefix / run_name, **kwargs)
        config_kwargs.setdefault('batch_size', 4)
        config_kwargs.setdefault('num_data_threads', 0)
        config = DataConfig(data_dir=str(data_dir), dataset='synthetic', **config_kwargs)
        return config, frames
    return _make


@pytest.fixture
def mixed_dataset_config(make_data_config):
    """Two runs of five frames; run_001 is divergent and must be rejected."""
    return make_data_config([
        {'num_frames': 5},
        {'num_frames': 5, 'target_slope': 1000.0},
    ])


@pytest.fixture
def clean_dataset(make_data_config):
    """3D dataset: two accepted runs of five 4x4x4 frames (ten samples)."""
    config, frames = make_data_config([{'num_frames': 5}, {'num_frames': 5}])
    return FluidDataset(config, 'tr', verbose=False), frames


@pytest.fixture
def dataset_2d(make_data_config):
    """2D dataset: two accepted runs of three 1x4x4 frames."""
    config, frames = make_data_config([
        {'num_frames': 3, 'shape': (1, 6, 6)},
        {'num_frames': 3, 'shape': (1, 6, 6)},
    ])
    return FluidDataset(config, 'tr', verbose=False), frames


@pytest.fixture
def empty_dataset(make_data_config):
    """Every run is divergent, so nothing is accepted."""
    config, _ = make_data_config([{'num_frames': 2, 'target_slope': 1000.0}])
    return FluidDataset(config, 'tr', verbose=False)


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "gpu: marks tests as requiring GPU"
    )
    config.addinivalue_line(
        "markers", "cpu: marks tests that only need a CPU"
    )


def pytest_collection_modifyitems(config, items):
    """Skip GPU tests if CUDA not available."""
    if not torch.cuda.is_available():
        skip_gpu = pytest.mark.skip(reason="CUDA not available")
        for item in items:
            if "gpu" in item.keywords:
                item.add_marker(skip_gpu)


@pytest.fixture
def run_writer():
    """The write_run helper, for tests that build their own trees."""
    return write_run


@pytest.fixture
def frame_writer():
    """The write_frame_file helper."""
    return write_frame_file


@pytest.fixture
def reference_crop():
    """The reference crop helper."""
    return crop
