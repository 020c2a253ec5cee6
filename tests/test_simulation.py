"""
Tests for the simulation driver.
"""

import numpy as np
import pytest
import torch
import torch.nn as nn

from fluidnet.simulation import (
    PlumeSource,
    SimulationDriver,
    SimulationState,
    load_geometry,
    load_model,
)
from fluidnet.vbox import read_vbox


class CountingStep(nn.Module):
    """Stand-in model: pressure counts steps, density grows by 0.5 per step."""

    def forward(self, pressure: torch.Tensor, velocity: torch.Tensor,
                geometry: torch.Tensor, density: torch.Tensor):
        return pressure + 1.0, velocity * 0.5, density + 0.5


@pytest.fixture
def scripted_model_path(tmp_path):
    path = tmp_path / 'model.pt'
    torch.jit.script(CountingStep()).save(str(path))
    return path


class TestSimulationState:
    """Tests for SimulationState."""

    def test_zeros(self):
        state = SimulationState.zeros(8)
        assert state.pressure.shape == (1, 1, 8, 8, 8)
        assert state.velocity.shape == (1, 3, 8, 8, 8)
        assert state.geometry.shape == (1, 1, 8, 8, 8)
        assert state.density.shape == (1, 3, 8, 8, 8)
        assert state.dims == (8, 8, 8)

    def test_set_geometry(self):
        state = SimulationState.zeros(4)
        voxels = np.zeros((4, 4, 4), dtype=np.float32)
        voxels[1, 2, 3] = 1.0
        state.set_geometry(voxels)
        assert state.geometry[0, 0, 1, 2, 3].item() == 1.0
        assert state.geometry.sum().item() == 1.0

    def test_set_geometry_shape_mismatch(self):
        with pytest.raises(ValueError):
            SimulationState.zeros(4).set_geometry(np.zeros((4, 4, 5)))


class TestPlumeSource:
    """Tests for PlumeSource."""

    def test_inflow_on_bottom_face(self):
        state = SimulationState.zeros(8)
        PlumeSource(color=(1.0, 0.5, 0.25), u_scale=2.0, radius=0.2).apply(state)

        # Grid centre of the bottom face lies inside the disk
        assert state.density[0, :, 4, 0, 4].tolist() == [1.0, 0.5, 0.25]
        assert state.velocity[0, 1, 4, 0, 4].item() == 2.0
        # Corners and interior are untouched
        assert state.density[0, 0, 0, 0, 0].item() == 0.0
        assert torch.all(state.density[:, :, :, 1:] == 0)


class TestLoading:
    """Tests for model and geometry loading."""

    def test_load_model(self, scripted_model_path):
        model = load_model(scripted_model_path)
        assert not model.training
        p, u, d = model(torch.zeros(1), torch.ones(1), torch.zeros(1), torch.zeros(1))
        assert p.item() == 1.0

    def test_missing_model(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_model(tmp_path / 'missing.pt')

    def test_load_geometry(self, tmp_path):
        path = tmp_path / 'bunny.npy'
        voxels = np.zeros((4, 4, 4))
        voxels[0, 0, 0] = 3
        np.save(path, voxels)
        loaded = load_geometry(path)
        assert loaded.dtype == np.float32
        assert loaded[0, 0, 0] == 1.0


class TestSimulationDriver:
    """Tests for SimulationDriver.run."""

    def test_run_writes_outputs(self, scripted_model_path, tmp_path):
        state = SimulationState.zeros(4)
        state.geometry[0, 0, 0, 0, 0] = 1.0
        driver = SimulationDriver(
            load_model(scripted_model_path), state, tmp_path / 'out', 'toy',
            output_decimation=4, verbose=False,
        )
        written = driver.run(10)

        assert written == 2
        assert state.pressure[0, 0, 0, 0, 0].item() == 10.0

        density = read_vbox(tmp_path / 'out' / 'density_output_toy.vbox')
        header = np.frombuffer((tmp_path / 'out' / 'density_output_toy.vbox').read_bytes()[:16], dtype='<i4')
        assert header.tolist() == [4, 4, 4, 2]
        assert density.shape == (2, 4, 4, 4)
        # Saved after steps 4 and 8
        assert np.allclose(density[0], 2.0)
        assert np.allclose(density[1], 4.0)

        geom = read_vbox(tmp_path / 'out' / 'geom_output_toy.vbox')
        assert geom.shape == (1, 4, 4, 4)
        assert geom[0, 0, 0, 0] == 1.0
        assert geom.sum() == 1.0

    def test_no_save(self, scripted_model_path, tmp_path):
        driver = SimulationDriver(
            load_model(scripted_model_path), SimulationState.zeros(4), tmp_path / 'out', 'toy',
            save_data=False, verbose=False,
        )
        assert driver.run(4) == 0
        assert not (tmp_path / 'out').exists()

    def test_with_plume_source(self, scripted_model_path, tmp_path):
        state = SimulationState.zeros(8)
        driver = SimulationDriver(
            load_model(scripted_model_path), state, tmp_path, 'plume',
            output_decimation=1, source=PlumeSource(), verbose=False,
        )
        driver.run(2)
        # Inflow cells were reset to 1 before the last step, then grew by 0.5
        assert state.density[0, 0, 4, 0, 4].item() == pytest.approx(1.5)
        assert state.density[0, 0, 4, 4, 4].item() == pytest.approx(1.0)

    def test_batch_size_must_be_one(self, scripted_model_path, tmp_path):
        with pytest.raises(ValueError):
            SimulationDriver(load_model(scripted_model_path), SimulationState.zeros(4, batch_size=2), tmp_path, 'toy')

    def test_invalid_frame_count(self, scripted_model_path, tmp_path):
        driver = SimulationDriver(load_model(scripted_model_path), SimulationState.zeros(4), tmp_path, 'toy',
                                  save_data=False, verbose=False)
        with pytest.raises(ValueError):
            driver.run(0)
