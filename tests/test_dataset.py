"""
Tests for run scanning, validation and the sample index.
"""

import math

import numpy as np
import pytest
import torch

from fluidnet.config import DataConfig
from fluidnet.data.dataset import (
    FluidDataset,
    RunInfo,
    SampleIndex,
    list_frame_files,
)
from fluidnet.data.fields import BatchKey


def _touch(path):
    path.write_bytes(b'')


class TestSampleIndex:
    """Tests for SampleIndex."""

    def test_completeness_and_order(self):
        runs = [RunInfo('a', 3, 4, 4, 4), RunInfo('b', 2, 4, 4, 4)]
        index = SampleIndex.from_runs(runs)

        assert index.size() == len(index) == 5
        assert list(index) == [(0, 0), (0, 1), (0, 2), (1, 0), (1, 1)]
        assert index.resolve(3) == (1, 0)

    @pytest.mark.parametrize("bad", [-1, 5, 100])
    def test_out_of_range(self, bad):
        index = SampleIndex.from_runs([RunInfo('a', 5, 4, 4, 4)])
        with pytest.raises(IndexError):
            index.resolve(bad)

    def test_immutable(self):
        index = SampleIndex.from_runs([RunInfo('a', 2, 4, 4, 4)])
        with pytest.raises(ValueError):
            index.pairs[0, 0] = 7

    def test_empty(self):
        index = SampleIndex.from_runs([])
        assert index.size() == 0
        with pytest.raises(IndexError):
            index.resolve(0)


class TestListFrameFiles:
    """Tests for main / divergent file pairing."""

    def test_numeric_order(self, tmp_path):
        for n in (2, 10, 1):
            _touch(tmp_path / f'U_{n}.bin')
            _touch(tmp_path / f'U_{n}_divergent.bin')
        main, div = list_frame_files(tmp_path)
        assert [p.name for p in main] == ['U_1.bin', 'U_2.bin', 'U_10.bin']
        assert [p.name for p in div] == ['U_1_divergent.bin', 'U_2_divergent.bin', 'U_10_divergent.bin']

    def test_ignores_other_files(self, tmp_path):
        _touch(tmp_path / 'U_0.bin')
        _touch(tmp_path / 'U_0_divergent.bin')
        _touch(tmp_path / 'notes.txt')
        _touch(tmp_path / 'frame_cache_000000.pt')
        main, div = list_frame_files(tmp_path)
        assert len(main) == len(div) == 1

    def test_count_mismatch(self, tmp_path):
        _touch(tmp_path / 'U_0.bin')
        _touch(tmp_path / 'U_1.bin')
        _touch(tmp_path / 'U_0_divergent.bin')
        with pytest.raises(ValueError):
            list_frame_files(tmp_path)

    def test_suffix_mismatch(self, tmp_path):
        _touch(tmp_path / 'U_0.bin')
        _touch(tmp_path / 'U_1_divergent.bin')
        with pytest.raises(ValueError):
            list_frame_files(tmp_path)


class TestFluidDatasetScan:
    """Tests for dataset construction."""

    def test_divergent_run_is_rejected(self, mixed_dataset_config):
        config, _ = mixed_dataset_config
        dataset = FluidDataset(config, 'tr', verbose=False)

        assert dataset.nsamples() == 5
        assert len(dataset) == 5
        assert [run.dir for run in dataset.runs] == ['run_000']
        assert (dataset.xdim, dataset.ydim, dataset.zdim) == (4, 4, 4)
        assert dataset.two_dim is False

    def test_rejection_prints_warning(self, mixed_dataset_config, capsys):
        config, _ = mixed_dataset_config
        FluidDataset(config, 'tr', verbose=True)
        out = capsys.readouterr().out
        assert 'run_001' in out
        assert 'Removing run' in out
        # 9 float32 fields x 5 frames x 4^3 cells of the accepted run
        assert 'Accepted 1 runs (1 rejected)' in out
        assert '0.01 MB of decoded fields' in out

    def test_divergence_at_threshold_is_kept(self, make_data_config):
        config, _ = make_data_config([
            {'num_frames': 2, 'target_slope': 100.0},
            {'num_frames': 2, 'target_slope': 101.0},
        ])
        dataset = FluidDataset(config, 'tr', verbose=False)
        assert [run.dir for run in dataset.runs] == ['run_000']

    def test_custom_threshold(self, make_data_config):
        config, _ = make_data_config([{'num_frames': 2, 'target_slope': 1000.0}], div_threshold=5000.0)
        dataset = FluidDataset(config, 'tr', verbose=False)
        assert dataset.nsamples() == 2

    def test_cache_entries_written(self, clean_dataset):
        dataset, _ = clean_dataset
        for run in dataset.runs:
            for f in range(run.num_frames):
                assert dataset.cache.exists(run.dir, f)

    def test_rejected_run_is_not_cached(self, mixed_dataset_config):
        config, _ = mixed_dataset_config
        dataset = FluidDataset(config, 'tr', verbose=False)
        assert not dataset.cache.exists('run_001', 0)

    def test_separate_cache_dir(self, make_data_config, tmp_path):
        config, _ = make_data_config([{'num_frames': 2}], cache_dir=str(tmp_path / 'cache'))
        dataset = FluidDataset(config, 'tr', verbose=False)
        assert (tmp_path / 'cache' / 'synthetic' / 'tr' / 'run_000' / 'frame_cache_000000.pt').is_file()
        assert dataset.get_sample(0, 1).p.shape == (4, 4, 4)

    def test_min_value(self, clean_dataset, reference_crop):
        dataset, frames = clean_dataset
        expected = math.inf
        for run_frames in frames.values():
            for frame in run_frames:
                for key in ('p', 'Ux', 'Uy', 'Uz'):
                    expected = min(expected, float(reference_crop(frame['target'][key]).min()))
        assert dataset.min_value == pytest.approx(expected)

    def test_ignore_frames(self, make_data_config):
        config, frames = make_data_config([{'num_frames': 5}], ignore_frames=2)
        dataset = FluidDataset(config, 'tr', verbose=False)

        assert dataset.nsamples() == 3
        sample = dataset.get_sample(0, 0)
        expected = frames['run_000'][2]['target']['p'][1:-1, 1:-1, 1:-1]
        np.testing.assert_array_equal(sample.p.numpy(), expected)

    def test_too_few_frames(self, make_data_config):
        config, _ = make_data_config([{'num_frames': 2}], ignore_frames=2)
        with pytest.raises(ValueError):
            FluidDataset(config, 'tr', verbose=False)

    def test_no_run_directories(self, tmp_path):
        (tmp_path / 'synthetic' / 'tr').mkdir(parents=True)
        config = DataConfig(data_dir=str(tmp_path), dataset='synthetic')
        with pytest.raises(FileNotFoundError):
            FluidDataset(config, 'tr', verbose=False)

    def test_missing_base_dir(self, tmp_path):
        config = DataConfig(data_dir=str(tmp_path), dataset='synthetic')
        with pytest.raises(FileNotFoundError):
            FluidDataset(config, 'te', verbose=False)

    def test_dims_mismatch_across_runs(self, make_data_config):
        config, _ = make_data_config([
            {'num_frames': 2, 'shape': (6, 6, 6)},
            {'num_frames': 2, 'shape': (6, 6, 8)},
        ])
        with pytest.raises(ValueError):
            FluidDataset(config, 'tr', verbose=False)

    def test_frame_shape_mismatch_within_run(self, make_data_config, frame_writer):
        config, _ = make_data_config([{'num_frames': 2}])
        run_dir = config.base_dir('tr') / 'run_000'
        odd = np.zeros((6, 6, 8), dtype=np.float32)
        frame_writer(run_dir / 'U_000002.bin', 0.3, odd, odd, odd, odd, odd)
        frame_writer(run_dir / 'U_000002_divergent.bin', 0.3, odd, odd, odd, odd, odd)
        with pytest.raises(ValueError):
            FluidDataset(config, 'tr', verbose=False)

    def test_all_runs_rejected(self, empty_dataset):
        assert empty_dataset.nsamples() == 0
        assert empty_dataset.runs == []
        assert empty_dataset.xdim is None
        assert empty_dataset.zdim is None
        with pytest.raises(ValueError):
            empty_dataset.allocate_batch(2)

    def test_two_dim(self, dataset_2d):
        dataset, _ = dataset_2d
        assert dataset.two_dim is True
        assert (dataset.xdim, dataset.ydim, dataset.zdim) == (4, 4, 1)
        assert dataset.nsamples() == 6


class TestFluidDatasetAccess:
    """Tests for sample access helpers."""

    def test_get_sample(self, clean_dataset, reference_crop):
        dataset, frames = clean_dataset
        sample = dataset.get_sample(1, 3)
        written = frames['run_001'][3]

        np.testing.assert_array_equal(sample.p.numpy(), reference_crop(written['target']['p']))
        np.testing.assert_array_equal(sample.Uz.numpy(), reference_crop(written['target']['Uz']))
        np.testing.assert_array_equal(sample.UxDiv.numpy(), reference_crop(written['divergent']['Ux']))
        np.testing.assert_array_equal(sample.geom.numpy(), reference_crop(written['geom']))

    def test_get_sample_2d_omits_z(self, dataset_2d):
        dataset, _ = dataset_2d
        sample = dataset.get_sample(0, 0)
        assert sample.Uz is None
        assert sample.UzDiv is None
        assert sample.p.shape == (1, 4, 4)

    @pytest.mark.parametrize("run,frame", [(2, 0), (0, 5), (-1, 0), (0, -1)])
    def test_get_sample_out_of_range(self, clean_dataset, run, frame):
        dataset, _ = clean_dataset
        with pytest.raises(IndexError):
            dataset.get_sample(run, frame)

    def test_getitem(self, clean_dataset, reference_crop):
        dataset, frames = clean_dataset
        item = dataset[6]  # run 1, frame 1

        assert set(item) == {BatchKey.P_DIV, BatchKey.U_DIV, BatchKey.GEOM, BatchKey.P_TARGET, BatchKey.U_TARGET}
        assert item[BatchKey.U_DIV].shape == (3, 4, 4, 4)
        assert item[BatchKey.P_TARGET].shape == (1, 4, 4, 4)
        np.testing.assert_array_equal(
            item[BatchKey.U_TARGET][1].numpy(), reference_crop(frames['run_001'][1]['target']['Uy'])
        )

    def test_getitem_out_of_range(self, clean_dataset):
        dataset, _ = clean_dataset
        with pytest.raises(IndexError):
            dataset[10]

    def test_max_velocity_per_frame(self, clean_dataset, reference_crop):
        dataset, frames = clean_dataset
        u_max = dataset.max_velocity_per_frame()

        assert u_max.shape == (10,)
        written = frames['run_000'][2]['target']
        expected = max(float(np.abs(reference_crop(written[k])).max()) for k in ('Ux', 'Uy', 'Uz'))
        assert u_max[2].item() == pytest.approx(expected)

    def test_save_sample_to_matlab(self, clean_dataset, tmp_path):
        from scipy.io import loadmat

        dataset, _ = clean_dataset
        path = dataset.save_sample_to_matlab(tmp_path / 'out' / 'sample.mat', 0, 1)
        data = loadmat(str(path))

        sample = dataset.get_sample(0, 1)
        np.testing.assert_allclose(data['p'], sample.p.double().numpy())
        assert {'Ux', 'Uy', 'Uz', 'geom', 'pDiv', 'UxDiv', 'UyDiv', 'UzDiv'} <= set(data)

    def test_save_sample_to_matlab_2d(self, dataset_2d, tmp_path):
        from scipy.io import loadmat

        dataset, _ = dataset_2d
        data = loadmat(str(dataset.save_sample_to_matlab(tmp_path / 'sample.mat', 1, 2)))
        assert 'Uz' not in data
        assert data['p'].shape == (4, 4)


class TestIndexPersistence:
    """Tests for save_index / from_index."""

    def test_round_trip(self, clean_dataset, tmp_path):
        dataset, _ = clean_dataset
        path = dataset.save_index(tmp_path / 'index' / 'tr.json')

        restored = FluidDataset.from_index(path, dataset.config, verbose=False)
        assert restored.runs == dataset.runs
        assert restored.nsamples() == dataset.nsamples()
        assert restored.min_value == pytest.approx(dataset.min_value)
        assert (restored.xdim, restored.ydim, restored.zdim) == (dataset.xdim, dataset.ydim, dataset.zdim)
        assert torch.equal(restored.get_sample(1, 4).p, dataset.get_sample(1, 4).p)

    def test_missing_cache(self, clean_dataset, tmp_path):
        dataset, _ = clean_dataset
        path = dataset.save_index(tmp_path / 'tr.json')
        dataset.cache.path_for('run_001', 4).unlink()
        with pytest.raises(FileNotFoundError):
            FluidDataset.from_index(path, dataset.config, verbose=False)

    def test_empty_dataset_round_trip(self, empty_dataset, tmp_path):
        path = empty_dataset.save_index(tmp_path / 'tr.json')
        restored = FluidDataset.from_index(path, empty_dataset.config, verbose=False)
        assert restored.nsamples() == 0
        assert math.isinf(restored.min_value)
