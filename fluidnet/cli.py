"""
Command-line entry points.

    fluidnet-stats --config configs/default.yaml --prefix tr data.batch_size=32
    fluidnet-simulate --config configs/default.yaml simulation.save_data=false

Both accept trailing key.subkey=value config overrides.
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np
import torch

from .config import FluidNetConfig, load_config, override_config


class TeeLogger:
    """Logger that writes to both stdout and a file."""
    def __init__(self, log_path: Path):
        self.terminal = sys.stdout
        self.log_path = log_path
        self.log_file = open(log_path, 'w', encoding='utf-8', errors='replace', buffering=1)

    def write(self, message):
        try:
            self.terminal.write(message)
        except UnicodeEncodeError:
            self.terminal.write(message.encode('ascii', errors='replace').decode('ascii'))
        self.log_file.write(message)
        self.log_file.flush()

    def flush(self):
        self.terminal.flush()
        self.log_file.flush()

    def close(self):
        self.log_file.close()
        sys.stdout = self.terminal


def set_seed(seed: int) -> None:
    """Seed numpy and torch."""
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)


def _resolve_config(config_path: Optional[str], overrides: List[str]) -> FluidNetConfig:
    raw = load_config(config_path) if config_path else {}
    if overrides:
        print("Applying config overrides:")
        raw = override_config(raw, overrides)
    return FluidNetConfig.from_dict(raw)


def _start_log(log_dir: Optional[str], name: str) -> Optional[TeeLogger]:
    if not log_dir:
        return None
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    log_path = log_dir / f'{name}_log_{timestamp}.txt'
    tee_logger = TeeLogger(log_path)
    sys.stdout = tee_logger
    print(f"Logging to: {log_path}")
    print(f"Timestamp: {datetime.now().isoformat()}")
    print(f"Python: {sys.version}")
    print(f"PyTorch: {torch.__version__}")
    return tee_logger


_OVERRIDE_EPILOG = """
Config Overrides:
  You can override any config value using: key.subkey=value

  Examples:
    {prog} --config configs/default.yaml data.batch_size=32
    {prog} --config configs/default.yaml perturb.on=true cache.compress=true
"""


def stats_main(argv: Optional[List[str]] = None) -> int:
    """Scan a dataset split, cache it and report per-sample statistics."""
    parser = argparse.ArgumentParser(
        description="Compute FluidNet dataset statistics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_OVERRIDE_EPILOG.format(prog="fluidnet-stats"),
    )
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration file')
    parser.add_argument('--prefix', type=str, default='tr',
                        help='Dataset split to scan (e.g. tr or te)')
    parser.add_argument('--workers', type=int, default=None,
                        help='Statistics worker threads (default: data.num_data_threads)')
    parser.add_argument('--output', type=str, default=None,
                        help='Save the statistics tensors to this .pt file')
    parser.add_argument('--plot-dir', type=str, default=None,
                        help='Save per-key histograms to this directory')
    parser.add_argument('--save-index', type=str, default=None,
                        help='Save the validated run index (JSON) for later reuse')
    parser.add_argument('--max-velocity', action='store_true',
                        help='Also report the max |U| distribution over all frames')
    parser.add_argument('--seed', type=int, default=None,
                        help='Seed for augmentation draws')
    parser.add_argument('--log-dir', type=str, default=None,
                        help='Tee stdout to a log file in this directory')
    parser.add_argument('overrides', nargs='*',
                        help='Config overrides in format key.subkey=value')
    args = parser.parse_args(argv)

    from .data.dataset import FluidDataset
    from .data.statistics import compute_statistics, plot_statistics

    tee_logger = _start_log(args.log_dir, 'stats')
    try:
        config = _resolve_config(args.config, args.overrides)
        if args.seed is not None:
            set_seed(args.seed)

        print("=" * 60)
        print("FluidNet Dataset Statistics")
        print("=" * 60)
        print(f"Dataset: {config.data.dataset} ({args.prefix})")

        dataset = FluidDataset(config.data, args.prefix, cache_config=config.cache)
        if args.save_index:
            dataset.save_index(args.save_index)
        if dataset.nsamples() == 0:
            print("No valid runs found, nothing to do.")
            return 1

        stats = compute_statistics(
            dataset,
            batch_size=config.data.batch_size,
            num_workers=config.data.num_data_threads if args.workers is None else args.workers,
            divergence_fn=dataset.divergence_fn,
            augment=config.perturb.on,
            params=config.perturb,
            seed=args.seed,
        )

        if args.output:
            output = Path(args.output)
            output.parent.mkdir(parents=True, exist_ok=True)
            torch.save({
                'mean': {k.value: v for k, v in stats.mean.items()},
                'std': {k.value: v for k, v in stats.std.items()},
                'l2': {k.value: v for k, v in stats.l2.items()},
                'sample_order': stats.sample_order,
                'summary': stats.summary(),
            }, output)
            print(f"Saved statistics to {output}")

        if args.plot_dir:
            saved = plot_statistics(stats, args.prefix, args.plot_dir)
            print(f"Saved {len(saved)} histograms to {args.plot_dir}")

        if args.max_velocity:
            u_max = dataset.max_velocity_per_frame()
            print(f"Max |U| per frame: min={float(u_max.min()):.4g} "
                  f"mean={float(u_max.mean()):.4g} max={float(u_max.max()):.4g}")
        return 0
    finally:
        if tee_logger is not None:
            tee_logger.close()


def simulate_main(argv: Optional[List[str]] = None) -> int:
    """Run a trained model on the plume scene and write .vbox output."""
    parser = argparse.ArgumentParser(
        description="Run a FluidNet 3D simulation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_OVERRIDE_EPILOG.format(prog="fluidnet-simulate"),
    )
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration file')
    parser.add_argument('--device', type=str, default=None,
                        help='Device to use (cuda/cpu), overrides simulation.device')
    parser.add_argument('--log-dir', type=str, default=None,
                        help='Tee stdout to a log file in this directory')
    parser.add_argument('overrides', nargs='*',
                        help='Config overrides in format key.subkey=value')
    args = parser.parse_args(argv)

    from .simulation import PlumeSource, SimulationDriver, SimulationState, load_geometry, load_model

    tee_logger = _start_log(args.log_dir, 'simulate')
    try:
        config = _resolve_config(args.config, args.overrides)
        sim = config.simulation
        if sim.batch_size != 1:
            raise ValueError(f"The batch size must be one, got {sim.batch_size}")
        device = torch.device(args.device or sim.device)

        print("=" * 60)
        print("FluidNet 3D Simulation")
        print("=" * 60)
        print(f"Device: {device}")

        model = load_model(sim.model_path, device)
        print(f"==> Loaded model from: {sim.model_path}")

        state = SimulationState.zeros(sim.resolution, sim.batch_size, device)
        if sim.geometry_path:
            state.set_geometry(load_geometry(sim.geometry_path))
            print(f"==> Loaded geometry from: {sim.geometry_path}")
        print(f"Running simulation at resolution {sim.resolution}^3")
        print(f"Simulating with dt = {sim.dt}")
        print(f"Simulating for {sim.num_frames} frames ({sim.simulation_time_sec} sec)")

        driver = SimulationDriver(
            model,
            state,
            output_dir=sim.output_dir,
            tag=f"{sim.tag}_dt{sim.dt:g}",
            output_decimation=sim.output_decimation,
            save_data=sim.save_data,
            source=PlumeSource(),
        )
        driver.run(sim.num_frames)
        return 0
    finally:
        if tee_logger is not None:
            tee_logger.close()


if __name__ == '__main__':
    sys.exit(stats_main())
