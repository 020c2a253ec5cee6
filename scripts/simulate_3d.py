#!/usr/bin/env python
"""
FluidNet 3D Simulation Script.

Runs a trained TorchScript model on a plume scene (optionally with an
obstacle volume) and writes geometry / density .vbox files for rendering.

Usage:
    python scripts/simulate_3d.py --config configs/default.yaml
    python scripts/simulate_3d.py --config configs/default.yaml --device cuda simulation.resolution=64
    python scripts/simulate_3d.py --config configs/default.yaml simulation.geometry_path=voxels/bunny_128.npy
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fluidnet.cli import simulate_main


if __name__ == '__main__':
    sys.exit(simulate_main())
