#!/usr/bin/env python
"""
FluidNet Dataset Statistics Script.

Scans a dataset split, drops divergent runs, fills the frame cache and
reports per-sample mean / std / L2 of every batch field.

Usage:
    python scripts/compute_data_stats.py --config configs/default.yaml --prefix tr
    python scripts/compute_data_stats.py --config configs/default.yaml --plot-dir stats_plots/ data.batch_size=32
    python scripts/compute_data_stats.py --config configs/default.yaml --save-index cache/tr_index.json cache.compress=true
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fluidnet.cli import stats_main


if __name__ == '__main__':
    sys.exit(stats_main())
