"""
Field keys for frame field-sets and batch buffers.

Every "for each field" operation in the pipeline (caching, flipping,
statistics) iterates over one of these enums instead of a free-form
string-keyed dict:

- FieldKey: the nine per-frame fields persisted in a cache entry
- BatchKey: the batch buffers filled by the BatchBuilder (plus DIV, which
  only appears in statistics output)
"""

from enum import Enum
from typing import Tuple


class FieldKey(Enum):
    """Per-frame fields. Values match the names used in the raw data."""
    P = "p"
    UX = "Ux"
    UY = "Uy"
    UZ = "Uz"
    GEOM = "geom"
    P_DIV = "pDiv"
    UX_DIV = "UxDiv"
    UY_DIV = "UyDiv"
    UZ_DIV = "UzDiv"


class BatchKey(Enum):
    """Batch buffers (inputs are divergent, targets are divergence-free)."""
    P_DIV = "pDiv"
    U_DIV = "UDiv"
    GEOM = "geom"
    P_TARGET = "pTarget"
    U_TARGET = "UTarget"
    DIV = "div"  # Statistics only


# Velocity components in (x, y, z) order
TARGET_VELOCITY_KEYS: Tuple[FieldKey, ...] = (FieldKey.UX, FieldKey.UY, FieldKey.UZ)
DIVERGENT_VELOCITY_KEYS: Tuple[FieldKey, ...] = (FieldKey.UX_DIV, FieldKey.UY_DIV, FieldKey.UZ_DIV)

# Fields decoded from the main (target) frame file and the divergent file
MAIN_FILE_KEYS: Tuple[FieldKey, ...] = (
    FieldKey.P, FieldKey.UX, FieldKey.UY, FieldKey.UZ, FieldKey.GEOM,
)
DIVERGENT_FILE_KEYS: Tuple[FieldKey, ...] = (
    FieldKey.P_DIV, FieldKey.UX_DIV, FieldKey.UY_DIV, FieldKey.UZ_DIV,
)

# Buffers allocated by allocate_batch (DIV is computed, never filled)
BUFFER_KEYS: Tuple[BatchKey, ...] = (
    BatchKey.P_DIV, BatchKey.U_DIV, BatchKey.GEOM, BatchKey.P_TARGET, BatchKey.U_TARGET,
)
VECTOR_BATCH_KEYS = frozenset([BatchKey.U_DIV, BatchKey.U_TARGET])


def velocity_channels(two_dim: bool) -> int:
    """Number of velocity channels carried in a batch (Uz dropped for 2D)."""
    return 2 if two_dim else 3
