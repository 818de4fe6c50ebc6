"""
Localization Module: anchor registry and TDOA state estimation.

Key classes:
- AnchorRegistry: Bounded table of surveyed anchor positions
- TDOAEstimator: EKF on [x, y, z, vx, vy, vz] driven by range differences
"""

from .anchor_registry import (
    Anchor,
    AnchorRegistry,
    DEFAULT_ANCHOR_POSITIONS,
    MAX_ANCHORS,
)
from .tdoa_estimator import (
    TDOAEstimator,
    TDOAEstimatorConfig,
    STATE_DIM,
    build_transition_matrix,
    range_difference,
    range_difference_jacobian,
)

__all__ = [
    'Anchor',
    'AnchorRegistry',
    'DEFAULT_ANCHOR_POSITIONS',
    'MAX_ANCHORS',
    'TDOAEstimator',
    'TDOAEstimatorConfig',
    'STATE_DIM',
    'build_transition_matrix',
    'range_difference',
    'range_difference_jacobian',
]
