"""
Pytest configuration and shared fixtures for the CyPhy core tests.

Provides the surveyed anchor registry, estimator and controller fixtures,
plus a fresh metrics collector for every test.
"""

import sys
from pathlib import Path
from typing import Tuple

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from cyphy_core.control import MPCConfig, TrajectoryController
from cyphy_core.localization import AnchorRegistry, TDOAEstimator, TDOAEstimatorConfig
from cyphy_core.metrics import get_metrics, reset_metrics


# =============================================================================
# Metrics
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """
    Fresh global metrics collector for every test.

    Components grab the global collector at construction, so this runs
    before any other fixture builds one.
    """
    reset_metrics()
    yield get_metrics()


# =============================================================================
# Localization Fixtures
# =============================================================================


@pytest.fixture
def registry() -> AnchorRegistry:
    """Registry loaded with the four surveyed lab anchors."""
    registry = AnchorRegistry()
    registry.load_defaults()
    return registry


@pytest.fixture
def estimator(registry: AnchorRegistry) -> TDOAEstimator:
    """Estimator with default configuration over the lab anchors."""
    return TDOAEstimator(TDOAEstimatorConfig(), registry)


@pytest.fixture
def interior_position() -> Tuple[float, float, float]:
    """A point inside the anchor cell, away from every anchor."""
    return (2.5, 2.0, 1.0)


# =============================================================================
# Control Fixtures
# =============================================================================


@pytest.fixture
def controller() -> TrajectoryController:
    """
    Controller with a generous time budget.

    Tests run on shared machines, so the 100 ms production budget is
    replaced to keep convergence checks deterministic.
    """
    return TrajectoryController(MPCConfig(time_limit_s=5.0, max_iterations=200))


@pytest.fixture
def straight_coeffs() -> np.ndarray:
    """Reference path y = 0 (straight ahead)."""
    return np.zeros(4)


# =============================================================================
# Numerical Helpers
# =============================================================================


def _central_difference(fn, x, eps=1e-6):
    x = np.asarray(x, dtype=float)
    f0 = np.asarray(fn(x), dtype=float)
    out = np.zeros(f0.shape + (x.size,))
    for j in range(x.size):
        step = np.zeros_like(x)
        step[j] = eps
        out[..., j] = (np.asarray(fn(x + step)) - np.asarray(fn(x - step))) / (2 * eps)
    return out


@pytest.fixture
def numeric_jacobian():
    """
    Central-difference derivative of a function of a 1-D array.

    Returns a callable (fn, x, eps=1e-6) -> array with d fn / d x[j] in
    the last axis, usable for scalar (gradient) and vector (Jacobian) fn.
    """
    return _central_difference
