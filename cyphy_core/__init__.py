"""
CyPhy Core Package.

TDOA localization and model-predictive trajectory control for small
ground vehicles driving inside a UWB anchor cell.

Package structure:
- proto: Message schemas (TDOA observations, estimates, commands)
- localization: Anchor registry and EKF range-difference estimator
- control: Kinematic bicycle model, NLP solver capability, MPC
- domain: Closed estimation/control loop and simulation
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.2.0"
__author__ = "CyPhyHouse Team"

from .errors import (
    CyphyCoreError,
    ConfigurationError,
    AnchorNotFoundError,
    NumericalInstabilityError,
    ControlSolveFailure,
)

__all__ = [
    'CyphyCoreError',
    'ConfigurationError',
    'AnchorNotFoundError',
    'NumericalInstabilityError',
    'ControlSolveFailure',
]
