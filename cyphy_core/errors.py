"""
Error types raised by the estimator and controller.

Every misuse or numeric failure surfaces as one of these instead of a
silent no-op, so callers can tell a rejected configuration apart from a
stale one.
"""

from typing import Optional


class CyphyCoreError(Exception):
    """Base class for all cyphy_core errors."""


class ConfigurationError(CyphyCoreError, ValueError):
    """Invalid configuration: wrong matrix shape, bad anchor index, bad input."""


class AnchorNotFoundError(CyphyCoreError, LookupError):
    """Requested anchor was never configured (or index is out of range)."""

    def __init__(self, anchor_id: int):
        self.anchor_id = anchor_id
        super().__init__(f"Anchor {anchor_id} is not configured")


class NumericalInstabilityError(CyphyCoreError, ArithmeticError):
    """
    Filter update rejected because it would be numerically unsafe.

    State and covariance are left unchanged when this is raised.
    """


class ControlSolveFailure(CyphyCoreError, RuntimeError):
    """
    MPC solve did not converge (or ran out of its time budget).

    Attributes:
        status: Solver status (SolveStatus member) that caused the failure
        solve_time_s: Wall-clock time spent in the solver
    """

    def __init__(self, message: str, status=None, solve_time_s: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.solve_time_s = solve_time_s
