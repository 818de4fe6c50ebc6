"""
Position Estimate Output Schema.

Immutable snapshot of the estimator state (S, P). This is the single unit
handed from the estimation cycle to the control cycle, so the controller
never reads a half-updated state/covariance pair.
"""

from dataclasses import dataclass
from typing import Tuple
import numpy as np


@dataclass(frozen=True, eq=False)
class PositionEstimate:
    """
    Estimator snapshot.

    Attributes:
        t_snapshot: Time the snapshot was taken (seconds)
        state: Full state [x, y, z, vx, vy, vz]
        covariance: 6x6 covariance (read-only copy)
        num_updates: Accepted scalar updates since initialize()
        num_rejected: Rejected observations since initialize()

    Notes:
        - covariance is copied and marked read-only on construction
    """

    t_snapshot: float
    state: Tuple[float, float, float, float, float, float]
    covariance: np.ndarray
    num_updates: int = 0
    num_rejected: int = 0

    def __post_init__(self):
        """Validate and freeze the snapshot."""
        if len(self.state) != 6:
            raise ValueError(f"State must have 6 components: {len(self.state)}")

        cov = np.array(self.covariance, dtype=float, copy=True)
        if cov.shape != (6, 6):
            raise ValueError(f"Covariance must be 6x6: {cov.shape}")
        cov.setflags(write=False)
        object.__setattr__(self, 'covariance', cov)
        object.__setattr__(self, 'state', tuple(float(v) for v in self.state))

        if self.num_updates < 0 or self.num_rejected < 0:
            raise ValueError("Update counters cannot be negative")

    @property
    def position(self) -> Tuple[float, float, float]:
        """Position (x, y, z) in meters."""
        return self.state[0], self.state[1], self.state[2]

    @property
    def velocity(self) -> Tuple[float, float, float]:
        """Velocity (vx, vy, vz) in m/s."""
        return self.state[3], self.state[4], self.state[5]

    @property
    def position_2d(self) -> Tuple[float, float]:
        """Planar position (x, y) in meters."""
        return self.state[0], self.state[1]

    @property
    def position_std(self) -> Tuple[float, float, float]:
        """Position standard deviations (sqrt of diagonal covariance)."""
        diag = np.clip(np.diag(self.covariance)[:3], 0.0, None)
        return tuple(float(s) for s in np.sqrt(diag))

    @property
    def position_uncertainty_m(self) -> float:
        """Horizontal RMS uncertainty in meters."""
        std_x, std_y, _ = self.position_std
        return float(np.sqrt(std_x ** 2 + std_y ** 2))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            't_snapshot': self.t_snapshot,
            'position': self.position,
            'velocity': self.velocity,
            'position_std': self.position_std,
            'num_updates': self.num_updates,
            'num_rejected': self.num_rejected,
        }
