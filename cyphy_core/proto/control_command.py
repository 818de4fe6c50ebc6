"""
Control Command Output Schema.

Output of one MPC solve: the first actuation pair of the horizon plus the
predicted (x, y) trajectory for telemetry.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple


class CommandSource(IntEnum):
    """Where a command came from."""

    MPC = 0             # Fresh converged solve
    HOLD_LAST = 1       # Fallback: repeated last good command
    ZERO = 2            # Fallback: stop the vehicle


@dataclass
class ControlCommand:
    """
    Steering/speed command for the drive actuators.

    Attributes:
        steering_rad: Steering angle (rad), first horizon actuation
        speed_m_s: Speed (m/s), first horizon actuation
        predicted_x: Predicted x for horizon steps 1..N-1 (vehicle frame)
        predicted_y: Predicted y for horizon steps 1..N-1 (vehicle frame)
        cost: Objective value at the solution
        solve_time_s: Wall-clock solve time
        iterations: Solver iterations
        source: CommandSource
    """

    steering_rad: float
    speed_m_s: float
    predicted_x: List[float] = field(default_factory=list)
    predicted_y: List[float] = field(default_factory=list)
    cost: Optional[float] = None
    solve_time_s: float = 0.0
    iterations: int = 0
    source: CommandSource = CommandSource.MPC

    def __post_init__(self):
        """Validate command."""
        if len(self.predicted_x) != len(self.predicted_y):
            raise ValueError(
                f"Predicted trajectory length mismatch: "
                f"{len(self.predicted_x)} != {len(self.predicted_y)}"
            )

    @property
    def actuation(self) -> Tuple[float, float]:
        """(steering, speed) pair."""
        return (self.steering_rad, self.speed_m_s)

    @property
    def predicted_xy(self) -> List[Tuple[float, float]]:
        """Predicted trajectory as (x, y) pairs."""
        return list(zip(self.predicted_x, self.predicted_y))

    @property
    def is_fallback(self) -> bool:
        """True if this command did not come from a converged solve."""
        return self.source != CommandSource.MPC

    def as_fallback(self, source: CommandSource) -> 'ControlCommand':
        """Copy of this command re-labelled with a fallback source."""
        return ControlCommand(
            steering_rad=self.steering_rad,
            speed_m_s=self.speed_m_s,
            predicted_x=list(self.predicted_x),
            predicted_y=list(self.predicted_y),
            cost=self.cost,
            solve_time_s=self.solve_time_s,
            iterations=self.iterations,
            source=source,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'steering_rad': self.steering_rad,
            'speed_m_s': self.speed_m_s,
            'predicted_xy': self.predicted_xy,
            'cost': self.cost,
            'solve_time_s': self.solve_time_s,
            'iterations': self.iterations,
            'source': self.source.name,
        }


def create_zero_command() -> ControlCommand:
    """Create a stop command (zero steering, zero speed)."""
    return ControlCommand(
        steering_rad=0.0,
        speed_m_s=0.0,
        source=CommandSource.ZERO,
    )
