"""
Closed-loop simulation.

Synthesizes TDOA observations from a simulated vehicle, runs them through
a ControlLoop, and drives the vehicle with the resulting commands. Used by
the command-line demo and the integration tests.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from cyphy_core.control.reference_path import waypoint_passed, waypoint_reached
from cyphy_core.domain.control_loop import ControlLoop
from cyphy_core.localization.anchor_registry import AnchorRegistry
from cyphy_core.localization.tdoa_estimator import range_difference
from cyphy_core.proto.tdoa_measurement import TDOAMeasurement, TDOAMeasurementBatch

logger = logging.getLogger(__name__)

# Every pair of the four lab anchors
DEFAULT_ANCHOR_PAIRS: List[Tuple[int, int]] = [
    (0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3),
]


def synthesize_tdoa(
    true_position: Sequence[float],
    registry: AnchorRegistry,
    pairs: Optional[Sequence[Tuple[int, int]]] = None,
    noise_std_m: float = 0.0,
    rng: Optional[np.random.Generator] = None,
    t_measurement: Optional[float] = None,
) -> List[TDOAMeasurement]:
    """
    Range-difference observations seen from a true position.

    Args:
        true_position: (x, y, z) of the vehicle
        registry: Anchor positions
        pairs: (ref, other) anchor pairs (all pairs of the default anchors if None)
        noise_std_m: Gaussian noise added to each range difference
        rng: Random generator (required when noise_std_m > 0)
        t_measurement: Timestamp attached to each observation

    Returns:
        One TDOAMeasurement per pair
    """
    if pairs is None:
        pairs = DEFAULT_ANCHOR_PAIRS
    if noise_std_m > 0 and rng is None:
        rng = np.random.default_rng()

    measurements = []
    for ref_id, other_id in pairs:
        diff = range_difference(
            true_position,
            registry.get_position(ref_id),
            registry.get_position(other_id),
        )
        if noise_std_m > 0:
            diff += rng.normal(0.0, noise_std_m)
        measurements.append(TDOAMeasurement(ref_id, other_id, diff, t_measurement))
    return measurements


@dataclass
class BicycleSimulator:
    """
    World-frame kinematic bicycle used as ground truth.

    Attributes:
        x, y, z: Position (m)
        heading: Heading (rad)
        lr_m: Rear-axle reference length (m)
    """

    x: float = 2.0
    y: float = 2.6
    z: float = 0.0
    heading: float = 0.0
    lr_m: float = 0.3

    def step(self, steering: float, speed: float, dt_s: float):
        """Integrate one step with the commanded steering and speed."""
        self.x += speed * math.cos(self.heading) * dt_s
        self.y += speed * math.sin(self.heading) * dt_s
        self.heading += speed * math.tan(steering) * dt_s / self.lr_m

    @property
    def position(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)


@dataclass
class ClosedLoopResult:
    """
    Trace of a closed-loop run.

    Attributes:
        true_positions: Simulated (x, y, z) per estimation cycle
        estimated_positions: Estimated (x, y, z) per estimation cycle
        commands: ControlCommand per control cycle
        waypoints_reached: Number of waypoints reached
        waypoints_missed: Number of waypoints passed without being reached
    """

    true_positions: List[Tuple[float, float, float]] = field(default_factory=list)
    estimated_positions: List[Tuple[float, float, float]] = field(default_factory=list)
    commands: list = field(default_factory=list)
    waypoints_reached: int = 0
    waypoints_missed: int = 0

    @property
    def position_errors_m(self) -> np.ndarray:
        """Planar estimation error per estimation cycle."""
        if not self.true_positions:
            return np.zeros(0)
        truth = np.asarray(self.true_positions)[:, :2]
        estimate = np.asarray(self.estimated_positions)[:, :2]
        return np.linalg.norm(truth - estimate, axis=1)

    @property
    def num_fallbacks(self) -> int:
        return sum(1 for c in self.commands if c.is_fallback)


def run_closed_loop(
    loop: ControlLoop,
    simulator: BicycleSimulator,
    waypoints: Sequence[Sequence[float]],
    steps: int,
    noise_std_m: float = 0.0,
    rng: Optional[np.random.Generator] = None,
    pairs: Optional[Sequence[Tuple[int, int]]] = None,
) -> ClosedLoopResult:
    """
    Run the simulated vehicle under the control loop.

    The estimation cycle runs every step (estimator dt); the control cycle
    runs whenever a controller dt has elapsed. A waypoint that falls behind
    the simulated vehicle before it is reached is counted as missed and
    dropped from the route.

    Args:
        loop: ControlLoop under test
        simulator: Ground-truth vehicle
        waypoints: World-frame (x, y) waypoints
        steps: Number of estimation cycles
        noise_std_m: Range-difference noise
        rng: Random generator
        pairs: Anchor pairs observed every cycle

    Returns:
        ClosedLoopResult
    """
    dt_est = loop.estimator.config.dt_s
    dt_ctrl = loop.controller.config.dt_s
    control_every = max(1, int(round(dt_ctrl / dt_est)))

    remaining = [tuple(w) for w in waypoints]
    result = ClosedLoopResult()
    steering, speed = 0.0, 0.0

    for step in range(steps):
        t_now = step * dt_est

        batch = TDOAMeasurementBatch(t_now, synthesize_tdoa(
            simulator.position, loop.estimator.registry, pairs, noise_std_m, rng, t_now
        ))
        estimate = loop.estimation_cycle(batch)
        result.true_positions.append(simulator.position)
        result.estimated_positions.append(estimate.position)

        while remaining:
            if waypoint_reached(simulator.position, remaining[0]):
                result.waypoints_reached += 1
                logger.info(f"Waypoint reached ({result.waypoints_reached}/{len(waypoints)})")
            elif waypoint_passed(simulator.position, simulator.heading, remaining[0]):
                result.waypoints_missed += 1
                logger.warning(f"Waypoint {remaining[0]} passed without being reached")
            else:
                break
            remaining.pop(0)

        if not remaining:
            logger.info("Route finished")
            break

        if step % control_every == 0:
            command = loop.control_cycle(remaining, t_now)
            result.commands.append(command)
            steering, speed = command.steering_rad, command.speed_m_s

        simulator.step(steering, speed, dt_est)

    return result
