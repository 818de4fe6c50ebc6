"""
Closed estimation/control loop.

Runs the TDOA estimator and the MPC on independent fixed-rate cycles.
The estimation cycle publishes an immutable PositionEstimate after every
predict/update pass; the control cycle reads the latest published estimate
and never waits on the estimator (stale-but-available).

Usage:
    loop = ControlLoop(TDOAEstimator(), TrajectoryController())

    # Estimation rate (~60 Hz)
    loop.estimation_cycle(measurements)

    # Control rate (~10 Hz)
    command = loop.control_cycle(waypoints)
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from cyphy_core.control.mpc import TrajectoryController
from cyphy_core.control.reference_path import (
    WAYPOINT_RADIUS_M,
    fit_reference_polynomial,
    heading_from_fixes,
    local_state,
    to_vehicle_frame,
    waypoint_reached,
)
from cyphy_core.errors import (
    AnchorNotFoundError,
    ControlSolveFailure,
    NumericalInstabilityError,
)
from cyphy_core.localization.tdoa_estimator import TDOAEstimator
from cyphy_core.metrics import get_metrics
from cyphy_core.proto.control_command import (
    CommandSource,
    ControlCommand,
    create_zero_command,
)
from cyphy_core.proto.position_estimate import PositionEstimate
from cyphy_core.proto.tdoa_measurement import TDOAMeasurement, TDOAMeasurementBatch

logger = logging.getLogger(__name__)


class FallbackPolicy(Enum):
    """What the loop does when an MPC solve fails."""

    RAISE = "raise"             # Propagate ControlSolveFailure
    HOLD_LAST = "hold_last"     # Repeat last good command (zero if none)
    ZERO = "zero"               # Stop the vehicle


@dataclass
class ControlLoopConfig:
    """
    Configuration for the closed loop.

    Attributes:
        fallback_policy: Behaviour on ControlSolveFailure
        estimation_rate_hz: Background estimation thread rate
        control_rate_hz: Background control thread rate
        lookahead_waypoints: Waypoints used for each reference fit
        waypoint_radius_m: Distance at which a waypoint counts as reached
        max_estimate_age_s: Estimates older than this are flagged stale
    """

    fallback_policy: FallbackPolicy = FallbackPolicy.HOLD_LAST
    estimation_rate_hz: float = 60.0
    control_rate_hz: float = 10.0
    lookahead_waypoints: int = 6
    waypoint_radius_m: float = WAYPOINT_RADIUS_M
    max_estimate_age_s: float = 0.5


class ControlLoop:
    """
    Couples a TDOAEstimator and a TrajectoryController.

    The estimator is only touched by estimation_cycle(); the controller only
    reads published PositionEstimate snapshots.
    """

    def __init__(
        self,
        estimator: TDOAEstimator,
        controller: TrajectoryController,
        config: Optional[ControlLoopConfig] = None,
    ):
        """
        Initialize loop.

        Args:
            estimator: TDOA estimator (owned by the estimation cycle)
            controller: MPC controller
            config: Loop configuration (uses defaults if None)
        """
        self.estimator = estimator
        self.controller = controller
        self.config = config or ControlLoopConfig()
        self.metrics = get_metrics()

        self._estimate_lock = threading.Lock()
        self._latest_estimate: PositionEstimate = estimator.snapshot()

        self._heading = 0.0
        self._last_control_xy: Optional[tuple] = None
        self._last_command: Optional[ControlCommand] = None

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Estimation cycle
    # ------------------------------------------------------------------

    def estimation_cycle(
        self,
        measurements: Union[TDOAMeasurementBatch, Sequence[TDOAMeasurement]],
        t_now: Optional[float] = None,
    ) -> PositionEstimate:
        """
        One predict step followed by zero or more TDOA updates.

        Observations that reference unknown anchors or would destabilize the
        filter are skipped (the estimator has already counted them).

        Args:
            measurements: Batch (or plain sequence) of observations, applied in order
            t_now: Snapshot time; a batch's t_cycle is used if None

        Returns:
            The newly published PositionEstimate
        """
        if t_now is None and isinstance(measurements, TDOAMeasurementBatch):
            t_now = measurements.t_cycle

        self.estimator.predict()

        for measurement in measurements:
            try:
                self.estimator.update(measurement)
            except AnchorNotFoundError as e:
                logger.warning(f"Skipping observation {measurement.anchor_pair}: {e}")
            except NumericalInstabilityError as e:
                logger.warning(f"Skipping observation {measurement.anchor_pair}: {e}")

        estimate = self.estimator.snapshot(t_now)
        with self._estimate_lock:
            self._latest_estimate = estimate
        return estimate

    @property
    def latest_estimate(self) -> PositionEstimate:
        """Most recently published estimate."""
        with self._estimate_lock:
            return self._latest_estimate

    @property
    def heading(self) -> float:
        """Heading used by the last control cycle (rad)."""
        return self._heading

    @property
    def last_command(self) -> Optional[ControlCommand]:
        """Last command returned by control_cycle()."""
        return self._last_command

    # ------------------------------------------------------------------
    # Control cycle
    # ------------------------------------------------------------------

    def upcoming_waypoints(
        self,
        waypoints: Sequence[Sequence[float]],
        position_xy,
        heading: Optional[float] = None,
    ) -> np.ndarray:
        """
        Waypoints from the nearest one onwards, limited to the lookahead.

        Waypoints already within waypoint_radius_m of the vehicle, or behind
        it, are skipped. The last waypoint skipped for being behind is kept
        as the tail of the reference fit. If every waypoint is behind, only
        the final one is returned.

        Args:
            waypoints: World-frame (x, y) waypoints, in driving order
            position_xy: Vehicle (x, y)
            heading: Vehicle heading (rad); the loop's current heading if None
        """
        points = np.asarray(waypoints, dtype=float).reshape(-1, 2)
        if points.shape[0] == 0:
            return points
        if heading is None:
            heading = self._heading

        radius = self.config.waypoint_radius_m
        local_x = to_vehicle_frame(points, position_xy, heading)[:, 0]
        distances = np.hypot(points[:, 0] - position_xy[0], points[:, 1] - position_xy[1])

        nearest = int(np.argmin(distances))
        start = nearest
        while start < points.shape[0] - 1 and (
            waypoint_reached(position_xy, points[start], radius) or local_x[start] <= 0.0
        ):
            start += 1

        if (start > nearest and local_x[start] > 0.0 and local_x[start - 1] <= 0.0
                and not waypoint_reached(position_xy, points[start - 1], radius)):
            start -= 1
        return points[start:start + self.config.lookahead_waypoints]

    def control_cycle(
        self,
        waypoints: Sequence[Sequence[float]],
        t_now: Optional[float] = None,
        heading: Optional[float] = None,
    ) -> ControlCommand:
        """
        Fit the reference path and solve the MPC from the latest estimate.

        Args:
            waypoints: World-frame (x, y) waypoints, in driving order
            t_now: Current time (defaults to time.time())
            heading: Known heading (rad); estimated from consecutive fixes if None

        Returns:
            ControlCommand (flagged via source if it is a fallback)

        Raises:
            ControlSolveFailure: solve failed and fallback_policy is RAISE
            ConfigurationError: waypoints cannot be fitted
        """
        if t_now is None:
            t_now = time.time()

        estimate = self.latest_estimate
        if t_now - estimate.t_snapshot > self.config.max_estimate_age_s:
            self.metrics.increment_drop('stale_estimate')
            logger.warning(f"Estimate is {t_now - estimate.t_snapshot:.3f}s old")

        position_xy = estimate.position_2d
        if heading is None:
            if self._last_control_xy is not None:
                self._heading = heading_from_fixes(
                    self._last_control_xy, position_xy, fallback=self._heading
                )
        else:
            self._heading = heading
        self._last_control_xy = position_xy

        upcoming = self.upcoming_waypoints(waypoints, position_xy, self._heading)
        if upcoming.shape[0] < 2:
            # Last waypoint: aim straight from the current fix
            upcoming = np.vstack([np.asarray(position_xy, dtype=float), upcoming])

        local_points = to_vehicle_frame(upcoming, position_xy, self._heading)
        coeffs = fit_reference_polynomial(local_points)
        state = local_state(coeffs)

        try:
            command = self.controller.solve(state, coeffs)
        except ControlSolveFailure as e:
            command = self._fallback(e)
        else:
            self._last_command = command
        return command

    def _fallback(self, failure: ControlSolveFailure) -> ControlCommand:
        policy = self.config.fallback_policy
        if policy == FallbackPolicy.RAISE:
            raise failure

        self.metrics.increment('control_fallbacks')
        if policy == FallbackPolicy.HOLD_LAST and self._last_command is not None:
            logger.warning("Holding last command after failed solve")
            return self._last_command.as_fallback(CommandSource.HOLD_LAST)

        logger.warning("Commanding stop after failed solve")
        return create_zero_command()

    # ------------------------------------------------------------------
    # Background threads
    # ------------------------------------------------------------------

    def start(
        self,
        measurement_source: Callable[[], Sequence[TDOAMeasurement]],
        waypoint_source: Callable[[], Sequence[Sequence[float]]],
        command_sink: Callable[[ControlCommand], None],
    ):
        """
        Run estimation and control cycles on their own threads.

        Args:
            measurement_source: Returns the observations gathered since the last call
            waypoint_source: Returns the current waypoint list
            command_sink: Receives every command produced
        """
        if self._threads:
            raise RuntimeError("ControlLoop already running")

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_periodic,
                args=(self.config.estimation_rate_hz,
                      lambda: self.estimation_cycle(measurement_source())),
                name="estimation-cycle",
                daemon=True,
            ),
            threading.Thread(
                target=self._run_periodic,
                args=(self.config.control_rate_hz,
                      lambda: command_sink(self.control_cycle(waypoint_source()))),
                name="control-cycle",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            f"ControlLoop started (estimation {self.config.estimation_rate_hz:.0f} Hz, "
            f"control {self.config.control_rate_hz:.0f} Hz)"
        )

    def stop(self, timeout: float = 1.0):
        """Stop background threads."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("ControlLoop stopped")

    def _run_periodic(self, rate_hz: float, cycle: Callable[[], object]):
        period = 1.0 / rate_hz
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            try:
                cycle()
            except Exception as e:
                logger.error(f"{threading.current_thread().name} failed: {e}")
            next_run += period
            self._stop_event.wait(max(0.0, next_run - time.monotonic()))
