"""
Unit tests for the closed estimation/control loop.

Tests cover:
- Estimation cycle publishing and skipping of bad observations
- Control cycle on a straight waypoint line
- Waypoint selection ahead of the vehicle
- Fallback policies on solver failure
- Stale estimate detection
- Background threads
"""

import time

import numpy as np
import pytest

from cyphy_core.control import (
    MPCConfig,
    NLPSolution,
    NLPSolver,
    SLSQPSolver,
    SolveStatus,
    TrajectoryController,
)
from cyphy_core.domain import (
    ControlLoop,
    ControlLoopConfig,
    FallbackPolicy,
    synthesize_tdoa,
)
from cyphy_core.errors import ControlSolveFailure
from cyphy_core.proto import CommandSource, TDOAMeasurement, TDOAMeasurementBatch

STRAIGHT_WAYPOINTS = [(2.5, 2.6), (3.0, 2.6), (3.5, 2.6), (4.0, 2.6)]


class SwitchableSolver(NLPSolver):
    """SLSQP backend that can be forced to fail."""

    def __init__(self):
        self.backend = SLSQPSolver(time_limit_s=5.0, max_iterations=200)
        self.fail = False

    def solve(self, problem):
        if self.fail:
            return NLPSolution(problem.x0, float('nan'), SolveStatus.INFEASIBLE, "forced")
        return self.backend.solve(problem)


@pytest.fixture
def solver():
    return SwitchableSolver()


def _make_loop(estimator, solver, policy=FallbackPolicy.HOLD_LAST):
    controller = TrajectoryController(MPCConfig(), solver=solver)
    return ControlLoop(estimator, controller, ControlLoopConfig(fallback_policy=policy))


class TestEstimationCycle:
    """Tests for the estimation side of the loop."""

    def test_publishes_snapshot(self, estimator, controller, registry):
        loop = ControlLoop(estimator, controller)
        measurements = synthesize_tdoa((2.2, 2.4, 0.0), registry)

        estimate = loop.estimation_cycle(measurements, t_now=1.5)

        assert loop.latest_estimate is estimate
        assert estimate.t_snapshot == 1.5
        assert estimate.num_updates == len(measurements)

    def test_accepts_batch(self, estimator, controller, registry):
        loop = ControlLoop(estimator, controller)
        batch = TDOAMeasurementBatch(2.5, synthesize_tdoa((2.2, 2.4, 0.0), registry))

        estimate = loop.estimation_cycle(batch)

        assert estimate.t_snapshot == 2.5
        assert estimate.num_updates == len(batch)

    def test_skips_unknown_anchor(self, estimator, controller, fresh_metrics, caplog):
        loop = ControlLoop(estimator, controller)
        measurements = [TDOAMeasurement(0, 1, 0.2), TDOAMeasurement(0, 6, 0.1), TDOAMeasurement(1, 2, -0.3)]

        estimate = loop.estimation_cycle(measurements, t_now=0.0)

        assert estimate.num_updates == 2
        assert fresh_metrics.get_drop_count('invalid_anchor') == 1
        assert '(0, 6)' in caplog.text

    def test_estimation_tracks_truth(self, estimator, controller, registry):
        loop = ControlLoop(estimator, controller)
        truth = (2.3, 2.2, 0.0)

        for step in range(100):
            loop.estimation_cycle(synthesize_tdoa(truth, registry), t_now=step * 0.016)

        x, y = loop.latest_estimate.position_2d
        assert np.hypot(x - truth[0], y - truth[1]) < 0.1


class TestControlCycle:
    """Tests for the control side of the loop."""

    def test_straight_line(self, estimator, solver):
        loop = _make_loop(estimator, solver)
        loop.estimation_cycle([], t_now=0.0)

        command = loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.05)

        assert command.source == CommandSource.MPC
        assert command.steering_rad == pytest.approx(0.0, abs=1e-2)
        assert command.speed_m_s > 0.0
        assert loop.last_command is command

    def test_upcoming_waypoints_skips_reached(self, estimator, controller):
        loop = ControlLoop(estimator, controller)

        upcoming = loop.upcoming_waypoints(STRAIGHT_WAYPOINTS, (2.45, 2.6))

        np.testing.assert_array_equal(upcoming[0], (3.0, 2.6))
        assert upcoming.shape == (3, 2)

    def test_upcoming_waypoints_skips_passed(self, estimator, controller):
        """Missed waypoints behind the vehicle are not chased; the last one anchors the fit."""
        loop = ControlLoop(estimator, controller)
        waypoints = [(3.4, 2.2), (3.5, 3.3), (5.0, 2.6)]

        upcoming = loop.upcoming_waypoints(waypoints, (3.6, 2.6), heading=0.0)

        np.testing.assert_array_equal(upcoming, [(3.5, 3.3), (5.0, 2.6)])

    def test_upcoming_waypoints_keeps_passed_nearest_as_tail(self, estimator, controller):
        loop = ControlLoop(estimator, controller, ControlLoopConfig(waypoint_radius_m=0.1))

        upcoming = loop.upcoming_waypoints(STRAIGHT_WAYPOINTS, (3.2, 2.6), heading=0.0)

        np.testing.assert_array_equal(upcoming, [(3.0, 2.6), (3.5, 2.6), (4.0, 2.6)])

    def test_upcoming_waypoints_all_passed(self, estimator, controller):
        loop = ControlLoop(estimator, controller)

        upcoming = loop.upcoming_waypoints(STRAIGHT_WAYPOINTS, (5.0, 2.6), heading=0.0)

        np.testing.assert_array_equal(upcoming, [(4.0, 2.6)])

    def test_single_remaining_waypoint(self, estimator, solver):
        loop = _make_loop(estimator, solver)
        loop.estimation_cycle([], t_now=0.0)

        command = loop.control_cycle([(3.0, 2.6)], t_now=0.05)

        assert command.source == CommandSource.MPC

    def test_heading_from_consecutive_fixes(self, estimator, solver):
        loop = _make_loop(estimator, solver)
        loop.estimation_cycle([], t_now=0.0)
        loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.0)

        loop.estimator.set_covariance_matrix(np.eye(6))
        loop.estimator.generic_scalar_update([0, 1, 0, 0, 0, 0], residual=0.5, noise_std=0.0)
        loop.estimation_cycle([], t_now=0.1)
        loop.control_cycle([(2.0, 3.5), (2.0, 4.0), (2.0, 4.5)], t_now=0.1)

        assert loop.heading == pytest.approx(np.pi / 2, abs=1e-6)

    def test_explicit_heading(self, estimator, solver):
        loop = _make_loop(estimator, solver)
        loop.estimation_cycle([], t_now=0.0)

        loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.0, heading=0.2)

        assert loop.heading == 0.2

    def test_stale_estimate_counted(self, estimator, solver, fresh_metrics):
        loop = _make_loop(estimator, solver)
        loop.estimation_cycle([], t_now=0.0)

        loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=10.0)

        assert fresh_metrics.get_drop_count('stale_estimate') == 1


class TestFallbackPolicies:
    """Tests for behaviour on failed solves."""

    def test_raise_policy(self, estimator, solver):
        loop = _make_loop(estimator, solver, FallbackPolicy.RAISE)
        loop.estimation_cycle([], t_now=0.0)
        solver.fail = True

        with pytest.raises(ControlSolveFailure):
            loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.0)

    def test_hold_last_repeats_previous(self, estimator, solver, fresh_metrics):
        loop = _make_loop(estimator, solver, FallbackPolicy.HOLD_LAST)
        loop.estimation_cycle([], t_now=0.0)
        good = loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.0)

        solver.fail = True
        held = loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.1)

        assert held.source == CommandSource.HOLD_LAST
        assert held.actuation == good.actuation
        assert loop.last_command is good
        assert fresh_metrics.get_counter('control_fallbacks') == 1

    def test_hold_last_without_history_stops(self, estimator, solver):
        loop = _make_loop(estimator, solver, FallbackPolicy.HOLD_LAST)
        loop.estimation_cycle([], t_now=0.0)
        solver.fail = True

        command = loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.0)

        assert command.source == CommandSource.ZERO
        assert command.actuation == (0.0, 0.0)

    def test_zero_policy(self, estimator, solver):
        loop = _make_loop(estimator, solver, FallbackPolicy.ZERO)
        loop.estimation_cycle([], t_now=0.0)
        loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.0)
        solver.fail = True

        command = loop.control_cycle(STRAIGHT_WAYPOINTS, t_now=0.1)

        assert command.source == CommandSource.ZERO
        assert command.is_fallback


class TestBackgroundThreads:
    """Tests for start()/stop()."""

    def test_runs_both_cycles(self, estimator, solver, registry):
        loop = _make_loop(estimator, solver)
        commands = []

        loop.start(
            measurement_source=lambda: synthesize_tdoa((2.0, 2.6, 0.0), registry),
            waypoint_source=lambda: STRAIGHT_WAYPOINTS,
            command_sink=commands.append,
        )
        try:
            time.sleep(0.35)
        finally:
            loop.stop()

        assert commands
        assert loop.latest_estimate.num_updates > 0

    def test_double_start_rejected(self, estimator, solver):
        loop = _make_loop(estimator, solver)
        loop.start(lambda: [], lambda: STRAIGHT_WAYPOINTS, lambda command: None)
        try:
            with pytest.raises(RuntimeError):
                loop.start(lambda: [], lambda: STRAIGHT_WAYPOINTS, lambda command: None)
        finally:
            loop.stop()
