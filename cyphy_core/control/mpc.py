"""
Receding-horizon Model Predictive Controller.

Builds a finite-horizon NLP from the current vehicle-frame state
[x, y, psi, cte, epsi] and a cubic reference path, solves it through the
NLPSolver capability, and returns only the first actuation pair
(steering, speed) plus the predicted (x, y) trajectory.

Decision vector layout (each field contiguous across time, N steps):

    | x (N) | y (N) | psi (N) | cte (N) | epsi (N) | speed (N-1) | steering (N-1) |

Usage:
    controller = TrajectoryController(MPCConfig())
    command = controller.solve((0, 0, 0, cte, epsi), coeffs)
    drive(command.steering_rad, command.speed_m_s)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np

from cyphy_core.control.kinematic_model import (
    KinematicModel,
    MODEL_STATE_DIM,
    as_coeffs,
)
from cyphy_core.control.nlp_solver import (
    INFINITY_SENTINEL,
    NLPProblem,
    NLPSolver,
    SLSQPSolver,
    SolveStatus,
)
from cyphy_core.errors import ConfigurationError, ControlSolveFailure
from cyphy_core.metrics import get_metrics
from cyphy_core.proto.control_command import ControlCommand, CommandSource

logger = logging.getLogger(__name__)

STATE_FIELDS = ('x', 'y', 'psi', 'cte', 'epsi')
ACTUATION_FIELDS = ('speed', 'steering')


@dataclass
class MPCCostWeights:
    """
    Cost weights.

    Attributes:
        cte: Cross-track error² weight (tracking)
        epsi: Heading error² weight (tracking)
        steering: Steering² weight (effort)
        speed: (speed - reference speed)² weight (effort)
        steering_rate: Consecutive steering difference² weight (smoothness)
        speed_rate: Consecutive speed difference² weight (smoothness)
    """

    cte: float = 1.0
    epsi: float = 1.0
    steering: float = 200.0
    speed: float = 50.0
    steering_rate: float = 250.0
    speed_rate: float = 200.0


@dataclass
class MPCConfig:
    """
    Configuration for the trajectory controller.

    Attributes:
        horizon_steps: Horizon length N
        dt_s: Horizon discretization (s)
        lr_m: Rear-axle reference length (m)
        steering_bound_rad: |steering| limit (rad)
        speed_bound_m_s: |speed| limit (m/s)
        reference_speed_m_s: Cruise speed the effort term is measured about
        time_limit_s: Solver wall-clock budget (s)
        max_iterations: Solver iteration limit
        tolerance: Solver convergence tolerance
        weights: Cost weights
    """

    horizon_steps: int = 10
    dt_s: float = 0.1
    lr_m: float = 0.3
    steering_bound_rad: float = 0.35
    speed_bound_m_s: float = 3.0
    reference_speed_m_s: float = 1.0
    time_limit_s: float = 0.1
    max_iterations: int = 100
    tolerance: float = 1e-6
    weights: MPCCostWeights = field(default_factory=MPCCostWeights)


class HorizonLayout:
    """
    Offsets of each field inside the flat decision vector.

    5N state scalars followed by 2(N-1) actuation scalars.
    """

    def __init__(self, horizon_steps: int):
        if horizon_steps < 2:
            raise ConfigurationError(f"Horizon must have at least 2 steps: {horizon_steps}")

        N = horizon_steps
        self.N = N
        self.x_start = 0
        self.y_start = self.x_start + N
        self.psi_start = self.y_start + N
        self.cte_start = self.psi_start + N
        self.epsi_start = self.cte_start + N
        self.speed_start = self.epsi_start + N
        self.steering_start = self.speed_start + N - 1

        self.n_vars = MODEL_STATE_DIM * N + 2 * (N - 1)
        self.n_constraints = MODEL_STATE_DIM * N

        self._starts = {
            'x': self.x_start,
            'y': self.y_start,
            'psi': self.psi_start,
            'cte': self.cte_start,
            'epsi': self.epsi_start,
            'speed': self.speed_start,
            'steering': self.steering_start,
        }

    def start(self, name: str) -> int:
        """Offset of the first entry of a field."""
        return self._starts[name]

    def field_slice(self, name: str) -> slice:
        """Slice covering every time step of a field."""
        start = self._starts[name]
        length = self.N if name in STATE_FIELDS else self.N - 1
        return slice(start, start + length)

    def split(self, z: np.ndarray) -> Dict[str, np.ndarray]:
        """Views of each field of a decision vector."""
        return {name: z[self.field_slice(name)] for name in self._starts}


class TrajectoryController:
    """
    MPC over a kinematic bicycle model.

    Stateless across solves: every call is self-contained given the state
    and the reference polynomial.
    """

    def __init__(self, config: Optional[MPCConfig] = None, solver: Optional[NLPSolver] = None):
        """
        Initialize controller.

        Args:
            config: Controller configuration (uses defaults if None)
            solver: NLP backend (SLSQPSolver with the configured budget if None)
        """
        self.config = config or MPCConfig()
        if self.config.steering_bound_rad <= 0 or self.config.speed_bound_m_s <= 0:
            raise ConfigurationError("Actuation bounds must be positive")

        self.layout = HorizonLayout(self.config.horizon_steps)
        self.model = KinematicModel(self.config.dt_s, self.config.lr_m)
        self.solver = solver or SLSQPSolver(
            time_limit_s=self.config.time_limit_s,
            max_iterations=self.config.max_iterations,
            tolerance=self.config.tolerance,
        )
        self.metrics = get_metrics()

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------

    def cost(self, z: np.ndarray) -> float:
        """Objective: tracking + effort + smoothness."""
        w = self.config.weights
        v = self.layout.split(z)
        speed_error = v['speed'] - self.config.reference_speed_m_s

        total = w.cte * np.sum(v['cte'] ** 2) + w.epsi * np.sum(v['epsi'] ** 2)
        total += w.steering * np.sum(v['steering'] ** 2) + w.speed * np.sum(speed_error ** 2)
        total += w.steering_rate * np.sum(np.diff(v['steering']) ** 2)
        total += w.speed_rate * np.sum(np.diff(v['speed']) ** 2)
        return float(total)

    def cost_gradient(self, z: np.ndarray) -> np.ndarray:
        """Analytic gradient of cost()."""
        w = self.config.weights
        L = self.layout
        v = L.split(z)
        grad = np.zeros(L.n_vars)

        grad[L.field_slice('cte')] = 2.0 * w.cte * v['cte']
        grad[L.field_slice('epsi')] = 2.0 * w.epsi * v['epsi']

        g_steer = 2.0 * w.steering * v['steering']
        d_steer = np.diff(v['steering'])
        g_steer[1:] += 2.0 * w.steering_rate * d_steer
        g_steer[:-1] -= 2.0 * w.steering_rate * d_steer
        grad[L.field_slice('steering')] = g_steer

        g_speed = 2.0 * w.speed * (v['speed'] - self.config.reference_speed_m_s)
        d_speed = np.diff(v['speed'])
        g_speed[1:] += 2.0 * w.speed_rate * d_speed
        g_speed[:-1] -= 2.0 * w.speed_rate * d_speed
        grad[L.field_slice('speed')] = g_speed

        return grad

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def _previous(self, v: Dict[str, np.ndarray]):
        return tuple(v[name][:-1] for name in STATE_FIELDS)

    def constraints(self, z: np.ndarray, coeffs: Sequence[float]) -> np.ndarray:
        """
        Constraint vector g(z).

        g[field_start] is the field's t=0 value (pinned by its bounds);
        g[field_start + t] is the dynamics residual next - f(previous).
        """
        L = self.layout
        v = L.split(z)
        predicted = self.model.transition(self._previous(v), v['steering'], v['speed'], coeffs)

        g = np.empty(L.n_constraints)
        for i, name in enumerate(STATE_FIELDS):
            start = L.start(name)
            g[start] = v[name][0]
            g[start + 1:start + L.N] = v[name][1:] - predicted[i]
        return g

    def constraint_jacobian(self, z: np.ndarray, coeffs: Sequence[float]) -> np.ndarray:
        """Analytic Jacobian of constraints() (dense, n_constraints x n_vars)."""
        L = self.layout
        v = L.split(z)
        partials = self.model.partials(self._previous(v), v['steering'], v['speed'], coeffs)

        J = np.zeros((L.n_constraints, L.n_vars))
        steps = np.arange(1, L.N)
        for name in STATE_FIELDS:
            start = L.start(name)
            rows = start + steps
            J[start, start] = 1.0
            J[rows, start + steps] = 1.0
            for in_field, derivative in partials[name].items():
                cols = L.start(in_field) + steps - 1
                J[rows, cols] -= derivative
        return J

    # ------------------------------------------------------------------
    # Problem assembly and solve
    # ------------------------------------------------------------------

    def _validate_inputs(self, state, coeffs):
        try:
            state = np.asarray(state, dtype=float).reshape(-1)
        except (TypeError, ValueError):
            raise ConfigurationError(f"State must be numeric: {state!r}")
        if state.shape != (MODEL_STATE_DIM,):
            raise ConfigurationError(
                f"State must be (x, y, psi, cte, epsi), got {state.size} values"
            )
        try:
            coeffs = as_coeffs(coeffs)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e))
        if not (np.all(np.isfinite(state)) and np.all(np.isfinite(coeffs))):
            raise ConfigurationError("State and coefficients must be finite")
        return state, coeffs

    def initial_guess(self, state: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        """Rollout at the reference speed with straight wheels."""
        L = self.layout
        cfg = self.config
        speed = float(np.clip(cfg.reference_speed_m_s, -cfg.speed_bound_m_s, cfg.speed_bound_m_s))

        steering_seq = np.zeros(L.N - 1)
        speed_seq = np.full(L.N - 1, speed)
        trajectory = self.model.rollout(state, steering_seq, speed_seq, coeffs)

        z0 = np.zeros(L.n_vars)
        for i, name in enumerate(STATE_FIELDS):
            z0[L.field_slice(name)] = trajectory[:, i]
        z0[L.field_slice('speed')] = speed_seq
        z0[L.field_slice('steering')] = steering_seq

        if not np.all(np.isfinite(z0)):
            # Rollout overflowed on an extreme reference; start from the pinned state
            z0 = np.zeros(L.n_vars)
            for i, name in enumerate(STATE_FIELDS):
                z0[L.start(name)] = state[i]
        return z0

    def build_problem(self, state: Sequence[float], coeffs: Sequence[float]) -> NLPProblem:
        """
        Assemble the horizon NLP.

        Args:
            state: Current (x, y, psi, cte, epsi) in the vehicle frame
            coeffs: Reference polynomial, lowest order first (<= 4 entries)

        Returns:
            NLPProblem ready for any NLPSolver

        Raises:
            ConfigurationError: malformed or non-finite inputs
        """
        state, coeffs = self._validate_inputs(state, coeffs)
        L = self.layout
        cfg = self.config

        var_lower = np.full(L.n_vars, -INFINITY_SENTINEL)
        var_upper = np.full(L.n_vars, INFINITY_SENTINEL)
        var_lower[L.field_slice('steering')] = -cfg.steering_bound_rad
        var_upper[L.field_slice('steering')] = cfg.steering_bound_rad
        var_lower[L.field_slice('speed')] = -cfg.speed_bound_m_s
        var_upper[L.field_slice('speed')] = cfg.speed_bound_m_s

        con_lower = np.zeros(L.n_constraints)
        con_upper = np.zeros(L.n_constraints)
        for i, name in enumerate(STATE_FIELDS):
            con_lower[L.start(name)] = state[i]
            con_upper[L.start(name)] = state[i]

        return NLPProblem(
            objective=self.cost,
            gradient=self.cost_gradient,
            constraints=lambda z: self.constraints(z, coeffs),
            jacobian=lambda z: self.constraint_jacobian(z, coeffs),
            x0=self.initial_guess(state, coeffs),
            var_lower=var_lower,
            var_upper=var_upper,
            con_lower=con_lower,
            con_upper=con_upper,
        )

    def solve(self, state: Sequence[float], coeffs: Sequence[float]) -> ControlCommand:
        """
        Solve one receding-horizon step.

        Args:
            state: Current (x, y, psi, cte, epsi); normally (0, 0, 0, cte, epsi)
            coeffs: Reference polynomial, lowest order first

        Returns:
            ControlCommand with the first actuation pair and the predicted
            (x, y) for horizon steps 1..N-1

        Raises:
            ConfigurationError: malformed inputs
            ControlSolveFailure: solver did not converge within its budget
        """
        problem = self.build_problem(state, coeffs)
        self.metrics.increment('mpc_solves')

        solution = self.solver.solve(problem)
        self.metrics.record_histogram('mpc_solve_time_s', solution.solve_time_s)

        if not solution.converged:
            self.metrics.increment('mpc_solve_failures')
            if solution.status == SolveStatus.TIME_LIMIT:
                self.metrics.increment_drop('solver_timeout')
            else:
                self.metrics.increment_drop('solver_failed')
            logger.warning(
                f"MPC solve failed: {solution.status.name} after "
                f"{solution.solve_time_s * 1000:.1f} ms ({solution.message})"
            )
            raise ControlSolveFailure(
                f"MPC solve failed with status {solution.status.name}: {solution.message}",
                status=solution.status,
                solve_time_s=solution.solve_time_s,
            )

        L = self.layout
        cfg = self.config
        z = solution.x

        # SLSQP may land a hair outside the box
        steering = float(np.clip(z[L.steering_start], -cfg.steering_bound_rad, cfg.steering_bound_rad))
        speed = float(np.clip(z[L.speed_start], -cfg.speed_bound_m_s, cfg.speed_bound_m_s))

        self.metrics.increment('mpc_solve_success')
        self.metrics.record_histogram('mpc_cost', solution.objective_value)
        logger.debug(
            f"MPC steering={steering:.3f} rad speed={speed:.3f} m/s "
            f"cost={solution.objective_value:.4f} iters={solution.iterations}"
        )

        return ControlCommand(
            steering_rad=steering,
            speed_m_s=speed,
            predicted_x=z[L.x_start + 1:L.x_start + L.N].tolist(),
            predicted_y=z[L.y_start + 1:L.y_start + L.N].tolist(),
            cost=solution.objective_value,
            solve_time_s=solution.solve_time_s,
            iterations=solution.iterations,
            source=CommandSource.MPC,
        )
