"""
Constrained nonlinear program (NLP) solver capability.

The MPC only assembles an NLPProblem; any backend implementing NLPSolver
can solve it. Problems use the IPOPT-style box form:

    minimize    f(x)
    subject to  var_lower <= x    <= var_upper
                con_lower <= g(x) <= con_upper

Bounds at or beyond +/-1e19 mean "unbounded". Rows with
con_lower == con_upper are equality constraints.

The bundled backend is SciPy's SLSQP with a hard wall-clock budget, so one
control cycle never stalls on a slow solve. Solver failures are reported in
the returned NLPSolution status, never raised.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

import numpy as np
from scipy.optimize import Bounds, minimize

logger = logging.getLogger(__name__)

# IPOPT convention for "infinite" bounds
INFINITY_SENTINEL = 1.0e19


class SolveStatus(IntEnum):
    """Outcome of an NLP solve."""

    SUCCESS = 0             # Converged to a stationary point
    MAX_ITERATIONS = 1      # Iteration limit reached
    TIME_LIMIT = 2          # Wall-clock budget exhausted
    INFEASIBLE = 3          # Constraints incompatible
    NUMERICAL_ERROR = 4     # Line search / linear algebra breakdown, NaN


# SLSQP exit modes that mean the constraints cannot be satisfied
_SLSQP_INFEASIBLE_MODES = {2, 4}
_SLSQP_ITERATION_LIMIT_MODE = 9


@dataclass
class NLPProblem:
    """
    Box-constrained NLP with analytic derivatives.

    Attributes:
        objective: f(x) -> float
        gradient: grad f(x) -> (n,) array
        constraints: g(x) -> (m,) array
        jacobian: dg/dx(x) -> (m, n) array
        x0: Initial guess (n,)
        var_lower, var_upper: Variable bounds (n,)
        con_lower, con_upper: Constraint bounds (m,)
    """

    objective: Callable[[np.ndarray], float]
    gradient: Callable[[np.ndarray], np.ndarray]
    constraints: Callable[[np.ndarray], np.ndarray]
    jacobian: Callable[[np.ndarray], np.ndarray]
    x0: np.ndarray
    var_lower: np.ndarray
    var_upper: np.ndarray
    con_lower: np.ndarray
    con_upper: np.ndarray

    def __post_init__(self):
        """Validate dimensions."""
        self.x0 = np.asarray(self.x0, dtype=float)
        self.var_lower = np.asarray(self.var_lower, dtype=float)
        self.var_upper = np.asarray(self.var_upper, dtype=float)
        self.con_lower = np.asarray(self.con_lower, dtype=float)
        self.con_upper = np.asarray(self.con_upper, dtype=float)

        n = self.x0.size
        if self.var_lower.shape != (n,) or self.var_upper.shape != (n,):
            raise ValueError(f"Variable bounds must have shape ({n},)")
        if self.con_lower.shape != self.con_upper.shape:
            raise ValueError("Constraint bounds must have matching shapes")
        if np.any(self.var_lower > self.var_upper):
            raise ValueError("Variable lower bound above upper bound")
        if np.any(self.con_lower > self.con_upper):
            raise ValueError("Constraint lower bound above upper bound")

    @property
    def n_vars(self) -> int:
        return self.x0.size

    @property
    def n_constraints(self) -> int:
        return self.con_lower.size


@dataclass
class NLPSolution:
    """
    Result of an NLP solve.

    Attributes:
        x: Final iterate (n,)
        objective_value: f(x)
        status: SolveStatus
        message: Backend message
        iterations: Backend iterations
        solve_time_s: Wall-clock time
    """

    x: np.ndarray
    objective_value: float
    status: SolveStatus
    message: str = ""
    iterations: int = 0
    solve_time_s: float = 0.0

    @property
    def converged(self) -> bool:
        """True only for SolveStatus.SUCCESS."""
        return self.status == SolveStatus.SUCCESS


class NLPSolver(ABC):
    """Capability interface: solve an NLPProblem."""

    @abstractmethod
    def solve(self, problem: NLPProblem) -> NLPSolution:
        """Solve the problem; failures are reported through the status."""


class _SolveTimeout(Exception):
    """Raised inside callbacks when the wall-clock budget is exhausted."""


class _EvaluationCache:
    """Caches g(x) and its Jacobian for the last iterate (SLSQP splits eq/ineq)."""

    def __init__(self, fn: Callable[[np.ndarray], np.ndarray]):
        self._fn = fn
        self._x: Optional[np.ndarray] = None
        self._value: Optional[np.ndarray] = None

    def __call__(self, x: np.ndarray) -> np.ndarray:
        if self._x is None or not np.array_equal(x, self._x):
            self._value = np.asarray(self._fn(x), dtype=float)
            self._x = np.array(x, copy=True)
        return self._value


def _to_infinite(bounds: np.ndarray) -> np.ndarray:
    out = np.array(bounds, dtype=float, copy=True)
    out[out >= INFINITY_SENTINEL] = np.inf
    out[out <= -INFINITY_SENTINEL] = -np.inf
    return out


class SLSQPSolver(NLPSolver):
    """
    SciPy SLSQP backend with a wall-clock budget.

    Usage:
        solver = SLSQPSolver(time_limit_s=0.1)
        solution = solver.solve(problem)
        if solution.converged:
            use(solution.x)
    """

    def __init__(
        self,
        time_limit_s: float = 0.1,
        max_iterations: int = 100,
        tolerance: float = 1e-6,
    ):
        """
        Initialize backend.

        Args:
            time_limit_s: Hard wall-clock budget per solve (s)
            max_iterations: SLSQP iteration limit
            tolerance: SLSQP ftol
        """
        if time_limit_s <= 0:
            raise ValueError(f"Time limit must be positive: {time_limit_s}")
        self.time_limit_s = time_limit_s
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def solve(self, problem: NLPProblem) -> NLPSolution:
        start = time.perf_counter()
        deadline = start + self.time_limit_s
        last_x = [np.clip(problem.x0, problem.var_lower, problem.var_upper)]

        def guarded(fn):
            def wrapper(x):
                if time.perf_counter() > deadline:
                    raise _SolveTimeout()
                last_x[0] = np.array(x, copy=True)
                return fn(x)
            return wrapper

        g = _EvaluationCache(guarded(problem.constraints))
        jac = _EvaluationCache(guarded(problem.jacobian))

        con_lower = _to_infinite(problem.con_lower)
        con_upper = _to_infinite(problem.con_upper)
        eq = np.flatnonzero((con_lower == con_upper) & np.isfinite(con_lower))
        lower = np.flatnonzero(np.isfinite(con_lower) & (con_lower != con_upper))
        upper = np.flatnonzero(np.isfinite(con_upper) & (con_lower != con_upper))

        constraints = []
        if eq.size:
            constraints.append({
                'type': 'eq',
                'fun': lambda x: g(x)[eq] - con_lower[eq],
                'jac': lambda x: jac(x)[eq],
            })
        if lower.size:
            constraints.append({
                'type': 'ineq',
                'fun': lambda x: g(x)[lower] - con_lower[lower],
                'jac': lambda x: jac(x)[lower],
            })
        if upper.size:
            constraints.append({
                'type': 'ineq',
                'fun': lambda x: con_upper[upper] - g(x)[upper],
                'jac': lambda x: -jac(x)[upper],
            })

        bounds = Bounds(_to_infinite(problem.var_lower), _to_infinite(problem.var_upper))

        try:
            result = minimize(
                guarded(problem.objective),
                last_x[0],
                jac=guarded(problem.gradient),
                method='SLSQP',
                bounds=bounds,
                constraints=constraints,
                options={'maxiter': self.max_iterations, 'ftol': self.tolerance},
            )
        except _SolveTimeout:
            elapsed = time.perf_counter() - start
            logger.debug(f"SLSQP exceeded {self.time_limit_s:.3f}s budget")
            return NLPSolution(
                x=last_x[0],
                objective_value=float('nan'),
                status=SolveStatus.TIME_LIMIT,
                message=f"Time limit of {self.time_limit_s:.3f}s exceeded",
                solve_time_s=elapsed,
            )
        except (FloatingPointError, ValueError, np.linalg.LinAlgError) as e:
            elapsed = time.perf_counter() - start
            logger.debug(f"SLSQP numerical failure: {e}")
            return NLPSolution(
                x=last_x[0],
                objective_value=float('nan'),
                status=SolveStatus.NUMERICAL_ERROR,
                message=str(e),
                solve_time_s=elapsed,
            )

        elapsed = time.perf_counter() - start
        x = np.asarray(result.x, dtype=float)

        if not np.all(np.isfinite(x)) or not np.isfinite(result.fun):
            status = SolveStatus.NUMERICAL_ERROR
        elif result.status == 0:
            status = SolveStatus.SUCCESS
        elif result.status == _SLSQP_ITERATION_LIMIT_MODE:
            status = SolveStatus.MAX_ITERATIONS
        elif result.status in _SLSQP_INFEASIBLE_MODES:
            status = SolveStatus.INFEASIBLE
        else:
            status = SolveStatus.NUMERICAL_ERROR

        return NLPSolution(
            x=x,
            objective_value=float(result.fun),
            status=status,
            message=str(result.message),
            iterations=int(getattr(result, 'nit', 0)),
            solve_time_s=elapsed,
        )
