"""
Kinematic bicycle model.

Discrete-time transition used for the MPC dynamics constraints, expressed
in the vehicle's local frame with a cubic reference path y = poly(x).

State (5D):
    [x, y, psi, cte, epsi]
Actuation:
    steering delta (rad), speed v (m/s)

Transition over one step dt (rear-axle reference length lr):
    x'    = x + v cos(psi) dt
    y'    = y + v sin(psi) dt
    psi'  = psi + v tan(delta) dt / lr
    cte'  = (poly(x) - y) + v sin(epsi) dt
    epsi' = (psi - atan(poly'(x))) + v delta / lr dt

The heading-error update keeps delta linear (small-angle form) while the
heading update keeps tan(delta); the optimizer is easier to drive with the
linear form and both agree for small steering angles.
"""

from dataclasses import dataclass
from typing import Dict, Sequence

import numpy as np

# State indices
X = 0
Y = 1
PSI = 2
CTE = 3
EPSI = 4
MODEL_STATE_DIM = 5

POLY_COEFFS = 4

# Rear-axle reference length of the 1/10 scale car (m)
DEFAULT_LR_M = 0.3


def as_coeffs(coeffs: Sequence[float]) -> np.ndarray:
    """
    Normalize polynomial coefficients to 4 entries, lowest order first.

    Raises:
        ValueError: more than 4 coefficients (degree > 3)
    """
    c = np.asarray(coeffs, dtype=float).reshape(-1)
    if c.size > POLY_COEFFS:
        raise ValueError(f"Reference polynomial degree must be <= 3, got {c.size} coefficients")
    out = np.zeros(POLY_COEFFS)
    out[:c.size] = c
    return out


def poly_eval(coeffs: Sequence[float], x):
    """Evaluate c0 + c1 x + c2 x² + c3 x³."""
    c = as_coeffs(coeffs)
    return c[0] + c[1] * x + c[2] * x ** 2 + c[3] * x ** 3


def poly_slope(coeffs: Sequence[float], x):
    """First derivative c1 + 2 c2 x + 3 c3 x²."""
    c = as_coeffs(coeffs)
    return c[1] + 2 * c[2] * x + 3 * c[3] * x ** 2


def poly_curvature(coeffs: Sequence[float], x):
    """Second derivative 2 c2 + 6 c3 x."""
    c = as_coeffs(coeffs)
    return 2 * c[2] + 6 * c[3] * x


def desired_heading(coeffs: Sequence[float], x):
    """Tangent direction of the reference path at x."""
    return np.arctan(poly_slope(coeffs, x))


@dataclass
class KinematicModel:
    """
    Discrete kinematic bicycle model.

    Attributes:
        dt_s: Discretization step (s)
        lr_m: Rear-axle reference length (m)

    All methods accept scalars or equal-length numpy arrays, so a whole
    horizon can be evaluated in one call.
    """

    dt_s: float = 0.1
    lr_m: float = DEFAULT_LR_M

    def __post_init__(self):
        if self.dt_s <= 0:
            raise ValueError(f"dt must be positive: {self.dt_s}")
        if self.lr_m <= 0:
            raise ValueError(f"lr must be positive: {self.lr_m}")

    def transition(self, state, steering, speed, coeffs):
        """
        Advance one step.

        Args:
            state: (x, y, psi, cte, epsi); each entry scalar or array
            steering: Steering angle(s) (rad)
            speed: Speed(s) (m/s)
            coeffs: Reference polynomial coefficients

        Returns:
            np.ndarray with the next (x, y, psi, cte, epsi) stacked on axis 0
        """
        x, y, psi, cte, epsi = state
        dt, lr = self.dt_s, self.lr_m

        x_next = x + speed * np.cos(psi) * dt
        y_next = y + speed * np.sin(psi) * dt
        psi_next = psi + speed * np.tan(steering) * dt / lr
        cte_next = (poly_eval(coeffs, x) - y) + speed * np.sin(epsi) * dt
        epsi_next = (psi - desired_heading(coeffs, x)) + speed * steering / lr * dt

        return np.array([x_next, y_next, psi_next, cte_next, epsi_next])

    def partials(self, state, steering, speed, coeffs) -> Dict[str, Dict[str, np.ndarray]]:
        """
        Analytic partial derivatives of transition().

        Returns:
            Nested dict out_field -> {in_field: d out / d in}, where fields
            are 'x', 'y', 'psi', 'cte', 'epsi', 'steering', 'speed'.
            Terms that are identically zero are omitted.
        """
        x, y, psi, cte, epsi = state
        dt, lr = self.dt_s, self.lr_m
        ones = np.ones_like(np.asarray(x, dtype=float))

        slope = poly_slope(coeffs, x)
        curvature = poly_curvature(coeffs, x)

        return {
            'x': {
                'x': ones,
                'psi': -speed * np.sin(psi) * dt,
                'speed': np.cos(psi) * dt * ones,
            },
            'y': {
                'y': ones,
                'psi': speed * np.cos(psi) * dt,
                'speed': np.sin(psi) * dt * ones,
            },
            'psi': {
                'psi': ones,
                'steering': speed * dt / (lr * np.cos(steering) ** 2),
                'speed': np.tan(steering) * dt / lr * ones,
            },
            'cte': {
                'x': slope * ones,
                'y': -ones,
                'epsi': speed * np.cos(epsi) * dt,
                'speed': np.sin(epsi) * dt * ones,
            },
            'epsi': {
                'x': -curvature / (1.0 + slope ** 2) * ones,
                'psi': ones,
                'steering': speed / lr * dt * ones,
                'speed': steering / lr * dt * ones,
            },
        }

    def rollout(self, state, steering_seq, speed_seq, coeffs) -> np.ndarray:
        """
        Simulate the model over an actuation sequence.

        Args:
            state: Initial (x, y, psi, cte, epsi)
            steering_seq: Steering per step (length M)
            speed_seq: Speed per step (length M)
            coeffs: Reference polynomial coefficients

        Returns:
            (M + 1, 5) array including the initial state
        """
        if len(steering_seq) != len(speed_seq):
            raise ValueError("Steering and speed sequences must have equal length")

        trajectory = [np.asarray(state, dtype=float)]
        for steering, speed in zip(steering_seq, speed_seq):
            trajectory.append(self.transition(trajectory[-1], steering, speed, coeffs))
        return np.vstack(trajectory)
