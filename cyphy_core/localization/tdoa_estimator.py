"""
TDOA Extended Kalman Filter.

Estimates vehicle position from scalar range-difference (TDOA) observations
against fixed anchors, using a 6D constant-velocity model.

State vector:
    S = [x, y, z, vx, vy, vz]^T

Measurement model (anchors A_r = reference, A_n = other):
    h(S) = ||p - a_n|| - ||p - a_r||

The observation is nonlinear in position, so each update linearizes it at
the current estimate (EKF) and applies the standard scalar Kalman update.

Usage:
    estimator = TDOAEstimator()
    estimator.predict()
    estimator.scalar_range_difference_update(0, 1, measured_diff)
    x, y, z = estimator.get_location()
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from cyphy_core.errors import (
    AnchorNotFoundError,
    ConfigurationError,
    NumericalInstabilityError,
)
from cyphy_core.localization.anchor_registry import AnchorRegistry
from cyphy_core.metrics import get_metrics
from cyphy_core.proto.position_estimate import PositionEstimate
from cyphy_core.proto.tdoa_measurement import TDOAMeasurement

logger = logging.getLogger(__name__)

# State indices
STATE_X = 0
STATE_Y = 1
STATE_Z = 2
STATE_VX = 3
STATE_VY = 4
STATE_VZ = 5
STATE_DIM = 6

POSITION = slice(STATE_X, STATE_Z + 1)


@dataclass
class TDOAEstimatorConfig:
    """
    Configuration for the TDOA estimator.

    Attributes:
        dt_s: Estimation cycle period baked into the transition matrix (s)
        initial_position: Initial position guess (x, y, z) in meters
        initial_pos_std_xy_m: Initial horizontal position uncertainty (m)
        initial_pos_std_z_m: Initial vertical position uncertainty (m)
        initial_vel_std_m_s: Initial velocity uncertainty (m/s)
        measurement_std_m: Range-difference noise standard deviation (m)
        propagate_state: If True, predict() also advances S <- A S
        q_pos: Position process noise (m²/s), zero disables
        q_vel: Velocity process noise (m²/s³), zero disables
        min_innovation_variance: Smallest accepted innovation variance (m²)
        max_innovation_sigma: Innovation gate in sigmas (None disables)
        min_anchor_distance_m: Minimum distance to an anchor for a valid Jacobian
    """

    dt_s: float = 0.016                     # ~60 Hz
    initial_position: Tuple[float, float, float] = (2.0, 2.6, 0.0)
    initial_pos_std_xy_m: float = 100.0
    initial_pos_std_z_m: float = 1.0
    initial_vel_std_m_s: float = 0.01
    measurement_std_m: float = 0.15
    propagate_state: bool = True
    q_pos: float = 0.0
    q_vel: float = 0.0
    min_innovation_variance: float = 1e-9
    max_innovation_sigma: Optional[float] = None
    min_anchor_distance_m: float = 1e-6


def build_transition_matrix(dt_s: float) -> np.ndarray:
    """
    Constant-velocity transition matrix.

    Args:
        dt_s: Timestep (s)

    Returns:
        6x6 identity with A[pos, vel] = dt
    """
    A = np.eye(STATE_DIM)
    A[STATE_X, STATE_VX] = dt_s
    A[STATE_Y, STATE_VY] = dt_s
    A[STATE_Z, STATE_VZ] = dt_s
    return A


def range_difference(
    position: Sequence[float],
    ref_pos: Sequence[float],
    other_pos: Sequence[float],
) -> float:
    """
    Range difference d(other) - d(ref) seen from position.

    Args:
        position: (x, y, z) of the vehicle
        ref_pos: Reference anchor position
        other_pos: Other anchor position

    Returns:
        Range difference in meters
    """
    p = np.asarray(position, dtype=float)
    d_other = np.linalg.norm(p - np.asarray(other_pos, dtype=float))
    d_ref = np.linalg.norm(p - np.asarray(ref_pos, dtype=float))
    return float(d_other - d_ref)


def range_difference_jacobian(
    position: Sequence[float],
    ref_pos: Sequence[float],
    other_pos: Sequence[float],
    min_distance_m: float = 1e-6,
) -> np.ndarray:
    """
    Gradient of the range difference w.r.t. the full state.

    Only the position columns are populated:
        H[p] = (p - a_other) / d_other - (p - a_ref) / d_ref

    Returns:
        Row vector of length STATE_DIM

    Raises:
        NumericalInstabilityError: position coincides with an anchor
    """
    p = np.asarray(position, dtype=float)
    diff_other = p - np.asarray(other_pos, dtype=float)
    diff_ref = p - np.asarray(ref_pos, dtype=float)
    d_other = np.linalg.norm(diff_other)
    d_ref = np.linalg.norm(diff_ref)

    if d_other < min_distance_m or d_ref < min_distance_m:
        raise NumericalInstabilityError(
            f"Position {tuple(p)} coincides with an anchor "
            f"(d_ref={d_ref:.2e}, d_other={d_other:.2e})"
        )

    H = np.zeros(STATE_DIM)
    H[POSITION] = diff_other / d_other - diff_ref / d_ref
    return H


class TDOAEstimator:
    """
    EKF position estimator driven by TDOA range differences.

    The state S and covariance P are owned by this instance and always
    replaced together under a lock, so snapshot() and get_location() from
    another thread never observe a half-applied update.

    Usage:
        estimator = TDOAEstimator(config)

        # Every estimation cycle
        estimator.predict()
        for m in measurements:
            estimator.update(m)

        estimate = estimator.snapshot()
    """

    def __init__(
        self,
        config: Optional[TDOAEstimatorConfig] = None,
        registry: Optional[AnchorRegistry] = None,
    ):
        """
        Initialize estimator.

        Args:
            config: Estimator configuration (uses defaults if None)
            registry: Anchor registry (surveyed defaults if None)
        """
        self.config = config or TDOAEstimatorConfig()
        self.metrics = get_metrics()

        if registry is None:
            registry = AnchorRegistry()
            registry.load_defaults()
        self.registry = registry

        self._lock = threading.RLock()
        self._state = np.zeros(STATE_DIM)
        self._covariance = np.eye(STATE_DIM)
        self._transition = build_transition_matrix(self.config.dt_s)
        self._num_updates = 0
        self._num_rejected = 0

        self.initialize()

    # ------------------------------------------------------------------
    # Lifecycle and configuration
    # ------------------------------------------------------------------

    def initialize(self):
        """
        Reset state and covariance to the configured initial guess.

        Position uncertainty is large (low confidence in the guess), while
        velocity uncertainty is small (vehicle starts near rest).
        """
        cfg = self.config
        if len(cfg.initial_position) != 3:
            raise ConfigurationError(
                f"initial_position must be (x, y, z): {cfg.initial_position}"
            )

        state = np.zeros(STATE_DIM)
        state[POSITION] = cfg.initial_position

        covariance = np.diag([
            cfg.initial_pos_std_xy_m ** 2,
            cfg.initial_pos_std_xy_m ** 2,
            cfg.initial_pos_std_z_m ** 2,
            cfg.initial_vel_std_m_s ** 2,
            cfg.initial_vel_std_m_s ** 2,
            cfg.initial_vel_std_m_s ** 2,
        ])

        with self._lock:
            self._state = state
            self._covariance = covariance
            self._transition = build_transition_matrix(cfg.dt_s)
            self._num_updates = 0
            self._num_rejected = 0

        self.metrics.increment('estimator_resets')
        logger.info(f"TDOAEstimator initialized at {tuple(cfg.initial_position)}")

    @property
    def state(self) -> np.ndarray:
        """Copy of the state vector."""
        with self._lock:
            return self._state.copy()

    @property
    def covariance(self) -> np.ndarray:
        """Copy of the covariance matrix."""
        with self._lock:
            return self._covariance.copy()

    @property
    def transition_matrix(self) -> np.ndarray:
        """Copy of the transition matrix."""
        with self._lock:
            return self._transition.copy()

    def _validate_square(self, matrix, name: str) -> np.ndarray:
        try:
            m = np.array(matrix, dtype=float)
        except (TypeError, ValueError):
            self.metrics.increment_drop('invalid_config')
            raise ConfigurationError(f"{name} must be a numeric matrix")

        if m.shape != (STATE_DIM, STATE_DIM):
            self.metrics.increment_drop('invalid_config')
            raise ConfigurationError(
                f"{name} must be {STATE_DIM}x{STATE_DIM}, got {m.shape}"
            )

        if not np.all(np.isfinite(m)):
            self.metrics.increment_drop('invalid_config')
            raise ConfigurationError(f"{name} contains non-finite entries")

        return m

    def set_transition_matrix(self, transition):
        """
        Replace the transition matrix A.

        Raises:
            ConfigurationError: wrong shape or non-finite entries (A unchanged)
        """
        A = self._validate_square(transition, "Transition matrix")
        with self._lock:
            self._transition = A
        logger.info("Transition matrix replaced")

    def set_covariance_matrix(self, covariance):
        """
        Replace the covariance matrix P.

        Raises:
            ConfigurationError: wrong shape or non-finite entries (P unchanged)
        """
        P = self._validate_square(covariance, "Covariance matrix")
        with self._lock:
            self._covariance = P
        logger.info("Covariance matrix replaced")

    def set_anchor_position(self, anchor_id: int, x, y=None, z=None):
        """Set an anchor position (see AnchorRegistry.set_position)."""
        self.registry.set_position(anchor_id, x, y, z)

    def get_anchor_position(self, anchor_id: int) -> Tuple[float, float, float]:
        """Get an anchor position (raises AnchorNotFoundError)."""
        return self.registry.get_position(anchor_id)

    # ------------------------------------------------------------------
    # Filter steps
    # ------------------------------------------------------------------

    def _process_noise(self) -> np.ndarray:
        dt = self.config.dt_s
        return np.diag([
            self.config.q_pos * dt,
            self.config.q_pos * dt,
            self.config.q_pos * dt,
            self.config.q_vel * dt,
            self.config.q_vel * dt,
            self.config.q_vel * dt,
        ])

    def predict(self):
        """
        Propagate one fixed estimation cycle.

        P <- A P A^T (+ Q), and S <- A S when propagate_state is enabled.
        Call once per cycle before applying that cycle's observations.
        """
        Q = self._process_noise()
        with self._lock:
            A = self._transition
            covariance = A @ self._covariance @ A.T + Q
            if self.config.propagate_state:
                state = A @ self._state
            else:
                state = self._state
            self._state = state
            self._covariance = covariance

        self.metrics.increment('tdoa_predictions')

    def scalar_range_difference_update(
        self,
        ref_anchor_id: int,
        other_anchor_id: int,
        measured_diff_m: float,
    ) -> bool:
        """
        Update with one TDOA range-difference observation.

        Args:
            ref_anchor_id: Reference anchor (A_r)
            other_anchor_id: Other anchor (A_n)
            measured_diff_m: Measured d(other) - d(ref) in meters

        Returns:
            True if applied, False if rejected by the innovation gate

        Raises:
            ConfigurationError: ref and other are the same anchor
            AnchorNotFoundError: an anchor is not configured
            NumericalInstabilityError: degenerate geometry or innovation
        """
        if ref_anchor_id == other_anchor_id:
            self.metrics.increment_drop('invalid_anchor')
            raise ConfigurationError(
                f"Reference and other anchor must differ: {ref_anchor_id}"
            )

        try:
            ref_pos = self.registry.get_position(ref_anchor_id)
            other_pos = self.registry.get_position(other_anchor_id)
        except AnchorNotFoundError:
            self.metrics.increment_drop('invalid_anchor')
            raise

        with self._lock:
            position = self._state[POSITION].copy()
            predicted = range_difference(position, ref_pos, other_pos)
            try:
                H = range_difference_jacobian(
                    position, ref_pos, other_pos, self.config.min_anchor_distance_m
                )
            except NumericalInstabilityError:
                self._num_rejected += 1
                self.metrics.increment_drop('numerical_instability')
                raise

            residual = float(measured_diff_m) - predicted
            return self.generic_scalar_update(H, residual, self.config.measurement_std_m)

    def update(self, measurement: TDOAMeasurement) -> bool:
        """Apply a TDOAMeasurement (see scalar_range_difference_update)."""
        return self.scalar_range_difference_update(
            measurement.ref_anchor_id,
            measurement.other_anchor_id,
            measurement.range_diff_m,
        )

    def generic_scalar_update(self, H, residual: float, noise_std: float) -> bool:
        """
        Standard Kalman update for a scalar observation.

        Independent of the measurement model, so other scalar observations
        (altitude, bearing, ...) can reuse it with their own H and residual.

            S_innov = H P H^T + noise_std²
            K       = P H^T / S_innov
            S      <- S + K * residual
            P      <- (I - K H) P

        Args:
            H: Observation Jacobian, length STATE_DIM (or 1 x STATE_DIM)
            residual: Measured minus predicted observation
            noise_std: Measurement noise standard deviation

        Returns:
            True if applied, False if rejected by the innovation gate

        Raises:
            ConfigurationError: H has the wrong length or noise_std < 0
            NumericalInstabilityError: innovation variance degenerate;
                state and covariance are left unchanged
        """
        h = np.asarray(H, dtype=float).reshape(-1)
        if h.shape != (STATE_DIM,):
            raise ConfigurationError(f"H must have {STATE_DIM} entries, got {h.size}")
        if noise_std < 0:
            raise ConfigurationError(f"Noise std cannot be negative: {noise_std}")

        with self._lock:
            P = self._covariance

            PHt = P @ h
            innovation_var = float(h @ PHt) + noise_std ** 2

            if not np.isfinite(innovation_var) or innovation_var < self.config.min_innovation_variance:
                self._num_rejected += 1
                self.metrics.increment_drop('numerical_instability')
                logger.warning(f"Innovation variance {innovation_var:.3e} degenerate, update rejected")
                raise NumericalInstabilityError(
                    f"Innovation variance {innovation_var:.3e} below "
                    f"{self.config.min_innovation_variance:.1e}"
                )

            gate = self.config.max_innovation_sigma
            if gate is not None and abs(residual) > gate * np.sqrt(innovation_var):
                self._num_rejected += 1
                self.metrics.increment('tdoa_updates_rejected')
                self.metrics.increment_drop('outlier')
                logger.debug(
                    f"Innovation {residual:.3f} m outside {gate:.1f} sigma gate, skipped"
                )
                return False

            K = PHt / innovation_var
            state = self._state + K * residual
            covariance = (np.eye(STATE_DIM) - np.outer(K, h)) @ P
            covariance = 0.5 * (covariance + covariance.T)

            if not (np.all(np.isfinite(state)) and np.all(np.isfinite(covariance))):
                self._num_rejected += 1
                self.metrics.increment_drop('numerical_instability')
                raise NumericalInstabilityError("Update produced non-finite state or covariance")

            if np.any(np.diag(covariance) < 0.0):
                self._num_rejected += 1
                self.metrics.increment_drop('numerical_instability')
                raise NumericalInstabilityError("Update produced a negative variance")

            self._state = state
            self._covariance = covariance
            self._num_updates += 1

        self.metrics.increment('tdoa_updates')
        self.metrics.record_histogram('tdoa_innovation_m', abs(residual))
        return True

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def get_location(self) -> Tuple[float, float, float]:
        """Current position estimate (x, y, z)."""
        with self._lock:
            x, y, z = self._state[POSITION]
        return float(x), float(y), float(z)

    def snapshot(self, t_snapshot: Optional[float] = None) -> PositionEstimate:
        """
        Atomic copy of the current state and covariance.

        Args:
            t_snapshot: Snapshot time (defaults to time.time())
        """
        if t_snapshot is None:
            t_snapshot = time.time()
        with self._lock:
            return PositionEstimate(
                t_snapshot=t_snapshot,
                state=tuple(self._state),
                covariance=self._covariance.copy(),
                num_updates=self._num_updates,
                num_rejected=self._num_rejected,
            )
