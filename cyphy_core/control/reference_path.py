"""
Reference path fitting in the vehicle frame.

The controller always sees the vehicle at its own origin, facing +x. Upcoming
waypoints are transformed into that frame and fitted with a cubic, which
gives the controller its reference polynomial and initial errors:

    cte  = poly(0)           lateral offset of the path at the vehicle
    epsi = -atan(poly'(0))   heading relative to the path tangent
"""

import math
from typing import Sequence, Tuple

import numpy as np

from cyphy_core.control.kinematic_model import POLY_COEFFS, poly_eval, poly_slope
from cyphy_core.errors import ConfigurationError

# Distance at which a waypoint counts as reached (m)
WAYPOINT_RADIUS_M = 0.3


def wrap_angle(angle: float) -> float:
    """Wrap an angle to [-pi, pi)."""
    return (angle + math.pi) % (2.0 * math.pi) - math.pi


def heading_from_fixes(
    prev_xy: Sequence[float],
    curr_xy: Sequence[float],
    fallback: float = 0.0,
    min_displacement_m: float = 1e-3,
) -> float:
    """
    Heading of travel between two consecutive position fixes.

    Args:
        prev_xy: Previous (x, y)
        curr_xy: Current (x, y)
        fallback: Heading returned when the vehicle has barely moved
        min_displacement_m: Displacement below which fallback is used

    Returns:
        Heading in radians, wrapped to [-pi, pi)
    """
    dx = curr_xy[0] - prev_xy[0]
    dy = curr_xy[1] - prev_xy[1]
    if math.hypot(dx, dy) < min_displacement_m:
        return fallback
    return wrap_angle(math.atan2(dy, dx))


def to_vehicle_frame(
    points_xy: Sequence[Sequence[float]],
    pose_xy: Sequence[float],
    heading: float,
) -> np.ndarray:
    """
    Transform world-frame points into the vehicle frame.

    Args:
        points_xy: (M, 2) world points
        pose_xy: Vehicle (x, y) in the world frame
        heading: Vehicle heading (rad)

    Returns:
        (M, 2) points with the vehicle at the origin facing +x
    """
    points = np.asarray(points_xy, dtype=float).reshape(-1, 2)
    shifted = points - np.asarray(pose_xy[:2], dtype=float)
    c, s = math.cos(heading), math.sin(heading)
    rotation = np.array([[c, s], [-s, c]])
    return shifted @ rotation.T


def fit_reference_polynomial(local_points: Sequence[Sequence[float]], degree: int = 3) -> np.ndarray:
    """
    Least-squares polynomial fit y = poly(x) of vehicle-frame points.

    Args:
        local_points: (M, 2) points in the vehicle frame
        degree: Requested degree (<= 3); reduced to M - 1 for short inputs

    Returns:
        4 coefficients, lowest order first, zero-padded

    Raises:
        ConfigurationError: fewer than 2 points, degree > 3, or degenerate x
    """
    points = np.asarray(local_points, dtype=float).reshape(-1, 2)
    if points.shape[0] < 2:
        raise ConfigurationError(f"Need at least 2 points to fit a path, got {points.shape[0]}")
    if not 0 < degree < POLY_COEFFS:
        raise ConfigurationError(f"Degree must be 1..3: {degree}")
    if np.ptp(points[:, 0]) < 1e-9:
        raise ConfigurationError("Reference points share one x coordinate; path is not a function of x")

    degree = min(degree, points.shape[0] - 1)
    fitted = np.polyfit(points[:, 0], points[:, 1], degree)[::-1]

    coeffs = np.zeros(POLY_COEFFS)
    coeffs[:fitted.size] = fitted
    return coeffs


def initial_errors(coeffs: Sequence[float]) -> Tuple[float, float]:
    """Cross-track and heading error of a vehicle at the origin facing +x."""
    cte = float(poly_eval(coeffs, 0.0))
    epsi = float(-np.arctan(poly_slope(coeffs, 0.0)))
    return cte, epsi


def local_state(coeffs: Sequence[float]) -> Tuple[float, float, float, float, float]:
    """Controller state (0, 0, 0, cte, epsi) for a fitted reference."""
    cte, epsi = initial_errors(coeffs)
    return (0.0, 0.0, 0.0, cte, epsi)


def waypoint_reached(
    position: Sequence[float],
    waypoint: Sequence[float],
    radius_m: float = WAYPOINT_RADIUS_M,
) -> bool:
    """True if the planar distance to the waypoint is below radius_m."""
    return math.hypot(position[0] - waypoint[0], position[1] - waypoint[1]) < radius_m


def waypoint_passed(
    position: Sequence[float],
    heading: float,
    waypoint: Sequence[float],
) -> bool:
    """True if the waypoint lies behind the vehicle (vehicle-frame x <= 0)."""
    local = to_vehicle_frame([waypoint[:2]], position[:2], heading)
    return bool(local[0, 0] <= 0.0)
