"""
Unit tests for reference path fitting.
"""

import math

import numpy as np
import pytest

from cyphy_core.control import (
    fit_reference_polynomial,
    heading_from_fixes,
    initial_errors,
    local_state,
    to_vehicle_frame,
    waypoint_passed,
    waypoint_reached,
    wrap_angle,
)
from cyphy_core.errors import ConfigurationError


class TestAngles:
    """Tests for heading helpers."""

    @pytest.mark.parametrize("angle,expected", [
        (0.0, 0.0),
        (math.pi / 2, math.pi / 2),
        (3 * math.pi / 2, -math.pi / 2),
        (-3 * math.pi / 2, math.pi / 2),
        (4 * math.pi + 0.1, 0.1),
    ])
    def test_wrap_angle(self, angle, expected):
        assert wrap_angle(angle) == pytest.approx(expected)

    def test_heading_from_fixes(self):
        assert heading_from_fixes((0.0, 0.0), (1.0, 1.0)) == pytest.approx(math.pi / 4)
        assert heading_from_fixes((1.0, 0.0), (0.0, 0.0)) == pytest.approx(-math.pi)

    def test_heading_fallback_when_stationary(self):
        assert heading_from_fixes((1.0, 1.0), (1.0, 1.0 + 1e-5), fallback=0.7) == 0.7


class TestVehicleFrame:
    """Tests for world -> vehicle frame transform."""

    def test_point_ahead_maps_to_positive_x(self):
        local = to_vehicle_frame([(2.0, 3.0)], (2.0, 1.0), math.pi / 2)
        np.testing.assert_allclose(local, [[2.0, 0.0]], atol=1e-12)

    def test_point_left_maps_to_positive_y(self):
        local = to_vehicle_frame([(0.0, 1.0), (1.0, 0.0)], (0.0, 0.0), 0.0)
        np.testing.assert_allclose(local, [[0.0, 1.0], [1.0, 0.0]], atol=1e-12)

    def test_distances_preserved(self):
        points = np.array([(3.0, 1.0), (4.5, -2.0)])
        local = to_vehicle_frame(points, (1.0, 1.0), 0.83)

        assert np.linalg.norm(local[0] - local[1]) == pytest.approx(np.linalg.norm(points[0] - points[1]))


class TestFit:
    """Tests for polynomial fitting."""

    def test_recovers_cubic(self):
        coeffs = np.array([0.2, -0.1, 0.05, 0.01])
        xs = np.linspace(0.5, 3.0, 6)
        ys = coeffs[0] + coeffs[1] * xs + coeffs[2] * xs ** 2 + coeffs[3] * xs ** 3

        fitted = fit_reference_polynomial(np.column_stack([xs, ys]))

        np.testing.assert_allclose(fitted, coeffs, atol=1e-8)

    def test_two_points_fit_a_line(self):
        fitted = fit_reference_polynomial([(0.0, 1.0), (2.0, 2.0)])
        np.testing.assert_allclose(fitted, [1.0, 0.5, 0.0, 0.0], atol=1e-10)

    def test_degree_limit(self):
        with pytest.raises(ConfigurationError):
            fit_reference_polynomial([(0, 0), (1, 1), (2, 2)], degree=4)

    def test_too_few_points(self):
        with pytest.raises(ConfigurationError):
            fit_reference_polynomial([(1.0, 1.0)])

    def test_vertical_points(self):
        with pytest.raises(ConfigurationError):
            fit_reference_polynomial([(1.0, 0.0), (1.0, 2.0), (1.0, 3.0)])


class TestInitialErrors:
    """Tests for cte/epsi at the vehicle origin."""

    def test_offset_line(self):
        cte, epsi = initial_errors([0.5, 1.0, 0.0, 0.0])

        assert cte == pytest.approx(0.5)
        assert epsi == pytest.approx(-math.pi / 4)

    def test_local_state(self):
        assert local_state([0.3, 0.0, 2.0, 1.0]) == pytest.approx((0.0, 0.0, 0.0, 0.3, 0.0))


class TestWaypointReached:
    """Tests for waypoint radius checks."""

    def test_inside_radius(self):
        assert waypoint_reached((1.0, 1.0, 0.0), (1.2, 1.1))

    def test_outside_radius(self):
        assert not waypoint_reached((1.0, 1.0), (1.5, 1.0))

    def test_custom_radius(self):
        assert waypoint_reached((1.0, 1.0), (1.5, 1.0), radius_m=0.6)


class TestWaypointPassed:
    """Tests for waypoints falling behind the vehicle."""

    def test_ahead(self):
        assert not waypoint_passed((1.0, 1.0, 0.0), 0.0, (1.5, 1.4))

    def test_behind(self):
        assert waypoint_passed((1.0, 1.0), 0.0, (0.9, 3.0))

    def test_depends_on_heading(self):
        assert not waypoint_passed((1.0, 1.0), math.pi / 2, (0.9, 3.0))
        assert waypoint_passed((1.0, 1.0), -math.pi / 2, (0.9, 3.0))
