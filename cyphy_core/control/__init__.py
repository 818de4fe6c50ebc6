"""
Control Module: kinematic model, NLP capability and MPC.

Key classes:
- KinematicModel: Discrete bicycle model with analytic partials
- NLPSolver / SLSQPSolver: Constrained NLP capability and SciPy backend
- TrajectoryController: Receding-horizon MPC
"""

from .kinematic_model import (
    KinematicModel,
    as_coeffs,
    poly_eval,
    poly_slope,
    poly_curvature,
    desired_heading,
)
from .nlp_solver import (
    NLPProblem,
    NLPSolution,
    NLPSolver,
    SLSQPSolver,
    SolveStatus,
    INFINITY_SENTINEL,
)
from .mpc import (
    HorizonLayout,
    MPCConfig,
    MPCCostWeights,
    TrajectoryController,
)
from .reference_path import (
    fit_reference_polynomial,
    heading_from_fixes,
    initial_errors,
    local_state,
    to_vehicle_frame,
    waypoint_passed,
    waypoint_reached,
    wrap_angle,
)

__all__ = [
    'KinematicModel',
    'as_coeffs',
    'poly_eval',
    'poly_slope',
    'poly_curvature',
    'desired_heading',
    'NLPProblem',
    'NLPSolution',
    'NLPSolver',
    'SLSQPSolver',
    'SolveStatus',
    'INFINITY_SENTINEL',
    'HorizonLayout',
    'MPCConfig',
    'MPCCostWeights',
    'TrajectoryController',
    'fit_reference_polynomial',
    'heading_from_fixes',
    'initial_errors',
    'local_state',
    'to_vehicle_frame',
    'waypoint_passed',
    'waypoint_reached',
    'wrap_angle',
]
