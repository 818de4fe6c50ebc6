"""
Domain Module: closed estimation/control loop and simulation.
"""

from .control_loop import (
    ControlLoop,
    ControlLoopConfig,
    FallbackPolicy,
)
from .simulation import (
    BicycleSimulator,
    ClosedLoopResult,
    DEFAULT_ANCHOR_PAIRS,
    run_closed_loop,
    synthesize_tdoa,
)

__all__ = [
    'ControlLoop',
    'ControlLoopConfig',
    'FallbackPolicy',
    'BicycleSimulator',
    'ClosedLoopResult',
    'DEFAULT_ANCHOR_PAIRS',
    'run_closed_loop',
    'synthesize_tdoa',
]
