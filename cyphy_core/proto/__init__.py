"""
Protocol Module: Message schemas exchanged with the estimator and controller.
"""

from .tdoa_measurement import (
    TDOAMeasurement,
    TDOAMeasurementBatch,
)
from .position_estimate import PositionEstimate
from .control_command import (
    ControlCommand,
    CommandSource,
    create_zero_command,
)

__all__ = [
    'TDOAMeasurement',
    'TDOAMeasurementBatch',
    'PositionEstimate',
    'ControlCommand',
    'CommandSource',
    'create_zero_command',
]
