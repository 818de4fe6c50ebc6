"""
TDOA Measurement Message Schema.

A TDOA observation is a range difference between two anchors:
    range_diff_m = d(other_anchor) - d(ref_anchor)

Observations are consumed by exactly one filter update and then dropped.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import math


@dataclass
class TDOAMeasurement:
    """
    Scalar range-difference observation.

    Attributes:
        ref_anchor_id: Reference anchor index (A_r)
        other_anchor_id: Second anchor index (A_n)
        range_diff_m: Measured d(other) - d(ref) in meters
        t_measurement: Measurement timestamp (seconds), if known

    Notes:
        - The range difference may be negative
        - ref and other must be different anchors
    """

    ref_anchor_id: int
    other_anchor_id: int
    range_diff_m: float
    t_measurement: Optional[float] = None

    def __post_init__(self):
        """Validate observation after initialization."""
        if self.ref_anchor_id < 0 or self.other_anchor_id < 0:
            raise ValueError(
                f"Anchor ids cannot be negative: "
                f"({self.ref_anchor_id}, {self.other_anchor_id})"
            )

        if self.ref_anchor_id == self.other_anchor_id:
            raise ValueError(
                f"Reference and other anchor must differ: {self.ref_anchor_id}"
            )

        if not math.isfinite(self.range_diff_m):
            raise ValueError(f"Range difference must be finite: {self.range_diff_m}")

    @property
    def anchor_pair(self) -> Tuple[int, int]:
        """(ref, other) anchor pair."""
        return (self.ref_anchor_id, self.other_anchor_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'ref_anchor_id': self.ref_anchor_id,
            'other_anchor_id': self.other_anchor_id,
            'range_diff_m': self.range_diff_m,
            't_measurement': self.t_measurement,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TDOAMeasurement':
        """Build from a dictionary produced by to_dict()."""
        return cls(
            ref_anchor_id=int(data['ref_anchor_id']),
            other_anchor_id=int(data['other_anchor_id']),
            range_diff_m=float(data['range_diff_m']),
            t_measurement=data.get('t_measurement'),
        )


@dataclass
class TDOAMeasurementBatch:
    """
    Observations collected during one estimation cycle.

    Attributes:
        t_cycle: Cycle time (seconds)
        measurements: TDOAMeasurement list, applied in order
    """

    t_cycle: float
    measurements: List[TDOAMeasurement] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.measurements)

    def __iter__(self):
        return iter(self.measurements)

    @property
    def anchor_ids(self) -> List[int]:
        """Sorted list of anchors referenced by this batch."""
        ids = set()
        for m in self.measurements:
            ids.update(m.anchor_pair)
        return sorted(ids)
