"""
Anchor registry.

Fixed 3D positions of the UWB anchors, indexed by integer id in
[0, MAX_ANCHORS). Set once at startup (surveyed defaults), may be
overwritten, never deleted while running.
"""

import logging
import math
import numbers
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from cyphy_core.errors import AnchorNotFoundError, ConfigurationError
from cyphy_core.metrics import get_metrics

logger = logging.getLogger(__name__)

MAX_ANCHORS = 8

# Surveyed positions of the lab anchors (meters)
DEFAULT_ANCHOR_POSITIONS: Dict[int, Tuple[float, float, float]] = {
    0: (4.628, 0.600, 1.312),
    1: (4.628, 3.810, 1.297),
    2: (0.043, 4.210, 1.302),
    3: (0.123, 1.673, 1.903),
}

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class Anchor:
    """
    A fixed anchor.

    Attributes:
        anchor_id: Anchor index
        position: (x, y, z) in meters
    """

    anchor_id: int
    position: Vec3

    def to_dict(self) -> dict:
        return {
            'anchor_id': self.anchor_id,
            'x': self.position[0],
            'y': self.position[1],
            'z': self.position[2],
        }


class AnchorRegistry:
    """
    Bounded table of anchor positions.

    Usage:
        registry = AnchorRegistry()
        registry.load_defaults()
        registry.set_position(4, 1.0, 2.0, 1.5)
        x, y, z = registry.get_position(0)
    """

    def __init__(self, max_anchors: int = MAX_ANCHORS):
        if max_anchors <= 0:
            raise ConfigurationError(f"max_anchors must be positive: {max_anchors}")
        self.max_anchors = max_anchors
        self._anchors: Dict[int, Anchor] = {}
        self.metrics = get_metrics()

    def _check_index(self, anchor_id: int) -> bool:
        return isinstance(anchor_id, numbers.Integral) and 0 <= anchor_id < self.max_anchors

    def set_position(
        self,
        anchor_id: int,
        x: Union[float, Vec3],
        y: Optional[float] = None,
        z: Optional[float] = None,
    ):
        """
        Set (or overwrite) an anchor position.

        Accepts either set_position(id, (x, y, z)) or set_position(id, x, y, z).

        Raises:
            ConfigurationError: id out of range, malformed or non-finite coordinates
        """
        if y is None and z is None:
            try:
                px, py, pz = x
            except (TypeError, ValueError):
                self.metrics.increment_drop('invalid_config')
                raise ConfigurationError(f"Anchor position must be (x, y, z): {x!r}")
        else:
            px, py, pz = x, y, z

        if not self._check_index(anchor_id):
            self.metrics.increment_drop('invalid_config')
            raise ConfigurationError(
                f"Anchor id {anchor_id} outside [0, {self.max_anchors})"
            )

        try:
            position = (float(px), float(py), float(pz))
        except (TypeError, ValueError):
            self.metrics.increment_drop('invalid_config')
            raise ConfigurationError(f"Anchor position must be numeric: {(px, py, pz)!r}")

        if not all(math.isfinite(c) for c in position):
            self.metrics.increment_drop('invalid_config')
            raise ConfigurationError(f"Anchor position must be finite: {position}")

        if anchor_id in self._anchors:
            logger.debug(f"Anchor {anchor_id} moved {self._anchors[anchor_id].position} -> {position}")

        anchor_id = int(anchor_id)
        self._anchors[anchor_id] = Anchor(anchor_id, position)

    def get_position(self, anchor_id: int) -> Vec3:
        """
        Get an anchor position.

        Raises:
            AnchorNotFoundError: anchor never set (or id out of range)
        """
        anchor = self._anchors.get(anchor_id)
        if anchor is None:
            raise AnchorNotFoundError(anchor_id)
        return anchor.position

    def get(self, anchor_id: int) -> Anchor:
        """Get the Anchor record (raises AnchorNotFoundError)."""
        anchor = self._anchors.get(anchor_id)
        if anchor is None:
            raise AnchorNotFoundError(anchor_id)
        return anchor

    def load_defaults(self):
        """Load the surveyed default anchor positions."""
        for anchor_id, position in DEFAULT_ANCHOR_POSITIONS.items():
            self.set_position(anchor_id, position)
        logger.info(f"Loaded {len(DEFAULT_ANCHOR_POSITIONS)} default anchor positions")

    @property
    def anchor_ids(self) -> List[int]:
        """Sorted list of configured anchor ids."""
        return sorted(self._anchors)

    def __contains__(self, anchor_id: int) -> bool:
        return anchor_id in self._anchors

    def __len__(self) -> int:
        return len(self._anchors)

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {aid: self._anchors[aid].to_dict() for aid in self.anchor_ids}
