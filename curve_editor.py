"""
Curve editing state for the stencil tone curves.

Keeps the committed curves (what high quality runs use) apart from the draft
curves being dragged around, and edits only ever produce valid curves:
endpoints stay at x=0 and x=255, x values stay unique and ascending.
"""

import logging
from typing import Mapping, Optional, Tuple

from stencil_lib import (
    CHANNEL_RED,
    CHANNELS,
    DEFAULT_CURVES,
    IDENTITY_CURVE,
    CurvePoint,
    InvalidSettingsError,
    make_curve_set,
)

__all__ = [
    'CurveEditor',
    'HIT_RADIUS',
]

logger = logging.getLogger(__name__)

# A press grabs an existing point when closer than this on both axes
HIT_RADIUS = 15


def _clamp(value: float, lo: int = 0, hi: int = 255) -> int:
    return max(lo, min(hi, int(round(value))))


class CurveEditor:
    """
    Press / drag / release editing of one channel at a time.

    Example:
        editor = CurveEditor()
        editor.press(128, 128)     # insert a point and grab it
        editor.drag(128, 160)      # draft changes, committed does not
        curves = editor.release()  # draft becomes the committed curves
    """

    def __init__(self, curves: Optional[Mapping] = None, active_channel: str = CHANNEL_RED):
        self._committed = make_curve_set(curves if curves is not None else DEFAULT_CURVES)
        self._draft = self._committed
        self._grabbed: Optional[CurvePoint] = None
        self._interacting = False
        self.active_channel = active_channel
        self.select_channel(active_channel)

    @property
    def committed(self) -> Mapping[str, Tuple[CurvePoint, ...]]:
        return self._committed

    @property
    def draft(self) -> Mapping[str, Tuple[CurvePoint, ...]]:
        return self._draft

    @property
    def is_interacting(self) -> bool:
        return self._interacting

    @property
    def points(self) -> Tuple[CurvePoint, ...]:
        """Draft points of the active channel."""
        return self._draft[self.active_channel]

    @property
    def grabbed_index(self) -> Optional[int]:
        if self._grabbed is None:
            return None
        return self.points.index(self._grabbed)

    def select_channel(self, channel: str):
        if channel not in CHANNELS:
            raise InvalidSettingsError(f"Unknown curve channel: '{channel}'. Must be one of: {list(CHANNELS)}")
        if self._interacting:
            self.release()
        self.active_channel = channel

    def _replace_points(self, points):
        curves = dict(self._draft)
        curves[self.active_channel] = tuple(sorted(points, key=lambda p: p.x))
        self._draft = make_curve_set(curves)

    def press(self, x: float, y: float) -> int:
        """
        Start an interaction at (x, y) in curve space.

        Grabs the first point within HIT_RADIUS on both axes; otherwise grabs
        the point sharing x (moving it to y); otherwise inserts a new point.

        Returns:
            Index of the grabbed point in the active curve
        """
        x, y = _clamp(x), _clamp(y)
        points = list(self.points)
        self._interacting = True

        for p in points:
            if abs(p.x - x) < HIT_RADIUS and abs(p.y - y) < HIT_RADIUS:
                self._grabbed = p
                return self.grabbed_index

        same_x = [i for i, p in enumerate(points) if p.x == x]
        grabbed = CurvePoint(x, y)
        if same_x:
            points[same_x[0]] = grabbed
        else:
            points.append(grabbed)
        self._replace_points(points)
        self._grabbed = grabbed
        logger.debug("Curve '%s': point %s placed", self.active_channel, tuple(grabbed))
        return self.grabbed_index

    def drag(self, x: float, y: float):
        """
        Move the grabbed point. Endpoints move only vertically; an interior
        point keeps x within [1,254] and removes any point it lands on.
        """
        if not self._interacting or self._grabbed is None:
            return
        points = list(self.points)
        index = points.index(self._grabbed)
        y = _clamp(y)

        if index == 0 or index == len(points) - 1:
            moved = CurvePoint(self._grabbed.x, y)
            points[index] = moved
        else:
            moved = CurvePoint(_clamp(x, 1, 254), y)
            points = [p for i, p in enumerate(points) if i != index and p.x != moved.x]
            points.append(moved)

        self._replace_points(points)
        self._grabbed = moved

    def release(self) -> Mapping[str, Tuple[CurvePoint, ...]]:
        """End the interaction and commit the draft curves."""
        if self._interacting:
            self._committed = self._draft
            logger.debug("Curve '%s' committed: %s", self.active_channel,
                         [tuple(p) for p in self._committed[self.active_channel]])
        self._interacting = False
        self._grabbed = None
        return self._committed

    def cancel(self):
        """Drop the draft and go back to the committed curves."""
        self._draft = self._committed
        self._interacting = False
        self._grabbed = None

    def reset_channel(self, channel: Optional[str] = None) -> Mapping[str, Tuple[CurvePoint, ...]]:
        """Reset a channel (default: the active one) to the identity curve."""
        channel = channel or self.active_channel
        if channel not in CHANNELS:
            raise InvalidSettingsError(f"Unknown curve channel: '{channel}'")
        curves = dict(self._committed)
        curves[channel] = IDENTITY_CURVE
        self._committed = make_curve_set(curves)
        self._draft = self._committed
        self._interacting = False
        self._grabbed = None
        return self._committed

    def as_dict(self) -> dict:
        """Committed curves as plain lists of [x, y] pairs."""
        return {ch: [list(p) for p in curve] for ch, curve in self._committed.items()}

