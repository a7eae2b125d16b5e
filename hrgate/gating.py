"""
hrgate Gating Rules

Two disciplines turn a reading into a locked/unlocked answer:

- Threshold rule: stateless ``reading >= threshold``. The only rule used for
  signed tokens, since the verifier trusts the carried decision and tokens
  carry no history.
- Hysteresis rule: a two-state machine with a margin around the threshold,
  used only for the live locked/unlocked indicator. It must keep real state
  (current state and last reading); recomputing from the latest reading
  alone brings back flapping at the boundary.
"""

from enum import Enum
from typing import Optional, Union

Number = Union[int, float]

DEFAULT_MARGIN = 15


def threshold_decision(reading: Number, threshold: Number) -> bool:
    """Threshold rule: True when the reading is at or above the threshold."""
    return reading >= threshold


class GateState(str, Enum):
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"


class Direction(str, Enum):
    """Which side of the threshold counts as "better"."""
    ABOVE = "above"  # heart rate: higher unlocks
    BELOW = "below"  # pace in seconds per unit: lower unlocks


class HysteresisGate:
    """
    Locked/unlocked indicator with a dead band of ``margin`` on each side.

    With ``Direction.ABOVE`` the gate unlocks once a reading is strictly
    above ``threshold + margin`` and locks again once a reading is strictly
    below ``threshold - margin``. ``Direction.BELOW`` mirrors this. Readings
    inside the inclusive band ``[threshold - margin, threshold + margin]``
    never change state.
    """

    def __init__(
        self,
        threshold: Number,
        margin: Number = DEFAULT_MARGIN,
        direction: Direction = Direction.ABOVE,
        state: GateState = GateState.LOCKED,
        last_reading: Optional[Number] = None
    ):
        if margin < 0:
            raise ValueError("margin must not be negative")
        self.threshold = threshold
        self.margin = margin
        self.direction = Direction(direction)
        self.state = GateState(state)
        self.last_reading = last_reading

    @property
    def unlocked(self) -> bool:
        return self.state == GateState.UNLOCKED

    def _crossed_into_unlock(self, reading: Number) -> bool:
        if self.direction == Direction.ABOVE:
            return reading > self.threshold + self.margin
        return reading < self.threshold - self.margin

    def _crossed_into_lock(self, reading: Number) -> bool:
        if self.direction == Direction.ABOVE:
            return reading < self.threshold - self.margin
        return reading > self.threshold + self.margin

    def update(self, reading: Number) -> GateState:
        """
        Feed one reading and return the resulting state.

        Args:
            reading: The new reading

        Returns:
            The state after applying the reading
        """
        if self.state == GateState.LOCKED and self._crossed_into_unlock(reading):
            self.state = GateState.UNLOCKED
        elif self.state == GateState.UNLOCKED and self._crossed_into_lock(reading):
            self.state = GateState.LOCKED
        self.last_reading = reading
        return self.state

    def reset(self) -> None:
        self.state = GateState.LOCKED
        self.last_reading = None
