"""Standby control for a destination.

A destination is in standby while no eligible participant is present. In
standby nothing is subscribed or segmented, so an empty channel costs no
transcription.
"""

from enum import Enum


class StandbyTransition(Enum):
    """Standby edge produced by an evaluation."""

    ENTER = "standby_on"
    EXIT = "standby_off"


class StandbyController:
    """Edge detector for standby.

    Example:
        ```python
        controller = StandbyController()
        transition = controller.evaluate(has_eligible_participants=bool(present))
        if transition is StandbyTransition.ENTER:
            destroy_all_captures()
        ```
    """

    def __init__(self, standby: bool = False) -> None:
        self._standby = standby

    @property
    def standby(self) -> bool:
        return self._standby

    def evaluate(self, has_eligible_participants: bool) -> StandbyTransition | None:
        """Update standby from presence.

        Args:
            has_eligible_participants: Whether at least one eligible participant is present

        Returns:
            The transition, or None if standby did not change
        """
        should_standby = not has_eligible_participants
        if should_standby == self._standby:
            return None

        self._standby = should_standby
        return StandbyTransition.ENTER if should_standby else StandbyTransition.EXIT
