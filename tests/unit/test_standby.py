"""Unit tests for standby control."""

from turnkeeper.standby import StandbyController, StandbyTransition


class TestStandbyController:
    """Test standby edge detection."""

    def test_enter_when_empty(self) -> None:
        """Test entering standby when nobody eligible is present."""
        controller = StandbyController()
        assert controller.evaluate(has_eligible_participants=False) is StandbyTransition.ENTER
        assert controller.standby is True

    def test_exit_when_someone_joins(self) -> None:
        """Test leaving standby when an eligible participant appears."""
        controller = StandbyController(standby=True)
        assert controller.evaluate(has_eligible_participants=True) is StandbyTransition.EXIT
        assert controller.standby is False

    def test_no_transition_without_change(self) -> None:
        """Test repeated evaluations produce no duplicate transitions."""
        controller = StandbyController()
        assert controller.evaluate(has_eligible_participants=True) is None
        controller.evaluate(has_eligible_participants=False)
        assert controller.evaluate(has_eligible_participants=False) is None

    def test_transition_values(self) -> None:
        """Test transitions carry their log event names."""
        assert StandbyTransition.ENTER.value == "standby_on"
        assert StandbyTransition.EXIT.value == "standby_off"

    def test_full_cycle(self) -> None:
        """Test a destination emptying, refilling and emptying again."""
        controller = StandbyController()
        transitions = [
            controller.evaluate(has_eligible_participants=present)
            for present in (True, False, False, True, False)
        ]
        assert transitions == [
            None,
            StandbyTransition.ENTER,
            None,
            StandbyTransition.EXIT,
            StandbyTransition.ENTER,
        ]
