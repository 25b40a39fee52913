"""
Tests for trigger condition evaluation.
"""
import pytest
from decimal import Decimal

from trigger_worker.core import distance_to_target, evaluate, should_execute
from trigger_worker.ledger import Direction


class TestShouldExecute:
    """Tests for the threshold predicate."""

    @pytest.mark.parametrize("price,expected", [
        ("99.999999", False),
        ("100", True),  # inclusive
        ("100.000001", True),
    ])
    def test_above(self, make_trigger, price, expected):
        trigger = make_trigger(threshold="100", direction=Direction.ABOVE)

        assert should_execute(trigger, Decimal(price)) is expected

    @pytest.mark.parametrize("price,expected", [
        ("100.000001", False),
        ("100", True),  # inclusive
        ("50", True),
    ])
    def test_below(self, make_trigger, price, expected):
        trigger = make_trigger(threshold="100", direction=Direction.BELOW)

        assert should_execute(trigger, Decimal(price)) is expected

    def test_absent_price_never_executes(self, make_trigger):
        assert should_execute(make_trigger(direction=Direction.ABOVE), None) is False
        assert should_execute(make_trigger(direction=Direction.BELOW), None) is False


class TestEvaluate:
    """Tests for the full pre-start check and its reasons."""

    def test_missing_price(self, make_trigger, now):
        check = evaluate(make_trigger(), None, now)

        assert not check.should_execute
        assert check.reason == "Could not fetch price"

    def test_expired(self, make_trigger, now):
        check = evaluate(make_trigger(expires_at=int(now) - 1), Decimal("150"), now)

        assert not check.should_execute
        assert check.reason == "Trigger expired"

    def test_not_reached(self, make_trigger, now):
        check = evaluate(make_trigger(threshold="100"), Decimal("95"), now)

        assert not check.should_execute
        assert check.reason == "Price 95 has not reached 100"

    def test_not_dropped(self, make_trigger, now):
        check = evaluate(
            make_trigger(threshold="100", direction=Direction.BELOW), Decimal("105"), now
        )

        assert check.reason == "Price 105 has not dropped to 100"

    def test_ready(self, make_trigger, now):
        check = evaluate(make_trigger(threshold="100"), Decimal("101"), now)

        assert check.should_execute
        assert check.current_price == Decimal("101")
        assert check.reason == "Ready to execute"

    def test_unexpired_deadline_allows_execution(self, make_trigger, now):
        check = evaluate(make_trigger(expires_at=int(now) + 60), Decimal("101"), now)

        assert check.should_execute


class TestDistanceToTarget:
    """Tests for progress reporting."""

    def test_above_remaining(self, make_trigger):
        assert distance_to_target(make_trigger(threshold="100"), Decimal("95")) == Decimal("5")

    def test_below_remaining(self, make_trigger):
        trigger = make_trigger(threshold="100", direction=Direction.BELOW)

        assert distance_to_target(trigger, Decimal("108")) == Decimal("8")

    def test_satisfied_is_not_positive(self, make_trigger):
        assert distance_to_target(make_trigger(threshold="100"), Decimal("101")) <= 0
