"""Tests for Saga rollback bookkeeping."""

from unittest.mock import Mock

import pytest

from orb.common.exceptions import CompensationFailure, StepFailure
from orb.coordinator import Saga, SagaState


class TestSaga:
    """Test step execution, rollback order and commit."""

    def test_successful_steps_advance_state(self):
        saga = Saga("expose")

        with saga.step("route", SagaState.ROUTE_APPLIED) as step:
            step.compensate(Mock(), "route file")
        with saga.step("dns", SagaState.DNS_APPLIED) as step:
            step.compensate(Mock(), "dns")

        assert saga.state == SagaState.DNS_APPLIED
        assert len(saga.log) == 2

        saga.commit()

        assert saga.state == SagaState.COMMITTED
        assert len(saga.log) == 0

    def test_rollback_runs_in_reverse_order(self):
        saga = Saga("expose")
        calls = []

        with saga.step("route", SagaState.ROUTE_APPLIED) as step:
            step.compensate(lambda: calls.append("route"), "route file")
        with saga.step("dns", SagaState.DNS_APPLIED) as step:
            step.compensate(lambda: calls.append("dns"), "dns")

        with pytest.raises(StepFailure) as exc_info:
            with saga.step("service"):
                raise RuntimeError("restart failed")

        assert calls == ["dns", "route"]
        assert saga.state == SagaState.FAILED
        assert exc_info.value.reverted == ["dns", "route file"]
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_compensation_registered_before_failing_call_runs(self):
        saga = Saga("expose")
        undo = Mock()

        with pytest.raises(StepFailure):
            with saga.step("dns") as step:
                step.compensate(undo, "dns")
                raise TimeoutError("in doubt")

        undo.assert_called_once_with()

    def test_keyboard_interrupt_rolls_back_and_propagates(self):
        saga = Saga("expose")
        calls = []

        with saga.step("route", SagaState.ROUTE_APPLIED) as step:
            step.compensate(lambda: calls.append("route"), "route file")
        with saga.step("dns", SagaState.DNS_APPLIED) as step:
            step.compensate(lambda: calls.append("dns"), "dns")

        with pytest.raises(KeyboardInterrupt):
            with saga.step("service"):
                raise KeyboardInterrupt

        assert calls == ["dns", "route"]
        assert saga.state == SagaState.FAILED
        assert saga.reverted == ["dns", "route file"]

    def test_system_exit_with_failing_undo_goes_dirty(self):
        saga = Saga("unexpose")
        later = Mock()

        with saga.step("route") as step:
            step.compensate(later, "route file")
        with saga.step("dns") as step:
            step.compensate(Mock(side_effect=RuntimeError("api down")), "dns")

        with pytest.raises(SystemExit):
            with saga.step("service"):
                raise SystemExit(1)

        later.assert_called_once_with()
        assert saga.state == SagaState.FAILED_DIRTY
        assert saga.reverted == ["route file"]

    def test_failed_compensation_continues_and_goes_dirty(self):
        saga = Saga("unexpose")
        first = Mock()

        with saga.step("route") as step:
            step.compensate(first, "route file")
        with saga.step("dns") as step:
            step.compensate(Mock(side_effect=RuntimeError("api down")), "dns")

        with pytest.raises(CompensationFailure) as exc_info:
            with saga.step("service"):
                raise RuntimeError("restart failed")

        first.assert_called_once_with()
        err = exc_info.value
        assert saga.state == SagaState.FAILED_DIRTY
        assert err.unreverted == {"dns": "api down"}
        assert err.reverted == ["route file"]
        assert err.step == "service"

    def test_failure_with_empty_log(self):
        saga = Saga("update")

        with pytest.raises(StepFailure) as exc_info:
            with saga.step("route"):
                raise OSError("disk full")

        assert exc_info.value.reverted == []
        assert "update failed at step 'route'" in str(exc_info.value)
