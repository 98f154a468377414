"""Tests for adjustment steps, oscillation tracking, source selection and clamping."""

from unittest.mock import MagicMock

import pytest

from ipmi_fan_control.control import (
    Candidate,
    ControllerState,
    SpeedActuator,
    compute_adjustment,
    initial_speed_for_delta,
    observe_direction,
    select_source,
)


def adjust(temp: int, target: int = 75, osc: int = 0, deadband: int = 1, max_step: int = 15) -> int:
    return compute_adjustment(temp, target, osc, deadband=deadband, max_step=max_step)


# --- compute_adjustment ---

class TestComputeAdjustment:
    @pytest.mark.parametrize("temp", [74, 75, 76])
    def test_deadband_returns_zero(self, temp: int) -> None:
        assert adjust(temp) == 0

    def test_wider_deadband(self) -> None:
        assert adjust(78, deadband=3) == 0
        assert adjust(79, deadband=3) == 2

    @pytest.mark.parametrize("delta, expected", [
        (2, 1),
        (3, 2), (4, 2),
        (5, 4), (6, 4),
        (7, 8), (10, 8),
        (11, 15), (30, 15),
    ])
    def test_heating_bins(self, delta: int, expected: int) -> None:
        assert adjust(75 + delta) == expected

    def test_heating_uses_max_step(self) -> None:
        assert adjust(90, max_step=20) == 20

    @pytest.mark.parametrize("delta, expected", [
        (2, -1),
        (3, -2), (4, -2),
        (5, -3), (8, -3),
        (9, -5), (40, -5),
    ])
    def test_cooling_bins(self, delta: int, expected: int) -> None:
        assert adjust(75 - delta) == expected

    def test_heating_monotonic(self) -> None:
        steps = [adjust(75 + d, deadband=0) for d in range(1, 20)]
        assert steps == sorted(steps)

    def test_cooling_monotonic(self) -> None:
        steps = [adjust(75 - d, deadband=0) for d in range(1, 20)]
        assert steps == sorted(steps, reverse=True)

    def test_five_over_target_lands_in_third_bin(self) -> None:
        assert adjust(80) == 4

    def test_cooling_gentler_than_heating(self) -> None:
        for d in range(3, 20):
            assert abs(adjust(75 - d)) <= abs(adjust(75 + d))


class TestDamping:
    def test_halves_when_oscillating(self) -> None:
        assert adjust(80, osc=3) == 2

    def test_no_damping_at_threshold(self) -> None:
        assert adjust(80, osc=2) == 4

    def test_single_steps_not_damped(self) -> None:
        assert adjust(77, osc=5) == 1
        assert adjust(73, osc=5) == -1

    @pytest.mark.parametrize("temp, expected", [
        (78, 1),    # 2 -> 1
        (83, 4),    # 8 -> 4
        (95, 7),    # 15 -> 7
        (72, -1),   # -2 -> -1
        (70, -1),   # -3 -> -1
        (60, -2),   # -5 -> -2
    ])
    def test_rounds_toward_zero_keeping_sign(self, temp: int, expected: int) -> None:
        assert adjust(temp, osc=3) == expected

    def test_never_cancels_deviation(self) -> None:
        for temp in range(40, 110):
            base = adjust(temp)
            damped = adjust(temp, osc=10)
            if base != 0:
                assert damped != 0
                assert (damped > 0) == (base > 0)


# --- initial_speed_for_delta ---

class TestInitialSpeed:
    @pytest.mark.parametrize("delta, expected", [
        (20, 87), (15, 87),
        (14, 72), (10, 72),
        (9, 60), (7, 60),
        (6, 48), (5, 48),
        (4, 38), (3, 38),
        (2, 28), (1, 28),
        (0, 22), (-2, 22),
        (-3, 16), (-5, 16),
        (-6, 12), (-40, 12),
    ])
    def test_bins(self, delta: int, expected: int) -> None:
        assert initial_speed_for_delta(delta) == expected

    def test_monotonic(self) -> None:
        speeds = [initial_speed_for_delta(d) for d in range(-20, 30)]
        assert speeds == sorted(speeds)


# --- observe_direction ---

class TestObserveDirection:
    def test_first_direction_only_recorded(self) -> None:
        state = ControllerState(current_speed=30, previous_speed=30)
        observe_direction(state, 1)
        assert state.last_direction == 1
        assert state.oscillation_count == 0

    def test_reversal_increments(self) -> None:
        state = ControllerState(current_speed=30, previous_speed=30, last_direction=1)
        observe_direction(state, -1)
        assert state.oscillation_count == 1
        assert state.last_direction == -1

    def test_same_direction_decays(self) -> None:
        state = ControllerState(
            current_speed=30, previous_speed=30, last_direction=1, oscillation_count=2,
        )
        observe_direction(state, 1)
        assert state.oscillation_count == 1

    def test_never_negative(self) -> None:
        state = ControllerState(current_speed=30, previous_speed=30, last_direction=-1)
        for _ in range(5):
            observe_direction(state, -1)
        assert state.oscillation_count == 0

    def test_zero_leaves_history(self) -> None:
        state = ControllerState(
            current_speed=30, previous_speed=30, last_direction=1, oscillation_count=2,
        )
        observe_direction(state, 0)
        assert state.last_direction == 1
        assert state.oscillation_count == 2

    @pytest.mark.parametrize("n", [2, 5, 8])
    def test_alternating_sequence(self, n: int) -> None:
        state = ControllerState(current_speed=30, previous_speed=30)
        for i in range(n):
            observe_direction(state, 1 if i % 2 == 0 else -1)
        assert state.oscillation_count == n - 1


# --- select_source ---

class TestSelectSource:
    def test_larger_magnitude_wins(self) -> None:
        cpu = Candidate("cpu", 70, 68, 1)
        drive = Candidate("drive", 40, 45, -3)
        assert select_source([cpu, drive]) is drive

    def test_tie_favors_first(self) -> None:
        cpu = Candidate("cpu", 72, 68, 2)
        drive = Candidate("drive", 41, 45, -2)
        assert select_source([cpu, drive]) is cpu

    def test_single_candidate(self) -> None:
        drive = Candidate("drive", 50, 45, 4)
        assert select_source([drive]) is drive

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            select_source([])

    def test_delta(self) -> None:
        assert Candidate("cpu", 80, 75, 4).delta == 5


# --- SpeedActuator ---

class TestSpeedActuator:
    def _actuator(self) -> tuple[SpeedActuator, MagicMock]:
        controller = MagicMock()
        return SpeedActuator(controller, min_speed=12, max_speed=87), controller

    def test_clamps_above_max(self) -> None:
        actuator, controller = self._actuator()
        state = ControllerState(current_speed=85, previous_speed=80)
        assert actuator.apply(state, 90) is True
        controller.set_fan_speed.assert_called_once_with(87)
        assert state.current_speed == 87

    def test_clamps_below_min(self) -> None:
        actuator, controller = self._actuator()
        state = ControllerState(current_speed=13, previous_speed=14)
        actuator.apply(state, 8)
        controller.set_fan_speed.assert_called_once_with(12)

    @pytest.mark.parametrize("x", [-50, 0, 11, 88, 200])
    def test_clamp_idempotent(self, x: int) -> None:
        actuator, _ = self._actuator()
        once = actuator.clamp(x)
        assert actuator.clamp(once) == once
        assert 12 <= once <= 87

    def test_success_updates_state(self) -> None:
        actuator, _ = self._actuator()
        state = ControllerState(current_speed=30, previous_speed=28, cycles_at_speed=7)
        assert actuator.apply(state, 34) is True
        assert state.previous_speed == 30
        assert state.current_speed == 34
        assert state.cycles_at_speed == 0

    def test_failure_leaves_state(self) -> None:
        actuator, controller = self._actuator()
        controller.set_fan_speed.side_effect = OSError("BMC unreachable")
        state = ControllerState(current_speed=30, previous_speed=28, cycles_at_speed=7)
        assert actuator.apply(state, 34) is False
        assert state == ControllerState(current_speed=30, previous_speed=28, cycles_at_speed=7)
