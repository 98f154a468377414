"""Adaptive fan speed control: adjustment steps, oscillation damping and clamping."""

import logging
from dataclasses import dataclass

from ipmi_fan_control.controller import Controller

log = logging.getLogger(__name__)

# Above this many recent direction reversals, multi-step adjustments are halved
OSCILLATION_DAMPING_THRESHOLD = 2
OSCILLATION_WARNING_THRESHOLD = 3

# (upper bound of temp - target above target, step); beyond the last bin: max_step
_HEATING_BINS = ((2, 1), (4, 2), (6, 4), (10, 8))
# (upper bound of target - temp below target, step); beyond the last bin: -5
_COOLING_BINS = ((2, -1), (4, -2), (8, -3))
_COOLING_MAX_STEP = -5

# (lowest delta, starting speed %), checked top-down
_INITIAL_SPEED_BINS = ((15, 87), (10, 72), (7, 60), (5, 48), (3, 38), (1, 28), (-2, 22), (-5, 16))
_INITIAL_SPEED_FLOOR = 12


@dataclass
class ControllerState:
    """Mutable control loop state. Owned by a single Daemon."""

    current_speed: int
    previous_speed: int
    cycles_at_speed: int = 0
    last_direction: int = 0
    oscillation_count: int = 0


def compute_adjustment(
    temp: int,
    target: int,
    oscillation_count: int,
    *,
    deadband: int,
    max_step: int,
) -> int:
    """Map a temperature's distance from its target to a signed speed step.

    Heating steps grow faster than cooling steps. While the loop is
    oscillating, steps larger than one are halved, but never to zero.
    """
    delta = temp - target
    if -deadband <= delta <= deadband:
        return 0

    if delta > 0:
        step = next((s for bound, s in _HEATING_BINS if delta <= bound), max_step)
    else:
        step = next((s for bound, s in _COOLING_BINS if -delta <= bound), _COOLING_MAX_STEP)

    if oscillation_count > OSCILLATION_DAMPING_THRESHOLD and abs(step) > 1:
        damped = int(step / 2) or (1 if step > 0 else -1)
        log.info("Oscillation damping: %d -> %d", step, damped)
        step = damped

    return step


def initial_speed_for_delta(delta: int) -> int:
    """Map the startup temperature delta straight to a starting speed (%)."""
    for lowest, speed in _INITIAL_SPEED_BINS:
        if delta >= lowest:
            return speed
    return _INITIAL_SPEED_FLOOR


def observe_direction(state: ControllerState, direction: int) -> None:
    """Track reversals of the applied adjustment direction.

    A reversal raises the oscillation count, a repeat of the previous
    direction lowers it. Zero directions leave the history untouched.
    """
    if direction == 0:
        return

    if state.last_direction != 0:
        if direction != state.last_direction:
            state.oscillation_count += 1
            if state.oscillation_count > OSCILLATION_WARNING_THRESHOLD:
                log.warning("Oscillation detected: %d", state.oscillation_count)
        elif state.oscillation_count > 0:
            state.oscillation_count -= 1

    state.last_direction = direction


@dataclass(frozen=True)
class Candidate:
    """One temperature source's proposal for this cycle."""

    source: str
    temp: int
    target: int
    adjustment: int

    @property
    def delta(self) -> int:
        return self.temp - self.target


def select_source(candidates: list[Candidate]) -> Candidate:
    """Pick the candidate with the largest adjustment magnitude.

    Ties go to the earliest candidate, so callers list the default source first.
    """
    if not candidates:
        raise ValueError("No candidates to choose from")
    return max(candidates, key=lambda c: abs(c.adjustment))


class SpeedActuator:
    """Clamps requested speeds to the allowed range and applies them."""

    def __init__(self, controller: Controller, min_speed: int, max_speed: int) -> None:
        self._controller = controller
        self.min_speed = min_speed
        self.max_speed = max_speed

    def clamp(self, speed: int) -> int:
        clamped = max(self.min_speed, min(self.max_speed, speed))
        if clamped != speed:
            log.debug("Clamp %d -> %d", speed, clamped)
        return clamped

    def apply(self, state: ControllerState, requested: int) -> bool:
        """Apply a speed. State only changes if the BMC accepted it."""
        speed = self.clamp(requested)
        log.info("Setting fan: %d%% → %d%%", state.current_speed, speed)
        try:
            self._controller.set_fan_speed(speed)
        except OSError as e:
            log.error("Failed to set fan to %d%%: %s", speed, e)
            return False

        state.previous_speed = state.current_speed
        state.current_speed = speed
        state.cycles_at_speed = 0
        return True
