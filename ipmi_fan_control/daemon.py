"""Main daemon entry point: temperature polling and fan speed control loop."""

import logging
import signal
import sys
import time

from ipmi_fan_control.config import Config, ConfigurationMissing
from ipmi_fan_control.control import (
    Candidate,
    ControllerState,
    SpeedActuator,
    compute_adjustment,
    initial_speed_for_delta,
    observe_direction,
    select_source,
)
from ipmi_fan_control.controller import Controller
from ipmi_fan_control.protocol import load_protocol
from ipmi_fan_control.temperature import HostSensors, Sensors, TemperatureSample

log = logging.getLogger(__name__)

# Short names used in status lines
_SOURCE_LABELS = {"cpu": "CPU", "drive": "DRV"}

# Stable-cycle counts past the first ten that still get a status line
_STATUS_MILESTONES = (50, 100, 200)
_STEADY_CYCLES = 10


class StartupActuationFailure(OSError):
    """The initial fan speed could not be applied."""


class Daemon:
    """Main daemon that ties together temperature reading, speed control, and IPMI."""

    def __init__(
        self,
        config: Config,
        sensors: Sensors | None = None,
        controller: Controller | None = None,
    ) -> None:
        self._config = config
        self._sensors = sensors or HostSensors(config.drives, config.cmd_timeout)
        self._controller = controller or Controller(
            load_protocol(config.protocol), config.ipmi, config.cmd_timeout
        )
        self._actuator = SpeedActuator(self._controller, config.min_speed, config.max_speed)
        fallback = self._actuator.clamp(config.initial_speed)
        self.state = ControllerState(current_speed=fallback, previous_speed=fallback)
        self._targets = {"cpu": config.target_cpu_temp, "drive": config.target_drive_temp}
        self._running = True

    def _on_shutdown(self, signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("Received %s, shutting down", sig_name)
        self._running = False

    def _wait(self, seconds: float) -> None:
        """Sleep in small increments so we can respond to signals promptly."""
        end = time.monotonic() + seconds
        while self._running and time.monotonic() < end:
            time.sleep(max(0.0, min(0.5, end - time.monotonic())))

    def _read(self) -> dict[str, TemperatureSample | None]:
        """Read every enabled source, in the fixed cpu-then-drive order."""
        readers = {
            "cpu": self._sensors.read_cpu_max,
            "drive": self._sensors.read_drive_max,
        }
        return {source: readers[source]() for source in self._config.sources}

    def _describe(self, readings: dict[str, TemperatureSample | None], targets: bool = False) -> str:
        parts = []
        for source, sample in readings.items():
            value = f"{sample.value}°C" if sample is not None else "n/a"
            if targets:
                value += f" (T{self._targets[source]})"
            parts.append(f"{_SOURCE_LABELS[source]}={value}")
        return " ".join(parts)

    def seed_speed(self, readings: dict[str, TemperatureSample | None]) -> int:
        """Pick a starting speed from the hottest source's distance to its target."""
        deltas = [
            (source, sample.value - self._targets[source])
            for source, sample in readings.items()
            if sample is not None
        ]
        if not deltas:
            log.warning(
                "Could not read any temperature, starting at %d%%", self._config.initial_speed
            )
            return self._actuator.clamp(self._config.initial_speed)

        log.info(
            "Initial temps => %s",
            ", ".join(
                f"{_SOURCE_LABELS[s]}={readings[s].value}°C (Δ{d})"  # type: ignore[union-attr]
                for s, d in deltas
            ),
        )
        source, delta = max(deltas, key=lambda item: item[1])
        seed = self._actuator.clamp(initial_speed_for_delta(delta))
        log.info("Initial delta: %s Δ=%d°C → seed speed %d%%", _SOURCE_LABELS[source], delta, seed)
        return seed

    def start(self) -> None:
        """Seed and apply the initial fan speed.

        Raises StartupActuationFailure if the BMC does not accept it.
        """
        cfg = self._config
        log.info("Fan control starting")
        log.info(
            "Targets: CPU %d°C, DRV %d°C (±%d°C) | sources=%s",
            cfg.target_cpu_temp,
            cfg.target_drive_temp,
            cfg.deadband,
            ",".join(cfg.sources),
        )
        log.info(
            "Range: %d-%d%% | StepMax: %d | Settle: %d | Interval: %.0fs | protocol=%s",
            cfg.min_speed,
            cfg.max_speed,
            cfg.max_step,
            cfg.settle_time,
            cfg.check_interval,
            cfg.protocol,
        )

        seed = self.seed_speed(self._read())
        self.state.current_speed = self.state.previous_speed = seed

        log.info("Applying initial fan speed %d%%", seed)
        if not self._actuator.apply(self.state, seed):
            host = cfg.ipmi.host if cfg.ipmi is not None else "localhost"
            log.error("Failed to set initial speed; check IPMI connectivity (host: %s)", host)
            raise StartupActuationFailure(f"Could not apply initial fan speed via {host}")

    def step(self) -> None:
        """Run one sensing/deciding/acting cycle."""
        cfg = self._config
        state = self.state

        readings = self._read()
        candidates = [
            Candidate(
                source=source,
                temp=sample.value,
                target=self._targets[source],
                adjustment=compute_adjustment(
                    sample.value,
                    self._targets[source],
                    state.oscillation_count,
                    deadband=cfg.deadband,
                    max_step=cfg.max_step,
                ),
            )
            for source, sample in readings.items()
            if sample is not None
        ]
        if not candidates:
            log.warning("No temperature readings available, skipping cycle")
            return

        chosen = select_source(candidates)
        label = _SOURCE_LABELS[chosen.source]
        temps = self._describe(readings)

        if chosen.adjustment == 0:
            state.cycles_at_speed += 1
            cycles = state.cycles_at_speed
            if cycles < _STEADY_CYCLES:
                log.info("Stable: %s | Fan=%d%%", temps, state.current_speed)
            elif cycles == _STEADY_CYCLES:
                log.info("Steady: %s | Fan=%d%%", temps, state.current_speed)
            elif cycles in _STATUS_MILESTONES:
                log.info(
                    "Status: %s | Fan=%d%% | Stable for %d cycles",
                    temps, state.current_speed, cycles,
                )
            if state.oscillation_count > 0:
                state.oscillation_count -= 1
            return

        if abs(chosen.adjustment) == 1 and state.cycles_at_speed < cfg.settle_time:
            log.info(
                "%s | Fan=%d%% | Settling (%d/%d) [%s]",
                temps, state.current_speed, state.cycles_at_speed, cfg.settle_time, label,
            )
            state.cycles_at_speed += 1
            return

        proposed = state.current_speed + chosen.adjustment
        if not self._actuator.apply(state, proposed):
            log.error("Failed to change fan %d%%→%d%%", state.current_speed, proposed)
            return

        observe_direction(state, 1 if chosen.adjustment > 0 else -1)
        log.info(
            "%s | Fan %d%%→%d%% | Δ=%d°C [%s]",
            self._describe(readings, targets=True),
            state.previous_speed,
            state.current_speed,
            chosen.delta,
            label,
        )

    def run(self) -> None:
        """Main loop: seed the fan, then read temperatures and adjust until signalled."""
        signal.signal(signal.SIGTERM, self._on_shutdown)
        signal.signal(signal.SIGINT, self._on_shutdown)

        self.start()

        log.info("Entering control loop")
        while self._running:
            self.step()
            self._wait(self._config.check_interval)

        log.info(
            "Final: Fan=%d%%, Osc=%d", self.state.current_speed, self.state.oscillation_count
        )
        log.info("Fan control stopped")


def main() -> None:
    """Entry point."""
    try:
        config = Config.load()
    except (ValueError, ConfigurationMissing, SystemExit) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    config.setup_logging()
    try:
        Daemon(config).run()
    except StartupActuationFailure:
        sys.exit(1)


if __name__ == "__main__":
    main()
