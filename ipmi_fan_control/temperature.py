"""CPU and drive temperature reading via psutil, lsblk and smartctl."""

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Protocol

import psutil

log = logging.getLogger(__name__)

# Sensor labels that belong to the CPU package, its cores, or the chipset/SoC
_CPU_LABEL_RE = re.compile(
    r"(^|\s)(package id|tctl|tdie|core \d+|cpu(?![a-z])|pch|soc(?![a-z]))", re.IGNORECASE
)

# smartctl attribute names in priority order; the first numeric match wins
_DRIVE_TEMP_ATTRIBUTES = (
    "Temperature_Celsius",
    "Airflow_Temperature_Cel",
    "Composite Temperature",
    "Device Temperature",
    "Current Temperature",
    "Temperature:",
)

# smartctl exit status when `-n standby` finds the drive spun down
_SMARTCTL_STANDBY = 2


@dataclass(frozen=True)
class TemperatureSample:
    """A single maximum reading with the sensor or device it came from."""

    value: int  # °C
    label: str


class Sensors(Protocol):
    """Source of the per-cycle maximum temperatures."""

    def read_cpu_max(self) -> TemperatureSample | None: ...
    def read_drive_max(self) -> TemperatureSample | None: ...


def _run_cmd(cmd: list[str], timeout: float) -> subprocess.CompletedProcess[str] | None:
    """Run a command with a timeout. Returns None if it could not run to completion."""
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        log.debug("%s timed out after %.0fs", cmd[0], timeout)
    except OSError as e:
        log.debug("%s failed: %s", cmd[0], e)
    return None


def read_cpu_max() -> TemperatureSample | None:
    """Return the hottest CPU-related sensor reading, or None if there is none."""
    try:
        temps = psutil.sensors_temperatures()
    except (AttributeError, OSError) as e:
        log.debug("psutil.sensors_temperatures() failed: %s", e)
        return None

    best: TemperatureSample | None = None
    for chip, entries in (temps or {}).items():
        for entry in entries:
            # Unlabelled entries are named after their chip (e.g. cpu_thermal)
            label = entry.label or chip
            if not _CPU_LABEL_RE.search(label):
                continue
            value = int(entry.current)
            if value <= 0:
                continue
            log.debug("CPU sensor: %s=%d°C", label, value)
            if best is None or value > best.value:
                best = TemperatureSample(value, label)
    return best


def discover_drives(timeout: float) -> tuple[str, ...]:
    """List whole-disk block devices as /dev paths."""
    result = _run_cmd(["lsblk", "-ndo", "NAME,TYPE"], timeout)
    if result is None or result.returncode != 0:
        log.debug("Drive discovery failed")
        return ()

    drives = []
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] == "disk":
            drives.append(f"/dev/{parts[0]}")
    return tuple(drives)


def parse_smartctl_temperature(output: str) -> int | None:
    """Extract the drive temperature from `smartctl -A` output.

    Attribute names are probed in priority order; on a matching line the
    last all-digit token is the reading (the raw value column for SATA
    attributes, the Celsius figure for NVMe).
    """
    lines = output.splitlines()
    for attribute in _DRIVE_TEMP_ATTRIBUTES:
        needle = attribute.lower()
        for line in lines:
            if needle not in line.lower():
                continue
            for token in reversed(line.split()):
                if token.isdigit():
                    return int(token)
    return None


def read_drive_temperature(device: str, timeout: float) -> int | None:
    """Read one drive's temperature without waking it from standby."""
    result = _run_cmd(["smartctl", "-A", "-n", "standby", device], timeout)
    if result is None:
        return None
    if result.returncode == _SMARTCTL_STANDBY:
        log.debug("Drive standby (skipped): %s", device)
        return None
    if result.returncode != 0:
        log.debug("smartctl failed (%d) for %s", result.returncode, device)
        return None
    return parse_smartctl_temperature(result.stdout)


def read_drive_max(devices: tuple[str, ...], timeout: float) -> TemperatureSample | None:
    """Return the hottest drive reading, or None if no drive reported one."""
    best: TemperatureSample | None = None
    for device in devices:
        value = read_drive_temperature(device, timeout)
        if value is None or value <= 0:
            continue
        log.debug("Drive temp: %s=%d°C", device, value)
        if best is None or value > best.value:
            best = TemperatureSample(value, os.path.basename(device))
    return best


class HostSensors:
    """Sensors backed by the local host's hardware monitoring tools."""

    def __init__(self, drives: tuple[str, ...] | None, timeout: float) -> None:
        self._drives: tuple[str, ...] | None = drives
        self._timeout = timeout

    def read_cpu_max(self) -> TemperatureSample | None:
        return read_cpu_max()

    def read_drive_max(self) -> TemperatureSample | None:
        # Discovery is retried until it finds at least one disk
        if not self._drives:
            self._drives = discover_drives(self._timeout)
            if self._drives:
                log.info("Drives: %s", ", ".join(self._drives))
        return read_drive_max(self._drives, self._timeout)
