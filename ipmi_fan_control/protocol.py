"""BMC fan protocol definitions.

Each Protocol instance holds the IPMI raw command bytes a baseboard management
controller expects for taking manual control of the chassis fans and setting
their duty cycle. Protocol data is loaded from protocols.yaml; the active
protocol is selected by name via the PROTOCOL config parameter.
"""

from dataclasses import dataclass
from pathlib import Path

import yaml

_PROTOCOLS_FILE = Path(__file__).parent / "protocols.yaml"

DEFAULT_PROTOCOL_KEY = "dell-idrac"


def _hex(values: tuple[int, ...]) -> list[str]:
    return [f"0x{v:02x}" for v in values]


@dataclass(frozen=True)
class Protocol:
    """IPMI raw command set for a BMC vendor."""

    name: str
    manual_mode: tuple[int, ...]
    set_speed: tuple[int, ...]

    def build_manual(self) -> list[str]:
        """Build the `raw` arguments that switch the BMC to manual fan control."""
        return ["raw", *_hex(self.manual_mode)]

    def build_speed(self, speed_percent: int) -> list[str]:
        """Build the `raw` arguments for a duty cycle (clamped to 0-100%)."""
        clamped = max(0, min(100, int(speed_percent)))
        return ["raw", *_hex(self.set_speed), f"0x{clamped:02x}"]


def _load_all() -> dict[str, dict]:
    """Load raw protocol definitions from YAML."""
    with open(_PROTOCOLS_FILE) as f:
        return yaml.safe_load(f)


def available_protocols() -> list[str]:
    """Return the list of available protocol keys."""
    return list(_load_all().keys())


def load_protocol(key: str) -> Protocol:
    """Load a Protocol instance by key from protocols.yaml.

    Raises KeyError if the key is not found.
    """
    protocols = _load_all()
    if key not in protocols:
        available = ", ".join(sorted(protocols.keys()))
        raise KeyError(f"Unknown protocol '{key}'. Available: {available}")
    raw = protocols[key]
    return Protocol(
        name=raw["name"],
        manual_mode=tuple(raw["manual_mode"]),
        set_speed=tuple(raw["set_speed"]),
    )
