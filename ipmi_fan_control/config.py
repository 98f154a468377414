"""Configuration parsing from /etc/default/ipmi-fan-control, /etc/ipmi.conf and CLI arguments."""

import argparse
import logging
import os
from dataclasses import dataclass

from dotenv import dotenv_values

from ipmi_fan_control.protocol import DEFAULT_PROTOCOL_KEY, available_protocols

DEFAULT_CONFIG_PATH = "/etc/default/ipmi-fan-control"
IPMI_CONFIG_PATH = "/etc/ipmi.conf"
VALID_SOURCES = ("cpu", "drive")
ALL_SOURCES = VALID_SOURCES
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "WARNING", "ERROR")


class ConfigurationMissing(Exception):
    """Required external configuration is absent."""


def _parse_sources(raw: str) -> tuple[str, ...]:
    """Parse a comma-separated list of temperature sources, kept in canonical order."""
    names = {s.strip().lower() for s in raw.split(",") if s.strip()}
    if not names or not names <= set(VALID_SOURCES):
        raise ValueError(f"Invalid sources: {raw}. Must be comma-separated values of cpu, drive")
    return tuple(s for s in VALID_SOURCES if s in names)


def _parse_drives(raw: str) -> tuple[str, ...] | None:
    """Parse a comma-separated list of block devices. Empty means auto-discover."""
    drives = tuple(d.strip() for d in raw.split(",") if d.strip())
    return drives or None


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="ipmi-fan-control",
        description="Adaptive IPMI chassis fan controller for CPU and drive temperatures",
    )
    parser.add_argument("--target-cpu", type=int, help="CPU target temperature (°C)")
    parser.add_argument("--target-drive", type=int, help="Drive target temperature (°C)")
    parser.add_argument(
        "--check-interval",
        type=float,
        help="Seconds between control cycles",
    )
    parser.add_argument("--min-speed", type=int, help="Minimum fan speed (%%)")
    parser.add_argument("--max-speed", type=int, help="Maximum fan speed (%%)")
    parser.add_argument(
        "--deadband",
        type=int,
        help="Temperature band around the target where no change is made (°C)",
    )
    parser.add_argument(
        "--settle-time",
        type=int,
        help="Cycles to wait at a speed before a ±1%% correction",
    )
    parser.add_argument("--max-step", type=int, help="Largest per-cycle speed increase (%%)")
    parser.add_argument(
        "--initial-speed",
        type=int,
        help="Starting fan speed when temperatures cannot be read (%%)",
    )
    parser.add_argument(
        "--sources",
        help="Comma-separated temperature sources to track (cpu, drive)",
    )
    parser.add_argument(
        "--drives",
        help="Comma-separated block devices to monitor (default: auto-discover)",
    )
    parser.add_argument(
        "--protocol",
        help="BMC protocol key (see protocols.yaml)",
    )
    parser.add_argument(
        "--cmd-timeout",
        type=float,
        help="Timeout for external commands in seconds",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Log level (overrides config file)",
    )
    return parser.parse_args(argv)


@dataclass(frozen=True)
class IpmiCredentials:
    """Out-of-band BMC access parameters."""

    host: str
    user: str
    password: str
    key: str | None = None

    @classmethod
    def load(cls, path: str | None = None) -> "IpmiCredentials":
        """Load credentials from the IPMI config file, with env var overrides.

        Raises ConfigurationMissing if the file is absent or incomplete.
        """
        path = path or IPMI_CONFIG_PATH
        if not os.path.isfile(path):
            raise ConfigurationMissing(f"IPMI configuration not found: {path}")

        file_env = {k: v for k, v in dotenv_values(path).items() if v is not None}

        def env(key: str) -> str:
            return os.environ.get(key) or file_env.get(key, "")

        host, user, password = env("IPMI_HOST"), env("IPMI_USER"), env("IPMI_PASS")
        missing = [
            name
            for name, value in (("IPMI_HOST", host), ("IPMI_USER", user), ("IPMI_PASS", password))
            if not value
        ]
        if missing:
            raise ConfigurationMissing(f"Missing {', '.join(missing)} in {path}")

        return cls(host=host, user=user, password=password, key=env("IPMI_KEY") or None)


@dataclass(frozen=True)
class Config:
    """Daemon configuration. Loaded once at startup and never changed afterwards."""

    target_cpu_temp: int = 68
    target_drive_temp: int = 45
    check_interval: float = 8.0
    min_speed: int = 12
    max_speed: int = 87
    deadband: int = 1
    settle_time: int = 3
    max_step: int = 15
    initial_speed: int = 24
    sources: tuple[str, ...] = ALL_SOURCES
    drives: tuple[str, ...] | None = None
    protocol: str = DEFAULT_PROTOCOL_KEY
    cmd_timeout: float = 5.0
    log_level: str = "INFO"
    debug: bool = False
    ipmi: IpmiCredentials | None = None

    def __post_init__(self) -> None:
        for name in ("min_speed", "max_speed", "initial_speed"):
            value = getattr(self, name)
            if not (0 <= value <= 100):
                raise ValueError(f"{name} must be 0-100, got {value}")

        if self.min_speed >= self.max_speed:
            raise ValueError(
                f"min_speed must be less than max_speed, got {self.min_speed} >= {self.max_speed}"
            )

        if self.check_interval <= 0:
            raise ValueError(f"Check interval must be positive, got {self.check_interval}")

        if self.cmd_timeout <= 0:
            raise ValueError(f"Command timeout must be positive, got {self.cmd_timeout}")

        if self.max_step <= 0:
            raise ValueError(f"Max step must be positive, got {self.max_step}")

        if self.deadband < 0:
            raise ValueError(f"Deadband must not be negative, got {self.deadband}")

        if self.settle_time < 0:
            raise ValueError(f"Settle time must not be negative, got {self.settle_time}")

        if not self.sources or not set(self.sources) <= set(VALID_SOURCES):
            raise ValueError(
                f"Invalid sources {self.sources}. Must be a subset of: {', '.join(VALID_SOURCES)}"
            )

        valid_protocols = available_protocols()
        if self.protocol not in valid_protocols:
            raise ValueError(
                f"Unknown protocol '{self.protocol}'. "
                f"Available: {', '.join(sorted(valid_protocols))}"
            )

        if self.debug:
            object.__setattr__(self, "log_level", "DEBUG")

        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{self.log_level}'. "
                f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )

    @classmethod
    def load(cls, argv: list[str] | None = None) -> "Config":
        """Load configuration from environment file, env vars, and CLI args.

        Priority (highest to lowest):
        1. CLI arguments
        2. Environment variables (set by systemd EnvironmentFile)
        3. /etc/default/ipmi-fan-control file
        4. Dataclass defaults

        IPMI credentials are read from /etc/ipmi.conf. Raises
        ConfigurationMissing if they are absent, ValueError if a value is invalid.
        """
        file_env = {k: v for k, v in dotenv_values(DEFAULT_CONFIG_PATH).items() if v is not None}

        def env(key: str) -> str | None:
            if key in os.environ:
                return os.environ[key]
            return file_env.get(key)

        kwargs: dict[str, object] = {}

        int_keys = (
            ("TARGET_CPU_TEMP", "target_cpu_temp"),
            ("TARGET_DRIVE_TEMP", "target_drive_temp"),
            ("MIN_FAN_SPEED", "min_speed"),
            ("MAX_FAN_SPEED", "max_speed"),
            ("DEADBAND", "deadband"),
            ("SETTLE_TIME", "settle_time"),
            ("MAX_STEP_CHANGE", "max_step"),
            ("INITIAL_FAN_SPEED", "initial_speed"),
        )
        for key, field in int_keys:
            if (v := env(key)) is not None:
                try:
                    kwargs[field] = int(v)
                except ValueError:
                    pass

        for key, field in (("CHECK_INTERVAL", "check_interval"), ("CMD_TIMEOUT", "cmd_timeout")):
            if (v := env(key)) is not None:
                try:
                    kwargs[field] = float(v)
                except ValueError:
                    pass

        if (v := env("SOURCES")) is not None:
            try:
                kwargs["sources"] = _parse_sources(v)
            except ValueError:
                pass

        if (v := env("DRIVES")) is not None:
            kwargs["drives"] = _parse_drives(v)

        if (v := env("PROTOCOL")) is not None:
            kwargs["protocol"] = v.lower()

        if (v := env("LOG_LEVEL")) is not None:
            kwargs["log_level"] = v.upper()

        if (v := env("DEBUG")) is not None:
            kwargs["debug"] = v.lower() in ("true", "1", "yes")

        # CLI arguments override everything
        args = _parse_cli_args(argv)

        cli_fields = (
            ("target_cpu", "target_cpu_temp"),
            ("target_drive", "target_drive_temp"),
            ("check_interval", "check_interval"),
            ("min_speed", "min_speed"),
            ("max_speed", "max_speed"),
            ("deadband", "deadband"),
            ("settle_time", "settle_time"),
            ("max_step", "max_step"),
            ("initial_speed", "initial_speed"),
            ("cmd_timeout", "cmd_timeout"),
            ("log_level", "log_level"),
        )
        for name, field in cli_fields:
            if (value := getattr(args, name)) is not None:
                kwargs[field] = value

        if args.sources is not None:
            kwargs["sources"] = _parse_sources(args.sources)

        if args.drives is not None:
            kwargs["drives"] = _parse_drives(args.drives)

        if args.protocol is not None:
            kwargs["protocol"] = args.protocol.lower()

        if args.debug is True:
            kwargs["debug"] = True

        kwargs["ipmi"] = IpmiCredentials.load()

        return cls(**kwargs)

    def setup_logging(self) -> None:
        """Configure logging based on this config."""
        logging.basicConfig(
            level=getattr(logging, self.log_level),
            format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
