"""IPMI chassis fan controller driven through ipmitool."""

import logging
import subprocess

from ipmi_fan_control.config import IpmiCredentials
from ipmi_fan_control.protocol import Protocol

log = logging.getLogger(__name__)


class Controller:
    """Sends raw fan commands to a BMC.

    Protocol-agnostic: the vendor command bytes are delegated to the Protocol.
    Manual fan mode is asserted before the first speed write and again after
    any failed write, since a BMC reset drops it silently.
    """

    def __init__(
        self,
        protocol: Protocol,
        credentials: IpmiCredentials | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._protocol = protocol
        self._credentials = credentials
        self._timeout = timeout
        self._manual: bool = False

    @property
    def host(self) -> str:
        return self._credentials.host if self._credentials is not None else "localhost"

    def _base_cmd(self) -> list[str]:
        cmd = ["ipmitool"]
        c = self._credentials
        if c is not None:
            cmd += ["-I", "lanplus", "-H", c.host, "-U", c.user, "-P", c.password]
            if c.key:
                cmd += ["-y", c.key]
        return cmd

    def _raw(self, args: list[str]) -> None:
        """Run an ipmitool command. Raises OSError on failure."""
        try:
            r = subprocess.run(
                self._base_cmd() + args,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise OSError(f"ipmitool timed out after {self._timeout:.0f}s") from e
        if r.returncode != 0:
            raise OSError(f"ipmitool exited with {r.returncode}: {r.stderr.strip()}")

    def enable_manual_mode(self) -> None:
        """Take fan control away from the BMC's automatic profile.

        Raises OSError if the BMC is unreachable or rejects the command.
        """
        log.debug("Enabling manual fan mode on %s (%s)", self.host, self._protocol.name)
        self._raw(self._protocol.build_manual())
        self._manual = True

    def set_fan_speed(self, speed_percent: int) -> None:
        """Set the chassis fan duty cycle.

        Raises OSError if the BMC is unreachable or rejects the command.
        """
        try:
            if not self._manual:
                self.enable_manual_mode()
            log.debug("ipmitool set speed %d%% on %s", speed_percent, self.host)
            self._raw(self._protocol.build_speed(speed_percent))
        except OSError:
            self._manual = False
            raise
