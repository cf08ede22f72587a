"""Control of the cloudflared daemon through systemd."""

import shutil
import subprocess
from collections.abc import Iterator
from enum import Enum

from .common.exceptions import ServiceError, ServiceNotFoundError, ServicePermissionError
from .common.logging import get_logger

logger = get_logger(__name__)

# systemctl exit codes (LSB)
EXIT_PERMISSION_DENIED = 4
EXIT_UNIT_NOT_FOUND = 5

RESTART_TIMEOUT = 90.0


class ServiceState(str, Enum):
    """Coarse daemon state."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class ServiceController:
    """Restart, status and log access for one systemd unit."""

    def __init__(self, unit: str = "cloudflared", use_sudo: bool = True):
        """Initialize ServiceController.

        Args:
            unit: systemd unit name of the tunnel daemon
            use_sudo: Prefix privileged commands with ``sudo -n``
        """
        if not unit or not unit.strip():
            raise ValueError("Service unit cannot be empty")
        self.unit = unit.strip()
        self.use_sudo = use_sudo

    def _command(self, *args: str, privileged: bool = False) -> list[str]:
        command = list(args)
        if privileged and self.use_sudo:
            command = ["sudo", "-n", *command]
        return command

    def restart(self) -> None:
        """Restart the daemon and block until systemctl returns.

        Raises:
            ServicePermissionError: If the caller may not restart the unit
            ServiceNotFoundError: If the unit or systemctl is missing
            ServiceError: On any other non-zero exit
        """
        command = self._command("systemctl", "restart", self.unit, privileged=True)
        logger.info("Restarting tunnel daemon", unit=self.unit)
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=RESTART_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise ServiceNotFoundError(f"Cannot run {command[0]}: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ServiceError(
                f"Restart of {self.unit} did not finish within {RESTART_TIMEOUT:.0f}s"
            ) from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            logger.error(
                "Tunnel daemon restart failed",
                unit=self.unit,
                returncode=result.returncode,
                output=output,
            )
            lowered = output.lower()
            if (
                result.returncode == EXIT_PERMISSION_DENIED
                or "access denied" in lowered
                or "password is required" in lowered
                or "interactive authentication required" in lowered
            ):
                raise ServicePermissionError(
                    f"Permission denied restarting {self.unit}: {output}"
                )
            if result.returncode == EXIT_UNIT_NOT_FOUND or "not found" in lowered:
                raise ServiceNotFoundError(f"Unit {self.unit} not found: {output}")
            raise ServiceError(
                f"Failed to restart {self.unit} (exit {result.returncode}): {output}"
            )

        logger.info("Tunnel daemon restarted", unit=self.unit)

    def status(self) -> ServiceState:
        """Current daemon state; never raises."""
        try:
            result = subprocess.run(
                ["systemctl", "is-active", self.unit],
                capture_output=True,
                text=True,
                timeout=10.0,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Could not query service state", unit=self.unit, error=str(e))
            return ServiceState.UNKNOWN

        state = result.stdout.strip()
        if state in ("active", "reloading"):
            return ServiceState.RUNNING
        if state in ("inactive", "failed", "deactivating"):
            return ServiceState.STOPPED
        return ServiceState.UNKNOWN

    def logs(
        self, lines: int = 50, follow: bool = False, grep: str | None = None
    ) -> Iterator[str]:
        """Lazily yield daemon log lines.

        With ``follow`` the generator runs until the journal stream ends or
        the caller closes it; closing terminates journalctl.

        Args:
            lines: Number of trailing lines to start with
            follow: Keep streaming new lines
            grep: Only yield lines containing this substring

        Raises:
            ServiceNotFoundError: If journalctl is not installed
        """
        if lines < 0:
            raise ValueError("lines must be zero or positive")
        if shutil.which("journalctl") is None:
            raise ServiceNotFoundError("journalctl not found in PATH")

        command = [
            "journalctl",
            "-u",
            self.unit,
            "-n",
            str(lines),
            "--no-pager",
            "-o",
            "cat",
        ]
        if follow:
            command.append("-f")
        return self._stream(command, grep)

    def _stream(self, command: list[str], grep: str | None) -> Iterator[str]:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
        logger.debug("Log stream opened", unit=self.unit, pid=process.pid)
        try:
            for line in process.stdout or ():
                line = line.rstrip("\n")
                if grep is None or grep in line:
                    yield line
        finally:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=5.0)
                except subprocess.TimeoutExpired:
                    logger.warning("Log stream did not exit, killing", pid=process.pid)
                    process.kill()
                    process.wait()
            if process.stdout is not None:
                process.stdout.close()
            logger.debug("Log stream closed", unit=self.unit)
