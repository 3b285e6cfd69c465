"""Service control for the units that own managed directories.

A ServiceController issues start/stop requests to an external service
manager and waits for the unit to converge on the requested state. Each
request is issued exactly once per call; only the state query is repeated.

Example:
    controller = SystemctlController(timeout=15)
    controller.stop("rrdcached.service")
    ...
    controller.start("rrdcached.service")
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable

from .errors import ConvergenceTimeout, ServiceCommandFailed
from .utils.platform import run_command


DEFAULT_TIMEOUT = 15.0
DEFAULT_POLL_INTERVAL = 1.0

ACTIVE = "active"
INACTIVE = "inactive"


class ServiceController(ABC):
    """Abstract base class for service controllers.

    Subclasses implement the state query and the raw start/stop requests;
    the base class implements idempotence and bounded convergence polling.

    Attributes:
        timeout: Seconds to wait for a unit to reach the requested state
        poll_interval: Seconds between state queries
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def is_running(self, unit: str) -> bool:
        """Check if a service unit is active.

        Args:
            unit: Service unit name (e.g., "pve-cluster.service")

        Returns:
            bool: True if the unit is running
        """

    @abstractmethod
    def _request_start(self, unit: str) -> None:
        """Ask the service manager to start a unit.

        Raises:
            ServiceCommandFailed: If the request is rejected
        """

    @abstractmethod
    def _request_stop(self, unit: str) -> None:
        """Ask the service manager to stop a unit.

        Raises:
            ServiceCommandFailed: If the request is rejected
        """

    def stop(self, unit: str) -> None:
        """Stop a unit and wait until it is inactive. No-op if already stopped.

        Raises:
            ServiceCommandFailed: If the stop request fails
            ConvergenceTimeout: If the unit is still running after the timeout
        """
        if not self.is_running(unit):
            return

        self.logger.info(f"Stopping {unit}")
        self._request_stop(unit)
        self._wait_for_state(unit, INACTIVE)

    def start(self, unit: str) -> None:
        """Start a unit and wait until it is active. No-op if already running.

        Raises:
            ServiceCommandFailed: If the start request fails
            ConvergenceTimeout: If the unit is not running after the timeout
        """
        if self.is_running(unit):
            return

        self.logger.info(f"Starting {unit}")
        self._request_start(unit)
        self._wait_for_state(unit, ACTIVE)

    def _wait_for_state(self, unit: str, desired_state: str) -> None:
        want_running = desired_state == ACTIVE
        deadline = self._clock() + self.timeout

        while True:
            if self.is_running(unit) == want_running:
                return
            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)

        raise ConvergenceTimeout(
            f"{unit} did not become {desired_state} within {self.timeout:g}s",
            service=unit,
            desired_state=desired_state,
            timeout=self.timeout,
        )


class SystemctlController(ServiceController):
    """ServiceController backed by systemd's ``systemctl``."""

    SYSTEMCTL = "systemctl"

    def is_running(self, unit: str) -> bool:
        code, _, _ = run_command([self.SYSTEMCTL, "is-active", "--quiet", unit])
        return code == 0

    def _request_start(self, unit: str) -> None:
        self._request("start", unit)

    def _request_stop(self, unit: str) -> None:
        self._request("stop", unit)

    def _request(self, action: str, unit: str) -> None:
        # systemctl blocks until the job finishes; bound it like the polling
        code, _, stderr = run_command(
            [self.SYSTEMCTL, action, unit],
            timeout=self.timeout,
        )
        if code != 0:
            raise ServiceCommandFailed(
                f"systemctl {action} {unit} failed: {stderr.strip() or f'exit code {code}'}",
                service=unit,
            )
