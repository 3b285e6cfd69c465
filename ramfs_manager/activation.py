"""Deferred activation and the supervisor notification protocol.

Under systemd the manager is a ``Type=notify`` unit with a start timeout.
Populating memory copies can take a while on first boot, and starting the
dependent services from inside our own activation could deadlock against
systemd's job queue. So the manager:

1. sets up every mount, queueing service starts here,
2. sends READY=1 to systemd,
3. calls ActivationCoordinator.release_all() to start the queued services,
4. sends a final STATUS= line.
"""

from __future__ import annotations

import logging
import os
import socket
from typing import TYPE_CHECKING, Dict, List, Optional

from .errors import AggregateServiceError, RamfsError
from .services import ServiceController

if TYPE_CHECKING:
    from .unit import MountUnit

logger = logging.getLogger(__name__)


class ActivationCoordinator:
    """Queue of service starts deferred until the manager is ready.

    Example:
        coordinator = ActivationCoordinator(services)
        unit.setup(coordinator)          # queues the unit's service
        notifier.ready("Mounts ready")
        coordinator.release_all()        # starts every queued service
    """

    def __init__(self, services: ServiceController):
        self._services = services
        self._queue: List[MountUnit] = []

    @property
    def queued(self) -> List[MountUnit]:
        """Units waiting for their service start."""
        return list(self._queue)

    def queue(self, unit: MountUnit) -> None:
        """Defer the start of a unit's service."""
        self._queue.append(unit)

    def release_all(self) -> None:
        """Start every queued service, in queue order.

        All starts are attempted; failures are collected rather than
        stopping at the first one. The queue is empty afterwards.

        Raises:
            AggregateServiceError: Naming every unit whose service failed
        """
        queued, self._queue = self._queue, []
        failures: Dict[str, List[Exception]] = {}

        for unit in queued:
            service = unit.config.service_unit
            try:
                self._services.start(service)
            except RamfsError as e:
                if e.unit is None:
                    e.unit = unit.name
                logger.error(f"[{unit.name}] Failed to start {service}: {e.message}")
                failures.setdefault(unit.name, []).append(e)
                continue
            unit.mark_running()

        if failures:
            raise AggregateServiceError(
                f"{len(failures)} of {len(queued)} deferred services failed to start",
                failures,
            )


class SupervisorNotifier:
    """Client for the systemd ``sd_notify`` datagram protocol.

    Messages go to the socket named by $NOTIFY_SOCKET; a leading ``@``
    denotes the abstract namespace. Without a socket every call is a no-op,
    so the manager behaves the same outside systemd.

    Attributes:
        socket_path: Notification socket address, or None
    """

    def __init__(self, socket_path: Optional[str] = None):
        if socket_path is None:
            socket_path = os.environ.get("NOTIFY_SOCKET")
        self.socket_path = socket_path or None

    @property
    def enabled(self) -> bool:
        return self.socket_path is not None

    def notify(self, **fields) -> bool:
        """Send one notification made of KEY=value lines.

        Returns:
            True if the message was delivered
        """
        if not self.socket_path:
            return False

        message = "\n".join(f"{key}={value}" for key, value in fields.items())
        address = self.socket_path
        if address.startswith("@"):
            address = "\0" + address[1:]

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM | socket.SOCK_CLOEXEC) as sock:
                sock.connect(address)
                sock.sendall(message.encode("utf-8"))
        except OSError as e:
            logger.warning(f"Failed to notify supervisor ({message!r}): {e}")
            return False

        logger.debug(f"Notified supervisor: {message!r}")
        return True

    def ready(self, status: str) -> bool:
        """Tell the supervisor startup is complete."""
        return self.notify(READY=1, STATUS=status)

    def status(self, status: str) -> bool:
        """Update the status line shown by ``systemctl status``."""
        return self.notify(STATUS=status)

    def stopping(self, status: str) -> bool:
        """Tell the supervisor shutdown has begun."""
        return self.notify(STOPPING=1, STATUS=status)
