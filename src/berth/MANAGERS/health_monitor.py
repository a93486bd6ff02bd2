# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Health monitoring for services: a pure status tracker per service and a
monitor that feeds it from periodic probes.

Health is advisory. Status changes are reported, but nothing here stops or
restarts a process; restarts follow exits only.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..MODELS.runtime_state import HealthStatus
from ..MODELS.service_definition import HealthCheck
from ..RUNNERS.health_probe import ProbeRunner

logger = logging.getLogger(__name__)


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: int = 0
    last_check: Optional[float] = None
    last_output: str = ""
    probes: int = 0


class HealthTracker:
    """
    Classifies one service from a sequence of probe outcomes.

    Failures inside ``[started_at, started_at + start_period)`` are recorded
    but never make the service unhealthy, and the streak they built up is
    discarded at the first observation after the window. A success makes the
    service healthy and resets the streak; ``retries`` consecutive failures
    make it unhealthy.
    """

    def __init__(self, check: HealthCheck, started_at: float):
        """
        Args:
            check: The service's health check.
            started_at: When the process started, on the clock used for ``record``.
        """
        self.check = check
        self.started_at = started_at
        self.health = ServiceHealth(status=HealthStatus.STARTING)
        self._window_closed = check.start_period <= 0

    @property
    def status(self) -> HealthStatus:
        return self.health.status

    def in_start_period(self, at: float) -> bool:
        return at < self.started_at + self.check.start_period

    def record(self, success: bool, at: float, output: str = "") -> HealthStatus:
        """
        Feeds one probe outcome.

        Args:
            success: Whether the probe passed.
            at: Observation time.
            output: Probe output, kept for display.

        Returns:
            The status after this observation.
        """
        health = self.health
        health.last_check = at
        health.last_output = output
        health.probes += 1

        in_window = self.in_start_period(at)
        if not in_window and not self._window_closed:
            self._window_closed = True
            health.failing_streak = 0

        if success:
            health.status = HealthStatus.HEALTHY
            health.failing_streak = 0
            return health.status

        health.failing_streak += 1
        if not in_window and health.failing_streak >= self.check.retries:
            health.status = HealthStatus.UNHEALTHY
        return health.status


class _ProbeLoop:
    def __init__(self, name: str, check: HealthCheck, probe: Callable[[], tuple],
                 is_running: Callable[[], bool], monitor: "HealthMonitor"):
        self.name = name
        self.check = check
        self.probe = probe
        self.is_running = is_running
        self.monitor = monitor
        self.tracker = HealthTracker(check, time.monotonic())
        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=self._run, name=f"health-{name}", daemon=True)

    def _run(self):
        while not self.stop_event.wait(self.check.interval):
            if not self.is_running():
                continue
            success, output = self.probe()
            if self.stop_event.is_set():
                # stopped while the probe was in flight
                continue
            before = self.tracker.status
            after = self.tracker.record(success, time.monotonic(), output)
            if not success:
                logger.debug("Health probe failed (%d in a row): %s", self.tracker.health.failing_streak,
                             output.strip(), extra={"service": self.name})
            if after != before:
                self.monitor._status_changed(self.name, after, output)


class HealthMonitor:
    """
    Runs each probed service's health check on its own daemon thread, so a
    slow probe never delays another service's probe.
    """

    def __init__(self, probe_runner: Optional[ProbeRunner] = None,
                 on_change: Optional[Callable[[str, HealthStatus], None]] = None):
        """
        Initializes the health monitor.

        :param probe_runner: Executes probes.
        :param on_change: Called with (service, status) on every status change.
        """
        self.probe_runner = probe_runner or ProbeRunner()
        self.on_change = on_change
        self._loops: Dict[str, _ProbeLoop] = {}
        self._lock = threading.Lock()

    def watch(self, name: str, check: HealthCheck, is_running: Callable[[], bool],
              env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None) -> None:
        """
        Starts probing a service. Services without an enabled check are not probed.
        """
        if not check.enabled:
            return

        def probe():
            result = self.probe_runner.run(check.test, check.timeout, env=env, cwd=cwd)
            return result.success, result.output

        loop = _ProbeLoop(name, check, probe, is_running, self)
        with self._lock:
            previous = self._loops.pop(name, None)
            self._loops[name] = loop
        if previous is not None:
            previous.stop_event.set()
        loop.thread.start()

    def is_watching(self, name: str) -> bool:
        with self._lock:
            return name in self._loops

    def unwatch(self, name: str) -> None:
        with self._lock:
            loop = self._loops.pop(name, None)
        if loop is not None:
            loop.stop_event.set()

    def get_health(self, name: str) -> ServiceHealth:
        """
        Get the health information of a service.

        Args:
            name: Name of the service.

        Returns:
            ServiceHealth object; status NONE for services that are not probed.
        """
        with self._lock:
            loop = self._loops.get(name)
        return loop.tracker.health if loop else ServiceHealth()

    def status(self, name: str) -> HealthStatus:
        return self.get_health(name).status

    def stop(self, timeout: float = 1.0) -> None:
        """
        Stops all probe threads. Probes still in flight are abandoned.
        """
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
        for loop in loops:
            loop.stop_event.set()
        for loop in loops:
            loop.thread.join(timeout=timeout)

    def _status_changed(self, name: str, status: HealthStatus, output: str) -> None:
        if status == HealthStatus.UNHEALTHY:
            logger.warning("Service is unhealthy: %s", output.strip(), extra={"service": name})
        else:
            logger.info("Health status: %s", status.value, extra={"service": name})
        if self.on_change:
            self.on_change(name, status)
