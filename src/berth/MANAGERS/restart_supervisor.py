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
Restart policy enforcement, driven only by process exits.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..MODELS.service_definition import RestartPolicy, RestartPolicyCondition

logger = logging.getLogger(__name__)

MAX_BACKOFF = 30.0
STABLE_AFTER = 10.0


def should_restart(policy: RestartPolicy, exit_code: Optional[int], operator_stopped: bool,
                   restart_count: int = 0) -> bool:
    """
    Determine if a service should be restarted based on its policy.

    Args:
        policy: The service's restart policy.
        exit_code: Exit code of the process that ended.
        operator_stopped: True if the exit followed an operator stop.
        restart_count: Restarts already performed for this service.

    Returns:
        True if the exit should be followed by exactly one restart attempt.
    """
    if operator_stopped:
        return False
    condition = policy.condition
    if condition in (RestartPolicyCondition.ALWAYS, RestartPolicyCondition.UNLESS_STOPPED):
        return True
    if condition == RestartPolicyCondition.ON_FAILURE:
        if exit_code == 0:
            return False
        return policy.max_retries <= 0 or restart_count < policy.max_retries
    return False


class RestartBackoff:
    """
    Delay before the next restart: doubles from the policy delay up to
    MAX_BACKOFF, and starts over once a service stayed up for STABLE_AFTER.
    """

    def __init__(self, initial: float):
        self.initial = max(initial, 0.0)
        self.current = self.initial

    def next_delay(self, uptime: float) -> float:
        if uptime >= STABLE_AFTER:
            self.current = self.initial
        delay = self.current
        self.current = min(max(self.current * 2, 0.1), MAX_BACKOFF)
        return delay


@dataclass
class _Pending:
    due: float
    exit_code: Optional[int]


class RestartSupervisor:
    """
    Polls supervised services for unexpected exits and applies their
    restart policy. Operator stops detach a service before signalling it,
    so they are never observed as exits here.
    """

    def __init__(self, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        """
        :param interval: Seconds between polls.
        :param clock: Time source, replaceable in tests.
        """
        self.interval = interval
        self.clock = clock
        self._targets: Dict[str, "SupervisedService"] = {}
        self._pending: Dict[str, _Pending] = {}
        self._backoff: Dict[str, RestartBackoff] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def supervise(self, target: "SupervisedService") -> None:
        with self._lock:
            self._targets[target.name] = target
            self._backoff.setdefault(target.name, RestartBackoff(target.service_def.restart_policy.delay))

    def detach(self, name: str) -> None:
        with self._lock:
            self._targets.pop(name, None)
            self._pending.pop(name, None)

    def is_supervised(self, name: str) -> bool:
        with self._lock:
            return name in self._targets

    def start(self) -> None:
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._loop, name="restart-supervisor", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=max(self.interval * 2, 1.0))
            self.thread = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.tick()

    def tick(self) -> None:
        """One supervision pass: observe new exits, then perform due restarts."""
        now = self.clock()
        with self._lock:
            targets = list(self._targets.values())
        for target in targets:
            name = target.name
            exit_code = target.poll_exit()
            if exit_code is not None:
                self._on_exit(target, exit_code, now)
            with self._lock:
                pending = self._pending.get(name)
                if pending is None or pending.due > now or name not in self._targets:
                    continue
                del self._pending[name]
            self._restart(target)

    def _on_exit(self, target: "SupervisedService", exit_code: int, now: float) -> None:
        record = target.record()
        policy = target.service_def.restart_policy
        if not should_restart(policy, exit_code, record.operator_stopped, record.restart_count):
            logger.info("Exited with code %d; restart policy '%s' does not restart it",
                        exit_code, policy.condition.value, extra={"service": target.name})
            return
        delay = self._backoff[target.name].next_delay(target.uptime())
        logger.warning("Exited with code %d; restarting in %.1fs", exit_code, delay,
                       extra={"service": target.name})
        target.mark_restarting()
        with self._lock:
            self._pending[target.name] = _Pending(due=now + delay, exit_code=exit_code)

    def _restart(self, target: "SupervisedService") -> None:
        try:
            target.restart_after_exit()
        except Exception as e:
            logger.error("Restart failed: %s", e, extra={"service": target.name})
            target.mark_exited(1)
            self._on_exit(target, 1, self.clock())


class SupervisedService:
    """
    What the supervisor needs from a service. Implemented by ProcessManager,
    with ``restart_after_exit`` supplied by the orchestrator.
    """
    name: str

    def poll_exit(self) -> Optional[int]:
        raise NotImplementedError

    def record(self):
        raise NotImplementedError

    def uptime(self) -> float:
        raise NotImplementedError

    def mark_restarting(self) -> None:
        raise NotImplementedError

    def mark_exited(self, exit_code: int) -> None:
        raise NotImplementedError

    def restart_after_exit(self) -> None:
        raise NotImplementedError
