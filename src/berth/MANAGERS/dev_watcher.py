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
Development loop: rebuild and restart a service when its sources change.
"""
import fnmatch
import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..errors import BerthError

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Tuple[int, int]]


class FileSnapshot:
    """
    Point-in-time view of the files under a set of watch roots.
    """

    @staticmethod
    def take(roots: List[str], ignore: Optional[List[str]] = None) -> Snapshot:
        """
        :param roots: Files or directories to watch.
        :param ignore: Glob patterns matched against names and relative paths.
        :return: Mapping of file path to (mtime_ns, size).
        """
        ignore = ignore or []
        snapshot: Snapshot = {}
        for root in roots:
            if os.path.isfile(root):
                FileSnapshot._add(snapshot, root)
                continue
            for current, dirnames, filenames in os.walk(root):
                rel_dir = os.path.relpath(current, root)
                dirnames[:] = [d for d in dirnames
                               if not FileSnapshot._ignored(d, os.path.join(rel_dir, d), ignore)]
                for name in filenames:
                    if not FileSnapshot._ignored(name, os.path.join(rel_dir, name), ignore):
                        FileSnapshot._add(snapshot, os.path.join(current, name))
        return snapshot

    @staticmethod
    def _add(snapshot: Snapshot, path: str) -> None:
        try:
            info = os.stat(path)
        except OSError:
            return
        snapshot[path] = (info.st_mtime_ns, info.st_size)

    @staticmethod
    def _ignored(name: str, rel_path: str, patterns: List[str]) -> bool:
        rel_path = os.path.normpath(rel_path)
        return any(fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel_path, p) for p in patterns)

    @staticmethod
    def diff(before: Snapshot, after: Snapshot) -> Set[str]:
        """Paths added, removed or modified between two snapshots."""
        changed = {p for p in after if before.get(p) != after[p]}
        changed |= set(before) - set(after)
        return changed


class DevLoopWatcher:
    """
    Watches a service's sources and runs rebuild-then-restart cycles.

    At most one cycle runs at a time. Changes seen while a cycle is running
    set a single pending flag, so any number of them results in exactly one
    further cycle. A failed rebuild stops the running process and nothing is
    restarted until the next change.
    """

    def __init__(self,
                 name: str,
                 roots: List[str],
                 rebuild: Optional[Callable[[], None]],
                 restart: Callable[[], None],
                 stop: Callable[[], None],
                 ignore: Optional[List[str]] = None,
                 poll_interval: float = 0.5,
                 debounce: float = 0.3):
        """
        :param name: Service name, for logs.
        :param roots: Files or directories to watch.
        :param rebuild: Builds and publishes a new artifact; raises on failure.
            None for restart-only watches.
        :param restart: Replaces the running process.
        :param stop: Stops the running process after a failed rebuild.
        :param ignore: Glob patterns to leave out of the snapshot.
        :param poll_interval: Seconds between snapshots.
        :param debounce: Quiet time after the last change before a cycle is requested.
        """
        self.name = name
        self.roots = roots
        self.rebuild = rebuild
        self.restart = restart
        self.stop_service = stop
        self.ignore = ignore or []
        self.poll_interval = poll_interval
        self.debounce = debounce

        self.last_error: Optional[BaseException] = None
        self.cycles = 0
        self._pending = False
        self._busy = False
        self._cond = threading.Condition()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._poll_loop, name=f"watch-{self.name}", daemon=True),
            threading.Thread(target=self._work_loop, name=f"rebuild-{self.name}", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Watching %s", ", ".join(self.roots), extra={"service": self.name})

    def stop(self) -> None:
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=max(self.poll_interval * 2, 1.0))
        self._threads = []

    def request(self) -> None:
        """Asks for one cycle; coalesces with any cycle already pending."""
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Blocks until no cycle is running or pending."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._pending or self._busy:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def _poll_loop(self) -> None:
        snapshot = FileSnapshot.take(self.roots, self.ignore)
        last_change: Optional[float] = None
        while not self._stop_event.wait(self.poll_interval):
            current = FileSnapshot.take(self.roots, self.ignore)
            changed = FileSnapshot.diff(snapshot, current)
            snapshot = current
            now = time.monotonic()
            if changed:
                logger.debug("Changed: %s", ", ".join(sorted(changed)[:5]), extra={"service": self.name})
                last_change = now
            if last_change is not None and now - last_change >= self.debounce:
                last_change = None
                self.request()

    def _work_loop(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._stop_event.is_set():
                    self._cond.wait()
                if self._stop_event.is_set():
                    return
                self._pending = False
                self._busy = True
            try:
                self.run_cycle()
            except Exception as e:
                self.last_error = e
                logger.exception("Cycle failed, waiting for the next change", extra={"service": self.name})
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def run_cycle(self) -> bool:
        """
        One rebuild-then-restart cycle.

        :return: True if the service was restarted.
        """
        self.cycles += 1
        if self.rebuild is not None:
            logger.info("Change detected, rebuilding", extra={"service": self.name})
            try:
                self.rebuild()
            except Exception as e:
                self.last_error = e
                logger.error("Rebuild failed, stopping the service until the next change: %s", e,
                             extra={"service": self.name})
                try:
                    self.stop_service()
                except (BerthError, OSError) as stop_error:
                    logger.error("Stopping after a failed rebuild also failed: %s", stop_error,
                                 extra={"service": self.name})
                return False
        try:
            self.restart()
        except (BerthError, OSError) as e:
            self.last_error = e
            logger.error("Restart failed: %s", e, extra={"service": self.name})
            return False
        self.last_error = None
        logger.info("Restarted with the new build", extra={"service": self.name})
        return True
