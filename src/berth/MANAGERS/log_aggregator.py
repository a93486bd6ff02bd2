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
Aggregation of service log files.
"""
import os
import threading
import time
from collections import deque
from typing import Callable, Dict, List, Optional, TextIO


class LogAggregator:
    """
    Reads and tails the per-service log files.
    """
    def __init__(self, log_dir: str, emit: Callable[[str], None] = print):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        :param emit: Receives each formatted output line.
        """
        self.log_dir = log_dir
        self.emit = emit

    def path(self, name: str) -> str:
        return os.path.join(self.log_dir, f"{name}.log")

    def tail(self, name: str, lines: int = 100) -> List[str]:
        """
        Returns the last lines of a service's log.

        :param name: Service name.
        :param lines: How many lines; 0 or less means all.
        """
        path = self.path(name)
        if not os.path.exists(path):
            return []
        with open(path, "r", errors="replace") as f:
            if lines <= 0:
                return [line.rstrip("\n") for line in f]
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]

    def format(self, name: str, line: str, width: int = 15) -> str:
        return f"{name:{width}} | {line}"

    def show(self, service_names: List[str], lines: int = 100) -> None:
        width = max([len(n) for n in service_names] + [15])
        for name in service_names:
            for line in self.tail(name, lines):
                self.emit(self.format(name, line, width))

    def follow(self, service_names: List[str], stop_event: Optional[threading.Event] = None,
               poll_interval: float = 0.1) -> None:
        """
        Tails logs for the specified services until interrupted.

        :param service_names: Names of the services to tail.
        :param stop_event: Ends the loop when set.
        """
        width = max([len(n) for n in service_names] + [15])
        files: Dict[str, TextIO] = {}
        stop_event = stop_event or threading.Event()
        try:
            while not stop_event.is_set():
                idle = True
                for name in service_names:
                    if name not in files:
                        path = self.path(name)
                        if not os.path.exists(path):
                            continue
                        f = open(path, "r", errors="replace")
                        f.seek(0, os.SEEK_END)
                        files[name] = f

                    line = files[name].readline()
                    if line:
                        idle = False
                        self.emit(self.format(name, line.rstrip("\n"), width))
                if idle:
                    time.sleep(poll_interval)
        except KeyboardInterrupt:
            pass
        finally:
            for f in files.values():
                f.close()
