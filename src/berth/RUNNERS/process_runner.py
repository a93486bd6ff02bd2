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
Execution of service processes with log redirection and lifecycle management.
"""
import logging
import os
import subprocess
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


def pid_alive(pid: Optional[int]) -> bool:
    """
    Checks whether a recorded pid still belongs to a live process.

    Args:
        pid (Optional[int]): The pid, possibly from an earlier invocation.

    Returns:
        bool: False for None, vanished or zombie processes.
    """
    if not pid:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def terminate_tree(pid: int, timeout: float = 10.0) -> None:
    """
    Sends SIGTERM to a process and all of its descendants, then SIGKILL to
    whatever is still alive after the timeout.

    Args:
        pid (int): Root of the tree.
        timeout (float): Grace period in seconds.
    """
    try:
        root = psutil.Process(pid)
        procs = root.children(recursive=True) + [root]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        logger.warning("Process %d did not terminate, killing", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(alive, timeout=timeout)


class ProcessRunner:
    """
    Manages the execution of a single service process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process, usually the service name.
            log_file (Optional[str]): Path to a file where stdout/stderr are appended.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.log_handle = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts the process in its own session, so the whole tree can be signalled.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): The complete environment of the process.
            working_dir (Optional[str]): Directory to start the process in.

        Raises:
            OSError: If the executable cannot be started.
        """
        if not command:
            raise OSError(f"{self.name}: no command to run")
        if working_dir:
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self.log_handle = open(self.log_file, "a")
            stdout = self.log_handle

        logger.info("Starting command: %s", " ".join(command), extra={"service": self.name})
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                shell=False,
            )
        except OSError:
            self._close_log()
            raise

    def stop(self, timeout: float = 10.0):
        """
        Stops the process tree with SIGTERM, followed by SIGKILL after the timeout.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process is None:
            return
        if self.process.poll() is None:
            logger.info("Stopping process %d", self.process.pid, extra={"service": self.name})
            try:
                children = psutil.Process(self.process.pid).children(recursive=True)
            except psutil.NoSuchProcess:
                children = []
            self.process.terminate()
            for child in children:
                try:
                    child.terminate()
                except psutil.NoSuchProcess:
                    pass
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Process did not terminate, killing", extra={"service": self.name})
                self.process.kill()
                self.process.wait()
            _, alive = psutil.wait_procs(children, timeout=timeout)
            for child in alive:
                child.kill()
        self._close_log()

    def _close_log(self):
        if self.log_handle is not None:
            self.log_handle.close()
            self.log_handle = None

    def is_running(self) -> bool:
        """
        Returns:
            bool: True if the process has been started and has not exited.
        """
        return self.process is not None and self.process.poll() is None

    def get_exit_code(self) -> Optional[int]:
        """
        Returns:
            Optional[int]: Exit code if the process finished, None otherwise.
        """
        if self.process:
            code = self.process.poll()
            if code is not None:
                self._close_log()
            return code
        return None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Waits for the process to exit.

        Returns:
            Optional[int]: Exit code, or None if it is still running after the timeout.
        """
        if self.process is None:
            return None
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
