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
Execution of build commands (RUN steps) inside a stage's filesystem.
"""
import logging
import subprocess
from typing import Dict

from ..errors import BuildError
from ..MODELS.build_recipe import RunCommand

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 2000


class CommandRunner:
    """
    Runs one build command. Implementations raise BuildError on failure.
    """
    def run(self, command: RunCommand, cwd: str, env: Dict[str, str], stage: str) -> None:
        raise NotImplementedError


class ShellCommandRunner(CommandRunner):
    """
    Runs build commands as host processes: shell form through /bin/sh -c,
    exec form directly.
    """
    def __init__(self, timeout: float = None):
        self.timeout = timeout

    def run(self, command: RunCommand, cwd: str, env: Dict[str, str], stage: str) -> None:
        argv = ["/bin/sh", "-c", command.command[0]] if command.shell else list(command.command)
        logger.info("[stage %s] RUN %s", stage, command.display())
        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired as e:
            raise BuildError(f"'{command.display()}' timed out after {self.timeout}s", stage=stage) from e
        except OSError as e:
            raise BuildError(f"'{command.display()}' could not be started: {e}", stage=stage) from e

        if result.stdout:
            for line in result.stdout.splitlines():
                logger.debug("[stage %s] %s", stage, line)
        if result.returncode != 0:
            output = (result.stdout or "")[-_OUTPUT_TAIL:]
            raise BuildError(
                f"'{command.display()}' exited with code {result.returncode}\n{output}".rstrip(),
                stage=stage,
            )
