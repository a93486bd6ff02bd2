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
Execution of a single health probe.
"""
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from urllib.error import URLError
from urllib.request import Request, urlopen

_OUTPUT_LIMIT = 500


@dataclass
class ProbeResult:
    """Outcome of one probe run."""

    success: bool
    output: str = ""


class ProbeRunner:
    """
    Runs ``CMD``, ``CMD-SHELL`` and ``HTTP`` probes, each bounded by the
    check's timeout. Timeouts and errors are failures, never exceptions.
    """

    def run(self, test: List[str], timeout: float, env: Optional[Dict[str, str]] = None,
            cwd: Optional[str] = None) -> ProbeResult:
        """
        Args:
            test: The probe in compose form, e.g. ``["CMD", "true"]``.
            timeout: Seconds before the probe counts as failed.
            env: Environment for command probes.
            cwd: Working directory for command probes.

        Returns:
            ProbeResult for this run.
        """
        kind = test[0]
        if kind == "NONE":
            return ProbeResult(True)
        if kind == "HTTP":
            if len(test) < 2:
                return ProbeResult(False, "HTTP probe needs a URL")
            return self._http(test[1], timeout)

        if kind == "CMD":
            command: Union[List[str], str] = test[1:]
            shell = False
        elif kind == "CMD-SHELL":
            command = " ".join(test[1:])
            shell = True
        else:
            command = test
            shell = False
        if not command:
            return ProbeResult(False, "empty probe command")
        return self._command(command, shell, timeout, env, cwd)

    @staticmethod
    def _command(command, shell: bool, timeout: float, env, cwd) -> ProbeResult:
        argv = ["/bin/sh", "-c", command] if shell else command
        try:
            result = subprocess.run(
                argv,
                env=env,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(False, f"probe timed out after {timeout}s")
        except OSError as e:
            return ProbeResult(False, str(e))

        if result.returncode == 0:
            return ProbeResult(True, (result.stdout or "")[:_OUTPUT_LIMIT])
        output = result.stderr or result.stdout or f"Exit code: {result.returncode}"
        return ProbeResult(False, output[:_OUTPUT_LIMIT])

    @staticmethod
    def _http(url: str, timeout: float) -> ProbeResult:
        try:
            with urlopen(Request(url, method="GET"), timeout=timeout) as response:
                status = response.status
        except URLError as e:
            # HTTPError is a URLError; 4xx and 5xx land here
            return ProbeResult(False, str(e))
        except (OSError, ValueError) as e:
            return ProbeResult(False, str(e))
        if 200 <= status < 400:
            return ProbeResult(True, f"HTTP {status}")
        return ProbeResult(False, f"HTTP {status}")
