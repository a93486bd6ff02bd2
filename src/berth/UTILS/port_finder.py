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
Utilities for finding and checking availability of network ports.
"""
import socket

from tenacity import retry, retry_if_result, stop_after_delay, wait_fixed


def get_free_port() -> int:
    """
    Finds a free port on localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def is_port_free(port: int) -> bool:
    """
    Checks if a port is free on localhost.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("", port))
            return True
        except OSError:
            return False


def wait_for_port_free(port: int, timeout: float = 5.0) -> bool:
    """
    Waits for a port to be released, e.g. by a process that is shutting down.

    :param port: The port to watch.
    :param timeout: Seconds to wait before giving up.
    :return: True if the port became free in time.
    """

    @retry(
        retry=retry_if_result(lambda free: not free),
        stop=stop_after_delay(timeout),
        wait=wait_fixed(0.1),
        retry_error_callback=lambda state: False,
    )
    def _poll() -> bool:
        return is_port_free(port)

    return _poll()
