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
TCP forwarding from a published host port to the port a service listens on.
"""
import logging
import socket
import socketserver
import threading

logger = logging.getLogger(__name__)

_CHUNK = 65536


class _ForwardHandler(socketserver.BaseRequestHandler):
    def handle(self):
        target = self.server.target
        try:
            upstream = socket.create_connection(target, timeout=5)
        except OSError as e:
            logger.debug("Cannot reach %s:%d: %s", target[0], target[1], e)
            return
        upstream.settimeout(None)
        with upstream:
            pump = threading.Thread(target=_pipe, args=(upstream, self.request), daemon=True)
            pump.start()
            _pipe(self.request, upstream)
            pump.join()


def _pipe(source: socket.socket, dest: socket.socket) -> None:
    try:
        while True:
            data = source.recv(_CHUNK)
            if not data:
                break
            dest.sendall(data)
    except OSError:
        pass
    finally:
        try:
            dest.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class PortForwarder:
    """
    Accepts connections on ``host_port`` and relays them to
    ``127.0.0.1:target_port`` until stopped.
    """
    def __init__(self, service: str, host_port: int, target_port: int, bind: str = "0.0.0.0"):
        self.service = service
        self.host_port = host_port
        self.target_port = target_port
        self.bind = bind
        self.server = None
        self.thread = None

    def start(self):
        """
        :raises OSError: If the host port cannot be bound.
        """
        self.server = _Server((self.bind, self.host_port), _ForwardHandler)
        self.server.target = ("127.0.0.1", self.target_port)
        self.thread = threading.Thread(target=self.server.serve_forever, name=f"publish-{self.host_port}",
                                       daemon=True)
        self.thread.start()
        logger.info("Publishing %d -> %d", self.host_port, self.target_port, extra={"service": self.service})

    def stop(self):
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self.thread is not None:
            self.thread.join(timeout=1)
            self.thread = None
