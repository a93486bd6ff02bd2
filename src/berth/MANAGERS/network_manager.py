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
Managers for networks, service discovery and published ports.
"""
import logging
from typing import Dict, List, Optional, Set

from ..errors import OrchestrationError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import ServiceDefinition
from ..UTILS.port_finder import get_free_port, is_port_free

logger = logging.getLogger(__name__)


class NetworkManager:
    """
    Tracks which services share a network and which host ports they hold.

    Services reach each other on the loopback interface; isolation is
    enforced by only handing out discovery variables for peers on a
    shared network.
    """
    def __init__(self, config: OrchestrationConfig):
        """
        Initializes the network manager.
        """
        self.config = config
        self.members: Dict[str, Set[str]] = {}  # network -> service names
        self.service_ports: Dict[str, Dict[int, int]] = {}  # service_name -> {container_port: host_port}
        self.host_port_to_service: Dict[int, str] = {}  # host_port -> service_name
        for name in config.services:
            for network in config.service_networks(name):
                self.members.setdefault(network, set()).add(name)

    def networks(self) -> List[str]:
        return sorted(self.members)

    def networks_of(self, service_name: str) -> List[str]:
        return sorted(n for n, members in self.members.items() if service_name in members)

    def can_resolve(self, source: str, target: str) -> bool:
        """True if the two services share at least one network."""
        return any(source in m and target in m for m in self.members.values())

    def peers(self, service_name: str) -> List[str]:
        peers = set()
        for members in self.members.values():
            if service_name in members:
                peers |= members
        peers.discard(service_name)
        return sorted(peers)

    def allocate_ports(self, service_def: ServiceDefinition) -> Dict[int, int]:
        """
        Allocates host ports for a service based on its definition.

        :param service_def: The service definition.
        :return: Mapping from container port to allocated host port.
        :raises OrchestrationError: If a requested host port is taken.
        """
        self.release_ports(service_def.name)
        mappings = {}
        try:
            for port in service_def.ports:
                if port.host_port is None:
                    allocated_port = get_free_port()
                elif port.protocol == "udp" or is_port_free(port.host_port):
                    allocated_port = port.host_port
                else:
                    raise OrchestrationError(
                        f"Port {port.host_port} is already in use, cannot start service {service_def.name}"
                    )
                mappings[port.container_port] = allocated_port
                self.host_port_to_service[allocated_port] = service_def.name
        except OrchestrationError:
            for host_port in mappings.values():
                self.host_port_to_service.pop(host_port, None)
            raise

        self.service_ports[service_def.name] = mappings
        return mappings

    def release_ports(self, service_name: str) -> None:
        for host_port in self.service_ports.pop(service_name, {}).values():
            self.host_port_to_service.pop(host_port, None)

    def get_service_discovery_env(self, service_name: str) -> Dict[str, str]:
        """
        Generates discovery variables for the peers a service can reach.
        Peers share the loopback interface, so the port is the one the peer
        listens on, not its published host port.
        Example: MONGODB_HOST=127.0.0.1, MONGODB_PORT=27017
        """
        env = {}
        for name in self.peers(service_name):
            prefix = name.upper().replace("-", "_").replace(".", "_")
            env[f"{prefix}_HOST"] = "127.0.0.1"
            port = self._primary_port(name)
            if port is not None:
                env[f"{prefix}_PORT"] = str(port)
        return env

    def _primary_port(self, name: str) -> Optional[int]:
        definition = self.config.services.get(name)
        if definition and definition.ports:
            return definition.ports[0].container_port
        return None

    def get_host_port(self, service_name: str, container_port: int) -> Optional[int]:
        """
        Returns the host port for a given service and container port.
        """
        return self.service_ports.get(service_name, {}).get(container_port)
