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
Models for overall orchestration configuration.
"""
from typing import Dict, List

from pydantic import BaseModel

from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"


class NetworkDefinition(BaseModel):
    """A named isolation boundary. Only members can address each other by name."""
    name: str
    driver: str = "bridge"


class VolumeDefinition(BaseModel):
    """A named persistent store owned by the orchestrator."""
    name: str
    driver: str = "local"


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service topology.
    Equivalent to a parsed docker-compose.yml file.
    """
    name: str = "berth"
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}
    source_path: str = ""

    def service_networks(self, name: str) -> List[str]:
        """Networks a service is attached to; services without any join the default network."""
        return self.services[name].networks or [DEFAULT_NETWORK]
