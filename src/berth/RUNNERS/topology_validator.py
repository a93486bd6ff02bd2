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
Load-time validation of a topology, run before any service starts.
"""
from typing import Dict, Tuple

from ..errors import TopologyError
from ..MODELS.orchestration_config import DEFAULT_NETWORK, OrchestrationConfig
from ..MODELS.service_definition import DependencyCondition, VolumeKind
from .dependency_resolver import DependencyResolver


class TopologyValidator:
    """
    Rejects topologies that could only fail once services are running.
    """
    def __init__(self):
        self.resolver = DependencyResolver()

    def validate(self, config: OrchestrationConfig) -> None:
        """
        :raises TopologyError: For the first problem found.
        """
        published: Dict[Tuple[int, str], str] = {}
        volume_owners: Dict[str, str] = {}

        for name, svc in config.services.items():
            if not svc.image_name and svc.build is None:
                raise TopologyError("needs either an image or a build section", service=name)

            for network in svc.networks:
                if network != DEFAULT_NETWORK and network not in config.networks:
                    raise TopologyError(f"uses undeclared network '{network}'", service=name)

            for mount in svc.volumes:
                if mount.kind != VolumeKind.VOLUME:
                    continue
                if mount.source not in config.volumes:
                    raise TopologyError(f"mounts undeclared volume '{mount.source}'", service=name)
                owner = volume_owners.setdefault(mount.source, name)
                if owner != name:
                    raise TopologyError(
                        f"volume '{mount.source}' is already owned by service '{owner}'", service=name
                    )

            for port in svc.ports:
                if port.host_port is None:
                    continue
                key = (port.host_port, port.protocol)
                other = published.setdefault(key, name)
                if other != name:
                    raise TopologyError(
                        f"host port {port.host_port}/{port.protocol} is already published by '{other}'",
                        service=name,
                    )

            for dep, condition in svc.depends_on.items():
                if dep == name:
                    raise TopologyError("depends on itself", service=name)
                target = config.services.get(dep)
                if target is None:
                    raise TopologyError(f"depends on undeclared service '{dep}'", service=name)
                if condition == DependencyCondition.SERVICE_HEALTHY and not target.has_probe:
                    raise TopologyError(
                        f"waits for '{dep}' to be healthy but '{dep}' has no health check", service=name
                    )

        # raises on cycles
        self.resolver.resolve_order(config)
