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
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Iterable, List, Optional, Set

from ..errors import TopologyError
from ..MODELS.orchestration_config import OrchestrationConfig


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, config: OrchestrationConfig, services: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines the order to start services using a depth-first topological sort.
        Ties are broken by declaration order, so the result is deterministic.

        :param config: The orchestration configuration.
        :param services: Restrict the result to these services and everything they depend on.
        :return: Service names in the order they should be started.
        :raises TopologyError: On an undeclared dependency or a circular dependency.
        """
        declared = config.services
        ordered: List[str] = []
        visited: Set[str] = set()
        processing: List[str] = []

        def visit(name: str) -> None:
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise TopologyError(f"Circular dependency detected: {' -> '.join(cycle)}")
            if name in visited:
                return
            processing.append(name)
            for dep in declared[name].depends_on:
                if dep not in declared:
                    raise TopologyError(f"depends on undeclared service '{dep}'", service=name)
                visit(dep)
            processing.pop()
            visited.add(name)
            ordered.append(name)

        roots = list(services) if services is not None else list(declared)
        for name in roots:
            if name not in declared:
                raise TopologyError(f"No such service: {name}")
            visit(name)

        return ordered

    def dependents(self, config: OrchestrationConfig, name: str) -> List[str]:
        """Services that directly depend on the given one."""
        return [svc for svc, definition in config.services.items() if name in definition.depends_on]
