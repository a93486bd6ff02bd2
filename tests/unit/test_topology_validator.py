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
Unit tests for load-time topology validation and start ordering.
"""
import pytest

from berth.errors import TopologyError
from berth.MODELS.orchestration_config import OrchestrationConfig
from berth.MODELS.service_definition import ServiceDefinition
from berth.PARSERS.compose_parser import ComposeParser
from berth.RUNNERS.dependency_resolver import DependencyResolver


def parse(content):
    return ComposeParser().parse_from_string(content)


class TestTopologyValidator:
    """Invalid topologies fail while the manifest is loaded."""

    def test_undeclared_dependency(self):
        """Dependencies must name declared services."""
        with pytest.raises(TopologyError, match="service 'api': depends on undeclared service 'mongodb'"):
            parse("services:\n  api:\n    image: api\n    depends_on: [mongodb]\n")

    def test_dependency_cycle(self):
        """Cycles are reported with their path."""
        content = """
services:
  a: {image: a, depends_on: [b]}
  b: {image: b, depends_on: [c]}
  c: {image: c, depends_on: [a]}
"""
        with pytest.raises(TopologyError, match="Circular dependency detected: a -> b -> c -> a"):
            parse(content)

    def test_self_dependency(self):
        with pytest.raises(TopologyError, match="depends on itself"):
            parse("services:\n  a: {image: a, depends_on: [a]}\n")

    def test_healthy_condition_needs_probe(self):
        """service_healthy can only wait for a service with a health check."""
        content = """
services:
  api:
    image: api
    depends_on:
      mongodb: {condition: service_healthy}
  mongodb:
    image: mongo:7
"""
        with pytest.raises(TopologyError, match="has no health check"):
            parse(content)

    def test_undeclared_network(self):
        with pytest.raises(TopologyError, match="undeclared network 'backend'"):
            parse("services:\n  api:\n    image: api\n    networks: [backend]\n")

    def test_volume_is_exclusive(self):
        """A named volume belongs to exactly one service."""
        content = """
services:
  mongodb: {image: mongo:7, volumes: ["data:/data/db"]}
  backup: {image: alpine, volumes: ["data:/backup"]}
volumes:
  data: {}
"""
        with pytest.raises(TopologyError, match="already owned by service 'mongodb'"):
            parse(content)

    def test_undeclared_volume(self):
        with pytest.raises(TopologyError, match="undeclared volume 'data'"):
            parse("services:\n  db:\n    image: mongo:7\n    volumes: ['data:/data/db']\n")

    def test_duplicate_host_port(self):
        """Two services cannot publish the same host port."""
        content = """
services:
  api: {image: api, ports: ["9999:8080"]}
  admin: {image: admin, ports: ["9999:8081"]}
"""
        with pytest.raises(TopologyError, match="host port 9999/tcp is already published by 'api'"):
            parse(content)

    def test_service_needs_image_or_build(self):
        with pytest.raises(TopologyError, match="needs either an image or a build section"):
            parse("services:\n  api:\n    command: ./api\n")

    def test_invalid_image_reference(self):
        with pytest.raises(TopologyError, match="service 'api'"):
            parse("services:\n  api:\n    image: 'Not A Valid/Image'\n")


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def make_config(self):
        return OrchestrationConfig(services={
            "api": ServiceDefinition(name="api", image_name="api", depends_on={"mongodb": "service_started"}),
            "admin": ServiceDefinition(name="admin", image_name="admin",
                                       depends_on={"mongodb": "service_started", "api": "service_started"}),
            "mongodb": ServiceDefinition(name="mongodb", image_name="mongo:7"),
            "cache": ServiceDefinition(name="cache", image_name="redis"),
        })

    def test_dependencies_first(self):
        """Every service comes after its dependencies; ties follow declaration order."""
        order = DependencyResolver().resolve_order(self.make_config())
        assert order == ["mongodb", "api", "admin", "cache"]

    def test_subset_pulls_in_dependencies(self):
        """Selecting a service also selects what it depends on."""
        order = DependencyResolver().resolve_order(self.make_config(), ["admin"])
        assert order == ["mongodb", "api", "admin"]

    def test_unknown_service(self):
        with pytest.raises(TopologyError, match="No such service: web"):
            DependencyResolver().resolve_order(self.make_config(), ["web"])

    def test_dependents(self):
        assert DependencyResolver().dependents(self.make_config(), "mongodb") == ["api", "admin"]
