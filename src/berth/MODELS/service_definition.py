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
Models for defining services, including restart policies, health checks, and mounts.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted after its process exits.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0
    delay: float = 0.1


class HealthCheck(BaseModel):
    """
    A periodic probe classifying a service as starting, healthy or unhealthy.

    ``test`` follows the compose forms ``["CMD", ...]``, ``["CMD-SHELL", "..."]``
    and ``["NONE"]``, plus ``["HTTP", "<url>"]`` for a native HTTP GET.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0
    disable: bool = False

    @field_validator("test")
    @classmethod
    def _check_test(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("health check test must not be empty")
        return value

    @field_validator("interval", "timeout")
    @classmethod
    def _check_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("retries")
    @classmethod
    def _check_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retries must be at least 1")
        return value

    @property
    def enabled(self) -> bool:
        return not self.disable and self.test[0] != "NONE"


class VolumeKind(str, Enum):
    VOLUME = "volume"
    BIND = "bind"
    ANONYMOUS = "anonymous"


class VolumeMount(BaseModel):
    """
    Maps a named volume, a host path, or a fresh anonymous volume to a
    path inside the service.
    """
    source: Optional[str] = None
    target: str
    read_only: bool = False
    kind: VolumeKind = VolumeKind.VOLUME

    @model_validator(mode="after")
    def _infer_kind(self) -> "VolumeMount":
        if self.source is None:
            self.kind = VolumeKind.ANONYMOUS
        elif self.source.startswith((".", "/", "~")):
            self.kind = VolumeKind.BIND
        return self


class PortMapping(BaseModel):
    """
    Publishes a fixed port inside the service on a host port.
    A missing host port is allocated when the topology comes up.
    """
    container_port: int
    host_port: Optional[int] = None
    protocol: str = "tcp"


class BuildSpec(BaseModel):
    """
    Where and how a service's artifact is built.
    """
    context: str = "."
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = {}
    target: Optional[str] = None


class DependencyCondition(str, Enum):
    SERVICE_STARTED = "service_started"
    SERVICE_HEALTHY = "service_healthy"


class WatchAction(str, Enum):
    REBUILD = "rebuild"
    RESTART = "restart"


class WatchRule(BaseModel):
    """
    A dev-loop watch root and what to do when something under it changes.
    """
    path: str
    action: WatchAction = WatchAction.REBUILD
    ignore: List[str] = []


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service in a topology.
    """
    name: str
    image_name: str = ""
    build: Optional[BuildSpec] = None

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []
    config_dir: str = "config"

    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: Dict[str, DependencyCondition] = {}
    stop_grace_period: Optional[float] = None
    watch: List[WatchRule] = []

    # Metadata
    labels: Dict[str, str] = {}

    @property
    def has_probe(self) -> bool:
        return self.health_check is not None and self.health_check.enabled
