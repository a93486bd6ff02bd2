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
Runtime state of services: lifecycle and health.
"""
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel


class ServiceState(str, Enum):
    """Lifecycle state of a service's process."""
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    RESTARTING = "restarting"
    EXITED = "exited"


class HealthStatus(str, Enum):
    """Health status of a service."""
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


class ServiceRecord(BaseModel):
    """What berth remembers about a service between invocations."""
    name: str
    state: ServiceState = ServiceState.CREATED
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    operator_stopped: bool = False
    restart_count: int = 0
    artifact_digest: Optional[str] = None
    health: HealthStatus = HealthStatus.NONE
    ports: Dict[int, int] = {}
    updated_at: str = ""
