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
Exception hierarchy shared by all berth layers.

Build and configuration errors halt the operator command that raised them.
Topology errors are raised while a manifest is loaded, before anything runs.
"""
from typing import Optional


class BerthError(Exception):
    """Base class for every error berth raises on purpose."""


class RecipeError(BerthError):
    """A build recipe cannot be parsed or its stage graph is invalid."""


class BuildError(BerthError):
    """A pipeline run failed. No artifact is published."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage
        if stage is not None:
            message = f"[stage {stage}] {message}"
        super().__init__(message)


class ConfigurationError(BerthError):
    """The layered configuration for a runtime mode cannot be resolved."""


class TopologyError(BerthError):
    """A topology manifest is invalid."""

    def __init__(self, message: str, service: Optional[str] = None):
        self.service = service
        if service is not None:
            message = f"service '{service}': {message}"
        super().__init__(message)


class OrchestrationError(BerthError):
    """A runtime failure that aborts an operator command."""
