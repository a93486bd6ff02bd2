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
Models for layered service configuration: a base document plus one
environment overlay.
"""
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict

from ..UTILS.merge import deep_merge


class ResolvedConfiguration(BaseModel):
    """The merged configuration for one runtime mode. Never re-merged."""
    model_config = ConfigDict(frozen=True)

    mode: str
    document: Dict[str, Any]
    sources: List[str] = []


class ConfigurationBundle(BaseModel):
    """
    A base document and exactly one overlay. Overlay keys take precedence;
    keys the overlay leaves out are inherited from the base.
    """
    model_config = ConfigDict(frozen=True)

    mode: str
    base: Dict[str, Any]
    overlay: Dict[str, Any]
    sources: List[str] = []

    def resolve(self) -> ResolvedConfiguration:
        return ResolvedConfiguration(
            mode=self.mode,
            document=deep_merge(self.base, self.overlay),
            sources=list(self.sources),
        )
