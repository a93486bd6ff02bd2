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
Resolution of layered service configuration: ``default.json`` merged with
the overlay for one runtime mode.
"""
import json
import logging
import os
import re
from typing import Any, Dict, Mapping, Optional

from ..errors import ConfigurationError
from ..MODELS.configuration import ConfigurationBundle, ResolvedConfiguration

logger = logging.getLogger(__name__)

BASE_DOCUMENT = "default"
RESOLVED_DOCUMENT = "resolved.json"
_RESERVED_MODES = {BASE_DOCUMENT, "resolved"}
_MODE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def resolve_runtime_mode(environment: Mapping[str, str], variable: str = "RUN_MODE") -> str:
    """
    Reads the runtime mode selector from an already resolved environment.

    :raises ConfigurationError: If the selector is unset, empty or not a plain name.
    """
    mode = (environment.get(variable) or "").strip()
    if not mode:
        raise ConfigurationError(f"Runtime mode is not set: {variable} is missing or empty")
    if not _MODE.match(mode) or mode in _RESERVED_MODES:
        raise ConfigurationError(f"Invalid runtime mode {mode!r} in {variable}")
    return mode


class ConfigurationLoader:
    """
    Loads the base document and exactly one overlay from a config directory.
    There is no fallback to the base document alone.
    """
    def __init__(self, config_dir: str):
        self.config_dir = config_dir

    def has_base(self) -> bool:
        return os.path.isfile(self._path(BASE_DOCUMENT))

    def load_bundle(self, mode: str) -> ConfigurationBundle:
        """
        :raises ConfigurationError: If either document is missing or invalid.
        """
        if not mode or not _MODE.match(mode) or mode in _RESERVED_MODES:
            raise ConfigurationError(f"Invalid runtime mode {mode!r}")
        base_path = self._path(BASE_DOCUMENT)
        overlay_path = self._path(mode)
        if not os.path.isfile(base_path):
            raise ConfigurationError(f"Base configuration {base_path} not found")
        if not os.path.isfile(overlay_path):
            raise ConfigurationError(
                f"No configuration overlay for mode '{mode}' ({overlay_path} not found)"
            )
        return ConfigurationBundle(
            mode=mode,
            base=self._read(base_path),
            overlay=self._read(overlay_path),
            sources=[base_path, overlay_path],
        )

    def resolve(self, mode: str) -> ResolvedConfiguration:
        resolved = self.load_bundle(mode).resolve()
        logger.debug("Resolved configuration for mode %s from %s", mode, ", ".join(resolved.sources))
        return resolved

    def write_resolved(self, resolved: ResolvedConfiguration, path: Optional[str] = None) -> str:
        """
        Writes the merged document next to its sources.

        :return: The path written.
        """
        target = path or os.path.join(self.config_dir, RESOLVED_DOCUMENT)
        tmp = f"{target}.tmp"
        with open(tmp, "w") as f:
            json.dump(resolved.document, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp, target)
        return target

    def _path(self, name: str) -> str:
        return os.path.join(self.config_dir, f"{name}.json")

    @staticmethod
    def _read(path: str) -> Dict[str, Any]:
        try:
            with open(path, "r") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e
        if not isinstance(document, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")
        return document
