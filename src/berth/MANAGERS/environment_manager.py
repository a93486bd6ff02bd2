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
Managers for handling service environments and env_file resolution.
"""
import logging
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

# Host variables a native process needs to find its tools.
HOST_PASSTHROUGH = ("PATH", "HOME", "USER", "LANG", "LC_ALL", "TMPDIR", "TZ", "SYSTEMROOT")


class EnvironmentManager:
    """
    Builds the complete environment of a service process.
    """
    def __init__(self, base_dir: str = ".", host_env: Optional[Mapping[str, str]] = None):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to env files.
        :param host_env: The captured host environment; only HOST_PASSTHROUGH
            variables are taken from it.
        """
        self.base_dir = base_dir
        self.host_env = dict(host_env or {})

    def load_env_file(self, env_file: str) -> Dict[str, str]:
        """
        :raises ConfigurationError: If the file does not exist.
        """
        file_path = os.path.join(self.base_dir, env_file)
        if not os.path.isfile(file_path):
            raise ConfigurationError(f"env_file {file_path} not found")
        return {k: v if v is not None else "" for k, v in dotenv_values(file_path).items()}

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: List[str],
                               extra_env: Optional[Dict[str, str]] = None,
                               image_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges variables in increasing precedence: host passthrough, the
        artifact's ENV, env files (later files win), the service's own
        variables, and finally those injected by berth.

        :param explicit_env: The service's ``environment`` section.
        :param env_files: The service's ``env_file`` entries.
        :param extra_env: Discovery and configuration variables.
        :param image_env: ENV declared by the build recipe.
        :return: The merged environment.
        """
        merged_env = {k: self.host_env[k] for k in HOST_PASSTHROUGH if k in self.host_env}
        if image_env:
            merged_env.update(image_env)

        for env_file in env_files:
            merged_env.update(self.load_env_file(env_file))

        merged_env.update(explicit_env)
        if extra_env:
            merged_env.update(extra_env)
        return merged_env
