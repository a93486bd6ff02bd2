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
Utilities for resolving the command line a service process runs.
"""
import os
import posixpath
from typing import List, Optional

from ..MODELS.artifact import ArtifactManifest
from ..MODELS.service_definition import ServiceDefinition


class EntrypointExecutor:
    """
    Merges ENTRYPOINT and CMD, with the service definition overriding the
    artifact, and maps in-container paths onto a service root.
    """
    def get_full_command(self, entrypoint: List[str], cmd: List[str]) -> List[str]:
        """
        Combines entrypoint and cmd into a single command list.

        :param entrypoint: The ENTRYPOINT list.
        :param cmd: The CMD list; arguments when an entrypoint is set.
        :return: The full command list.
        """
        if entrypoint:
            return entrypoint + cmd
        return cmd

    def resolve(self, service: ServiceDefinition, manifest: Optional[ArtifactManifest] = None) -> List[str]:
        """
        A service entrypoint replaces the artifact's and drops its CMD; a
        service command replaces only the CMD.
        """
        entrypoint = list(manifest.entrypoint) if manifest else []
        cmd = list(manifest.cmd) if manifest else []
        if service.entrypoint:
            entrypoint = list(service.entrypoint)
            cmd = []
        if service.cmd:
            cmd = list(service.cmd)
        return self.get_full_command(entrypoint, cmd)

    @staticmethod
    def map_into_root(command: List[str], root: Optional[str]) -> List[str]:
        """
        Rewrites absolute arguments that exist inside the root, so that
        ``/app/server`` runs ``<root>/app/server``. Paths that only exist
        on the host, like ``/bin/sh``, are left alone.

        :param command: The resolved command.
        :param root: The service root, or None for host services.
        """
        if not root:
            return list(command)
        mapped = []
        for arg in command:
            if arg.startswith("/") and not arg.startswith("//"):
                candidate = os.path.join(root, posixpath.normpath(arg).lstrip("/"))
                if posixpath.normpath(arg) != "/" and os.path.lexists(candidate):
                    mapped.append(candidate)
                    continue
            mapped.append(arg)
        return mapped

    @staticmethod
    def host_working_dir(working_dir: str, root: Optional[str]) -> str:
        """The host directory matching an in-container working directory."""
        if not root:
            return working_dir
        return os.path.join(root, posixpath.normpath(working_dir).lstrip("/"))
