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
Managers for named volumes, anonymous volumes and bind mounts.
"""
import hashlib
import logging
import os
import posixpath
import re
import shutil
from typing import List, Optional

from ..errors import OrchestrationError
from ..MODELS.service_definition import VolumeKind, VolumeMount

logger = logging.getLogger(__name__)

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_ANONYMOUS = "_anonymous"


class VolumeManager:
    """
    Handles volume storage on the host and mounting into service roots.

    Named volumes live in ``<volumes_root>/<name>`` and outlive the services
    that use them. Mounting is done with symlinks inside the service root.
    """
    def __init__(self, volumes_root: str, base_dir: str = "."):
        """
        Initializes the volume manager.

        :param volumes_root: The root directory for volume storage.
        :param base_dir: The base directory for resolving relative bind sources.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(volumes_root)

    def _path(self, name: str) -> str:
        if not _NAME.match(name) or name == _ANONYMOUS:
            raise OrchestrationError(f"Invalid volume name '{name}'")
        return os.path.join(self.volumes_root, name)

    def create(self, name: str) -> str:
        path = self._path(name)
        if not os.path.isdir(path):
            os.makedirs(path)
            logger.info("Created volume %s", name)
        return path

    def get(self, name: str) -> Optional[str]:
        path = self._path(name)
        return path if os.path.isdir(path) else None

    def list(self) -> List[str]:
        if not os.path.isdir(self.volumes_root):
            return []
        return sorted(n for n in os.listdir(self.volumes_root)
                      if n != _ANONYMOUS and os.path.isdir(os.path.join(self.volumes_root, n)))

    def remove(self, name: str) -> bool:
        path = self.get(name)
        if path is None:
            return False
        shutil.rmtree(path)
        logger.info("Removed volume %s", name)
        return True

    def size(self, name: str) -> int:
        """Total size in bytes of the files in a volume."""
        path = self.get(name)
        if path is None:
            raise OrchestrationError(f"No such volume '{name}'")
        total = 0
        for current, _, files in os.walk(path):
            for f in files:
                fp = os.path.join(current, f)
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
        return total

    def anonymous(self, service: str, target: str) -> str:
        """The per-service directory backing an anonymous volume."""
        digest = hashlib.sha256(target.encode()).hexdigest()[:12]
        path = os.path.join(self.volumes_root, _ANONYMOUS, service, digest)
        os.makedirs(path, exist_ok=True)
        return path

    def remove_anonymous(self, service: str) -> None:
        shutil.rmtree(os.path.join(self.volumes_root, _ANONYMOUS, service), ignore_errors=True)

    def resolve_source(self, mount: VolumeMount, service: str) -> str:
        """
        Resolves the host path backing a mount.

        :param mount: The mount.
        :param service: Owner, for anonymous volumes.
        :return: The absolute path to the source.
        """
        if mount.kind == VolumeKind.ANONYMOUS:
            return self.anonymous(service, mount.target)
        if mount.kind == VolumeKind.VOLUME:
            return self.create(mount.source)
        source = os.path.expanduser(mount.source)
        return os.path.abspath(os.path.join(self.base_dir, source))

    def prepare_volumes(self, mounts: List[VolumeMount], root: str, service: str) -> None:
        """
        Links every mount into a service root, parents before children.

        A mount whose target lies inside an earlier bind mount is skipped,
        since creating it would modify the bound host directory.

        :param mounts: The service's mounts.
        :param root: The service root.
        :param service: Service name.
        :raises OrchestrationError: If a bind source does not exist.
        """
        root = os.path.realpath(root)
        for mount in sorted(mounts, key=lambda m: posixpath.normpath(m.target).count("/")):
            source_path = self.resolve_source(mount, service)
            if mount.kind == VolumeKind.BIND and not os.path.exists(source_path):
                raise OrchestrationError(f"Bind mount source {source_path} does not exist")

            target_path = os.path.join(root, posixpath.normpath(mount.target).lstrip("/"))
            parent = os.path.dirname(target_path)
            os.makedirs(parent, exist_ok=True)
            real_parent = os.path.realpath(parent)
            if real_parent != root and not real_parent.startswith(root + os.sep):
                logger.warning("Skipping mount %s: it lies inside a bind-mounted host directory",
                               mount.target, extra={"service": service})
                continue

            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(source_path):
                    continue
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                shutil.rmtree(target_path)
            elif os.path.exists(target_path):
                os.remove(target_path)

            logger.info("Mapping volume: %s -> %s", source_path, mount.target, extra={"service": service})
            os.symlink(source_path, target_path, target_is_directory=os.path.isdir(source_path))
