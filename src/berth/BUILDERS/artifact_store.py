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
Storage of published build artifacts.

Layout per service::

    artifacts/<service>/versions/<id>/rootfs
    artifacts/<service>/versions/<id>/manifest.json
    artifacts/<service>/current -> versions/<id>

``current`` is a symlink swapped with a single rename, so readers see
either the previous artifact or the new one, never a mix.
"""
import json
import logging
import os
import shutil
import uuid
from typing import List, Optional

from ..errors import BuildError
from ..MODELS.artifact import ArtifactManifest

logger = logging.getLogger(__name__)

CURRENT = "current"
ROOTFS = "rootfs"
MANIFEST = "manifest.json"


class ArtifactStore:
    def __init__(self, root: str):
        self.root = root

    def service_dir(self, service: str) -> str:
        return os.path.join(self.root, service)

    def current_dir(self, service: str) -> Optional[str]:
        """Resolved directory of the published artifact, or None."""
        link = os.path.join(self.service_dir(service), CURRENT)
        if not os.path.islink(link):
            return None
        target = os.path.realpath(link)
        return target if os.path.isdir(target) else None

    def rootfs(self, service: str) -> Optional[str]:
        current = self.current_dir(service)
        return os.path.join(current, ROOTFS) if current else None

    def load(self, service: str) -> Optional[ArtifactManifest]:
        current = self.current_dir(service)
        if current is None:
            return None
        with open(os.path.join(current, MANIFEST), "r") as f:
            return ArtifactManifest.model_validate_json(f.read())

    def publish(self, staged_root: str, manifest: ArtifactManifest) -> str:
        """
        Moves a staged filesystem into the store and makes it current.

        :param staged_root: Finished root of the final stage. It is moved, not copied.
        :return: The new artifact directory.
        :raises BuildError: If the artifact cannot be stored; the previous
            artifact stays current.
        """
        service_dir = self.service_dir(manifest.service)
        versions = os.path.join(service_dir, "versions")
        os.makedirs(versions, exist_ok=True)
        version_id = f"{manifest.digest.split(':')[-1][:12]}-{uuid.uuid4().hex[:8]}"
        version_dir = os.path.join(versions, version_id)
        link = os.path.join(service_dir, CURRENT)
        tmp_link = os.path.join(service_dir, f".{CURRENT}-{version_id}")

        try:
            os.makedirs(version_dir)
            shutil.move(staged_root, os.path.join(version_dir, ROOTFS))
            with open(os.path.join(version_dir, MANIFEST), "w") as f:
                f.write(manifest.model_dump_json(indent=2))
            os.symlink(os.path.join("versions", version_id), tmp_link)
            os.replace(tmp_link, link)
        except OSError as e:
            shutil.rmtree(version_dir, ignore_errors=True)
            if os.path.lexists(tmp_link):
                os.unlink(tmp_link)
            raise BuildError(f"Cannot publish artifact for {manifest.service}: {e}") from e

        logger.info("Published %s for %s (%s)", manifest.tag, manifest.service, manifest.digest)
        self._prune(manifest.service, keep=version_id)
        return version_dir

    def _prune(self, service: str, keep: str) -> None:
        versions = os.path.join(self.service_dir(service), "versions")
        for entry in os.listdir(versions):
            if entry != keep:
                shutil.rmtree(os.path.join(versions, entry), ignore_errors=True)

    def remove(self, service: str) -> None:
        shutil.rmtree(self.service_dir(service), ignore_errors=True)

    def list_services(self) -> List[str]:
        if not os.path.isdir(self.root):
            return []
        return sorted(s for s in os.listdir(self.root) if self.current_dir(s))
