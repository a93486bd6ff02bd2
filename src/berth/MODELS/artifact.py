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
Models describing built artifacts.
"""
import hashlib
from typing import Dict, List

from pydantic import BaseModel


class FileEntry(BaseModel):
    """One regular file or symlink in an artifact's filesystem."""
    path: str
    size: int
    sha256: str
    mode: int


class ArtifactManifest(BaseModel):
    """
    Everything needed to run an artifact, stored next to its filesystem.
    The digest covers the file listing only, so rebuilding the same
    recipe from the same inputs yields the same digest.
    """
    service: str
    tag: str
    digest: str = ""
    environment: str
    recipe_digest: str
    base_image: str
    working_dir: str = "/"
    entrypoint: List[str] = []
    cmd: List[str] = []
    env: Dict[str, str] = {}
    exposed_ports: List[int] = []
    files: List[FileEntry] = []
    built_at: str = ""

    @staticmethod
    def compute_digest(files: List[FileEntry]) -> str:
        hasher = hashlib.sha256()
        for entry in sorted(files, key=lambda f: f.path):
            hasher.update(f"{entry.path}\0{entry.mode:o}\0{entry.size}\0{entry.sha256}\n".encode())
        return f"sha256:{hasher.hexdigest()}"

    def listing(self) -> List[str]:
        """Sorted ``path sha256`` lines of the artifact's files."""
        return [f"{f.path} {f.sha256}" for f in sorted(self.files, key=lambda f: f.path)]
