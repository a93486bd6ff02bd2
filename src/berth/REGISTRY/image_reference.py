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
Image reference parsing.

Base images in build recipes and pre-built images in topologies are recorded,
not pulled. Parsing them up front rejects malformed references at load time
and gives artifacts a canonical name to report.
"""

import re
from dataclasses import dataclass
from typing import Optional

_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[0-9a-fA-F]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - rust:1.75 -> docker.io/library/rust:1.75
        - mongo-express -> docker.io/library/mongo-express:latest
        - ghcr.io/acme/api@sha256:... -> ghcr.io/acme/api@sha256:...
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        :param reference: Reference such as 'mongo:5.0' or 'localhost:5000/api:dev'.
        :return: Parsed ImageReference.
        :raises ValueError: If the reference is empty or malformed.
        """
        text = (reference or "").strip()
        if not text:
            raise ValueError("Empty image reference")

        digest = None
        if "@" in text:
            text, digest = text.rsplit("@", 1)
            if not _DIGEST.match(digest):
                raise ValueError(f"Invalid digest in image reference: {reference!r}")

        tag = None
        last_colon = text.rfind(":")
        if last_colon > text.rfind("/"):
            # a colon after the last slash separates the tag, not a registry port
            text, tag = text[:last_colon], text[last_colon + 1 :]
            if not _TAG.match(tag):
                raise ValueError(f"Invalid tag in image reference: {reference!r}")

        parts = text.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            path = parts[1:]
        else:
            registry = cls.DEFAULT_REGISTRY
            path = parts
            if len(path) == 1:
                path = ["library"] + path

        for component in path:
            if not _COMPONENT.match(component):
                raise ValueError(f"Invalid repository name in image reference: {reference!r}")

        if tag is None and digest is None:
            tag = cls.DEFAULT_TAG
        return cls(registry=registry, repository="/".join(path), tag=tag, digest=digest)

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag}"

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/") :]
        if self.digest:
            return f"{repo}@{self.digest}"
        return f"{repo}:{self.tag}"

    def __str__(self) -> str:
        return self.short_name
