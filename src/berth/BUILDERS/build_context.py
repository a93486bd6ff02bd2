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
Build contexts: the directory tree a copy step is allowed to read from.
"""
import fnmatch
import glob
import os
from typing import Iterator, List, Optional, Tuple

from ..errors import BuildError

_GLOB_CHARS = set("*?[")


class BuildContext:
    """
    A source root for copy operations.

    Only explicitly listed paths (or glob matches) are copied. Paths matched
    by ``.dockerignore`` are invisible, including when listed explicitly.
    """
    def __init__(self, root: str, ignore_file: Optional[str] = ".dockerignore", label: str = "build context"):
        """
        :param root: Directory the sources are resolved against.
        :param ignore_file: Ignore file name inside root, or None to disable.
        :param label: How the root is described in error messages.
        """
        self.root = os.path.abspath(root)
        self.label = label
        self.patterns: List[Tuple[bool, str]] = []
        if ignore_file:
            path = os.path.join(self.root, ignore_file)
            if os.path.isfile(path):
                self.patterns = self._load_patterns(path)

    @staticmethod
    def _load_patterns(path: str) -> List[Tuple[bool, str]]:
        patterns = []
        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                negate = line.startswith("!")
                if negate:
                    line = line[1:].strip()
                line = os.path.normpath(line.strip("/")).replace(os.sep, "/")
                patterns.append((negate, line))
        return patterns

    def is_ignored(self, rel_path: str) -> bool:
        """Last matching pattern wins; a pattern matching a directory covers its contents."""
        rel_path = rel_path.replace(os.sep, "/")
        ignored = False
        for negate, pattern in self.patterns:
            if self._matches(rel_path, pattern):
                ignored = not negate
        return ignored

    @staticmethod
    def _matches(rel_path: str, pattern: str) -> bool:
        parts = rel_path.split("/")
        for depth in range(len(parts), 0, -1):
            if fnmatch.fnmatchcase("/".join(parts[:depth]), pattern):
                return True
        return False

    def resolve_sources(self, sources: List[str]) -> List[Tuple[str, str]]:
        """
        Expands copy sources into (absolute path, path relative to root) pairs.

        :raises BuildError: If a source escapes the root or matches nothing.
        """
        resolved = []
        for source in sources:
            rel = os.path.normpath(source.lstrip("/")) if source.strip("/") else "."
            if rel == ".." or rel.startswith(".." + os.sep):
                raise BuildError(f"COPY source '{source}' is outside the {self.label}")

            if _GLOB_CHARS & set(rel):
                matches = sorted(glob.glob(os.path.join(self.root, rel)))
                hits = [(m, os.path.relpath(m, self.root)) for m in matches]
                hits = [(m, r) for m, r in hits if not self.is_ignored(r)]
                for m, _ in hits:
                    self._check_inside(m, source)
                if not hits:
                    raise BuildError(f"COPY failed: no files in the {self.label} match '{source}'")
                resolved.extend(hits)
                continue

            path = os.path.join(self.root, rel)
            if not os.path.lexists(path) or (rel != "." and self.is_ignored(rel)):
                raise BuildError(f"COPY failed: '{source}' not found in the {self.label}")
            if rel != ".":
                self._check_inside(path, source)
            resolved.append((path, rel))
        return resolved

    def _check_inside(self, path: str, source: str) -> None:
        """Rejects paths whose parent directory resolves outside the root through a symlink."""
        parent = os.path.realpath(os.path.dirname(path))
        root = os.path.realpath(self.root)
        if parent != root and not parent.startswith(root + os.sep):
            raise BuildError(f"COPY source '{source}' is outside the {self.label}")

    def iter_files(self, directory: str) -> Iterator[Tuple[str, str]]:
        """
        Yields (absolute path, path relative to directory) for every file
        below directory that is not ignored, in sorted order.
        """
        self._check_inside(os.path.join(directory, "."), directory)
        for current, dirnames, filenames in os.walk(directory):
            dirnames.sort()
            kept = []
            for d in dirnames:
                full = os.path.join(current, d)
                if self.is_ignored(os.path.relpath(full, self.root)):
                    continue
                if os.path.islink(full):
                    yield full, os.path.relpath(full, directory)
                    continue
                kept.append(d)
            dirnames[:] = kept
            for name in sorted(filenames):
                full = os.path.join(current, name)
                if not self.is_ignored(os.path.relpath(full, self.root)):
                    yield full, os.path.relpath(full, directory)
