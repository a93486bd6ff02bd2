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
Builds service artifacts from multi-stage recipes.
"""
import hashlib
import logging
import os
import shutil
import stat
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..errors import BuildError
from ..MODELS.artifact import ArtifactManifest, FileEntry
from ..MODELS.build_recipe import BuildRecipe, BuildStage, CopyOperation
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.settings import BerthSettings
from ..PARSERS.recipe_parser import RecipeParser
from ..RUNNERS.command_runner import CommandRunner, ShellCommandRunner
from .artifact_store import ArtifactStore
from .build_context import BuildContext
from .recipe_renderer import RecipeRenderer

logger = logging.getLogger(__name__)


class BuildPipeline:
    """
    Runs the stages a service's recipe needs, one after the other, in a
    private staging area, and publishes the final stage's filesystem.

    Nothing reaches the artifact store unless every stage succeeded, so a
    failed build leaves the last published artifact in place.
    """
    def __init__(self, settings: BerthSettings, runner: Optional[CommandRunner] = None,
                 store: Optional[ArtifactStore] = None):
        """
        :param settings: Global settings; paths are resolved against project_dir.
        :param runner: Executes RUN steps. Defaults to ShellCommandRunner.
        :param store: Artifact store. Defaults to <state_dir>/artifacts.
        """
        self.settings = settings
        self.runner = runner or ShellCommandRunner()
        self.store = store or ArtifactStore(settings.path("artifacts"))
        self.renderer = RecipeRenderer()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def context_dir(self, service: ServiceDefinition) -> str:
        return os.path.normpath(os.path.join(self.settings.project_dir, service.build.context))

    def recipe_path(self, service: ServiceDefinition) -> str:
        return os.path.join(self.context_dir(service), service.build.dockerfile)

    def load_recipe(self, service: ServiceDefinition) -> BuildRecipe:
        """
        :raises BuildError: If the service has nothing to build.
        :raises RecipeError: If the recipe is invalid.
        """
        if service.build is None:
            raise BuildError(f"Service {service.name} has no build section")
        return RecipeParser(service.build.args).parse(self.recipe_path(service))

    def target_environment(self, service: ServiceDefinition, environment: Optional[str] = None) -> Optional[str]:
        return environment or service.environment.get(self.settings.mode_variable) or None

    def build(self, service: ServiceDefinition, environment: Optional[str] = None) -> ArtifactManifest:
        """
        Builds and publishes one service's artifact.

        :param service: The service to build.
        :param environment: Target runtime mode; defaults to the mode the
            service's environment selects.
        :return: The manifest of the published artifact.
        :raises RecipeError: If the recipe is invalid.
        :raises BuildError: If any stage fails; nothing is published.
        """
        with self._lock_for(service.name):
            recipe = self.load_recipe(service)
            environment = self.target_environment(service, environment)
            staging = self.settings.path("build", f"{service.name}-{uuid.uuid4().hex[:12]}")
            os.makedirs(staging)
            logger.info("Building %s from %s", service.name, recipe.source_path)
            try:
                final_root, final = self._run_stages(service, recipe, staging)
                self._check_staged_configuration(service, final, final_root, environment)
                manifest = self._manifest(service, recipe, final, final_root, environment)
                self.store.publish(final_root, manifest)
                return manifest
            except BuildError:
                logger.error("Build of %s failed; keeping the previous artifact", service.name)
                raise
            except OSError as e:
                raise BuildError(f"Build of {service.name} failed: {e}") from e
            finally:
                shutil.rmtree(staging, ignore_errors=True)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _run_stages(self, service: ServiceDefinition, recipe: BuildRecipe, staging: str):
        context = BuildContext(self.context_dir(service))
        roots: Dict[str, str] = {}
        stages = recipe.stages_for(service.build.target)
        for stage in stages:
            root = os.path.join(staging, "stages", str(stage.index))
            if stage.base_stage is not None:
                shutil.copytree(roots[recipe.stage(stage.base_stage).label], root, symlinks=True)
            else:
                os.makedirs(root)
            logger.info("[stage %s] FROM %s", stage.label, stage.base_stage or stage.base_image)

            for step in stage.steps:
                if isinstance(step, CopyOperation):
                    source = context
                    if step.from_stage is not None:
                        consumed = recipe.stage(step.from_stage)
                        source = BuildContext(roots[consumed.label], ignore_file=None,
                                              label=f"stage '{consumed.label}'")
                    try:
                        self._copy(source, step, root)
                    except BuildError as e:
                        raise BuildError(str(e), stage=stage.label) from e
                else:
                    cwd = self._inside(root, step.working_dir)
                    os.makedirs(cwd, exist_ok=True)
                    env = {**self.settings.interpolation_env, **step.env, "BERTH_STAGE_ROOT": root}
                    self.runner.run(step, cwd=cwd, env=env, stage=stage.label)

            os.makedirs(self._inside(root, stage.working_dir), exist_ok=True)
            roots[stage.label] = root

        final = stages[-1]
        return roots[final.label], final

    def _copy(self, source: BuildContext, step: CopyOperation, root: str) -> None:
        matches = source.resolve_sources(step.sources)
        into_directory = step.destination.endswith("/") or len(matches) > 1
        destination = self._inside(root, step.destination)

        for path, rel in matches:
            if os.path.isdir(path) and not os.path.islink(path):
                for file_path, file_rel in source.iter_files(path):
                    self._copy_file(file_path, os.path.join(destination, file_rel))
            elif into_directory:
                self._copy_file(path, os.path.join(destination, os.path.basename(rel)))
            else:
                self._copy_file(path, destination)

    @staticmethod
    def _copy_file(src: str, dst: str) -> None:
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        if os.path.lexists(dst) and not os.path.isdir(dst):
            os.unlink(dst)
        if os.path.islink(src):
            os.symlink(os.readlink(src), dst)
        else:
            shutil.copy2(src, dst)

    @staticmethod
    def _inside(root: str, container_path: str) -> str:
        path = os.path.normpath(os.path.join(root, container_path.lstrip("/")))
        if path != root and not path.startswith(root + os.sep):
            raise BuildError(f"Path {container_path} escapes the stage root")
        return path

    def _check_staged_configuration(self, service: ServiceDefinition, stage: BuildStage,
                                    root: str, environment: Optional[str]) -> None:
        config_dir = os.path.join(self._inside(root, stage.working_dir), service.config_dir)
        if not os.path.isfile(os.path.join(config_dir, "default.json")):
            return
        if not environment:
            raise BuildError(
                f"{service.name} stages configuration but no target environment is set "
                f"({self.settings.mode_variable})",
                stage=stage.label,
            )
        overlay = os.path.join(config_dir, f"{environment}.json")
        if not os.path.isfile(overlay):
            raise BuildError(
                f"configuration overlay {environment}.json for the target environment "
                f"was not staged into {stage.working_dir}/{service.config_dir}",
                stage=stage.label,
            )

    def _manifest(self, service: ServiceDefinition, recipe: BuildRecipe, stage: BuildStage,
                  root: str, environment: Optional[str]) -> ArtifactManifest:
        files = self.list_files(root)
        return ArtifactManifest(
            service=service.name,
            tag=service.image_name or f"{service.name}:{environment or 'latest'}",
            digest=ArtifactManifest.compute_digest(files),
            environment=environment or "",
            recipe_digest=self.renderer.digest(recipe),
            base_image=stage.base_image,
            working_dir=stage.working_dir,
            entrypoint=stage.entrypoint,
            cmd=stage.cmd,
            env=stage.env,
            exposed_ports=stage.exposed_ports,
            files=files,
            built_at=datetime.now(timezone.utc).isoformat(),
        )

    @staticmethod
    def list_files(root: str) -> List[FileEntry]:
        """Regular files and symlinks below root, sorted by path."""
        entries = []
        for current, dirnames, filenames in os.walk(root):
            dirnames.sort()
            names = sorted(filenames + [d for d in dirnames if os.path.islink(os.path.join(current, d))])
            for name in names:
                full = os.path.join(current, name)
                rel = os.path.relpath(full, root).replace(os.sep, "/")
                info = os.lstat(full)
                if stat.S_ISLNK(info.st_mode):
                    data = os.readlink(full).encode()
                    entries.append(FileEntry(path=rel, size=len(data),
                                             sha256=hashlib.sha256(data).hexdigest(), mode=0o120777))
                    continue
                hasher = hashlib.sha256()
                with open(full, "rb") as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        hasher.update(chunk)
                entries.append(FileEntry(path=rel, size=info.st_size,
                                         sha256=hasher.hexdigest(), mode=stat.S_IMODE(info.st_mode)))
        return sorted(entries, key=lambda e: e.path)
