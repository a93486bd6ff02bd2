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
Turns parsed Dockerfile instructions into a validated, multi-stage BuildRecipe.
"""
import logging
import posixpath
from typing import Dict, List, Optional

from ..errors import RecipeError
from ..MODELS.build_recipe import BuildRecipe, BuildStage, CopyOperation, RunCommand
from ..MODELS.dockerfile_ast import Instruction
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .dockerfile_parser import DockerfileParser

logger = logging.getLogger(__name__)


class RecipeParser:
    """
    Builds a BuildRecipe from a Dockerfile.

    ``ARG`` values (defaults overridden by build args) are substituted into
    ``FROM``, ``WORKDIR``, ``COPY``, ``ENV`` and ``LABEL`` arguments. The
    stage graph is validated before the recipe is returned.
    """
    def __init__(self, build_args: Optional[Dict[str, str]] = None):
        self.build_args = dict(build_args or {})
        self.parser = DockerfileParser()

    def parse(self, dockerfile_path: str) -> BuildRecipe:
        """
        Parses a recipe from a file path.

        :raises RecipeError: If the file is missing or the recipe is invalid.
        """
        try:
            instructions = self.parser.parse(dockerfile_path)
        except OSError as e:
            raise RecipeError(f"Cannot read build recipe {dockerfile_path}: {e}") from e
        recipe = self.from_instructions(instructions)
        recipe.source_path = dockerfile_path
        return recipe

    def parse_from_string(self, content: str) -> BuildRecipe:
        return self.from_instructions(self.parser.parse_from_string(content))

    def from_instructions(self, instructions: List[Instruction]) -> BuildRecipe:
        global_args: Dict[str, str] = {}
        stages: List[BuildStage] = []
        current: Optional[BuildStage] = None

        for inst in instructions:
            if inst.instruction == "FROM":
                current = self._start_stage(inst, stages, global_args)
                stages.append(current)
                continue

            if current is None:
                if inst.instruction == "ARG":
                    for name, default in self._arg_pairs(inst):
                        global_args[name] = self.build_args.get(name, default)
                    continue
                raise RecipeError(f"line {inst.line}: {inst.instruction} before the first FROM")

            self._apply(current, inst, global_args)

        recipe = BuildRecipe(stages=stages)
        recipe.validate_graph()
        return recipe

    def _start_stage(self, inst: Instruction, stages: List[BuildStage], global_args: Dict[str, str]) -> BuildStage:
        args = inst.arguments
        if not args:
            raise RecipeError(f"line {inst.line}: FROM requires an image")
        image = EnvironmentInterpolator.interpolate(args[0], global_args)
        name = None
        if len(args) >= 3 and args[1].upper() == "AS":
            name = args[2].lower()
        elif len(args) != 1:
            raise RecipeError(f"line {inst.line}: malformed FROM: {inst.raw}")

        stage = BuildStage(index=len(stages), name=name, base_image=image)
        parent = next((s for s in stages if s.name == image.lower()), None)
        if parent is not None:
            stage.base_stage = parent.name
            stage.base_image = parent.base_image
            stage.working_dir = parent.working_dir
            stage.env = dict(parent.env)
            stage.cmd = list(parent.cmd)
            stage.entrypoint = list(parent.entrypoint)
        elif image != "scratch":
            try:
                stage.base_image = ImageReference.parse(image).short_name
            except ValueError as e:
                raise RecipeError(f"line {inst.line}: {e}") from e
        return stage

    def _apply(self, stage: BuildStage, inst: Instruction, global_args: Dict[str, str]) -> None:
        name = inst.instruction
        context = {**stage.args, **stage.env}

        if name == "ARG":
            for arg_name, default in self._arg_pairs(inst):
                if arg_name in self.build_args:
                    stage.args[arg_name] = self.build_args[arg_name]
                elif arg_name in global_args and default is None:
                    stage.args[arg_name] = global_args[arg_name]
                else:
                    stage.args[arg_name] = default or ""
        elif name == "ENV":
            for pair in inst.arguments:
                key, _, value = pair.partition("=")
                stage.env[key] = EnvironmentInterpolator.interpolate(value, {**context, **stage.env})
        elif name == "LABEL":
            for pair in inst.arguments:
                key, _, value = pair.partition("=")
                stage.labels[key] = EnvironmentInterpolator.interpolate(value, context)
        elif name == "WORKDIR":
            if not inst.arguments:
                raise RecipeError(f"line {inst.line}: WORKDIR requires a path")
            path = EnvironmentInterpolator.interpolate(inst.arguments[0], context)
            stage.working_dir = posixpath.normpath(posixpath.join(stage.working_dir, path))
        elif name in ("COPY", "ADD"):
            stage.steps.append(self._copy(stage, inst, context))
        elif name == "RUN":
            if not inst.arguments:
                raise RecipeError(f"line {inst.line}: RUN requires a command")
            stage.steps.append(RunCommand(
                command=list(inst.arguments),
                shell=not inst.exec_form,
                working_dir=stage.working_dir,
                env={**stage.args, **stage.env},
            ))
        elif name == "EXPOSE":
            for port in inst.arguments:
                port_str = EnvironmentInterpolator.interpolate(port, context).split("/", 1)[0]
                try:
                    stage.exposed_ports.append(int(port_str))
                except ValueError as e:
                    raise RecipeError(f"line {inst.line}: invalid port '{port}'") from e
        elif name == "CMD":
            stage.cmd = self._command(inst)
        elif name == "ENTRYPOINT":
            stage.entrypoint = self._command(inst)
        else:
            logger.debug("Ignoring %s instruction on line %d", name, inst.line)

    def _copy(self, stage: BuildStage, inst: Instruction, context: Dict[str, str]) -> CopyOperation:
        args = [EnvironmentInterpolator.interpolate(a, context) for a in inst.arguments]
        if len(args) < 2:
            raise RecipeError(f"line {inst.line}: {inst.instruction} requires a source and a destination")
        sources, destination = args[:-1], args[-1]
        if inst.instruction == "ADD" and any("://" in s for s in sources):
            raise RecipeError(f"line {inst.line}: remote ADD sources are not supported")
        is_directory = destination.endswith("/") or destination in (".", "..")
        destination = posixpath.normpath(posixpath.join(stage.working_dir, destination))
        if is_directory and destination != "/":
            destination += "/"
        from_stage = inst.flags.get("from")
        return CopyOperation(
            sources=sources,
            destination=destination,
            from_stage=from_stage.lower() if from_stage else None,
        )

    @staticmethod
    def _command(inst: Instruction) -> List[str]:
        if inst.exec_form:
            return list(inst.arguments)
        if not inst.arguments:
            return []
        return ["/bin/sh", "-c", inst.arguments[0]]

    @staticmethod
    def _arg_pairs(inst: Instruction):
        for item in inst.arguments:
            name, sep, default = item.partition("=")
            yield name, (default if sep else None)
