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
Models representing build recipes as ordered, named stages.
"""
from typing import Dict, List, Optional, Union

from pydantic import BaseModel

from ..errors import RecipeError


class CopyOperation(BaseModel):
    """
    Copies explicitly listed sources to a destination inside the stage.
    With ``from_stage`` set, sources are read from that earlier stage's
    filesystem instead of the build context.
    """
    sources: List[str]
    destination: str
    from_stage: Optional[str] = None


class RunCommand(BaseModel):
    """
    A build command, in shell form (one string) or exec form (argv), with
    the working directory and variables in effect where it was declared.
    """
    command: List[str]
    shell: bool = True
    working_dir: str = "/"
    env: Dict[str, str] = {}

    def display(self) -> str:
        return self.command[0] if self.shell else " ".join(self.command)


class BuildStage(BaseModel):
    """
    One stage of a recipe. The stage's steps keep their declaration order.
    """
    index: int
    name: Optional[str] = None
    base_image: str
    base_stage: Optional[str] = None
    working_dir: str = "/"
    env: Dict[str, str] = {}
    args: Dict[str, str] = {}
    steps: List[Union[CopyOperation, RunCommand]] = []
    exposed_ports: List[int] = []
    cmd: List[str] = []
    entrypoint: List[str] = []
    labels: Dict[str, str] = {}

    @property
    def label(self) -> str:
        return self.name or str(self.index)

    @property
    def copies(self) -> List[CopyOperation]:
        return [s for s in self.steps if isinstance(s, CopyOperation)]

    @property
    def run_commands(self) -> List[RunCommand]:
        return [s for s in self.steps if isinstance(s, RunCommand)]


class BuildRecipe(BaseModel):
    """
    An ordered sequence of stages. The last stage, or an explicit target,
    produces the artifact.
    """
    stages: List[BuildStage]
    source_path: str = ""

    def stage(self, reference: str) -> BuildStage:
        """
        Looks up a stage by name or index.

        :raises RecipeError: If no stage matches.
        """
        for stage in self.stages:
            if stage.name == reference or str(stage.index) == reference:
                return stage
        raise RecipeError(f"Unknown build stage '{reference}'")

    def build_graph(self) -> Dict[str, List[str]]:
        """
        Returns the stage graph: each stage label mapped to the labels of
        the stages it consumes, through ``FROM <stage>`` or ``COPY --from``.
        """
        graph: Dict[str, List[str]] = {}
        for stage in self.stages:
            deps: List[str] = []
            if stage.base_stage is not None:
                deps.append(self.stage(stage.base_stage).label)
            for copy_op in stage.copies:
                if copy_op.from_stage is not None:
                    label = self.stage(copy_op.from_stage).label
                    if label not in deps:
                        deps.append(label)
            graph[stage.label] = deps
        return graph

    def validate_graph(self) -> None:
        """
        Checks that stages only consume stages declared before them, which
        also rules out cycles.

        :raises RecipeError: On an empty recipe, a duplicate stage name, or a
            reference to an unknown, later, or the same stage.
        """
        if not self.stages:
            raise RecipeError("Recipe has no FROM instruction")
        seen: Dict[str, int] = {}
        for stage in self.stages:
            if stage.name is not None:
                if stage.name in seen:
                    raise RecipeError(f"Duplicate build stage name '{stage.name}'")
                seen[stage.name] = stage.index
        for stage in self.stages:
            refs = [c.from_stage for c in stage.copies if c.from_stage is not None]
            if stage.base_stage is not None:
                refs.append(stage.base_stage)
            for ref in refs:
                consumed = self.stage(ref)
                if consumed.index >= stage.index:
                    raise RecipeError(
                        f"Stage '{stage.label}' references stage '{ref}', "
                        "which is not declared before it"
                    )

    def final_stage(self, target: Optional[str] = None) -> BuildStage:
        return self.stage(target) if target else self.stages[-1]

    def stages_for(self, target: Optional[str] = None) -> List[BuildStage]:
        """
        The stages needed to produce the target stage, in declaration order.
        """
        graph = self.build_graph()
        final = self.final_stage(target)
        needed = set()
        pending = [final.label]
        while pending:
            label = pending.pop()
            if label in needed:
                continue
            needed.add(label)
            pending.extend(graph[label])
        return [s for s in self.stages if s.label in needed]
