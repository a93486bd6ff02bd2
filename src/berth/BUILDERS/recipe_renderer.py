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
Renders a parsed BuildRecipe back to canonical Dockerfile text.
"""
import hashlib
import json
from typing import Any, Dict, List

from jinja2 import Template

from ..MODELS.build_recipe import BuildRecipe, BuildStage, CopyOperation

RECIPE_TEMPLATE = """\
{% for stage in stages %}
{% if not loop.first %}

{% endif %}
FROM {{ stage.source }}{% if stage.name %} AS {{ stage.name }}{% endif %}

{% for key, value in stage.args %}
ARG {{ key }}={{ value }}
{% endfor %}
{% for key, value in stage.env %}
ENV {{ key }}={{ value }}
{% endfor %}
{% for line in stage.steps %}
{{ line }}
{% endfor %}
{% if stage.working_dir != "/" %}
WORKDIR {{ stage.working_dir }}
{% endif %}
{% for port in stage.exposed_ports %}
EXPOSE {{ port }}
{% endfor %}
{% for key, value in stage.labels %}
LABEL {{ key }}={{ value }}
{% endfor %}
{% if stage.entrypoint %}
ENTRYPOINT {{ stage.entrypoint }}
{% endif %}
{% if stage.cmd %}
CMD {{ stage.cmd }}
{% endif %}
{% endfor %}
"""


class RecipeRenderer:
    """
    Produces one normalised text per recipe: resolved arguments, absolute
    copy destinations, sorted variables and exec-form commands. Two recipes
    that build the same thing render identically.
    """
    def __init__(self):
        self.template = Template(RECIPE_TEMPLATE, trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)

    def render(self, recipe: BuildRecipe) -> str:
        return self.template.render(stages=[self._stage_view(s) for s in recipe.stages])

    def digest(self, recipe: BuildRecipe) -> str:
        return "sha256:" + hashlib.sha256(self.render(recipe).encode("utf-8")).hexdigest()

    def _stage_view(self, stage: BuildStage) -> Dict[str, Any]:
        return {
            "source": stage.base_stage or stage.base_image,
            "name": stage.name,
            "args": sorted(stage.args.items()),
            "env": sorted((k, json.dumps(v)) for k, v in stage.env.items()),
            "steps": self._step_lines(stage),
            "working_dir": stage.working_dir,
            "exposed_ports": sorted(set(stage.exposed_ports)),
            "labels": sorted((k, json.dumps(v)) for k, v in stage.labels.items()),
            "entrypoint": json.dumps(stage.entrypoint) if stage.entrypoint else "",
            "cmd": json.dumps(stage.cmd) if stage.cmd else "",
        }

    @staticmethod
    def _step_lines(stage: BuildStage) -> List[str]:
        lines = []
        workdir = "/"
        for step in stage.steps:
            if isinstance(step, CopyOperation):
                flag = f"--from={step.from_stage} " if step.from_stage else ""
                lines.append(f"COPY {flag}{json.dumps(step.sources + [step.destination])}")
                continue
            if step.working_dir != workdir:
                workdir = step.working_dir
                lines.append(f"WORKDIR {workdir}")
            lines.append(f"RUN {step.command[0] if step.shell else json.dumps(step.command)}")
        return lines
