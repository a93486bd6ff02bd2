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
Unit tests for multi-stage recipe parsing and stage graph validation.
"""
import pytest

from berth.errors import RecipeError
from berth.MODELS.build_recipe import CopyOperation, RunCommand
from berth.PARSERS.recipe_parser import RecipeParser

PRODUCTION_RECIPE = """
ARG RUST_VERSION=1.75
FROM rust:${RUST_VERSION} AS builder
WORKDIR /app
COPY Cargo.toml ./
COPY src ./src
RUN cargo build --release

FROM debian:bookworm-slim
WORKDIR /srv
COPY --from=builder /app/target/release/api ./api
COPY config/default.json config/production.json ./config/
ENV RUN_MODE=production
EXPOSE 9999
CMD ["./api"]
"""


class TestRecipeParser:
    """Tests for RecipeParser."""

    def test_two_stage_recipe(self):
        """Stages, steps and metadata come out in declaration order."""
        recipe = RecipeParser().parse_from_string(PRODUCTION_RECIPE)
        builder, runtime = recipe.stages

        assert builder.name == "builder"
        assert builder.base_image == "rust:1.75"
        assert runtime.name is None
        assert runtime.label == "1"
        assert runtime.base_image == "debian:bookworm-slim"

        assert [type(s) for s in builder.steps] == [CopyOperation, CopyOperation, RunCommand]
        assert builder.copies[0].destination == "/app/"
        assert builder.copies[1].destination == "/app/src"
        run = builder.run_commands[0]
        assert run.command == ["cargo build --release"]
        assert run.shell
        assert run.working_dir == "/app"

        artifact_copy, config_copy = runtime.copies
        assert artifact_copy.from_stage == "builder"
        assert artifact_copy.sources == ["/app/target/release/api"]
        assert artifact_copy.destination == "/srv/api"
        assert config_copy.sources == ["config/default.json", "config/production.json"]
        assert config_copy.destination == "/srv/config/"

        assert runtime.env == {"RUN_MODE": "production"}
        assert runtime.exposed_ports == [9999]
        assert runtime.cmd == ["./api"]
        assert runtime.working_dir == "/srv"

    def test_build_graph(self):
        """The final stage consumes the builder through COPY --from."""
        recipe = RecipeParser().parse_from_string(PRODUCTION_RECIPE)
        assert recipe.build_graph() == {"builder": [], "1": ["builder"]}
        assert recipe.final_stage().label == "1"

    def test_build_args_override_defaults(self):
        """Build args win over ARG defaults."""
        recipe = RecipeParser({"RUST_VERSION": "1.80"}).parse_from_string(PRODUCTION_RECIPE)
        assert recipe.stages[0].base_image == "rust:1.80"

    def test_forward_reference_rejected(self):
        """A stage may only consume stages declared before it."""
        content = """
        FROM alpine:3.19 AS first
        COPY --from=second /out /out
        FROM alpine:3.19 AS second
        RUN echo built > /out
        """
        with pytest.raises(RecipeError, match="not declared before it"):
            RecipeParser().parse_from_string(content)

    def test_unknown_stage_rejected(self):
        """COPY --from must name a stage of the recipe."""
        content = "FROM alpine:3.19\nCOPY --from=missing /a /a\n"
        with pytest.raises(RecipeError, match="Unknown build stage 'missing'"):
            RecipeParser().parse_from_string(content)

    def test_duplicate_stage_name_rejected(self):
        """Stage names are unique."""
        content = "FROM alpine:3.19 AS app\nFROM alpine:3.19 AS app\n"
        with pytest.raises(RecipeError, match="Duplicate"):
            RecipeParser().parse_from_string(content)

    def test_empty_recipe_rejected(self):
        """A recipe needs at least one FROM."""
        with pytest.raises(RecipeError, match="no FROM"):
            RecipeParser().parse_from_string("# nothing here\n")

    def test_instruction_before_from_rejected(self):
        """Only ARG may precede the first FROM."""
        with pytest.raises(RecipeError, match="before the first FROM"):
            RecipeParser().parse_from_string("RUN echo hi\nFROM alpine:3.19\n")

    def test_remote_add_rejected(self):
        """ADD with a URL is not supported."""
        with pytest.raises(RecipeError, match="remote ADD"):
            RecipeParser().parse_from_string("FROM alpine:3.19\nADD https://example.com/x.tgz /x\n")

    def test_stage_built_on_previous_stage(self):
        """FROM <stage> inherits the parent's workdir and environment."""
        content = """
        FROM python:3.12 AS base
        WORKDIR /app
        ENV PYTHONUNBUFFERED=1
        FROM base AS test
        RUN pytest
        """
        recipe = RecipeParser().parse_from_string(content)
        test = recipe.stage("test")
        assert test.base_stage == "base"
        assert test.base_image == "python:3.12"
        assert test.working_dir == "/app"
        assert test.env == {"PYTHONUNBUFFERED": "1"}
        assert recipe.build_graph()["test"] == ["base"]

    def test_stages_for_target(self):
        """Only the stages the target needs are selected."""
        content = """
        FROM rust:1.75 AS builder
        RUN cargo build
        FROM builder AS test
        RUN cargo test
        FROM debian:bookworm-slim AS runtime
        COPY --from=builder /app/api /api
        """
        recipe = RecipeParser().parse_from_string(content)
        assert [s.label for s in recipe.stages_for()] == ["builder", "runtime"]
        assert [s.label for s in recipe.stages_for("test")] == ["builder", "test"]

    def test_stage_args_visible_to_run(self):
        """ARG and ENV values in effect are attached to each RUN."""
        content = """
        ARG PROFILE=release
        FROM rust:1.75
        ARG PROFILE
        ENV CARGO_HOME=/cargo
        RUN cargo build --profile $PROFILE
        """
        recipe = RecipeParser().parse_from_string(content)
        run = recipe.stages[0].run_commands[0]
        assert run.env == {"PROFILE": "release", "CARGO_HOME": "/cargo"}

    def test_parse_missing_file(self, tmp_path):
        """A missing recipe file is a RecipeError."""
        with pytest.raises(RecipeError, match="Cannot read build recipe"):
            RecipeParser().parse(str(tmp_path / "Dockerfile"))
