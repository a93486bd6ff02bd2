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
Unit tests for layered configuration resolution.
"""
import json

import pytest

from berth.errors import ConfigurationError
from berth.MANAGERS.configuration_loader import ConfigurationLoader, resolve_runtime_mode
from berth.UTILS.merge import deep_merge


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "default.json").write_text(json.dumps({
        "server": {"host": "0.0.0.0", "port": 9999},
        "db": {"name": "app", "pool": {"min": 1, "max": 5}},
        "features": ["a", "b"],
    }))
    (tmp_path / "production.json").write_text(json.dumps({
        "db": {"host": "mongodb", "pool": {"max": 50}},
        "features": ["a"],
    }))
    (tmp_path / "development.json").write_text(json.dumps({"server": {"port": 8000}}))
    return tmp_path


class TestConfigurationLoader:
    """Tests for ConfigurationLoader."""

    def test_overlay_wins_and_base_fills_gaps(self, config_dir):
        """Overlay keys take precedence; the rest comes from the base document."""
        resolved = ConfigurationLoader(str(config_dir)).resolve("production")
        assert resolved.mode == "production"
        assert resolved.document == {
            "server": {"host": "0.0.0.0", "port": 9999},
            "db": {"name": "app", "host": "mongodb", "pool": {"min": 1, "max": 50}},
            "features": ["a"],
        }

    def test_exactly_one_overlay(self, config_dir):
        """Values from other overlays never leak in."""
        resolved = ConfigurationLoader(str(config_dir)).resolve("production")
        assert resolved.document["server"]["port"] == 9999
        dev = ConfigurationLoader(str(config_dir)).resolve("development")
        assert dev.document["server"]["port"] == 8000
        assert "host" not in dev.document["db"]

    def test_resolution_is_idempotent(self, config_dir):
        """Resolving twice from the same documents gives the same result."""
        loader = ConfigurationLoader(str(config_dir))
        assert loader.resolve("production").document == loader.resolve("production").document

    def test_missing_overlay_fails(self, config_dir):
        """There is no fallback to the base document alone."""
        with pytest.raises(ConfigurationError, match="staging"):
            ConfigurationLoader(str(config_dir)).resolve("staging")

    def test_missing_base_fails(self, tmp_path):
        """The base document is required."""
        (tmp_path / "production.json").write_text("{}")
        loader = ConfigurationLoader(str(tmp_path))
        assert not loader.has_base()
        with pytest.raises(ConfigurationError, match="Base configuration"):
            loader.resolve("production")

    def test_invalid_documents(self, config_dir):
        """Overlays must be JSON objects."""
        (config_dir / "broken.json").write_text("{not json")
        (config_dir / "listy.json").write_text("[1, 2]")
        loader = ConfigurationLoader(str(config_dir))
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            loader.resolve("broken")
        with pytest.raises(ConfigurationError, match="JSON object"):
            loader.resolve("listy")

    def test_reserved_and_malformed_modes(self, config_dir):
        """Modes naming the base document or paths are rejected."""
        loader = ConfigurationLoader(str(config_dir))
        for mode in ("default", "resolved", "../production", ""):
            with pytest.raises(ConfigurationError):
                loader.resolve(mode)

    def test_write_resolved(self, config_dir):
        """The merged document is written next to its sources."""
        loader = ConfigurationLoader(str(config_dir))
        path = loader.write_resolved(loader.resolve("production"))
        assert path == str(config_dir / "resolved.json")
        with open(path) as f:
            assert json.load(f)["db"]["host"] == "mongodb"


def test_resolve_runtime_mode():
    assert resolve_runtime_mode({"RUN_MODE": "production"}) == "production"
    assert resolve_runtime_mode({"APP_MODE": " development "}, "APP_MODE") == "development"
    with pytest.raises(ConfigurationError, match="not set"):
        resolve_runtime_mode({})
    with pytest.raises(ConfigurationError, match="not set"):
        resolve_runtime_mode({"RUN_MODE": ""})
    with pytest.raises(ConfigurationError, match="Invalid runtime mode"):
        resolve_runtime_mode({"RUN_MODE": "default"})


def test_deep_merge_does_not_modify_inputs():
    base = {"a": {"b": 1, "c": [1]}}
    overlay = {"a": {"b": 2}}
    merged = deep_merge(base, overlay)
    assert merged == {"a": {"b": 2, "c": [1]}}
    assert base == {"a": {"b": 1, "c": [1]}}
    merged["a"]["c"].append(2)
    assert base["a"]["c"] == [1]
