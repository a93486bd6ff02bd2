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
Unit tests for the state store, environment merging and command resolution.
"""
import os
import threading

import pytest

from berth.errors import ConfigurationError
from berth.MANAGERS.environment_manager import EnvironmentManager
from berth.MANAGERS.state_store import StateStore
from berth.MODELS.artifact import ArtifactManifest
from berth.MODELS.runtime_state import ServiceState
from berth.MODELS.service_definition import ServiceDefinition
from berth.RUNNERS.entrypoint_executor import EntrypointExecutor


def make_manifest(**fields):
    values = dict(service="api", tag="api:production", environment="production",
                  recipe_digest="sha256:0", base_image="debian:bookworm-slim")
    values.update(fields)
    return ArtifactManifest(**values)


class TestStateStore:
    """Tests for StateStore."""

    def test_update_and_reload(self, tmp_path):
        """Records survive a new store instance on the same file."""
        path = str(tmp_path / "state.json")
        store = StateStore(path)
        assert store.get("api").state == ServiceState.CREATED

        store.update("api", state=ServiceState.RUNNING, pid=1234, ports={8080: 9999})
        reloaded = StateStore(path).get("api")
        assert reloaded.state == ServiceState.RUNNING
        assert reloaded.pid == 1234
        assert reloaded.ports == {8080: 9999}
        assert reloaded.updated_at
        assert StateStore(path).pid("api") == 1234

    def test_remove_and_clear(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        store.update("api", pid=1)
        store.update("mongodb", pid=2)
        store.remove("api")
        assert set(store.load()) == {"mongodb"}
        store.clear()
        assert store.load() == {}

    def test_concurrent_stores_on_one_file(self, tmp_path):
        """Two stores sharing a file never lose each other's updates."""
        path = str(tmp_path / "state.json")
        errors = []

        def bump(name):
            store = StateStore(path)
            try:
                for i in range(200):
                    store.update(name, restart_count=i + 1)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=bump, args=(name,)) for name in ("api", "mongodb")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        records = StateStore(path).load()
        assert records["api"].restart_count == 200
        assert records["mongodb"].restart_count == 200
        assert not [f for f in os.listdir(tmp_path) if f.endswith(".tmp")]

    def test_unreadable_file_is_empty(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{broken")
        assert StateStore(str(path)).load() == {}


class TestEnvironmentManager:
    """Tests for EnvironmentManager."""

    def test_precedence(self, tmp_path):
        """Passthrough < artifact ENV < env files < service environment < injected."""
        (tmp_path / "base.env").write_text("DB_NAME=app\nLOG_LEVEL=info\n# comment\nEMPTY=\n")
        (tmp_path / "local.env").write_text("LOG_LEVEL=debug\nexport TOKEN=\"s3cret\"\n")
        manager = EnvironmentManager(str(tmp_path), host_env={"PATH": "/usr/bin", "SECRET": "host-only"})

        env = manager.get_merged_environment(
            explicit_env={"RUN_MODE": "production", "DB_NAME": "explicit"},
            env_files=["base.env", "local.env"],
            extra_env={"MONGODB_HOST": "127.0.0.1", "RUN_MODE": "injected"},
            image_env={"PATH": "/srv/bin", "LOG_LEVEL": "warn"},
        )
        assert env == {
            "PATH": "/srv/bin",
            "DB_NAME": "explicit",
            "LOG_LEVEL": "debug",
            "EMPTY": "",
            "TOKEN": "s3cret",
            "RUN_MODE": "injected",
            "MONGODB_HOST": "127.0.0.1",
        }

    def test_missing_env_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            EnvironmentManager(str(tmp_path)).load_env_file("missing.env")


class TestEntrypointExecutor:
    """Tests for EntrypointExecutor."""

    def test_artifact_command(self):
        service = ServiceDefinition(name="api", build={"context": "."})
        manifest = make_manifest(entrypoint=["/srv/api"], cmd=["--port", "8080"])
        assert EntrypointExecutor().resolve(service, manifest) == ["/srv/api", "--port", "8080"]

    def test_service_command_replaces_cmd(self):
        service = ServiceDefinition(name="api", build={"context": "."}, cmd=["--port", "9000"])
        manifest = make_manifest(entrypoint=["/srv/api"], cmd=["--port", "8080"])
        assert EntrypointExecutor().resolve(service, manifest) == ["/srv/api", "--port", "9000"]

    def test_service_entrypoint_drops_artifact_cmd(self):
        service = ServiceDefinition(name="api", build={"context": "."}, entrypoint=["/bin/sh", "-c"])
        manifest = make_manifest(entrypoint=["/srv/api"], cmd=["--port", "8080"])
        assert EntrypointExecutor().resolve(service, manifest) == ["/bin/sh", "-c"]

    def test_map_into_root(self, tmp_path):
        """Only paths that exist inside the root are rewritten."""
        (tmp_path / "srv").mkdir()
        (tmp_path / "srv" / "api").write_text("binary")
        mapped = EntrypointExecutor.map_into_root(["/srv/api", "/bin/sh", "--config=/srv/api", "relative"],
                                                  str(tmp_path))
        assert mapped == [str(tmp_path / "srv" / "api"), "/bin/sh", "--config=/srv/api", "relative"]
        assert EntrypointExecutor.map_into_root(["/srv/api"], None) == ["/srv/api"]

    def test_host_working_dir(self, tmp_path):
        assert EntrypointExecutor.host_working_dir("/srv", str(tmp_path)) == os.path.join(str(tmp_path), "srv")
