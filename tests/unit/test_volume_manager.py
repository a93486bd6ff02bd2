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
Unit tests for the volume manager.
"""
import os

import pytest

from berth.errors import OrchestrationError
from berth.MANAGERS.volume_manager import VolumeManager
from berth.MODELS.service_definition import VolumeMount


@pytest.fixture
def vm(tmp_path):
    return VolumeManager(str(tmp_path / "volumes"), base_dir=str(tmp_path / "project"))


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_create_volume_idempotent(self, vm):
        """Creating the same volume twice returns the same path."""
        first = vm.create("mongo_data")
        second = vm.create("mongo_data")
        assert first == second
        assert os.path.isdir(first)

    def test_get_and_list(self, vm):
        assert vm.get("vol1") is None
        vm.create("vol1")
        vm.create("vol2")
        vm.anonymous("api", "/app/target")
        assert vm.list() == ["vol1", "vol2"]
        assert vm.get("vol1") is not None

    def test_remove_volume(self, vm):
        vm.create("test-vol")
        assert vm.remove("test-vol") is True
        assert vm.get("test-vol") is None
        assert vm.remove("test-vol") is False

    def test_invalid_names(self, vm):
        for name in ("../escape", "_anonymous", ""):
            with pytest.raises(OrchestrationError, match="Invalid volume name"):
                vm.create(name)

    def test_get_volume_size(self, vm):
        """Size counts the files stored in the volume."""
        path = vm.create("test-vol")
        with open(os.path.join(path, "test.txt"), "w") as f:
            f.write("Hello, World!")
        assert vm.size("test-vol") == 13
        with pytest.raises(OrchestrationError):
            vm.size("missing")

    def test_resolve_source(self, vm, tmp_path):
        """Named, bind and anonymous sources resolve to host paths."""
        named = vm.resolve_source(VolumeMount(source="my-data", target="/data"), "db")
        assert named == os.path.join(vm.volumes_root, "my-data")
        bind = vm.resolve_source(VolumeMount(source="./data", target="/data"), "db")
        assert bind == str(tmp_path / "project" / "data")
        anonymous = vm.resolve_source(VolumeMount(target="/cache"), "db")
        assert anonymous.startswith(os.path.join(vm.volumes_root, "_anonymous", "db"))
        assert anonymous == vm.anonymous("db", "/cache")

    def test_prepare_volumes_links_mounts(self, vm, tmp_path):
        """Mounts appear inside the service root as links to their sources."""
        (tmp_path / "project" / "src").mkdir(parents=True)
        root = tmp_path / "root"
        (root / "data" / "db").mkdir(parents=True)
        (root / "data" / "db" / "stale").write_text("from the artifact")

        vm.prepare_volumes([
            VolumeMount(source="mongo_data", target="/data/db"),
            VolumeMount(source="./src", target="/app/src"),
        ], str(root), "mongodb")

        assert os.path.islink(root / "data" / "db")
        assert os.path.realpath(root / "data" / "db") == os.path.realpath(vm.get("mongo_data"))
        assert os.path.realpath(root / "app" / "src") == os.path.realpath(tmp_path / "project" / "src")

        # data written through the mount lands in the volume
        (root / "data" / "db" / "collection").write_text("doc")
        assert os.path.exists(os.path.join(vm.get("mongo_data"), "collection"))

    def test_mount_inside_bind_is_skipped(self, vm, tmp_path):
        """Nested mounts below a bind mount would write into the host directory."""
        project = tmp_path / "project"
        project.mkdir()
        root = tmp_path / "root"
        root.mkdir()
        vm.prepare_volumes([
            VolumeMount(target="/app/target"),
            VolumeMount(source=".", target="/app"),
        ], str(root), "api")
        assert os.path.realpath(root / "app") == os.path.realpath(project)
        assert not os.path.exists(project / "target")

    def test_missing_bind_source(self, vm, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        with pytest.raises(OrchestrationError, match="does not exist"):
            vm.prepare_volumes([VolumeMount(source="./missing", target="/app")], str(root), "api")

    def test_remove_anonymous(self, vm):
        path = vm.anonymous("api", "/app/target")
        vm.remove_anonymous("api")
        assert not os.path.exists(path)
