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
Unit tests for image reference parsing.
"""
import pytest
from berth.REGISTRY.image_reference import ImageReference


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_official_image(self):
        """A bare name lives in the library namespace of the default registry."""
        ref = ImageReference.parse("mongo")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/mongo"
        assert ref.tag == "latest"
        assert ref.short_name == "mongo:latest"

    def test_parse_with_tag(self):
        """Test parsing an image with a tag."""
        ref = ImageReference.parse("rust:1.75-slim")
        assert ref.repository == "library/rust"
        assert ref.tag == "1.75-slim"
        assert str(ref) == "rust:1.75-slim"

    def test_parse_user_image(self):
        """Test parsing a user namespaced image."""
        ref = ImageReference.parse("acme/api:v1")
        assert ref.registry == "docker.io"
        assert ref.repository == "acme/api"
        assert ref.short_name == "acme/api:v1"

    def test_parse_full_reference(self):
        """A host with a dot is a registry."""
        ref = ImageReference.parse("ghcr.io/acme/api:latest")
        assert ref.registry == "ghcr.io"
        assert ref.repository == "acme/api"
        assert ref.short_name == "ghcr.io/acme/api:latest"

    def test_parse_with_digest(self):
        """A digest replaces the default tag."""
        digest = "sha256:" + "ab" * 32
        ref = ImageReference.parse(f"mongo@{digest}")
        assert ref.digest == digest
        assert ref.tag is None
        assert ref.full_name == f"docker.io/library/mongo@{digest}"

    def test_parse_localhost_registry(self):
        """The port of a registry is not taken for a tag."""
        ref = ImageReference.parse("localhost:5000/api")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "api"
        assert ref.tag == "latest"

    @pytest.mark.parametrize("reference", [
        "",
        "   ",
        "Mongo",
        "mongo:",
        "mongo:bad tag",
        "mongo@sha256:xyz",
        "acme//api",
    ])
    def test_malformed_references_raise(self, reference):
        """Malformed references are rejected."""
        with pytest.raises(ValueError):
            ImageReference.parse(reference)
