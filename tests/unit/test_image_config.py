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
Unit tests for the image config model and its canonical encoding.
"""
import json
from datetime import datetime, timezone

from ocimutate.CONFIG.settings import NORMALIZED_CREATED
from ocimutate.MODELS.image_config import ImageConfig


class TestImageConfig:
    """Tests for ImageConfig."""

    def test_from_raw_normalizes_created(self, base_content):
        raw, _ = base_content
        config = ImageConfig.from_raw(raw, NORMALIZED_CREATED)
        assert config.created == NORMALIZED_CREATED
        assert config.created_at() == datetime(1980, 1, 1, 0, 0, 1, tzinfo=timezone.utc)

    def test_docker_provenance_is_dropped(self, base_content):
        """Test daemon-only fields never reach the committed config."""
        raw, _ = base_content
        encoded = ImageConfig.from_raw(raw, NORMALIZED_CREATED).to_raw()
        for key in ("container", "container_config", "docker_version"):
            assert key not in encoded
        assert encoded["config"]["User"] == ""
        assert "Labels" not in encoded["config"]

    def test_env_keeps_declaration_order(self):
        raw = {"os": "linux", "architecture": "amd64",
               "config": {"Env": ["B=2", "A=1", "BARE"]}}
        config = ImageConfig.from_raw(raw, NORMALIZED_CREATED)
        assert list(config.config.env) == ["B", "A", "BARE"]
        assert config.to_raw()["config"]["Env"] == ["B=2", "A=1", "BARE"]

    def test_empty_args_are_unset(self):
        raw = {"os": "linux", "architecture": "amd64",
               "config": {"Entrypoint": [], "Cmd": None, "WorkingDir": ""}}
        encoded = ImageConfig.from_raw(raw, NORMALIZED_CREATED).to_raw()["config"]
        assert "Entrypoint" not in encoded
        assert "Cmd" not in encoded
        assert "WorkingDir" not in encoded

    def test_canonical_bytes(self, base_content):
        """Test the encoding is sorted, compact and independent of input key order."""
        raw, _ = base_content
        shuffled = json.loads(json.dumps(raw, sort_keys=True))
        shuffled = dict(reversed(list(shuffled.items())))

        first = ImageConfig.from_raw(raw, NORMALIZED_CREATED).canonical_bytes()
        second = ImageConfig.from_raw(shuffled, NORMALIZED_CREATED).canonical_bytes()
        assert first == second
        assert b", " not in first and b"\": " not in first
        assert not first.endswith(b"\n")
        assert first.index(b'"architecture"') < first.index(b'"config"') < first.index(b'"os"')

    def test_with_layers_appends_history(self, base_content):
        raw, _ = base_content
        config = ImageConfig.from_raw(raw, NORMALIZED_CREATED)
        appended = config.with_layers(["sha256:" + "a" * 64], NORMALIZED_CREATED)
        assert appended.diff_ids == config.diff_ids + ["sha256:" + "a" * 64]
        assert appended.history[-1] == {"created": NORMALIZED_CREATED}
        assert len(config.diff_ids) == 2

    def test_empty_config(self):
        config = ImageConfig.empty("linux", "arm64", NORMALIZED_CREATED, variant="v8")
        assert config.to_raw() == {
            "architecture": "arm64",
            "os": "linux",
            "variant": "v8",
            "created": NORMALIZED_CREATED,
            "config": {},
            "rootfs": {"type": "layers", "diff_ids": []},
        }
