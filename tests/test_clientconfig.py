# Copyright 2025 Multikernel Technologies, Inc.
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
Tests for the client config.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from taloscluster.config.clientconfig import ClientConfig, Context, default_path, resolve_path
from taloscluster.exceptions import ClientConfigError


def _config(name, endpoints=None):
    return ClientConfig(context=name, contexts={name: Context(endpoints=endpoints or ["10.5.0.2"])})


class TestClientConfig:
    """Test loading, merging and saving client configs."""

    def test_open_missing(self, tmp_path):
        """Test that a missing file is an empty config."""
        cfg = ClientConfig.open(tmp_path / "config")

        assert cfg.context == ""
        assert cfg.contexts == {}

    def test_from_bytes_invalid(self):
        """Test that non-mapping configs are rejected."""
        with pytest.raises(ClientConfigError):
            ClientConfig.from_bytes("- a\n- b\n")

        with pytest.raises(ClientConfigError, match="failed to parse"):
            ClientConfig.from_bytes("context: [")

    def test_legacy_target(self, tmp_path):
        """Test that a single target is upgraded to an endpoint list."""
        path = tmp_path / "config"
        path.write_text("context: old\ncontexts:\n  old:\n    target: 10.5.0.2\n    ca: Y2E=\n")

        cfg = ClientConfig.open(path)

        assert cfg.contexts["old"].endpoints == ["10.5.0.2"]
        assert cfg.contexts["old"].ca == "Y2E="
        assert cfg.contexts["old"].to_dict() == {"endpoints": ["10.5.0.2"], "ca": "Y2E="}

    def test_target_does_not_override_endpoints(self):
        """Test that endpoints win over a leftover target."""
        ctx = Context.from_dict({"target": "10.5.0.9", "endpoints": ["10.5.0.2", "10.5.0.3"]})

        assert ctx.endpoints == ["10.5.0.2", "10.5.0.3"]

    def test_merge_new_context(self):
        """Test merging into an empty config."""
        cfg = ClientConfig()

        renames = cfg.merge(_config("talos-default"))

        assert renames == []
        assert cfg.context == "talos-default"
        assert cfg.contexts["talos-default"].endpoints == ["10.5.0.2"]

    def test_merge_renames_collisions(self):
        """Test that colliding contexts get the lowest free suffix."""
        cfg = _config("talos-default")
        cfg.contexts["talos-default-1"] = Context(endpoints=["10.6.0.2"])

        renames = cfg.merge(_config("talos-default", ["10.7.0.2"]))

        assert [str(r) for r in renames] == ["'talos-default' -> 'talos-default-2'"]
        assert cfg.context == "talos-default-2"
        assert cfg.contexts["talos-default-2"].endpoints == ["10.7.0.2"]
        assert cfg.contexts["talos-default"].endpoints == ["10.5.0.2"]

    def test_save_and_reopen(self, tmp_path):
        """Test that saved configs are private and readable."""
        path = tmp_path / "talos" / "config"

        _config("demo").save(path)

        assert oct(os.stat(path).st_mode & 0o777) == oct(0o600)
        reopened = ClientConfig.open(path)
        assert reopened.context == "demo"
        assert reopened.contexts["demo"].endpoints == ["10.5.0.2"]


class TestPaths:
    """Test client config path resolution."""

    @patch.dict(os.environ, {"TALOSCONFIG": "/tmp/custom-talosconfig"})
    def test_env_override(self):
        """Test that TALOSCONFIG wins over the home directory."""
        assert default_path() == Path("/tmp/custom-talosconfig")

    def test_flag_wins(self):
        """Test that an explicit path is used as is."""
        assert resolve_path("/tmp/flag-talosconfig") == Path("/tmp/flag-talosconfig")
